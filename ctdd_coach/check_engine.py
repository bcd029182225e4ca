"""
Check engine: load definitions, run each one under a deadline, collect results.

Checks run strictly one after another so evidence order is deterministic and
checks that read the same files do not contend. A failing, crashing or
timed-out check becomes a FAIL result for that definition only. The one
error that aborts a run is a missing or invalid spec, because it means the
project was never initialized.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from ctdd_coach.check_defs import CHECK_KINDS, CheckDefinition, load_check_definitions
from ctdd_coach.check_runners import (
    CancelToken,
    CheckCancelled,
    CheckContext,
    CheckResult,
    Runner,
    default_title,
    run_file_exists,
    run_glob_count,
    run_jsonpath,
    run_multi_condition,
    run_pattern_match,
)
from ctdd_coach.errors import CheckTimeoutError, UnknownCheckKindError
from ctdd_coach.project_spec import PLUGIN_DIR, load_spec, resolve_ctdd_dir


LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
TIMEOUT_ENV_VAR = "CTDD_CHECK_TIMEOUT_MS"

RUNNERS: dict[str, Runner] = {
    "grep": run_pattern_match,
    "file_exists": run_file_exists,
    "jsonpath": run_jsonpath,
    "multi_grep": run_multi_condition,
    "glob": run_glob_count,
}

T = TypeVar("T")


def resolve_timeout_ms(raw: int | str | None = None) -> int:
    """Explicit value first, then CTDD_CHECK_TIMEOUT_MS, then the default."""
    value: int | str | None = raw
    if value is None:
        value = os.environ.get(TIMEOUT_ENV_VAR) or DEFAULT_TIMEOUT_MS
    try:
        timeout_ms = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid check timeout: {value!r}") from exc
    if timeout_ms <= 0:
        raise ValueError(f"check timeout must be positive, got {timeout_ms}")
    return timeout_ms


async def run_with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout_ms: int,
    label: str,
    token: CancelToken | None = None,
) -> T:
    """
    Await `operation()` for at most `timeout_ms`.

    On expiry the awaiting task is cancelled, `token` is tripped so worker
    threads stop at their next checkpoint, and `CheckTimeoutError` is raised.
    """
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
    except TimeoutError as exc:
        if token is not None:
            token.cancel()
        raise CheckTimeoutError(label, timeout_ms) from exc


def runner_for(definition: CheckDefinition) -> Runner:
    kind = getattr(definition, "kind", None)
    runner = RUNNERS.get(kind) if isinstance(kind, str) else None
    if runner is None:
        raise UnknownCheckKindError(str(kind))
    return runner


def failure_result(definition: Any, evidence: str) -> CheckResult:
    definition_id = str(getattr(definition, "id", "unknown"))
    title = getattr(definition, "title", "") or ""
    if not title:
        title = default_title(definition) if getattr(definition, "kind", None) in CHECK_KINDS else f"Check {definition_id}"
    return CheckResult(
        id=getattr(definition, "report_as", None) or definition_id,
        source_definition_id=definition_id,
        title=title,
        status="FAIL",
        evidence=evidence,
        related_requirement_ids=tuple(getattr(definition, "related_requirement_ids", ())),
        related_invariant_ids=tuple(getattr(definition, "related_invariant_ids", ())),
    )


async def run_definition(
    ctx: CheckContext,
    definition: CheckDefinition,
    timeout_ms: int,
    log: logging.Logger = LOG,
) -> CheckResult:
    try:
        runner = runner_for(definition)
        return await run_with_timeout(lambda: runner(ctx, definition), timeout_ms, definition.id, ctx.token)
    except CheckCancelled:
        # The worker hit the deadline a moment before the guard did.
        timeout = CheckTimeoutError(definition.id, timeout_ms)
        log.warning("check %s failed: %s", definition.id, timeout)
        return failure_result(definition, timeout.message)
    except Exception as exc:  # noqa: BLE001
        log.warning("check %s failed: %s", getattr(definition, "id", "?"), exc)
        message = exc.message if isinstance(exc, (CheckTimeoutError, UnknownCheckKindError)) else str(exc)
        return failure_result(definition, message or type(exc).__name__)


async def run_checks(
    project_dir: Path,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    *,
    ctdd_dir: Path | None = None,
    logger: logging.Logger | None = None,
) -> list[CheckResult]:
    """
    Run every check definition of the project and return results in
    definition order. Raises `SpecNotFoundError` / `SpecInvalidError` when the
    project has no usable spec.
    """
    log = logger or LOG
    project_dir = Path(project_dir).resolve()
    base = ctdd_dir if ctdd_dir is not None else resolve_ctdd_dir(project_dir, None)
    spec = load_spec(project_dir, base)
    definitions = load_check_definitions(base / PLUGIN_DIR, logger=log)
    log.debug("running %d check(s) from %s", len(definitions), base / PLUGIN_DIR)

    results: list[CheckResult] = []
    for definition in definitions:
        ctx = CheckContext(project_dir=project_dir, spec=spec, token=CancelToken(timeout_ms))
        results.append(await run_definition(ctx, definition, timeout_ms, log))
    return results


def to_reportable(results: Iterable[CheckResult]) -> list[dict[str, str]]:
    """Project results onto the post-check shape of the validation record."""
    return [{"id": r.id, "status": r.status, "evidence": r.evidence or r.title} for r in results]


def summarize(results: Iterable[CheckResult]) -> dict[str, int]:
    counts = {"PASS": 0, "FAIL": 0, "SKIP": 0}
    for r in results:
        counts[r.status] = counts.get(r.status, 0) + 1
    return counts
