"""
One runner per check kind.

Runners are read-only and never raise for anticipated failures: a missing
file, bad regex, malformed JSON or glob error becomes a FAIL result with the
error as evidence. Blocking work runs in a worker thread and polls the
context's cancel token so a timed-out check stops at its next checkpoint.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

import regex
from jsonpath_ng.exceptions import JSONPathError
from jsonpath_ng.ext import parse as parse_jsonpath
from wcmatch import glob as wcglob

from ctdd_coach.check_defs import (
    CheckDefinition,
    FileExistsCheck,
    GlobCountCheck,
    GrepCondition,
    JsonPathCheck,
    MultiConditionCheck,
    PatternMatchCheck,
)


READ_CHUNK_BYTES = 64 * 1024
GLOB_EVIDENCE_LIMIT = 400
GLOB_EVIDENCE_EXAMPLES = 5
REGEX_FLAGS = {
    "i": regex.IGNORECASE,
    "m": regex.MULTILINE,
    "s": regex.DOTALL,
    "u": 0,
    "g": 0,
}
GLOB_FLAGS = wcglob.GLOBSTAR | wcglob.NODIR | wcglob.FORCEUNIX
IGNORE_FLAGS = wcglob.GLOBSTAR | wcglob.DOTGLOB | wcglob.FORCEUNIX

Status = Literal["PASS", "FAIL"]


class CheckCancelled(Exception):
    pass


class CancelToken:
    """
    Set by the timeout guard; polled by blocking work between steps.

    `timeout_ms` fixes a deadline that bounds work which cannot poll, such as
    a single regex search.
    """

    def __init__(self, timeout_ms: int | None = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout_ms / 1000 if timeout_ms is not None else None

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CheckCancelled("check cancelled")


@dataclass(frozen=True)
class CheckContext:
    project_dir: Path
    spec: dict[str, Any] | None = None
    token: CancelToken = field(default_factory=CancelToken)


@dataclass(frozen=True)
class CheckResult:
    id: str
    source_definition_id: str
    title: str
    status: Status
    evidence: str = ""
    related_requirement_ids: tuple[str, ...] = ()
    related_invariant_ids: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return self.status == "PASS"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_definition_id": self.source_definition_id,
            "title": self.title,
            "status": self.status,
            "evidence": self.evidence,
            "related_requirement_ids": list(self.related_requirement_ids),
            "related_invariant_ids": list(self.related_invariant_ids),
        }


Runner = Callable[[CheckContext, Any], Awaitable[CheckResult]]


def default_title(definition: CheckDefinition) -> str:
    if isinstance(definition, PatternMatchCheck):
        return f"grep {definition.pattern} in {definition.file}"
    if isinstance(definition, FileExistsCheck):
        return f"file {'exists' if definition.should_exist else 'does not exist'}: {definition.file}"
    if isinstance(definition, JsonPathCheck):
        return f"jsonpath {definition.path} in {definition.file}"
    if isinstance(definition, MultiConditionCheck):
        return f"multi_grep ({definition.mode})"
    if isinstance(definition, GlobCountCheck):
        return f"glob {definition.pattern}"
    return f"check {getattr(definition, 'id', '?')}"


def make_result(definition: CheckDefinition, passed: bool, evidence: str) -> CheckResult:
    return CheckResult(
        id=definition.report_id,
        source_definition_id=definition.id,
        title=definition.title or default_title(definition),
        status="PASS" if passed else "FAIL",
        evidence=evidence,
        related_requirement_ids=definition.related_requirement_ids,
        related_invariant_ids=definition.related_invariant_ids,
    )


def compile_pattern(pattern: str, flags: str) -> regex.Pattern:
    value = 0
    for letter in flags:
        if letter not in REGEX_FLAGS:
            raise regex.error(f"invalid regex flag {letter!r}")
        value |= REGEX_FLAGS[letter]
    return regex.compile(pattern, value)


def resolve_in_project(project_dir: Path, rel_path: str) -> Path:
    return (project_dir / rel_path).resolve()


def _read_text_blocking(path: Path, token: CancelToken) -> str:
    chunks: list[bytes] = []
    with path.open("rb") as f:
        while True:
            token.raise_if_cancelled()
            chunk = f.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks).decode("utf-8", errors="replace")


def _search_file_blocking(path: Path, compiled: regex.Pattern, token: CancelToken) -> bool:
    content = _read_text_blocking(path, token)
    token.raise_if_cancelled()
    # concurrent=True releases the GIL so the event loop keeps its timers.
    try:
        return compiled.search(content, concurrent=True, timeout=token.remaining()) is not None
    except TimeoutError as exc:
        raise CheckCancelled("regex search exceeded the check deadline") from exc


async def read_text(path: Path, token: CancelToken) -> str:
    return await asyncio.to_thread(_read_text_blocking, path, token)


async def search_file(path: Path, compiled: regex.Pattern, token: CancelToken) -> bool:
    return await asyncio.to_thread(_search_file_blocking, path, compiled, token)


@dataclass(frozen=True)
class GrepOutcome:
    passed: bool
    state: Literal["missing", "error", "found", "not_found"]
    evidence: str


async def evaluate_grep(ctx: CheckContext, cond: GrepCondition) -> GrepOutcome:
    # An absent file resolves by must_exist: forbidden evidence that is absent passes.
    path = resolve_in_project(ctx.project_dir, cond.file)
    if not await asyncio.to_thread(path.exists):
        if cond.must_exist:
            return GrepOutcome(False, "missing", f"File not found: {cond.file}")
        return GrepOutcome(True, "missing", f"File not found but must_exist=false: {cond.file}")
    try:
        compiled = compile_pattern(cond.pattern, cond.flags)
        found = await search_file(path, compiled, ctx.token)
    except (OSError, regex.error) as exc:
        return GrepOutcome(False, "error", f"Error reading file: {exc}")
    if found:
        return GrepOutcome(found == cond.must_exist, "found", f"Pattern found in {cond.file}")
    return GrepOutcome(found == cond.must_exist, "not_found", f"Pattern not found in {cond.file}")


async def run_pattern_match(ctx: CheckContext, definition: PatternMatchCheck) -> CheckResult:
    outcome = await evaluate_grep(ctx, definition.condition)
    return make_result(definition, outcome.passed, outcome.evidence)


async def run_file_exists(ctx: CheckContext, definition: FileExistsCheck) -> CheckResult:
    path = resolve_in_project(ctx.project_dir, definition.file)
    exists = await asyncio.to_thread(path.exists)
    evidence = f"File exists: {definition.file}" if exists else f"File does not exist: {definition.file}"
    return make_result(definition, exists == definition.should_exist, evidence)


def _normalize_numbers(value: Any) -> Any:
    # JSON has one number type: 1.0 and 1 are the same value.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _normalize_numbers(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize_numbers(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(_normalize_numbers(value), sort_keys=True, separators=(",", ":"))


async def run_jsonpath(ctx: CheckContext, definition: JsonPathCheck) -> CheckResult:
    path = resolve_in_project(ctx.project_dir, definition.file)
    try:
        data = json.loads(await read_text(path, ctx.token))
        expr = parse_jsonpath(definition.path)
        values = [match.value for match in expr.find(data)]
    except CheckCancelled:
        raise
    except json.JSONDecodeError as exc:
        return make_result(definition, False, f"Error: invalid JSON in {definition.file}: {exc}")
    except (OSError, JSONPathError) as exc:
        return make_result(definition, False, f"Error: {exc}")
    except Exception as exc:  # noqa: BLE001
        # jsonpath_ng surfaces some malformed expressions as plain exceptions.
        return make_result(definition, False, f"Error: {exc}")

    if definition.has_equals:
        expected = canonical_json(definition.equals)
        found = any(canonical_json(v) == expected for v in values)
        if found:
            evidence = f"Expected value found at {definition.path}"
        else:
            evidence = f"Expected value not found at {definition.path}. Found: {json.dumps(values)}"
        return make_result(definition, found, evidence)

    exists = bool(values)
    evidence = f"Path exists with {len(values)} result(s)" if exists else "Path does not exist"
    return make_result(definition, exists == definition.exists, evidence)


def _combine(results: list[bool], mode: str) -> bool:
    return all(results) if mode == "all" else any(results)


async def run_multi_condition(ctx: CheckContext, definition: MultiConditionCheck) -> CheckResult:
    results: list[bool] = []
    parts: list[str] = []
    for cond in definition.checks:
        label = cond.label or f"{cond.pattern} in {cond.file}"
        outcome = await evaluate_grep(ctx, cond)
        results.append(outcome.passed)
        if outcome.state == "missing":
            parts.append(f"{label}: File not found{' (OK)' if outcome.passed else ''}")
        elif outcome.state == "error":
            parts.append(f"{label}: Error reading file")
        else:
            parts.append(f"{label}: {'PASS' if outcome.passed else 'FAIL'}")
    return make_result(definition, _combine(results, definition.mode), " | ".join(parts))


def expand_glob(
    project_dir: Path,
    pattern: str,
    ignore: tuple[str, ...] = (),
    dot: bool = False,
    token: CancelToken | None = None,
) -> list[str]:
    """
    Sorted project-relative POSIX paths of files matching `pattern`.

    `**` matches zero or more directories. Without `dot`, wildcards skip names
    starting with "." but a literal `.github/` in the pattern still matches.
    Ignore patterns use the same globstar rules and always see dot names.
    """
    flags = GLOB_FLAGS | wcglob.DOTGLOB if dot else GLOB_FLAGS
    out: set[str] = set()
    for rel in wcglob.iglob(pattern, flags=flags, root_dir=str(project_dir)):
        if token is not None:
            token.raise_if_cancelled()
        rel = Path(rel).as_posix()
        if ignore and wcglob.globmatch(rel, list(ignore), flags=IGNORE_FLAGS):
            continue
        out.add(rel)
    return sorted(out)


def _each_grep_blocking(
    project_dir: Path,
    matches: list[str],
    compiled: regex.Pattern,
    must_exist: bool,
    token: CancelToken,
) -> list[bool]:
    out: list[bool] = []
    for rel in matches:
        token.raise_if_cancelled()
        try:
            found = _search_file_blocking(project_dir / rel, compiled, token)
        except OSError:
            out.append(not must_exist)
        else:
            out.append(found == must_exist)
    return out


async def run_glob_count(ctx: CheckContext, definition: GlobCountCheck) -> CheckResult:
    try:
        matches = await asyncio.to_thread(
            expand_glob, ctx.project_dir, definition.pattern, definition.ignore, definition.dot, ctx.token
        )
        count = len(matches)
        count_ok = count >= definition.min
        parts = [f"Found {count} file(s)"]
        if definition.max is not None:
            count_ok = count_ok and count <= definition.max
            parts.append(f"(expected {definition.min}-{definition.max})")
        else:
            parts.append(f"(expected >={definition.min})")

        grep_ok = True
        each = definition.each_grep
        if each is not None and matches:
            compiled = compile_pattern(each.pattern, each.flags)
            grep_results = await asyncio.to_thread(
                _each_grep_blocking, ctx.project_dir, matches, compiled, each.must_exist, ctx.token
            )
            grep_ok = _combine(grep_results, definition.each_mode)
            parts.append(f"grep: {'PASS' if grep_ok else 'FAIL'}")
        if matches:
            parts.append(f"examples={matches[:GLOB_EVIDENCE_EXAMPLES]}")
    except CheckCancelled:
        raise
    except Exception as exc:  # noqa: BLE001
        return make_result(definition, False, f"Error: {exc}"[:GLOB_EVIDENCE_LIMIT])

    evidence = " | ".join(parts)[:GLOB_EVIDENCE_LIMIT]
    return make_result(definition, count_ok and grep_ok, evidence)
