from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

from conftest import write_check, write_file
from ctdd_coach import check_engine
from ctdd_coach.check_defs import CHECK_KINDS
from ctdd_coach.check_engine import (
    DEFAULT_TIMEOUT_MS,
    RUNNERS,
    TIMEOUT_ENV_VAR,
    resolve_timeout_ms,
    run_checks,
    run_with_timeout,
    summarize,
    to_reportable,
)
from ctdd_coach.check_runners import CancelToken, CheckCancelled, CheckResult
from ctdd_coach.errors import CheckTimeoutError, SpecNotFoundError


def test_every_check_kind_has_a_runner() -> None:
    assert set(RUNNERS) == set(CHECK_KINDS)


def test_timeout_guard_returns_value_in_time() -> None:
    async def quick() -> str:
        return "done"

    assert asyncio.run(run_with_timeout(quick, 1000, "quick")) == "done"


def test_timeout_guard_raises_and_trips_token() -> None:
    token = CancelToken()

    async def stall() -> None:
        await asyncio.sleep(5)

    with pytest.raises(CheckTimeoutError) as excinfo:
        asyncio.run(run_with_timeout(stall, 20, "slow-one", token))

    assert excinfo.value.message == 'Check "slow-one" timed out after 20ms'
    assert token.cancelled


def test_timeout_guard_propagates_operation_errors() -> None:
    async def boom() -> None:
        raise KeyError("inner")

    with pytest.raises(KeyError):
        asyncio.run(run_with_timeout(boom, 1000, "boom"))


def test_resolve_timeout_ms(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(TIMEOUT_ENV_VAR, raising=False)
    assert resolve_timeout_ms() == DEFAULT_TIMEOUT_MS
    assert resolve_timeout_ms("250") == 250

    monkeypatch.setenv(TIMEOUT_ENV_VAR, "1500")
    assert resolve_timeout_ms() == 1500
    assert resolve_timeout_ms(10) == 10

    for bad in (0, -5, "soon"):
        with pytest.raises(ValueError):
            resolve_timeout_ms(bad)


def test_results_follow_definition_order(project: Path) -> None:
    write_file(project, "README.md", "# hi\n")
    write_check(project, "10.json", {"id": "readme", "kind": "file_exists", "file": "README.md"})
    write_check(project, "20.json", {"id": "license", "kind": "file_exists", "file": "LICENSE"})
    write_check(project, "30.json", {"id": "heading", "kind": "grep", "file": "README.md", "pattern": "^# "})

    results = asyncio.run(run_checks(project))

    assert [r.id for r in results] == ["readme", "license", "heading"]
    assert [r.status for r in results] == ["PASS", "FAIL", "PASS"]
    assert summarize(results) == {"PASS": 2, "FAIL": 1, "SKIP": 0}


def test_no_definitions_yields_empty_list(project: Path) -> None:
    assert asyncio.run(run_checks(project)) == []


def test_repeated_runs_are_identical(project: Path) -> None:
    write_file(project, "pkg.json", '{"version": "1.0.0"}')
    write_check(project, "a.json", {"id": "ver", "kind": "jsonpath", "file": "pkg.json", "path": "$.version"})
    write_check(project, "b.json", {"id": "src", "kind": "glob", "pattern": "*.json", "min": 1})

    first = asyncio.run(run_checks(project))
    second = asyncio.run(run_checks(project))
    assert first == second


def test_missing_spec_aborts_run(tmp_path: Path) -> None:
    with pytest.raises(SpecNotFoundError):
        asyncio.run(run_checks(tmp_path))


def test_malformed_definition_does_not_affect_the_rest(project: Path) -> None:
    write_file(project, "a.txt", "alpha\n")
    write_check(project, "1.json", {"id": "one", "kind": "file_exists", "file": "a.txt"})
    write_check(project, "2.json", "[broken")
    write_check(project, "3.json", {"id": "three", "kind": "grep", "file": "a.txt", "pattern": "alpha"})

    results = asyncio.run(run_checks(project))
    assert [(r.id, r.status) for r in results] == [("one", "PASS"), ("three", "PASS")]


def test_stalled_check_fails_with_timeout_and_run_continues(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def stalled(ctx, definition) -> CheckResult:
        await asyncio.sleep(10)
        raise AssertionError("unreachable")

    monkeypatch.setitem(RUNNERS, "file_exists", stalled)
    write_file(project, "a.txt", "alpha\n")
    write_check(project, "1.json", {"id": "stuck", "kind": "file_exists", "file": "a.txt"})
    write_check(project, "2.json", {"id": "after", "kind": "grep", "file": "a.txt", "pattern": "alpha"})

    results = asyncio.run(run_checks(project, timeout_ms=50))

    stuck, after = results
    assert stuck.status == "FAIL"
    assert "stuck" in stuck.evidence
    assert "timed out after 50ms" in stuck.evidence
    assert after.status == "PASS"


def test_crashing_runner_becomes_fail_result(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def crashing(ctx, definition) -> CheckResult:
        raise RuntimeError("runner exploded")

    monkeypatch.setitem(RUNNERS, "file_exists", crashing)
    write_check(project, "1.json", {"id": "c", "kind": "file_exists", "file": "a.txt", "report_as": "AT9"})

    (result,) = asyncio.run(run_checks(project))
    assert result.id == "AT9"
    assert result.source_definition_id == "c"
    assert result.status == "FAIL"
    assert result.evidence == "runner exploded"


def test_unknown_kind_becomes_fail_result(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    odd = SimpleNamespace(
        id="mystery",
        kind="shell",
        title="",
        report_as=None,
        related_requirement_ids=(),
        related_invariant_ids=(),
    )
    monkeypatch.setattr(check_engine, "load_check_definitions", lambda *a, **kw: [odd])

    (result,) = asyncio.run(run_checks(project))
    assert result.status == "FAIL"
    assert result.id == "mystery"
    assert result.title == "Check mystery"
    assert result.evidence == "Unknown check kind: shell"


def test_to_reportable_falls_back_to_title() -> None:
    results = [
        CheckResult(id="a", source_definition_id="a", title="A title", status="PASS", evidence="seen"),
        CheckResult(id="b", source_definition_id="b", title="B title", status="FAIL"),
    ]
    assert to_reportable(results) == [
        {"id": "a", "status": "PASS", "evidence": "seen"},
        {"id": "b", "status": "FAIL", "evidence": "B title"},
    ]


def test_worker_deadline_is_reported_as_timeout(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def deadline_hit(ctx, definition) -> CheckResult:
        raise CheckCancelled("regex search exceeded the check deadline")

    monkeypatch.setitem(RUNNERS, "grep", deadline_hit)
    write_check(project, "1.json", {"id": "slow", "kind": "grep", "file": "a.txt", "pattern": "x"})

    (result,) = asyncio.run(run_checks(project, timeout_ms=75))
    assert result.status == "FAIL"
    assert result.evidence == 'Check "slow" timed out after 75ms'


def test_token_deadline_counts_down() -> None:
    assert CancelToken().remaining() is None
    remaining = CancelToken(timeout_ms=5_000).remaining()
    assert remaining is not None and 0 < remaining <= 5.0
