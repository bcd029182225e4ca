#!/usr/bin/env python3
"""
CTDD Coach

CLI to initialize a `.ctdd/` project, run its declarative plugin checks and
record post responses against the current spec commit.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from ctdd_coach.check_defs import describe_definition, load_check_definitions
from ctdd_coach.check_engine import (
    DEFAULT_TIMEOUT_MS,
    TIMEOUT_ENV_VAR,
    resolve_timeout_ms,
    run_checks,
    summarize,
    to_reportable,
)
from ctdd_coach.errors import CtddError
from ctdd_coach.locking import ctdd_lock
from ctdd_coach.project_spec import (
    DEFAULT_CTDD_ROOT,
    PLUGIN_DIR,
    atomic_write_text,
    compute_commit_id,
    init_project,
    load_spec,
    load_state,
    post_check_summary,
    record_post_response,
    resolve_ctdd_dir,
    utc_now,
)


LOG = logging.getLogger("ctdd_coach")

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0
DEFAULT_LOCK_STALE_SECONDS = 300.0
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4848
LOCKED_COMMANDS = {"init", "post-response"}


def _project_paths(args: argparse.Namespace) -> tuple[Path, Path]:
    project_dir = Path(args.project_dir).resolve()
    return project_dir, resolve_ctdd_dir(project_dir, getattr(args, "ctdd_root", None))


def _write_out_file(project_dir: Path, raw: str | None, payload: Any) -> None:
    if not raw:
        return
    out = Path(raw)
    if not out.is_absolute():
        out = project_dir / out
    atomic_write_text(out, json.dumps(payload, indent=2, sort_keys=True) + "\n")


def init_command(args: argparse.Namespace) -> int:
    project_dir, ctdd_dir = _project_paths(args)
    try:
        commit_id = init_project(project_dir, ctdd_dir, force=args.force)
    except FileExistsError as exc:
        print(str(exc), file=sys.stderr)
        print("rerun with --force to overwrite", file=sys.stderr)
        return 1
    print(commit_id)
    return 0


def status_command(args: argparse.Namespace) -> int:
    project_dir, ctdd_dir = _project_paths(args)
    spec = load_spec(project_dir, ctdd_dir)
    state = load_state(ctdd_dir)
    report = {
        "commit_id": compute_commit_id(spec),
        "focus_card_id": spec["focus_card"]["focus_card_id"],
        "recorded_commit_id": (state or {}).get("commit_id"),
        "history_length": len((state or {}).get("history", [])),
        "last_post_check": post_check_summary(state),
    }
    if args.format == "json":
        print(json.dumps(report, indent=2, sort_keys=True))
    else:
        print(f"commit_id: {report['commit_id']}")
        print(f"focus_card: {report['focus_card_id']}")
        counts = report["last_post_check"]
        print(f"last_post_check: pass={counts['PASS']} fail={counts['FAIL']} skip={counts['SKIP']}")
    return 0


def list_checks_command(args: argparse.Namespace) -> int:
    _, ctdd_dir = _project_paths(args)
    definitions = load_check_definitions(ctdd_dir / PLUGIN_DIR, logger=LOG)
    entries = [describe_definition(d) for d in definitions]
    if args.format == "json":
        print(json.dumps({"checks": entries}, indent=2, sort_keys=True))
    else:
        print(f"checks: {len(entries)}")
        for e in entries:
            print(f"- {e['id']} [{e['kind']}] {e['title']}")
    return 0


def print_check_report(results: list[Any]) -> None:
    print("CTDD Plugin Check Results")
    print("=" * 50)
    if not results:
        print("No plugin checks configured")
        return
    for r in results:
        icon = "[PASS]" if r.status == "PASS" else "[FAIL]"
        print(f"{icon} {r.id}: {r.title or 'No title'}")
        related = [*r.related_requirement_ids, *r.related_invariant_ids]
        if related:
            print(f"   Related: {', '.join(related)}")
        if r.evidence:
            print(f"   Evidence: {r.evidence}")
    counts = summarize(results)
    print("=" * 50)
    print(f"Summary: {counts['PASS']} passed, {counts['FAIL']} failed, {counts['SKIP']} skipped")


def checks_command(args: argparse.Namespace) -> int:
    project_dir, ctdd_dir = _project_paths(args)
    timeout_ms = resolve_timeout_ms(args.timeout_ms)
    results = asyncio.run(run_checks(project_dir, timeout_ms, ctdd_dir=ctdd_dir, logger=LOG))

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        print_check_report(results)

    _write_out_file(
        project_dir,
        args.out_file,
        {"run_at": utc_now(), "checks": [r.to_dict() for r in results]},
    )
    if args.fail_on_fail and any(r.status == "FAIL" for r in results):
        return 1
    return 0


def post_response_command(args: argparse.Namespace) -> int:
    project_dir, ctdd_dir = _project_paths(args)
    response_path = Path(args.response_file)
    try:
        payload = json.loads(response_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        print(f"unable to read response file {response_path}: {exc}", file=sys.stderr)
        return 1

    extra: list[dict[str, str]] = []
    if args.with_checks:
        timeout_ms = resolve_timeout_ms(args.timeout_ms)
        results = asyncio.run(run_checks(project_dir, timeout_ms, ctdd_dir=ctdd_dir, logger=LOG))
        extra = to_reportable(results)

    state = record_post_response(project_dir, ctdd_dir, payload, extra_checks=extra)
    report = {
        "commit_id": state["commit_id"],
        "merged_checks": len(extra),
        "post_check": post_check_summary(state),
    }
    if args.format == "json":
        print(json.dumps(report, indent=2, sort_keys=True))
    else:
        print(f"recorded post response for {report['commit_id']}")
        if args.with_checks:
            print(f"merged {len(extra)} plugin check(s)")
    return 0


def serve_command(args: argparse.Namespace) -> int:
    import uvicorn

    from ctdd_coach.server import create_app

    project_dir, ctdd_dir = _project_paths(args)
    app = create_app(project_dir, ctdd_dir=ctdd_dir, timeout_ms=resolve_timeout_ms(args.timeout_ms))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CTDD Coach")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("CTDD_LOG_LEVEL", "WARNING"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Diagnostics verbosity on stderr (default: WARNING or CTDD_LOG_LEVEL).",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_project_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--project-dir", default=".")
        p.add_argument(
            "--ctdd-root",
            default=DEFAULT_CTDD_ROOT,
            help=f"CTDD state directory (default: {DEFAULT_CTDD_ROOT}).",
        )

    def add_lock_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--lock-timeout-seconds",
            type=float,
            default=DEFAULT_LOCK_TIMEOUT_SECONDS,
            help=f"Max time to wait for .ctdd lock (default: {DEFAULT_LOCK_TIMEOUT_SECONDS}).",
        )
        p.add_argument(
            "--lock-stale-seconds",
            type=float,
            default=DEFAULT_LOCK_STALE_SECONDS,
            help=f"Lock age threshold for stale recovery (default: {DEFAULT_LOCK_STALE_SECONDS}).",
        )
        p.add_argument("--force-unlock", action="store_true", help="Force lock takeover if a lock file exists.")

    def add_timeout_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--timeout-ms",
            type=int,
            help=f"Per-check timeout in milliseconds (default: {TIMEOUT_ENV_VAR} or {DEFAULT_TIMEOUT_MS}).",
        )

    p_init = sub.add_parser("init", help="Create .ctdd/ with a sample spec.")
    add_project_args(p_init)
    p_init.add_argument("--force", action="store_true")
    add_lock_args(p_init)
    p_init.set_defaults(func=init_command)

    p_status = sub.add_parser("status", help="Show current commit id and last post-check summary.")
    add_project_args(p_status)
    p_status.add_argument("--format", choices=["text", "json"], default="text")
    p_status.set_defaults(func=status_command)

    p_list = sub.add_parser("list-checks", help="List valid check definitions under .ctdd/plugins.")
    add_project_args(p_list)
    p_list.add_argument("--format", choices=["text", "json"], default="text")
    p_list.set_defaults(func=list_checks_command)

    p_checks = sub.add_parser("checks", help="Run plugin checks under .ctdd/plugins.")
    add_project_args(p_checks)
    add_timeout_arg(p_checks)
    p_checks.add_argument("--json", action="store_true", help="Print the ordered results as JSON only.")
    p_checks.add_argument("--out-file", help="Optional report file path (absolute or project-relative).")
    p_checks.add_argument("--fail-on-fail", action="store_true", help="Exit non-zero when any check fails.")
    p_checks.set_defaults(func=checks_command)

    p_post = sub.add_parser("post-response", help="Record a post response, optionally merging plugin checks.")
    add_project_args(p_post)
    add_timeout_arg(p_post)
    p_post.add_argument("--response-file", required=True)
    p_post.add_argument("--with-checks", action="store_true", help="Run plugin checks and merge into post_check.")
    p_post.add_argument("--format", choices=["text", "json"], default="text")
    add_lock_args(p_post)
    p_post.set_defaults(func=post_response_command)

    p_serve = sub.add_parser("serve", help="Serve the HTTP read endpoints.")
    add_project_args(p_serve)
    add_timeout_arg(p_serve)
    p_serve.add_argument("--host", default=DEFAULT_HOST)
    p_serve.add_argument("--port", type=int, default=DEFAULT_PORT)
    p_serve.set_defaults(func=serve_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    try:
        if args.cmd in LOCKED_COMMANDS:
            _, ctdd_dir = _project_paths(args)
            with ctdd_lock(
                ctdd_dir,
                args.cmd,
                timeout_seconds=args.lock_timeout_seconds,
                stale_seconds=args.lock_stale_seconds,
                force=args.force_unlock,
            ):
                return args.func(args)
        return args.func(args)
    except (CtddError, RuntimeError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
