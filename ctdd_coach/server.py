"""
HTTP read surface for a ctdd project.

Errors are reported in-band as `{"ok": false, "error": ...}` with a 4xx
status; check failures are ordinary entries in the `checks` list.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from ctdd_coach.check_engine import DEFAULT_TIMEOUT_MS, run_checks, to_reportable
from ctdd_coach.errors import CommitIdMismatchError, CtddError
from ctdd_coach.project_spec import (
    compute_commit_id,
    load_spec,
    load_state,
    post_check_summary,
    record_post_response,
    resolve_ctdd_dir,
)


LOG = logging.getLogger(__name__)


def _error(exc: Exception, status_code: int = 400) -> JSONResponse:
    LOG.warning("request failed: %s", exc)
    return JSONResponse(status_code=status_code, content={"ok": False, "error": str(exc)})


def create_app(
    project_dir: Path,
    ctdd_dir: Path | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> FastAPI:
    root = Path(project_dir).resolve()
    base = ctdd_dir if ctdd_dir is not None else resolve_ctdd_dir(root, None)
    app = FastAPI(title="CTDD Coach", description="Plugin checks and validation record for a ctdd project.")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/status")
    async def status() -> Any:
        try:
            spec = load_spec(root, base)
        except CtddError as exc:
            return _error(exc)
        state = load_state(base)
        return {
            "ok": True,
            "commit_id": compute_commit_id(spec),
            "last_post_check": post_check_summary(state),
        }

    @app.get("/checks")
    async def checks() -> Any:
        try:
            results = await run_checks(root, timeout_ms, ctdd_dir=base, logger=LOG)
        except CtddError as exc:
            return _error(exc)
        return {"ok": True, "checks": [r.to_dict() for r in results]}

    @app.post("/post-response")
    async def post_response(payload: Any = Body(...)) -> Any:
        try:
            results = await run_checks(root, timeout_ms, ctdd_dir=base, logger=LOG)
            state = record_post_response(root, base, payload, extra_checks=to_reportable(results))
        except CommitIdMismatchError as exc:
            return _error(exc, status_code=409)
        except CtddError as exc:
            return _error(exc)
        return {
            "ok": True,
            "commit_id": state["commit_id"],
            "plugin_checks": [r.to_dict() for r in results],
        }

    return app
