"""
Error types raised by the ctdd coach.

Every error carries a short stable code so CLI and HTTP callers can report it
without parsing messages.
"""

from __future__ import annotations

from typing import Any


class CtddError(RuntimeError):
    code = "E999"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
        suggestions: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}
        self.suggestions = suggestions or []

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "suggestions": self.suggestions,
        }


class SpecNotFoundError(CtddError):
    code = "E001"

    def __init__(self, spec_path: str) -> None:
        super().__init__(
            f"spec file not found: {spec_path}",
            context={"spec_path": spec_path},
            suggestions=[
                'Run "ctdd-coach init" to create a new project',
                "Check --project-dir and --ctdd-root",
            ],
        )


class SpecInvalidError(CtddError):
    code = "E002"

    def __init__(self, spec_path: str, detail: str) -> None:
        super().__init__(
            f"invalid spec file {spec_path}: {detail}",
            context={"spec_path": spec_path},
            suggestions=["Check JSON syntax and required spec fields"],
        )


class UnknownCheckKindError(CtddError):
    code = "E102"

    def __init__(self, kind: str) -> None:
        super().__init__(f"Unknown check kind: {kind}", context={"kind": kind})


class CheckTimeoutError(CtddError):
    code = "E103"

    def __init__(self, label: str, timeout_ms: int) -> None:
        super().__init__(
            f'Check "{label}" timed out after {timeout_ms}ms',
            context={"label": label, "timeout_ms": timeout_ms},
            suggestions=["Increase the timeout with --timeout-ms"],
        )
        self.label = label
        self.timeout_ms = timeout_ms


class CommitIdMismatchError(CtddError):
    code = "E202"

    def __init__(self, expected: str, received: str) -> None:
        super().__init__(
            f'Commit mismatch. Expected "{expected}", got "{received}".',
            context={"expected": expected, "received": received},
            suggestions=["Regenerate the response against the current spec"],
        )


class ResponseInvalidError(CtddError):
    code = "E203"
