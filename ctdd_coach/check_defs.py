"""
Check definitions: declarative static assertions stored one per JSON file
under `<ctdd_root>/plugins/`.

Each file holds a single object discriminated by `kind`:

  grep         pattern must (or must not) match a file's content
  file_exists  file must (or must not) exist
  jsonpath     JSONPath query against a JSON file
  multi_grep   several grep conditions combined with all/any
  glob         number of files matching a glob, optionally grepping each

Loading is best effort: a file that is not valid JSON or does not match its
kind schema is skipped with a warning so one typo does not disable the suite.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import jsonschema


LOG = logging.getLogger(__name__)

CHECK_KINDS = ("grep", "file_exists", "jsonpath", "multi_grep", "glob")
LEGACY_ID_LIST_KEYS = {
    "relatedCuts": "related_requirement_ids",
    "relatedInvariants": "related_invariant_ids",
}

_STRING_LIST = {"type": "array", "items": {"type": "string"}}
_MODE = {"enum": ["all", "any"]}

BASE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "kind"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "kind": {"enum": list(CHECK_KINDS)},
        "title": {"type": "string"},
        "report_as": {"type": "string", "minLength": 1},
        "related_requirement_ids": _STRING_LIST,
        "related_invariant_ids": _STRING_LIST,
    },
}

_GREP_ITEM = {
    "type": "object",
    "required": ["file", "pattern"],
    "properties": {
        "file": {"type": "string", "minLength": 1},
        "pattern": {"type": "string"},
        "flags": {"type": "string"},
        "must_exist": {"type": "boolean"},
        "label": {"type": "string"},
    },
}

KIND_SCHEMAS: dict[str, dict[str, Any]] = {
    "grep": _GREP_ITEM,
    "file_exists": {
        "type": "object",
        "required": ["file"],
        "properties": {
            "file": {"type": "string", "minLength": 1},
            "should_exist": {"type": "boolean"},
        },
    },
    "jsonpath": {
        "type": "object",
        "required": ["file", "path"],
        "properties": {
            "file": {"type": "string", "minLength": 1},
            "path": {"type": "string", "minLength": 1},
            "exists": {"type": "boolean"},
        },
    },
    "multi_grep": {
        "type": "object",
        "required": ["checks"],
        "properties": {
            "checks": {"type": "array", "minItems": 1, "items": _GREP_ITEM},
            "mode": _MODE,
        },
    },
    "glob": {
        "type": "object",
        "required": ["pattern"],
        "properties": {
            "pattern": {"type": "string", "minLength": 1},
            "ignore": _STRING_LIST,
            "dot": {"type": "boolean"},
            "min": {"type": "integer", "minimum": 0},
            "max": {"type": "integer", "minimum": 0},
            "each_grep": {
                "type": "object",
                "required": ["pattern"],
                "properties": {
                    "pattern": {"type": "string"},
                    "flags": {"type": "string"},
                    "must_exist": {"type": "boolean"},
                },
            },
            "each_mode": _MODE,
        },
    },
}

Mode = Literal["all", "any"]


class DefinitionError(ValueError):
    pass


@dataclass(frozen=True)
class _CheckBase:
    id: str
    title: str
    report_as: str | None
    related_requirement_ids: tuple[str, ...]
    related_invariant_ids: tuple[str, ...]

    @property
    def report_id(self) -> str:
        return self.report_as or self.id


@dataclass(frozen=True)
class GrepCondition:
    file: str
    pattern: str
    flags: str = ""
    must_exist: bool = True
    label: str | None = None


@dataclass(frozen=True)
class PatternMatchCheck(_CheckBase):
    condition: GrepCondition
    kind: Literal["grep"] = "grep"

    @property
    def file(self) -> str:
        return self.condition.file

    @property
    def pattern(self) -> str:
        return self.condition.pattern


@dataclass(frozen=True)
class FileExistsCheck(_CheckBase):
    file: str
    should_exist: bool = True
    kind: Literal["file_exists"] = "file_exists"


_MISSING = object()


@dataclass(frozen=True)
class JsonPathCheck(_CheckBase):
    file: str
    path: str
    # `_MISSING` when the definition has no `equals`; JSON null is a real value.
    equals: Any = _MISSING
    exists: bool = True
    kind: Literal["jsonpath"] = "jsonpath"

    @property
    def has_equals(self) -> bool:
        return self.equals is not _MISSING


@dataclass(frozen=True)
class MultiConditionCheck(_CheckBase):
    checks: tuple[GrepCondition, ...]
    mode: Mode = "all"
    kind: Literal["multi_grep"] = "multi_grep"


@dataclass(frozen=True)
class EachGrep:
    pattern: str
    flags: str = ""
    must_exist: bool = True


@dataclass(frozen=True)
class GlobCountCheck(_CheckBase):
    pattern: str
    ignore: tuple[str, ...] = ()
    dot: bool = False
    min: int = 1
    max: int | None = None
    each_grep: EachGrep | None = None
    each_mode: Mode = "all"
    kind: Literal["glob"] = "glob"


CheckDefinition = PatternMatchCheck | FileExistsCheck | JsonPathCheck | MultiConditionCheck | GlobCountCheck


def _grep_condition(obj: dict[str, Any]) -> GrepCondition:
    return GrepCondition(
        file=obj["file"],
        pattern=obj["pattern"],
        flags=obj.get("flags", ""),
        must_exist=obj.get("must_exist", True),
        label=obj.get("label"),
    )


def _normalize_legacy_keys(obj: dict[str, Any]) -> dict[str, Any]:
    out = dict(obj)
    for legacy, key in LEGACY_ID_LIST_KEYS.items():
        if legacy in out and key not in out:
            out[key] = out.pop(legacy)
    return out


def parse_check_definition(raw: Any) -> CheckDefinition:
    """Validate one decoded JSON object and build its definition."""
    if not isinstance(raw, dict):
        raise DefinitionError("expected a JSON object")
    obj = _normalize_legacy_keys(raw)
    try:
        jsonschema.validate(instance=obj, schema=BASE_SCHEMA)
        jsonschema.validate(instance=obj, schema=KIND_SCHEMAS[obj["kind"]])
    except jsonschema.ValidationError as exc:
        where = ".".join(str(p) for p in exc.absolute_path) or "<root>"
        raise DefinitionError(f"{where}: {exc.message}") from exc

    common = {
        "id": obj["id"],
        "title": obj.get("title", ""),
        "report_as": obj.get("report_as"),
        "related_requirement_ids": tuple(obj.get("related_requirement_ids", [])),
        "related_invariant_ids": tuple(obj.get("related_invariant_ids", [])),
    }
    kind = obj["kind"]
    if kind == "grep":
        return PatternMatchCheck(**common, condition=_grep_condition(obj))
    if kind == "file_exists":
        return FileExistsCheck(**common, file=obj["file"], should_exist=obj.get("should_exist", True))
    if kind == "jsonpath":
        return JsonPathCheck(
            **common,
            file=obj["file"],
            path=obj["path"],
            equals=obj["equals"] if "equals" in obj else _MISSING,
            exists=obj.get("exists", True),
        )
    if kind == "multi_grep":
        return MultiConditionCheck(
            **common,
            checks=tuple(_grep_condition(item) for item in obj["checks"]),
            mode=obj.get("mode", "all"),
        )
    each = obj.get("each_grep")
    return GlobCountCheck(
        **common,
        pattern=obj["pattern"],
        ignore=tuple(obj.get("ignore", [])),
        dot=obj.get("dot", False),
        min=obj.get("min", 1),
        max=obj.get("max"),
        each_grep=(
            EachGrep(pattern=each["pattern"], flags=each.get("flags", ""), must_exist=each.get("must_exist", True))
            if each is not None
            else None
        ),
        each_mode=obj.get("each_mode", "all"),
    )


def _list_definition_files(plugin_dir: Path, log: logging.Logger) -> list[Path]:
    if not plugin_dir.exists():
        return []
    if not plugin_dir.is_dir():
        log.warning("check definition path exists but is not a directory: %s", plugin_dir)
        return []
    try:
        return sorted((p for p in plugin_dir.iterdir() if p.suffix == ".json" and p.is_file()), key=lambda p: p.name)
    except OSError as exc:
        log.warning("unable to list check definitions in %s: %s", plugin_dir, exc)
        return []


def load_check_definitions(plugin_dir: Path, logger: logging.Logger | None = None) -> list[CheckDefinition]:
    """
    Load every valid definition from `plugin_dir` in lexical filename order.

    Malformed files and duplicate ids are reported through `logger` and
    skipped. A missing directory yields an empty list.
    """
    log = logger or LOG
    out: list[CheckDefinition] = []
    seen: set[str] = set()
    for path in _list_definition_files(plugin_dir, log):
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            definition = parse_check_definition(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, DefinitionError) as exc:
            log.warning("skipping check definition %s: %s", path.name, exc)
            continue
        if definition.id in seen:
            log.warning("skipping check definition %s: duplicate id %r", path.name, definition.id)
            continue
        seen.add(definition.id)
        out.append(definition)
    return out


def describe_definition(definition: CheckDefinition) -> dict[str, Any]:
    """JSON-safe summary used by `list-checks`."""
    return {
        "id": definition.id,
        "kind": definition.kind,
        "title": definition.title,
        "report_as": definition.report_as,
        "related_requirement_ids": list(definition.related_requirement_ids),
        "related_invariant_ids": list(definition.related_invariant_ids),
    }
