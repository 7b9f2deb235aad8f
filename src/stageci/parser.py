# parser.py
from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import SchemaError
from .filters import FilterRules, RefPattern
from .model import (
    ARTIFACT_WHEN,
    ArtifactPolicy,
    CachePolicy,
    JobSpec,
    MatrixAxis,
    PipelineDocument,
)

# ---------------------------------------------------------------------
# Descriptor layout
# ---------------------------------------------------------------------
# stages:         [test, build, deploy]     execution order
# variables:      {NAME: value}             global, overridden per job
# cache:          {key: ..., paths: [...]}  global cache policy
# image / before_script / default:          job defaults
# .name:          {...}                     template (never scheduled)
# name:           {...}                     job
#
# YAML anchors and `<<` merge keys are resolved by the YAML loader. On top
# of that a job (or template) may `extends:` one or more templates; those
# are merged here by precedence:
#   - sibling templates are applied in listed order, later wins for scalars,
#     list fields concatenate in template order
#   - fields set on the entry itself win; a list set on the entry replaces
#     the inherited one
# ---------------------------------------------------------------------

RESERVED_KEYS = {"stages", "variables", "cache", "image", "before_script", "default"}
DEFAULT_STAGE = "test"

LIST_FIELDS = ("script", "before_script", "tags", "paths")
MAPPING_FIELDS = ("variables", "artifacts", "cache", "matrix")
DEFAULTABLE_FIELDS = ("image", "before_script", "tags", "artifacts", "cache")


def load_pipeline(path: str | Path) -> PipelineDocument:
    """Read a descriptor file and return the validated, merged document."""
    p = Path(path).expanduser()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    try:
        with p.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise SchemaError(f"invalid YAML: {exc}", location=str(p)) from exc

    return parse_pipeline(raw, source=str(p))


def parse_pipeline(raw: Any, *, source: Optional[str] = None) -> PipelineDocument:
    if not isinstance(raw, Mapping):
        raise SchemaError("pipeline document must be a mapping", location=source)

    stages = _parse_stages(raw.get("stages"))
    variables = _str_mapping(raw.get("variables") or {}, "variables")
    cache = _parse_cache(raw["cache"], "cache") if raw.get("cache") else None

    defaults: Dict[str, Any] = {}
    if raw.get("default") is not None:
        if not isinstance(raw["default"], Mapping):
            raise SchemaError("'default' must be a mapping", location="default")
        defaults.update(raw["default"])
    for key in ("image", "before_script"):
        if key in raw and key not in defaults:
            defaults[key] = raw[key]

    # Hidden keys holding plain lists/scalars only exist to carry YAML anchors.
    templates: Dict[str, dict] = {}
    entries: Dict[str, dict] = {}
    job_names: List[str] = []
    for name, body in raw.items():
        name = str(name)
        if name in RESERVED_KEYS:
            continue
        if name.startswith("."):
            if isinstance(body, Mapping):
                templates[name] = dict(body)
                entries[name] = templates[name]
            continue
        if not isinstance(body, Mapping):
            raise SchemaError("job definition must be a mapping", location=name)
        entries[name] = dict(body)
        job_names.append(name)

    resolved: Dict[str, dict] = {}
    # unused templates are resolved too so a broken one is still reported
    for name in templates:
        resolve_entry(name, entries, resolved)

    jobs: Dict[str, JobSpec] = {}
    for name in job_names:
        merged = resolve_entry(name, entries, resolved)
        for key in DEFAULTABLE_FIELDS:
            if key not in merged and key in defaults:
                merged[key] = defaults[key]
        jobs[name] = _build_job(name, merged, stages=stages, global_vars=variables, global_cache=cache)

    return PipelineDocument(
        stages=stages,
        jobs=jobs,
        templates=templates,
        variables=variables,
        cache=cache,
        source=source,
    )


# ---------------------------------------------------------------------
# Template resolution
# ---------------------------------------------------------------------

def resolve_entry(
    name: str,
    entries: Mapping[str, dict],
    resolved: Dict[str, dict],
    visiting: Optional[List[str]] = None,
) -> dict:
    """
    Depth-first merge of `name` with everything it extends.

    `visiting` is the current DFS path; meeting a name already on it is a
    cycle. `resolved` memoizes finished entries.
    """
    if name in resolved:
        return dict(resolved[name])

    visiting = visiting if visiting is not None else []
    if name in visiting:
        cycle = visiting[visiting.index(name):] + [name]
        raise SchemaError(f"cyclic template reference: {' -> '.join(cycle)}", location=visiting[0])

    body = entries.get(name)
    if body is None:
        referrer = visiting[-1] if visiting else name
        raise SchemaError(f"undefined template '{name}'", location=referrer)

    visiting.append(name)
    try:
        inherited: dict = {}
        for parent in _extends_of(name, body):
            inherited = merge_fields(inherited, resolve_entry(parent, entries, resolved, visiting), concat_lists=True)
        merged = merge_fields(inherited, body, concat_lists=False)
    finally:
        visiting.pop()

    merged.pop("extends", None)
    resolved[name] = merged
    return dict(merged)


def _extends_of(name: str, body: Mapping) -> List[str]:
    ext = body.get("extends")
    if ext is None:
        return []
    if isinstance(ext, str):
        return [ext]
    if isinstance(ext, list) and all(isinstance(e, str) for e in ext):
        return list(ext)
    raise SchemaError("'extends' must be a template name or a list of names", location=name)


def merge_fields(base: Mapping, overlay: Mapping, *, concat_lists: bool) -> dict:
    """
    Field-level merge of two job mappings, overlay taking precedence.

    concat_lists=True is used between sibling templates (lists append),
    concat_lists=False when the overlay is the entry's own body (lists replace).
    """
    out = dict(base)
    for key, value in overlay.items():
        if key == "extends":
            continue
        current = out.get(key)
        if key in MAPPING_FIELDS and isinstance(current, Mapping) and isinstance(value, Mapping):
            out[key] = merge_fields(current, value, concat_lists=concat_lists)
        elif concat_lists and key in LIST_FIELDS and isinstance(current, list) and isinstance(value, list):
            out[key] = current + value
        else:
            out[key] = value
    return out


# ---------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------

def _parse_stages(raw: Any) -> List[str]:
    if raw is None:
        raise SchemaError("'stages' is required", location="stages")
    if not isinstance(raw, list) or not raw:
        raise SchemaError("'stages' must be a non-empty list", location="stages")
    stages = [str(s) for s in raw]
    dupes = sorted({s for s in stages if stages.count(s) > 1})
    if dupes:
        raise SchemaError(f"duplicate stage names: {dupes}", location="stages")
    return stages


def _build_job(
    name: str,
    merged: Mapping[str, Any],
    *,
    stages: List[str],
    global_vars: Mapping[str, str],
    global_cache: Optional[CachePolicy],
) -> JobSpec:
    stage = str(merged.get("stage", DEFAULT_STAGE))
    if stage not in stages:
        raise SchemaError(f"stage '{stage}' is not declared in stages {stages}", location=name)

    script = _str_list(merged.get("script"), f"{name}.script")
    if not script:
        raise SchemaError("job has no script", location=name)

    variables = dict(global_vars)
    variables.update(_str_mapping(merged.get("variables") or {}, f"{name}.variables"))

    if "cache" in merged:
        cache = _parse_cache(merged["cache"], f"{name}.cache") if merged["cache"] else None
    else:
        cache = global_cache

    artifacts = None
    if merged.get("artifacts"):
        artifacts = _parse_artifacts(merged["artifacts"], f"{name}.artifacts")

    tags: List[str] = []
    for t in _str_list(merged.get("tags"), f"{name}.tags"):
        if t not in tags:
            tags.append(t)

    return JobSpec(
        name=name,
        stage=stage,
        script=script,
        before_script=_str_list(merged.get("before_script"), f"{name}.before_script"),
        image=_parse_image(merged.get("image"), f"{name}.image"),
        matrix=_parse_matrix(merged.get("matrix"), f"{name}.matrix"),
        filters=FilterRules(
            only=_parse_refs(merged.get("only"), f"{name}.only"),
            except_=_parse_refs(merged.get("except"), f"{name}.except"),
        ),
        artifacts=artifacts,
        tags=tags,
        variables=variables,
        cache=cache,
        allow_failure=_parse_bool(merged.get("allow_failure", False), f"{name}.allow_failure"),
    )


def _str_list(raw: Any, location: str) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if not isinstance(raw, list):
        raise SchemaError("expected a list of strings", location=location)
    out: List[str] = []
    for item in raw:
        # nested lists come from anchors of step lists inside a step list
        if isinstance(item, list):
            out.extend(_str_list(item, location))
        elif isinstance(item, Mapping):
            raise SchemaError("expected a string, got a mapping", location=location)
        else:
            out.append(str(item))
    return out


def _parse_bool(raw: Any, location: str) -> bool:
    if not isinstance(raw, bool):
        raise SchemaError(f"expected true or false, got {raw!r}", location=location)
    return raw


def _str_mapping(raw: Any, location: str) -> Dict[str, str]:
    if not isinstance(raw, Mapping):
        raise SchemaError("expected a mapping", location=location)
    out: Dict[str, str] = {}
    for k, v in raw.items():
        if isinstance(v, (Mapping, list)):
            raise SchemaError(f"variable '{k}' must be a scalar", location=location)
        out[str(k)] = "" if v is None else str(v)
    return out


def _parse_image(raw: Any, location: str) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        raw = raw.get("name")
        if raw is None:
            raise SchemaError("image mapping needs a 'name'", location=location)
    return str(raw)


def _parse_matrix(raw: Any, location: str) -> Optional[MatrixAxis]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping) or len(raw) != 1:
        raise SchemaError("matrix must declare exactly one axis, e.g. {image: [...]}", location=location)
    (axis, values), = raw.items()
    if values is None:
        values = []
    if not isinstance(values, list):
        raise SchemaError(f"matrix axis '{axis}' must be a list", location=location)
    return MatrixAxis(name=str(axis), values=tuple(str(v) for v in values))


def _parse_refs(raw: Any, location: str) -> Tuple[RefPattern, ...]:
    if raw is None:
        return ()
    if isinstance(raw, Mapping):
        unknown = sorted(str(k) for k in raw if k != "refs")
        if unknown:
            raise SchemaError(f"unsupported filter keys {unknown}; only 'refs' is understood", location=location)
        raw = raw.get("refs", [])
    patterns: List[RefPattern] = []
    for text in _str_list(raw, location):
        try:
            patterns.append(RefPattern.compile(text))
        except re.error as exc:
            raise SchemaError(f"invalid ref pattern {text!r}: {exc}", location=location) from exc
    return tuple(patterns)


def _parse_cache(raw: Any, location: str) -> CachePolicy:
    if not isinstance(raw, Mapping):
        raise SchemaError("cache must be a mapping", location=location)
    key = raw.get("key", "default")
    if isinstance(key, Mapping):
        raise SchemaError("cache key must be a string template", location=location)
    return CachePolicy(
        key=str(key),
        paths=tuple(_str_list(raw.get("paths"), f"{location}.paths")),
    )


def _parse_artifacts(raw: Any, location: str) -> ArtifactPolicy:
    if not isinstance(raw, Mapping):
        raise SchemaError("artifacts must be a mapping", location=location)

    when = str(raw.get("when", "on_success"))
    if when not in ARTIFACT_WHEN:
        raise SchemaError(f"artifacts.when must be one of {list(ARTIFACT_WHEN)}, got {when!r}", location=location)

    try:
        expire_in = parse_duration(raw.get("expire_in"))
    except ValueError as exc:
        raise SchemaError(str(exc), location=f"{location}.expire_in") from exc

    return ArtifactPolicy(
        paths=tuple(_str_list(raw.get("paths"), f"{location}.paths")),
        name=str(raw.get("name") or "$CI_JOB_NAME"),
        expire_in=expire_in,
        when=when,
    )


# ---------------------------------------------------------------------
# Durations ("1 week", "2 days 3 hrs", "1h 30m", "3600", "never")
# ---------------------------------------------------------------------

_UNIT_SECONDS = {
    "": 1,
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
    "w": 604800, "wk": 604800, "wks": 604800, "week": 604800, "weeks": 604800,
    "mo": 2592000, "month": 2592000, "months": 2592000,
    "y": 31536000, "yr": 31536000, "yrs": 31536000, "year": 31536000, "years": 31536000,
}

_DURATION = re.compile(r"^(\s*\d+(?:\.\d+)?\s*[a-z]*\s*)+$")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]*)")


def parse_duration(value: Any) -> Optional[timedelta]:
    """Return the duration as a timedelta, or None for 'never' / unset."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = str(value).strip().lower().replace(",", " ").replace(" and ", " ")
    if text == "never":
        return None
    if not text or not _DURATION.match(text):
        raise ValueError(f"invalid duration: {value!r}")

    total = 0.0
    for amount, unit in _DURATION_PART.findall(text):
        if unit not in _UNIT_SECONDS:
            raise ValueError(f"invalid duration unit {unit!r} in {value!r}")
        total += float(amount) * _UNIT_SECONDS[unit]
    return timedelta(seconds=total)
