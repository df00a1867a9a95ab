"""Template Resolver — pure string functions over a plugin context.

Handles:
- Placeholder substitution: "{{city}}", with fallbacks "{{city_name ?? city}}"
- Path extraction from parsed JSON: "data.list[0].name"
- Transform pipelines (regex_replace, regex_match, map, resolve_template,
  threshold_switch) applied in place to the context

No I/O and no state: everything here is safe to call from any target task.
"""

import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from core.constants import STATUS_UNKNOWN, ResponseFormat, TransformFunction
from plugins.models import PluginTransform

Context = Dict[str, str]

_PLACEHOLDER = re.compile(r"\{\{(.+?)\}\}")
_INDEXED_SEGMENT = re.compile(r"^(.*)\[(-?\d+)\]$")
_JSONP_WRAPPER = re.compile(r"^[\w$.]*\s*\((.*)\)\s*;?$", re.DOTALL)
_DOLLAR_TOKEN = re.compile(r"\$(?:(\$)|(&)|(\d+)|\{(\w+)\})")
FALLBACK_OPERATOR = "??"


# ─── Placeholder resolution ───────────────────────────────────

def _lookup(expression: str, context: Context) -> Optional[str]:
    """Value for one placeholder body, or None when nothing resolves."""
    content = expression.strip()
    if FALLBACK_OPERATOR in content:
        for part in content.split(FALLBACK_OPERATOR):
            key = part.strip()
            if key and context.get(key):
                return context[key]
        return None
    return context.get(content)


def resolve(pattern: Optional[str], context: Context) -> str:
    """Substitute every {{ ... }} span of ``pattern`` from ``context``.

    Unresolved placeholders become empty strings; they are never left
    in the output.
    """
    if not pattern:
        return ""
    if "{{" not in pattern:
        return pattern
    return _PLACEHOLDER.sub(lambda m: _lookup(m.group(1), context) or "", pattern)


def can_resolve_all(pattern: Optional[str], context: Context) -> bool:
    """True when every placeholder in ``pattern`` has a non-empty value."""
    if not pattern or "{{" not in pattern:
        return True
    return all(_lookup(m.group(1), context) for m in _PLACEHOLDER.finditer(pattern))


# ─── JSON extraction ──────────────────────────────────────────

class JsonNumber(str):
    """A JSON number held as its source literal."""


def parse_document(text: str) -> Any:
    """Parse JSON keeping the literal text of numbers (1.50 and 1e5 unchanged)."""
    return json.loads(text, parse_float=JsonNumber, parse_int=JsonNumber)


def _to_json_text(value: Any) -> str:
    if isinstance(value, dict):
        items = ",".join(
            f"{json.dumps(k, ensure_ascii=False)}:{_to_json_text(v)}" for k, v in value.items()
        )
        return "{" + items + "}"
    if isinstance(value, list):
        return "[" + ",".join(_to_json_text(v) for v in value) + "]"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, JsonNumber):
        return str(value)
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return json.dumps(value, ensure_ascii=False)


def stringify(value: Any) -> str:
    """Fixed stringification of an extracted JSON value."""
    if value is None:
        return ""
    if isinstance(value, str):
        return str(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return _to_json_text(value)


def extract(document: Any, path: str) -> str:
    """Walk a dot-separated path through parsed JSON.

    A segment ``name[n]`` descends into ``name`` then takes element ``n``.
    Any structural mismatch yields "?".
    """
    current = document
    for segment in path.split("."):
        match = _INDEXED_SEGMENT.match(segment)
        if match:
            name, index = match.group(1), int(match.group(2))
            if name:
                if not isinstance(current, dict) or name not in current:
                    return STATUS_UNKNOWN
                current = current[name]
            if not isinstance(current, list) or not 0 <= index < len(current):
                return STATUS_UNKNOWN
            current = current[index]
        else:
            if not isinstance(current, dict) or segment not in current:
                return STATUS_UNKNOWN
            current = current[segment]
    return stringify(current)


def parse_and_extract(
    raw: str,
    rules: Optional[Dict[str, str]],
    context: Context,
    response_format: ResponseFormat = ResponseFormat.JSON,
) -> None:
    """Apply an extraction map (field -> path) to a raw response body.

    Raises ValueError for bodies that look like JSON but do not parse.
    """
    if not rules:
        return

    if response_format == ResponseFormat.TEXT:
        for field, path in rules.items():
            if path == "$":
                context[field] = raw
        return

    text = raw.strip()
    if response_format == ResponseFormat.JSONP:
        match = _JSONP_WRAPPER.match(text)
        if match:
            text = match.group(1).strip()

    if not text.startswith(("{", "[")):
        return

    document = parse_document(text)
    for field, path in rules.items():
        context[field] = extract(document, path)


# ─── Transforms ───────────────────────────────────────────────

def _expand_replacement(replacement: str, match: "re.Match[str]") -> str:
    """Expand $$, $&, $N and ${name} against ``match``.

    References to groups the pattern does not define stay literal, and
    every other character (backslashes included) is copied as is.
    """

    def token(m: "re.Match[str]") -> str:
        if m.group(1):
            return "$"
        if m.group(2):
            return match.group(0)
        ref = m.group(3) or m.group(4)
        try:
            return match.group(int(ref) if ref.isdigit() else ref) or ""
        except IndexError:
            return m.group(0)

    return _DOLLAR_TOKEN.sub(token, replacement)


def _regex_replace(value: str, t: PluginTransform, context: Context) -> str:
    replacement = resolve(t.to, context) if "{{" in t.to else t.to
    try:
        return re.sub(t.pattern, lambda m: _expand_replacement(replacement, m), value)
    except re.error:
        return value


def _regex_match(value: str, t: PluginTransform) -> str:
    try:
        match = re.search(t.pattern, value)
    except re.error:
        return ""
    if not match:
        return ""
    group = int(t.to) if t.to.strip().isdigit() else 1
    if group > (match.re.groups or 0):
        return ""
    return match.group(group) or ""


def _threshold_switch(value: str, t: PluginTransform) -> str:
    try:
        number = Decimal(value.strip())
    except (InvalidOperation, ValueError):
        return "0"
    thresholds = []
    for key, mapped in (t.value_map or {}).items():
        try:
            thresholds.append((Decimal(key), mapped))
        except (InvalidOperation, ValueError):
            continue
    if not thresholds:
        return "0"
    thresholds.sort(key=lambda pair: pair[0])
    result = thresholds[0][1]
    for threshold, mapped in thresholds:
        if number < threshold:
            break
        result = mapped
    return result


def apply_transforms(transforms: Optional[List[PluginTransform]], context: Context) -> None:
    """Run a transform pipeline in list order, mutating ``context``."""
    if not transforms:
        return

    for t in transforms:
        source = t.source_var or t.target_var
        if source not in context:
            continue

        value = context[source]
        if t.function == TransformFunction.REGEX_REPLACE:
            value = _regex_replace(value, t, context)
        elif t.function == TransformFunction.REGEX_MATCH:
            value = _regex_match(value, t)
        elif t.function == TransformFunction.MAP:
            if t.mapping and value in t.mapping:
                value = t.mapping[value]
        elif t.function == TransformFunction.RESOLVE_TEMPLATE:
            value = resolve(value, context)
        elif t.function == TransformFunction.THRESHOLD_SWITCH:
            value = _threshold_switch(value, t)

        context[t.target_var] = value
