"""
Flow variable bag helpers.

``flow_variables`` is a plain JSON-compatible dict (str, int, float, bool,
list, dict, None). Paths are dotted with optional list indexes and
wildcards: ``contact.phones[0]``, ``items[*].name``, ``$.data.id``.
"""
import datetime
import json
import re
from typing import Any, List, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
SINGLE_PLACEHOLDER_PATTERN = re.compile(r"^\s*\{\{\s*([^{}]+?)\s*\}\}\s*$")
_TOKEN_PATTERN = re.compile(r"([^.\[\]]+)|\[(\*|-?\d+)\]")

_MISSING = object()


def parse_path(path: str) -> List[Any]:
    """Splits a dotted path into keys (str), indexes (int) and wildcards ('*')."""
    path = (path or "").strip()
    if path.startswith("$"):
        path = path[1:].lstrip(".")
    tokens: List[Any] = []
    for name, index in _TOKEN_PATTERN.findall(path):
        if name:
            tokens.append(name)
        elif index == "*":
            tokens.append("*")
        else:
            tokens.append(int(index))
    return tokens


def _drill_down(obj: Any, tokens: List[Any]) -> Any:
    for position, token in enumerate(tokens):
        if token == "*":
            if not isinstance(obj, list):
                return _MISSING
            rest = tokens[position + 1:]
            values = [_drill_down(item, rest) for item in obj]
            return [v for v in values if v is not _MISSING]
        if isinstance(token, int):
            if isinstance(obj, list) and -len(obj) <= token < len(obj):
                obj = obj[token]
            else:
                return _MISSING
        elif isinstance(obj, dict):
            if token not in obj:
                return _MISSING
            obj = obj[token]
        elif isinstance(obj, list) and token.isdigit() and int(token) < len(obj):
            obj = obj[int(token)]
        else:
            return _MISSING
    return obj


def get_path(data: Any, path: str, default: Any = None) -> Any:
    tokens = parse_path(path)
    if not tokens:
        return data if path and path.strip().startswith("$") else default
    value = _drill_down(data, tokens)
    return default if value is _MISSING else value


def has_path(data: Any, path: str) -> bool:
    tokens = parse_path(path)
    return bool(tokens) and _drill_down(data, tokens) is not _MISSING


def set_path(data: dict, path: str, value: Any) -> None:
    """Sets a value, creating intermediate dicts. Wildcards are not allowed."""
    tokens = parse_path(path)
    if not tokens:
        raise ValueError(f"Invalid variable path: '{path}'")
    if "*" in tokens:
        raise ValueError(f"Wildcards cannot be assigned: '{path}'")
    target = data
    for token, following in zip(tokens, tokens[1:]):
        if isinstance(token, int):
            if not isinstance(target, list) or not -len(target) <= token < len(target):
                raise ValueError(f"Index {token} out of range in '{path}'")
            target = target[token]
            continue
        child = target.get(token) if isinstance(target, dict) else None
        if not isinstance(child, (dict, list)):
            child = [] if isinstance(following, int) else {}
            target[token] = child
        target = child
    last = tokens[-1]
    value = to_json_safe(value)
    if isinstance(last, int):
        if isinstance(target, list) and last == len(target):
            target.append(value)
        elif isinstance(target, list) and -len(target) <= last < len(target):
            target[last] = value
        else:
            raise ValueError(f"Index {last} out of range in '{path}'")
    else:
        target[last] = value


def delete_path(data: dict, path: str) -> None:
    tokens = parse_path(path)
    if not tokens:
        return
    parent = _drill_down(data, tokens[:-1]) if len(tokens) > 1 else data
    last = tokens[-1]
    if isinstance(parent, dict) and not isinstance(last, int):
        parent.pop(last, None)
    elif isinstance(parent, list) and isinstance(last, int) and -len(parent) <= last < len(parent):
        parent.pop(last)


def to_json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_safe(v) for v in value]
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if hasattr(value, "model_dump"):
        return to_json_safe(value.model_dump())
    return str(value)


def render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return "\n".join(render_value(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, indent=2, ensure_ascii=False)
    return str(value)


def _lookup(variables: dict, expression: str) -> Any:
    expression = expression.strip()
    if expression == "now":
        return datetime.datetime.now().astimezone().isoformat()
    return get_path(variables, expression)


def substitute_variables(template: Any, variables: dict) -> Any:
    """Replaces every ``{{ path }}`` inside a string with its rendered value."""
    if not isinstance(template, str) or "{{" not in template:
        return template
    return PLACEHOLDER_PATTERN.sub(lambda m: render_value(_lookup(variables, m.group(1))), template)


def resolve_template(template: Any, variables: dict) -> Any:
    """Like substitute_variables, but a lone ``{{ path }}`` keeps the typed value."""
    if isinstance(template, str):
        single = SINGLE_PLACEHOLDER_PATTERN.match(template)
        if single:
            return to_json_safe(_lookup(variables, single.group(1)))
        return substitute_variables(template, variables)
    if isinstance(template, dict):
        return {k: resolve_template(v, variables) for k, v in template.items()}
    if isinstance(template, list):
        return [resolve_template(v, variables) for v in template]
    return template


def resolve_variable_reference(reference: Optional[str], variables: dict) -> Any:
    """Resolves a node's variable field, accepting both ``name`` and ``{{name}}``."""
    if reference is None:
        return None
    reference = str(reference).strip()
    if "{{" in reference:
        return resolve_template(reference, variables)
    return get_path(variables, reference)


_TIME_ONLY = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_DMY = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})(?:[ T](\d{1,2}):(\d{2})(?::(\d{2}))?)?$")


def coerce_to_date(value: Any, now: Optional[datetime.datetime] = None) -> Optional[datetime.datetime]:
    """Best-effort conversion of variable values to a naive datetime.

    Accepts datetimes, epoch numbers (values below 1e11 are seconds, otherwise
    milliseconds), ``HH:MM[:SS]`` (today), ISO 8601 and ``dd/mm/yyyy[ HH:MM[:SS]]``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime.datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        seconds = value if abs(value) < 1e11 else value / 1000.0
        try:
            return datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"-?\d+(\.\d+)?", text):
        return coerce_to_date(float(text), now)

    time_only = _TIME_ONLY.match(text)
    if time_only:
        hours, minutes, seconds = int(time_only.group(1)), int(time_only.group(2)), int(time_only.group(3) or 0)
        if hours > 23 or minutes > 59 or seconds > 59:
            return None
        base = now or datetime.datetime.now()
        return base.replace(hour=hours, minute=minutes, second=seconds, microsecond=0)

    dmy = _DMY.match(text)
    if dmy:
        day, month, year = int(dmy.group(1)), int(dmy.group(2)), int(dmy.group(3))
        hours, minutes, seconds = int(dmy.group(4) or 0), int(dmy.group(5) or 0), int(dmy.group(6) or 0)
        try:
            return datetime.datetime(year, month, day, hours, minutes, seconds)
        except ValueError:
            return None

    try:
        parsed = datetime.datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo:
        parsed = parsed.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return parsed
