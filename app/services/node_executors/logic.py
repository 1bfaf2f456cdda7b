import datetime
import logging
import re
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.services.flow_variables import coerce_to_date, has_path, render_value
from app.services.node_executors.base import NodeContext, NodeExecutor, Transition, register

logger = logging.getLogger(__name__)

_TIME_PATTERN = re.compile(r"^(\d{2}):(\d{2})(?::(\d{2}))?$")
_DATE_OPERATORS = ("isdateafter", "isdatebefore")


def _strip_braces(reference: Any) -> str:
    return str(reference or "").replace("{{", "").replace("}}", "").strip()


def _coerce(value: Any, data_type: str, date_operator: bool) -> Any:
    if date_operator or data_type == "date":
        coerced = coerce_to_date(value)
        return coerced if coerced is not None else value
    if data_type == "number":
        try:
            return float(value)
        except (TypeError, ValueError):
            return value
    if data_type == "boolean":
        lowered = str(value).strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return value


def _is_empty(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def _loose_equals(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if isinstance(a, (int, float)) and not isinstance(a, bool) or isinstance(b, (int, float)) and not isinstance(b, bool):
        try:
            return float(a) == float(b)
        except (TypeError, ValueError):
            return False
    return render_value(a) == render_value(b)


def _ordered(a: Any, b: Any, operator: str) -> bool:
    try:
        if operator == ">":
            return a > b
        if operator == "<":
            return a < b
        if operator == ">=":
            return a >= b
        return a <= b
    except TypeError:
        return False


def evaluate_condition(actual: Any, operator: str, expected: Any, data_type: str = "string") -> bool:
    """Typed comparison between a variable value and a literal; unknown operators are false."""
    op = str(operator or "").strip().lower()
    data_type = str(data_type or "string").strip().lower()
    is_date_op = op in _DATE_OPERATORS
    a = _coerce(actual, data_type, is_date_op)
    b = _coerce(expected, data_type, is_date_op)

    if op == "==":
        return _loose_equals(a, b)
    if op == "!=":
        return not _loose_equals(a, b)
    if op in (">", "<", ">=", "<="):
        return _ordered(a, b, op)
    if op == "contains":
        return render_value(b).lower() in render_value(a).lower()
    if op == "startswith":
        return render_value(a).lower().startswith(render_value(b).lower())
    if op == "endswith":
        return render_value(a).lower().endswith(render_value(b).lower())
    if op == "isempty":
        return _is_empty(a)
    if op == "isnotempty":
        return not _is_empty(a)
    if op == "istrue":
        return a is True or str(a).lower() == "true"
    if op == "isfalse":
        return a is False or str(a).lower() == "false"
    if is_date_op:
        if not isinstance(a, datetime.datetime) or not isinstance(b, datetime.datetime):
            return False
        return a > b if op == "isdateafter" else a < b

    logger.warning("Unknown condition operator '%s'", operator)
    return False


@register
class ConditionNodeExecutor(NodeExecutor):
    node_type = "condition"

    async def execute(self, ctx: NodeContext) -> Transition:
        reference = ctx.data.get("variable")
        path = _strip_braces(reference)
        actual = ctx.get_variable(path) if path and has_path(ctx.variables, path) else reference
        expected = ctx.render(ctx.data.get("value"))
        result = evaluate_condition(actual, ctx.data.get("operator"), expected, ctx.data.get("data_type"))
        logger.debug("Condition '%s': %r %s %r -> %s", ctx.node_id, actual, ctx.data.get("operator"), expected, result)
        return Transition.advance("true" if result else "false")


def _parse_time(text: Any) -> Optional[datetime.time]:
    match = _TIME_PATTERN.match(str(text or "").strip())
    if not match:
        return None
    hours, minutes, seconds = int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        return None
    return datetime.time(hours, minutes, seconds)


def is_within_time_window(start_time: Any, end_time: Any, now: datetime.time) -> bool:
    """Inclusive window check; an end at or before the start wraps past midnight."""
    start, end = _parse_time(start_time), _parse_time(end_time)
    if start is None or end is None:
        return False
    if end <= start:
        return now >= start or now <= end
    return start <= now <= end


@register
class TimeOfDayNodeExecutor(NodeExecutor):
    node_type = "time-of-day"

    async def execute(self, ctx: NodeContext) -> Transition:
        tz = None
        timezone_name = ctx.data.get("timezone")
        if timezone_name:
            try:
                tz = ZoneInfo(str(timezone_name))
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning("time-of-day node '%s': unknown timezone '%s'", ctx.node_id, timezone_name)
                return Transition.advance("false")
        now = datetime.datetime.now(tz).time().replace(microsecond=0)
        in_range = is_within_time_window(ctx.data.get("start_time"), ctx.data.get("end_time"), now)
        return Transition.advance("true" if in_range else "false")


@register
class SwitchNodeExecutor(NodeExecutor):
    node_type = "switch"

    async def execute(self, ctx: NodeContext) -> Transition:
        path = _strip_braces(ctx.data.get("variable"))
        actual = render_value(ctx.get_variable(path)) if path else ""
        for case in ctx.data.get("cases") or []:
            if not isinstance(case, dict) or not case.get("id"):
                continue
            if actual == render_value(ctx.render(case.get("value"))):
                return Transition.advance(str(case["id"]))
        return Transition.advance("otherwise")


@register
class SetVariableNodeExecutor(NodeExecutor):
    node_type = "set-variable"

    async def execute(self, ctx: NodeContext) -> Transition:
        name = _strip_braces(ctx.data.get("variable_name"))
        if name:
            try:
                ctx.set_variable(name, ctx.resolve(ctx.data.get("value")))
            except ValueError as e:
                logger.warning("set-variable node '%s': %s", ctx.node_id, e)
        return Transition.advance()
