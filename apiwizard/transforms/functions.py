from __future__ import annotations
import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser

from apiwizard.mapping.conditions import evaluate
from apiwizard.paths.resolver import get_value

TransformFn = Callable[[Any, Dict[str, Any], Dict[str, Any]], Any]

# Registry populated by @transform. Each entry is a pure function
# (value, config, record) -> value; it may raise ValueError/TypeError.
TRANSFORMS: Dict[str, TransformFn] = {}


def transform(name: str) -> Callable[[TransformFn], TransformFn]:
    def _register(fn: TransformFn) -> TransformFn:
        TRANSFORMS[name] = fn
        return fn
    return _register


def get_transform(name: str) -> Optional[TransformFn]:
    return TRANSFORMS.get(name)


def supported_types() -> List[str]:
    return sorted(TRANSFORMS)


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str) and value.strip():
        return float(value.strip().replace(",", ""))
    raise ValueError(f"not a number: {value!r}")


def _tidy(number: float) -> Any:
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def _sequence(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    raise TypeError(f"expected an array, got {type(value).__name__}")


def parse_date(value: Any) -> datetime:
    """Parse ISO / RFC 822 strings or epoch numbers (ms above 1e11) into aware UTC datetimes."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError(f"epoch out of range: {value!r}") from exc
    elif isinstance(value, str) and value.strip():
        try:
            parsed = date_parser.parse(value)
        except OverflowError as exc:
            raise ValueError(str(exc)) from exc
    else:
        raise ValueError(f"not a date: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Moment-style tokens the authoring UI offers, mapped to strftime.
_DATE_TOKENS = [
    ("YYYY", "%Y"), ("YY", "%y"), ("MMMM", "%B"), ("MMM", "%b"), ("MM", "%m"),
    ("DD", "%d"), ("dddd", "%A"), ("ddd", "%a"), ("HH", "%H"), ("hh", "%I"),
    ("mm", "%M"), ("ss", "%S"), ("A", "%p"),
]
_DATE_TOKEN_RE = re.compile("|".join(re.escape(tok) for tok, _ in _DATE_TOKENS))
_DATE_TOKEN_MAP = dict(_DATE_TOKENS)


def _strftime_pattern(fmt: str) -> str:
    if "%" in fmt:
        return fmt
    return _DATE_TOKEN_RE.sub(lambda m: _DATE_TOKEN_MAP[m.group(0)], fmt)


# ----------------------------------------------------------------------
# Text
# ----------------------------------------------------------------------

@transform("direct")
def _direct(value, config, record):
    return value


@transform("uppercase")
def _uppercase(value, config, record):
    return str(value).upper()


@transform("lowercase")
def _lowercase(value, config, record):
    return str(value).lower()


@transform("capitalize")
def _capitalize(value, config, record):
    return str(value).capitalize()


@transform("trim")
def _trim(value, config, record):
    return str(value).strip()


@transform("substring")
def _substring(value, config, record):
    start = int(config.get("start", 0))
    end = config.get("end")
    return str(value)[start:int(end) if end is not None else None]


@transform("replace")
def _replace(value, config, record):
    find = str(config.get("find", ""))
    if not find:
        return value
    count = -1 if config.get("replaceAll", config.get("replace_all", True)) else 1
    return str(value).replace(find, str(config.get("replace", "")), count)


@transform("regex-extract")
def _regex_extract(value, config, record):
    try:
        match = re.search(config.get("pattern", ""), str(value))
    except re.error as exc:
        raise ValueError(f"invalid pattern: {exc}") from exc
    if match is None:
        return None
    return match.group(int(config.get("group", 1 if match.groups() else 0)))


_PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")


@transform("string-format")
def _string_format(value, config, record):
    """'{value}' is the current value; any other '{path}' reads the record."""
    template = str(config.get("template", "{value}"))

    def _fill(match: re.Match) -> str:
        key = match.group(1).strip()
        found = value if key == "value" else get_value(record, key)
        return "" if found is None else str(found)

    return _PLACEHOLDER_RE.sub(_fill, template)


# ----------------------------------------------------------------------
# Numbers
# ----------------------------------------------------------------------

@transform("parse-number")
def _parse_number(value, config, record):
    return _tidy(_number(value))


@transform("to-string")
def _to_string(value, config, record):
    return "" if value is None else str(value)


@transform("round")
def _round(value, config, record):
    precision = int(config.get("precision", 0))
    rounded = round(_number(value), precision)
    return _tidy(rounded) if precision == 0 else rounded


@transform("floor")
def _floor(value, config, record):
    return math.floor(_number(value))


@transform("ceil")
def _ceil(value, config, record):
    return math.ceil(_number(value))


@transform("abs")
def _abs(value, config, record):
    return _tidy(abs(_number(value)))


_MATH_OPS: Dict[str, Callable[[float, float], float]] = {
    "add": lambda a, b: a + b,
    "subtract": lambda a, b: a - b,
    "multiply": lambda a, b: a * b,
    "divide": lambda a, b: a / b,
    "modulo": lambda a, b: a % b,
    "power": lambda a, b: a ** b,
}


@transform("math-operation")
def _math_operation(value, config, record):
    op = _MATH_OPS.get(config.get("operation", ""))
    if op is None:
        raise ValueError(f"unknown math operation: {config.get('operation')!r}")
    operand = config.get("operand", config.get("value", 0))
    if isinstance(operand, str) and config.get("operandIsField"):
        operand = get_value(record, operand)
    try:
        return _tidy(op(_number(value), _number(operand)))
    except ZeroDivisionError as exc:
        raise ValueError("division by zero") from exc


# ----------------------------------------------------------------------
# Dates
# ----------------------------------------------------------------------

@transform("date-format")
def _date_format(value, config, record):
    fmt = config.get("format")
    parsed = parse_date(value)
    if not fmt:
        return parsed.isoformat()
    return parsed.strftime(_strftime_pattern(str(fmt)))


@transform("timestamp")
def _timestamp(value, config, record):
    return int(parse_date(value).timestamp() * 1000)


# ----------------------------------------------------------------------
# Arrays
# ----------------------------------------------------------------------

@transform("join")
def _join(value, config, record):
    if not isinstance(value, list):
        return value
    delimiter = str(config.get("delimiter", config.get("separator", ",")))
    return delimiter.join("" if v is None else str(v) for v in value)


@transform("split")
def _split(value, config, record):
    return str(value).split(str(config.get("delimiter", config.get("separator", ","))))


@transform("first")
def _first(value, config, record):
    items = _sequence(value)
    return items[0] if items else None


@transform("last")
def _last(value, config, record):
    items = _sequence(value)
    return items[-1] if items else None


@transform("count")
def _count(value, config, record):
    return len(_sequence(value))


@transform("sum")
def _sum(value, config, record):
    return _tidy(sum(_number(v) for v in _sequence(value) if v is not None))


@transform("average")
def _average(value, config, record):
    numbers = [_number(v) for v in _sequence(value) if v is not None]
    if not numbers:
        return None
    return sum(numbers) / len(numbers)


@transform("min")
def _min(value, config, record):
    numbers = [_number(v) for v in _sequence(value) if v is not None]
    return _tidy(min(numbers)) if numbers else None


@transform("max")
def _max(value, config, record):
    numbers = [_number(v) for v in _sequence(value) if v is not None]
    return _tidy(max(numbers)) if numbers else None


@transform("unique")
def _unique(value, config, record):
    out: List[Any] = []
    for item in _sequence(value):
        if item not in out:
            out.append(item)
    return out


@transform("sort")
def _sort(value, config, record):
    items = list(_sequence(value))
    key_path = config.get("field")
    descending = str(config.get("order", "asc")).lower() == "desc"

    def _key(item: Any):
        found = get_value(item, key_path) if key_path else item
        # None sorts last in either direction.
        return (found is None, found if found is not None else 0)

    present = [i for i in items if _key(i)[0] is False]
    missing = [i for i in items if _key(i)[0] is True]
    present.sort(key=lambda i: _key(i)[1], reverse=descending)
    return present + missing


@transform("length")
def _length(value, config, record):
    if value is None:
        return 0
    if isinstance(value, (str, list, dict)):
        return len(value)
    return len(str(value))


# ----------------------------------------------------------------------
# Logic
# ----------------------------------------------------------------------

@transform("is-empty")
def _is_empty(value, config, record):
    return evaluate("is_empty", value, None)


@transform("invert")
def _invert(value, config, record):
    return not bool(value)


@transform("yes-no")
def _yes_no(value, config, record):
    return str(config.get("yes", "Yes")) if value else str(config.get("no", "No"))


@transform("lookup")
def _lookup(value, config, record):
    table = config.get("table", config.get("mappings", {})) or {}
    key = "" if value is None else str(value)
    if key in table:
        return table[key]
    return config.get("default", value)


@transform("conditional")
def _conditional(value, config, record):
    subject = get_value(record, config["field"]) if config.get("field") else value
    matched = evaluate(config.get("operator", "equals"), subject, config.get("value"))
    if matched:
        return config.get("then", value)
    return config.get("else", value)


_COMPUTE_OPS: Dict[str, Callable[[List[Any], Dict[str, Any]], Any]] = {
    "add": lambda vals, cfg: _tidy(sum(_number(v) for v in vals)),
    "subtract": lambda vals, cfg: _tidy(_number(vals[0]) - sum(_number(v) for v in vals[1:])),
    "multiply": lambda vals, cfg: _tidy(math.prod(_number(v) for v in vals)),
    "divide": lambda vals, cfg: _number(vals[0]) / _number(vals[1]),
    "average": lambda vals, cfg: sum(_number(v) for v in vals) / len(vals),
    "concat": lambda vals, cfg: str(cfg.get("separator", "")).join(
        "" if v is None else str(v) for v in vals
    ),
}


@transform("compute")
def _compute(value, config, record):
    """Combine several record fields: {'fields': [...], 'operation': 'add'|...}."""
    op = _COMPUTE_OPS.get(config.get("operation", "add"))
    if op is None:
        raise ValueError(f"unknown compute operation: {config.get('operation')!r}")
    fields = config.get("fields") or []
    values = [get_value(record, path) for path in fields] or [value]
    try:
        return op(values, config)
    except (ZeroDivisionError, IndexError) as exc:
        raise ValueError(f"compute failed: {exc}") from exc
