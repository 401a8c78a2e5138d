"""
Field Transformer Service

Pure functions that turn a raw tenant record into a flat label -> value row
according to a list of FieldMapping entries.

Value rendering depends on the field type:
- date: formatted with an LDML pattern in the requested timezone (babel)
- boolean: "Yes" / ""
- array, users: comma separated display names
- object: compact JSON, "" when empty
- richtext: HTML stripped with bleach, whitespace normalized
- rating: "3 ★★★☆☆"
"""

import html
import json
import logging
import re
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional

import bleach
from babel.dates import format_datetime, get_timezone

from export_schemas import ExportOptions, FieldMapping, FieldType

# Configure logging
logger = logging.getLogger(__name__)

_NUMBER_PREFIX_RE = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_TAG_RE = re.compile(r"<[^>]*>")
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DEFAULT_OPTIONS = ExportOptions()


def get_nested_value(record: Any, path: str) -> Any:
    """
    Resolve a dotted path ("owner.name") against nested dicts and objects.

    Missing segments resolve to None instead of raising.
    """
    current = record
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            current = getattr(current, part, None)
    return current


def strip_html(value: Optional[str]) -> str:
    """Remove every tag, keep the text, collapse runs of blank space."""
    if not value or not isinstance(value, str):
        return ""

    text = html.unescape(bleach.clean(value, tags=set(), attributes={}, strip=True))
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n", "\n", text)
    text = re.sub(r"[ \t]*\n[ \t]*", "\n", text)
    return text.strip()


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def _display_name(item: Dict[str, Any]) -> Any:
    for key in ("name", "title", "label", "id"):
        if item.get(key):
            return item[key]
    return _to_json(item)


def _user_name(user: Any) -> Any:
    if isinstance(user, str):
        return user
    if isinstance(user, dict):
        return user.get("name") or user.get("email") or user.get("id") or "Unknown User"
    return user


def _format_date(value: Any, options: ExportOptions) -> Any:
    tz = get_timezone(options.timezone or "UTC")

    parsed = value
    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = date.fromisoformat(text) if _DATE_ONLY_RE.match(text) else datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Unparsable date value passed through: {value!r}")
            return value

    if isinstance(parsed, datetime):
        moment = parsed
    elif isinstance(parsed, date):
        # Calendar dates carry no instant, render them as-is in the target zone
        naive = datetime.combine(parsed, time())
        moment = tz.localize(naive) if hasattr(tz, "localize") else naive.replace(tzinfo=tz)
    else:
        return value

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)

    return format_datetime(
        moment,
        format=options.date_format or "yyyy-MM-dd",
        tzinfo=tz,
        locale=options.locale or "en_US",
    )


def _format_number(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        match = _NUMBER_PREFIX_RE.match(value)
        if match:
            parsed = float(match.group(1))
            return int(parsed) if parsed.is_integer() and "." not in match.group(1) else parsed
    return value


def _format_rating(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    try:
        rating = float(value)
    except (TypeError, ValueError):
        return value
    if rating.is_integer() and 1 <= rating <= 5:
        stars = int(rating)
        return f"{stars} {'★' * stars}{'☆' * (5 - stars)}"
    return value


def _format_richtext(value: Any) -> str:
    if not isinstance(value, str):
        return _to_text(value)
    try:
        return strip_html(value)
    except Exception as e:
        logger.warning(f"HTML sanitizer failed, falling back to tag removal: {str(e)}")
        return re.sub(r"\s+", " ", _TAG_RE.sub("", value)).strip()


def format_value(value: Any, field_type: FieldType, options: ExportOptions = None) -> Any:
    """
    Render one raw value according to its field type.

    None always renders as "". Values that do not fit the type rule are
    returned unchanged so encoders can still write them.
    """
    if value is None:
        return ""

    options = options or _DEFAULT_OPTIONS
    field_type = FieldType(field_type)

    if field_type == FieldType.DATE:
        return _format_date(value, options)

    if field_type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return "Yes" if value else ""
        return value

    if field_type == FieldType.ARRAY:
        if isinstance(value, (list, tuple)):
            return ", ".join(
                _to_text(_display_name(item)) if isinstance(item, dict) else _to_text(item)
                for item in value
            )
        return value

    if field_type == FieldType.OBJECT:
        if isinstance(value, (dict, list, tuple)):
            return _to_json(value) if len(value) else ""
        return value

    if field_type == FieldType.NUMBER:
        return _format_number(value)

    if field_type == FieldType.RICHTEXT:
        return _format_richtext(value)

    if field_type == FieldType.RATING:
        return _format_rating(value)

    if field_type == FieldType.USER:
        return _user_name(value)

    if field_type == FieldType.USERS:
        if isinstance(value, (list, tuple)):
            return ", ".join(_to_text(_user_name(user)) for user in value)
        return value

    return _to_text(value)


def active_fields(fields: Iterable[FieldMapping]) -> List[FieldMapping]:
    """Fields with include=True, in the order supplied."""
    return [field for field in fields if field.include]


def transform_item(item: Any, fields: Iterable[FieldMapping], options: ExportOptions = None) -> Dict[str, Any]:
    """Build one label -> value row from a raw record."""
    options = options or _DEFAULT_OPTIONS
    row: Dict[str, Any] = {}

    for field in active_fields(fields):
        raw_value = get_nested_value(item, field.key)

        if field.formatter is not None:
            if raw_value is None:
                row[field.label] = ""
                continue
            try:
                row[field.label] = field.formatter(raw_value)
            except Exception as e:
                logger.warning(f"Custom formatter failed for field '{field.key}': {str(e)}")
                row[field.label] = raw_value
            continue

        row[field.label] = format_value(raw_value, field.type, options)

    return row


def transform_items(items: Iterable[Any], fields: List[FieldMapping], options: ExportOptions = None) -> List[Dict[str, Any]]:
    """Synchronous transform of a whole batch."""
    return [transform_item(item, fields, options) for item in items]
