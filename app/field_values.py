"""Per-type coercion of record field values and the stored value codecs."""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, List, Mapping
from urllib.parse import urlparse

from crmkit import canonical_dumps, canonical_string_list

from app.schema import CustomField, DATE_TYPES, LOOKUP_TYPES, NUMBER_TYPES, PICKLIST_TYPES, TEXT_TYPES


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[\d\s\-\+\(\)]+$")
ADDRESS_KEYS = ("street", "city", "state", "postalCode", "country")
_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


class FieldValueError(ValueError):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def encode_picklist(values: List[str]) -> str:
    return canonical_dumps(list(values))


def decode_picklist(raw: Any) -> Any:
    """Stored picklist value -> list of selections.

    Values written before the canonical encoding existed may be plain
    strings, with ``;`` separating multi-select entries.
    """
    if raw is None:
        return None
    if isinstance(raw, (list, tuple)):
        return list(raw)
    parsed = canonical_string_list(raw)
    if parsed is not None:
        return parsed
    if isinstance(raw, str):
        return [part.strip() for part in raw.split(";") if part.strip()]
    return raw


def _picklist_input(field: CustomField, value: Any) -> List[str]:
    if isinstance(value, str):
        parsed = canonical_string_list(value)
        values = parsed if parsed is not None else [value]
    elif isinstance(value, (list, tuple)):
        values = list(value)
    else:
        raise FieldValueError("type", f"{field.label} must be a list of options")
    for item in values:
        if not isinstance(item, str):
            raise FieldValueError("type", f"{field.label} options must be strings")
    return values


def coerce_picklist(field: CustomField, value: Any) -> str | None:
    values = _picklist_input(field, value)
    if field.type == "Picklist":
        if not values:
            return None
        if len(values) != 1:
            raise FieldValueError("type", f"{field.label} takes exactly one value")
    if field.picklist_values:
        for item in values:
            if item not in field.picklist_values:
                raise FieldValueError("invalid_option", f"{item!r} is not a valid option for {field.label}")
    return encode_picklist(values)


def coerce_text(field: CustomField, value: Any) -> str:
    if not isinstance(value, str):
        raise FieldValueError("type", f"{field.label} must be text")
    if field.min_length is not None and len(value) < field.min_length:
        raise FieldValueError("min_length", f"{field.label} must be at least {field.min_length} characters")
    if field.max_length is not None and len(value) > field.max_length:
        raise FieldValueError("max_length", f"{field.label} must be at most {field.max_length} characters")
    return value


def _to_decimal(field: CustomField, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise FieldValueError("type", f"{field.label} must be a number")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise FieldValueError("type", f"{field.label} must be a finite number")
        return Decimal(repr(value))
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            raise FieldValueError("type", f"{field.label} must be a number") from None
        if not parsed.is_finite():
            raise FieldValueError("type", f"{field.label} must be a finite number")
        return parsed
    raise FieldValueError("type", f"{field.label} must be a number")


def _integer_digits(number: Decimal) -> int:
    whole = abs(number).to_integral_value(rounding=ROUND_DOWN)
    return 0 if whole == 0 else whole.adjusted() + 1


def coerce_number(field: CustomField, value: Any) -> int | float:
    number = _to_decimal(field, value)
    if field.scale is not None:
        try:
            number = number.quantize(Decimal(1).scaleb(-int(field.scale)), rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise FieldValueError("type", f"{field.label} is out of range") from None
    if field.precision is not None:
        allowed = int(field.precision) - int(field.scale or 0)
        if _integer_digits(number) > allowed:
            raise FieldValueError("max", f"{field.label} allows at most {allowed} digits before the decimal point")
    if field.min is not None and number < _to_decimal(field, field.min):
        raise FieldValueError("min", f"{field.label} must be at least {field.min}")
    if field.max is not None and number > _to_decimal(field, field.max):
        raise FieldValueError("max", f"{field.label} must be at most {field.max}")
    if number.as_tuple().exponent >= 0:
        return int(number)
    return float(number)


def coerce_checkbox(field: CustomField, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise FieldValueError("type", f"{field.label} must be true or false")


def coerce_temporal(field: CustomField, value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat() if field.type != "Date" else value.date().isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if not isinstance(value, str):
        raise FieldValueError("invalid_date", f"{field.label} must be an ISO {field.type.lower()} string")
    text = value.strip()
    try:
        if field.type == "Date":
            date.fromisoformat(text)
        elif field.type == "DateTime":
            datetime.fromisoformat(text.replace("Z", "+00:00"))
        else:
            time.fromisoformat(text)
    except ValueError:
        raise FieldValueError("invalid_date", f"{field.label} must be an ISO {field.type.lower()} string") from None
    return text


def coerce_email(field: CustomField, value: Any) -> str:
    if not isinstance(value, str) or not EMAIL_RE.match(value.strip()):
        raise FieldValueError("invalid_email", f"{field.label} must be a valid email address")
    return value.strip()


def coerce_phone(field: CustomField, value: Any) -> str:
    if not isinstance(value, str) or not PHONE_RE.match(value.strip()):
        raise FieldValueError("invalid_phone", f"{field.label} must be a valid phone number")
    return value.strip()


def coerce_url(field: CustomField, value: Any) -> str:
    if not isinstance(value, str):
        raise FieldValueError("invalid_url", f"{field.label} must be a valid URL")
    parsed = urlparse(value.strip())
    if not parsed.scheme or not (parsed.netloc or parsed.path):
        raise FieldValueError("invalid_url", f"{field.label} must be a valid URL")
    return value.strip()


def coerce_lookup(field: CustomField, value: Any) -> str:
    if isinstance(value, Mapping) and isinstance(value.get("id"), str):
        value = value["id"]
    if not isinstance(value, str) or not value.strip():
        raise FieldValueError("type", f"{field.label} must be a record id")
    return value.strip()


def coerce_address(field: CustomField, value: Any) -> dict | str:
    if isinstance(value, str):
        return value
    if not isinstance(value, Mapping):
        raise FieldValueError("type", f"{field.label} must be an address")
    unknown = [key for key in value if key not in ADDRESS_KEYS]
    if unknown:
        raise FieldValueError("type", f"{field.label} has unknown address parts: {', '.join(sorted(unknown))}")
    result = {}
    for key in ADDRESS_KEYS:
        part = value.get(key)
        if part is None:
            continue
        if not isinstance(part, str):
            raise FieldValueError("type", f"{field.label} {key} must be text")
        result[key] = part
    return result


def coerce_geolocation(field: CustomField, value: Any) -> dict:
    if not isinstance(value, Mapping):
        raise FieldValueError("type", f"{field.label} must have latitude and longitude")
    lat = value.get("latitude", value.get("lat"))
    lng = value.get("longitude", value.get("lng", value.get("long")))
    if lat is None or lng is None:
        raise FieldValueError("type", f"{field.label} must have latitude and longitude")
    lat_num = float(_to_decimal(field, lat))
    lng_num = float(_to_decimal(field, lng))
    if not -90 <= lat_num <= 90:
        raise FieldValueError("type", f"{field.label} latitude must be between -90 and 90")
    if not -180 <= lng_num <= 180:
        raise FieldValueError("type", f"{field.label} longitude must be between -180 and 180")
    return {"latitude": lat_num, "longitude": lng_num}


def coerce_value(field: CustomField, value: Any) -> Any:
    """Coerce a non-empty payload value for storage; raises FieldValueError."""
    ftype = field.type
    if ftype in TEXT_TYPES:
        return coerce_text(field, value)
    if ftype in NUMBER_TYPES:
        return coerce_number(field, value)
    if ftype in PICKLIST_TYPES:
        return coerce_picklist(field, value)
    if ftype in DATE_TYPES:
        return coerce_temporal(field, value)
    if ftype in LOOKUP_TYPES:
        return coerce_lookup(field, value)
    if ftype == "Checkbox":
        return coerce_checkbox(field, value)
    if ftype == "Email":
        return coerce_email(field, value)
    if ftype == "Phone":
        return coerce_phone(field, value)
    if ftype == "URL":
        return coerce_url(field, value)
    if ftype == "Address":
        return coerce_address(field, value)
    if ftype == "Geolocation":
        return coerce_geolocation(field, value)
    return value


def unique_key(field: CustomField, value: Any) -> str:
    """Comparison key for unique fields; stores index the same string."""
    if field.type in PICKLIST_TYPES:
        value = decode_picklist(value)
    elif field.type in NUMBER_TYPES and not isinstance(value, bool) and isinstance(value, (int, float)):
        return format(Decimal(repr(value)).normalize(), "f")
    return canonical_dumps(value)
