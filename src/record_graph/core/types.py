"""Attribute type descriptors.

Every attribute of a record type is bound to one ``AttributeType`` for the
lifetime of that record type. The type decides how raw input is cast, how two
values are compared for dirty tracking, and whether a value can be mutated in
place (in which case the snapshot keeps a deep copy of it).
"""

import copy
import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

_TRUE_STRINGS = frozenset({"1", "t", "true", "on", "yes", "y"})
_FALSE_STRINGS = frozenset({"0", "f", "false", "off", "no", "n"})


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set, frozenset)):
        return len(value) == 0
    return value is False


def cast_boolean(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "":
            return None
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return bool(value)


class AttributeType:
    name = "value"
    mutable = False

    def cast(self, value: Any) -> Any:
        return value

    def serialize(self, value: Any) -> Any:
        return value

    def deserialize(self, value: Any) -> Any:
        return self.cast(value)

    def changed(self, old: Any, new: Any) -> bool:
        return old != new

    def snapshot(self, value: Any) -> Any:
        """Return the copy of ``value`` that the snapshot keeps."""
        if self.mutable:
            return copy.deepcopy(value)
        return value

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class BooleanType(AttributeType):
    name = "boolean"

    def cast(self, value: Any) -> bool | None:
        return cast_boolean(value)


class IntegerType(AttributeType):
    name = "integer"

    def cast(self, value: Any) -> int | None:
        if value is None:
            return None
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, (float, Decimal)):
            return int(value)
        if isinstance(value, str):
            stripped = value.strip()
            if stripped == "":
                return None
            try:
                return int(stripped)
            except ValueError:
                try:
                    return int(Decimal(stripped))
                except InvalidOperation:
                    return None
        return None


class FloatType(AttributeType):
    name = "float"

    def cast(self, value: Any) -> float | None:
        if value is None:
            return None
        if isinstance(value, (int, float, Decimal)):
            return float(value)
        if isinstance(value, str):
            stripped = value.strip()
            if stripped == "":
                return None
            try:
                return float(stripped)
            except ValueError:
                return None
        return None


class DecimalType(AttributeType):
    name = "decimal"

    def __init__(self, scale: int | None = None) -> None:
        self.scale = scale

    def cast(self, value: Any) -> Decimal | None:
        if value is None:
            return None
        if isinstance(value, str):
            value = value.strip()
            if value == "":
                return None
        try:
            result = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            return None
        if self.scale is not None:
            result = result.quantize(Decimal(1).scaleb(-self.scale))
        return result

    def __repr__(self) -> str:
        return f"DecimalType(scale={self.scale!r})"


class TextType(AttributeType):
    name = "text"

    def cast(self, value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, bool):
            return "t" if value else "f"
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return str(value)


class TimestampType(AttributeType):
    name = "timestamp"

    def cast(self, value: Any) -> datetime | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        if isinstance(value, str):
            stripped = value.strip()
            if stripped == "":
                return None
            try:
                return datetime.fromisoformat(stripped.replace("Z", "+00:00"))
            except ValueError:
                return None
        return None


class DateType(AttributeType):
    name = "date"

    def cast(self, value: Any) -> date | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if stripped == "":
                return None
            try:
                return date.fromisoformat(stripped[:10])
            except ValueError:
                return None
        return None


class JsonType(AttributeType):
    """Serialized payload (mappings, sequences and scalars) kept as Python objects."""

    name = "json"
    mutable = True

    def cast(self, value: Any) -> Any:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8")
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value


class BinaryType(AttributeType):
    name = "binary"
    mutable = True

    def cast(self, value: Any) -> bytes | bytearray | None:
        if value is None:
            return None
        if isinstance(value, (bytes, bytearray)):
            return value
        if isinstance(value, memoryview):
            return value.tobytes()
        if isinstance(value, str):
            return value.encode("utf-8")
        return bytes(value)

    def serialize(self, value: Any) -> Any:
        if isinstance(value, bytearray):
            return bytes(value)
        return value

    def changed(self, old: Any, new: Any) -> bool:
        if old is None or new is None:
            return old is not new
        return bytes(old) != bytes(new)
