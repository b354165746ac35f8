from collections.abc import Iterator, Mapping
from typing import Any

from record_graph.core.types import AttributeType


class _Missing:
    """Marks an attribute whose stored value was never loaded."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_Missing":
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> "_Missing":
        return self


MISSING: Any = _Missing()


class AttributeSnapshot(Mapping[str, Any]):
    """Attribute values as last loaded from, or written to, the store.

    Snapshots are immutable once captured; a save or reload replaces the
    snapshot wholesale. Mutable values are deep-copied on capture so that
    later in-place edits of the live value can be detected.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any]) -> None:
        self._values = dict(values)

    @classmethod
    def capture(cls, types: Mapping[str, AttributeType], values: Mapping[str, Any]) -> "AttributeSnapshot":
        originals: dict[str, Any] = {}
        for name, attr_type in types.items():
            if name in values:
                originals[name] = attr_type.snapshot(values[name])
            else:
                originals[name] = MISSING
        return cls(originals)

    def original(self, name: str) -> Any:
        return self._values.get(name, MISSING)

    def is_known(self, name: str) -> bool:
        return self._values.get(name, MISSING) is not MISSING

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"AttributeSnapshot({self._values!r})"
