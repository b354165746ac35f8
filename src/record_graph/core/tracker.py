from collections.abc import Iterable, Mapping
from typing import Any, NamedTuple

from record_graph.core.snapshot import MISSING, AttributeSnapshot
from record_graph.core.types import AttributeType
from record_graph.errors import MissingAttributeError, UnknownAttributeError

ChangeSet = dict[str, tuple[Any, Any]]

_ANY: Any = object()


class TrackerMemento(NamedTuple):
    values: dict[str, Any]
    snapshot: AttributeSnapshot
    forced: dict[str, Any]
    previous: ChangeSet


class ChangeTracker:
    """Current attribute values of one record and their changes since the snapshot.

    Nothing is cached between calls: every query compares the live value with
    the snapshot, so in-place mutation of a mutable value is seen immediately.
    Attributes forced with ``will_change`` are reported as changed until the
    next save, restore or reload.
    """

    def __init__(self, model: str, types: Mapping[str, AttributeType], values: Mapping[str, Any]) -> None:
        self._model = model
        self._types = types
        self._values: dict[str, Any] = dict(values)
        self._snapshot = AttributeSnapshot.capture(types, self._values)
        self._forced: dict[str, Any] = {}
        self._previous: ChangeSet = {}

    @property
    def snapshot(self) -> AttributeSnapshot:
        return self._snapshot

    def _type(self, name: str) -> AttributeType:
        try:
            return self._types[name]
        except KeyError:
            raise UnknownAttributeError(self._model, name) from None

    def is_loaded(self, name: str) -> bool:
        self._type(name)
        return name in self._values

    def read(self, name: str) -> Any:
        self._type(name)
        try:
            return self._values[name]
        except KeyError:
            raise MissingAttributeError(self._model, name) from None

    def write(self, name: str, value: Any) -> None:
        self._values[name] = self._type(name).cast(value)

    def values(self) -> dict[str, Any]:
        return dict(self._values)

    def original(self, name: str) -> Any:
        self._type(name)
        if name in self._forced:
            return self._forced[name]
        return self._snapshot.original(name)

    def is_changed(self, name: str, from_: Any = _ANY, to: Any = _ANY) -> bool:
        attr_type = self._type(name)
        if name in self._forced:
            changed = True
        elif name not in self._values:
            changed = False
        else:
            original = self._snapshot.original(name)
            changed = original is MISSING or attr_type.changed(original, self._values[name])
        if not changed:
            return False
        if from_ is not _ANY and self._public(self.original(name)) != attr_type.cast(from_):
            return False
        if to is not _ANY and self._values.get(name) != attr_type.cast(to):
            return False
        return True

    def change(self, name: str) -> tuple[Any, Any] | None:
        if not self.is_changed(name):
            return None
        attr_type = self._types[name]
        return (attr_type.snapshot(self._public(self.original(name))), self._values.get(name))

    def changed_names(self) -> list[str]:
        return [name for name in self._types if self.is_changed(name)]

    def changes(self) -> ChangeSet:
        result: ChangeSet = {}
        for name in self._types:
            change = self.change(name)
            if change is not None:
                result[name] = change
        return result

    def any_changes(self) -> bool:
        return any(self.is_changed(name) for name in self._types)

    def will_change(self, name: str) -> None:
        attr_type = self._type(name)
        if name not in self._forced:
            self._forced[name] = attr_type.snapshot(self._values.get(name))

    def restore(self, name: str) -> None:
        attr_type = self._type(name)
        self._forced.pop(name, None)
        original = self._snapshot.original(name)
        if original is MISSING:
            self._values.pop(name, None)
        else:
            self._values[name] = attr_type.snapshot(original)

    def restore_all(self, names: Iterable[str] | None = None) -> None:
        for name in list(names) if names is not None else self.changed_names():
            self.restore(name)

    @property
    def previous_changes(self) -> ChangeSet:
        return dict(self._previous)

    def changes_applied(self) -> None:
        self._previous = self.changes()
        self._snapshot = AttributeSnapshot.capture(self._types, self._values)
        self._forced.clear()

    def reset(self, values: Mapping[str, Any]) -> None:
        self._values = dict(values)
        self._snapshot = AttributeSnapshot.capture(self._types, self._values)
        self._forced.clear()
        self._previous = {}

    def memento(self) -> TrackerMemento:
        return TrackerMemento(dict(self._values), self._snapshot, dict(self._forced), dict(self._previous))

    def restore_memento(self, memento: TrackerMemento) -> None:
        self._values = dict(memento.values)
        self._snapshot = memento.snapshot
        self._forced = dict(memento.forced)
        self._previous = dict(memento.previous)

    @staticmethod
    def _public(value: Any) -> Any:
        return None if value is MISSING else value
