"""Record types and live records.

``RecordType`` is the per-type configuration: attribute types, defaults and
association declarations, built once with ordinary builder calls. ``Record``
is one live entity; it owns a ``ChangeTracker`` and lazily created
``AssociationGraphNode``s.
"""

from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from record_graph.core.associations import (
    Association,
    AssociationGraphNode,
    AssociationKind,
    NestedAttributesOptions,
)
from record_graph.core.tracker import _ANY, ChangeSet, ChangeTracker, TrackerMemento
from record_graph.core.types import AttributeType, IntegerType
from record_graph.core.validation import Errors
from record_graph.errors import RecordDestroyedError, UnknownAssociationError, UnknownAttributeError

if TYPE_CHECKING:
    from record_graph.core.ports.store import RecordStore


class RecordState(str, Enum):
    NEW = "new"
    PERSISTED = "persisted"
    DESTROYED = "destroyed"


class RecordType:
    def __init__(
        self,
        name: str,
        attributes: Mapping[str, AttributeType],
        *,
        table: str | None = None,
        primary_key: str = "id",
        defaults: Mapping[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.table = table or f"{name}s"
        self.primary_key = primary_key
        self.attributes: dict[str, AttributeType] = {primary_key: attributes.get(primary_key, IntegerType())}
        self.attributes.update(attributes)
        self.defaults = dict(defaults or {})
        self.associations: dict[str, Association] = {}

    def __repr__(self) -> str:
        return f"RecordType({self.name!r})"

    @property
    def label(self) -> str:
        return "".join(part.capitalize() for part in self.name.split("_"))

    def association(self, name: str) -> Association:
        try:
            return self.associations[name]
        except KeyError:
            raise UnknownAssociationError(self.label, name) from None

    def _declare(self, association: Association) -> Association:
        if association.name in self.attributes:
            raise ValueError(f"{self.label}.{association.name} is already an attribute")
        self.associations[association.name] = association
        return association

    def has_one(
        self,
        name: str,
        target: "RecordType",
        *,
        foreign_key: str | None = None,
        autosave: bool | None = None,
        validate: bool | None = None,
        allow_destroy: bool = False,
    ) -> Association:
        fk = foreign_key or f"{self.name}_id"
        target.attributes.setdefault(fk, IntegerType())
        return self._declare(
            Association(
                name=name,
                kind=AssociationKind.HAS_ONE,
                target=target,
                foreign_key=fk,
                autosave=autosave,
                validate_associated=validate,
                allow_destroy=allow_destroy,
            )
        )

    def belongs_to(
        self,
        name: str,
        target: "RecordType",
        *,
        foreign_key: str | None = None,
        autosave: bool | None = None,
        validate: bool | None = None,
        allow_destroy: bool = False,
    ) -> Association:
        fk = foreign_key or f"{name}_id"
        if fk not in self.attributes:
            self.attributes[fk] = IntegerType()
        return self._declare(
            Association(
                name=name,
                kind=AssociationKind.BELONGS_TO,
                target=target,
                foreign_key=fk,
                autosave=autosave,
                validate_associated=validate,
                allow_destroy=allow_destroy,
            )
        )

    def has_many(
        self,
        name: str,
        target: "RecordType",
        *,
        foreign_key: str | None = None,
        autosave: bool | None = None,
        validate: bool | None = None,
        allow_destroy: bool = False,
        index_errors: bool = False,
    ) -> Association:
        fk = foreign_key or f"{self.name}_id"
        target.attributes.setdefault(fk, IntegerType())
        return self._declare(
            Association(
                name=name,
                kind=AssociationKind.HAS_MANY,
                target=target,
                foreign_key=fk,
                autosave=autosave,
                validate_associated=validate,
                allow_destroy=allow_destroy,
                index_errors=index_errors,
            )
        )

    def has_and_belongs_to_many(
        self,
        name: str,
        target: "RecordType",
        *,
        join_table: str | None = None,
        foreign_key: str | None = None,
        association_foreign_key: str | None = None,
        autosave: bool | None = None,
        validate: bool | None = None,
        allow_destroy: bool = False,
        index_errors: bool = False,
    ) -> Association:
        return self._declare(
            Association(
                name=name,
                kind=AssociationKind.HAS_AND_BELONGS_TO_MANY,
                target=target,
                foreign_key=foreign_key or f"{self.name}_id",
                join_table=join_table or "_".join(sorted([self.table, target.table])),
                association_foreign_key=association_foreign_key or f"{target.name}_id",
                autosave=autosave,
                validate_associated=validate,
                allow_destroy=allow_destroy,
                index_errors=index_errors,
            )
        )

    def accepts_nested_attributes_for(
        self,
        name: str,
        *,
        allow_destroy: bool = False,
        reject_if: Callable[[dict[str, Any]], bool] | Literal["all_blank"] | None = None,
        limit: int | Callable[[], int] | None = None,
        update_only: bool = False,
        index_errors: bool | None = None,
    ) -> Association:
        """Enable nested-attribute assignment for ``name``; this also turns autosave on."""
        association = self.association(name)
        updated = association.model_copy(
            update={
                "autosave": True,
                "allow_destroy": allow_destroy,
                "index_errors": association.index_errors if index_errors is None else index_errors,
                "nested": NestedAttributesOptions(reject_if=reject_if, limit=limit, update_only=update_only),
            }
        )
        self.associations[name] = updated
        return updated

    def new(self, attributes: Mapping[str, Any] | None = None, **kwargs: Any) -> "Record":
        return Record(self, {**(attributes or {}), **kwargs})

    def instantiate(self, values: Mapping[str, Any], store: "RecordStore | None" = None) -> "Record":
        """Build a persisted record from stored values (a partial select may omit attributes)."""
        cast = {
            name: self.attributes[name].deserialize(value) for name, value in values.items() if name in self.attributes
        }
        return Record._from_store(self, cast, store)


Association.model_rebuild(_types_namespace={"RecordType": RecordType})


class _RecordMemento:
    __slots__ = ("marked", "state", "tracker")

    def __init__(self, state: RecordState, tracker: TrackerMemento, marked: bool) -> None:
        self.state = state
        self.tracker = tracker
        self.marked = marked


class Record:
    """A live entity with dirty tracking and associated child records."""

    def __init__(self, record_type: RecordType, attributes: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        values = {
            name: attr_type.cast(record_type.defaults.get(name)) for name, attr_type in record_type.attributes.items()
        }
        self._setup(record_type, values, RecordState.NEW, None)
        self.assign_attributes({**(attributes or {}), **kwargs})

    @classmethod
    def _from_store(cls, record_type: RecordType, values: Mapping[str, Any], store: "RecordStore | None") -> "Record":
        record = cls.__new__(cls)
        record._setup(record_type, values, RecordState.PERSISTED, store)
        return record

    def _setup(
        self,
        record_type: RecordType,
        values: Mapping[str, Any],
        state: RecordState,
        store: "RecordStore | None",
    ) -> None:
        self.record_type = record_type
        self.store = store
        self.errors = Errors()
        self._tracker = ChangeTracker(record_type.label, record_type.attributes, values)
        self._state = state
        self._associations: dict[str, AssociationGraphNode] = {}
        self._marked_for_destruction = False
        self._checking_nested = False

    def __repr__(self) -> str:
        key = self.primary_key if not self.is_new else "new"
        return f"<{self.record_type.label} {key}>"

    # -- identity and lifecycle ------------------------------------------

    @property
    def primary_key(self) -> Any:
        if not self._tracker.is_loaded(self.record_type.primary_key):
            return None
        return self._tracker.read(self.record_type.primary_key)

    @property
    def state(self) -> RecordState:
        return self._state

    @property
    def is_new(self) -> bool:
        return self._state is RecordState.NEW

    @property
    def is_persisted(self) -> bool:
        return self._state is RecordState.PERSISTED

    @property
    def is_destroyed(self) -> bool:
        return self._state is RecordState.DESTROYED

    def _mark_persisted(self, primary_key: Any) -> None:
        self._tracker.write(self.record_type.primary_key, primary_key)
        self._state = RecordState.PERSISTED

    def _mark_destroyed(self) -> None:
        self._state = RecordState.DESTROYED

    def _remember(self) -> _RecordMemento:
        return _RecordMemento(self._state, self._tracker.memento(), self._marked_for_destruction)

    def _restore(self, memento: _RecordMemento) -> None:
        self._state = memento.state
        self._tracker.restore_memento(memento.tracker)
        self._marked_for_destruction = memento.marked

    def _reloaded(self, values: Mapping[str, Any]) -> None:
        self._tracker.reset(values)
        self._marked_for_destruction = False
        self.errors.clear()
        for node in self._associations.values():
            node.reset()

    # -- attributes --------------------------------------------------------

    def read(self, name: str) -> Any:
        return self._tracker.read(name)

    def write(self, name: str, value: Any) -> None:
        if self.is_destroyed:
            raise RecordDestroyedError(f"cannot modify destroyed {self!r}")
        self._tracker.write(name, value)

    def __getitem__(self, name: str) -> Any:
        return self.read(name)

    def __setitem__(self, name: str, value: Any) -> None:
        self.write(name, value)

    def has_attribute(self, name: str) -> bool:
        return name in self.record_type.attributes and self._tracker.is_loaded(name)

    @property
    def attributes(self) -> dict[str, Any]:
        return self._tracker.values()

    def assign_attributes(self, attributes: Mapping[str, Any]) -> None:
        """Assign plain attributes, or attach records to associations by name."""
        for name, value in attributes.items():
            key = str(name)
            if key in self.record_type.attributes:
                self.write(key, value)
            elif key in self.record_type.associations:
                node = self.association(key)
                if isinstance(value, (list, tuple)):
                    for child in value:
                        node.attach(child)
                else:
                    node.attach(value)
            else:
                raise UnknownAttributeError(self.record_type.label, key)

    # -- dirty tracking ----------------------------------------------------

    @property
    def has_changes(self) -> bool:
        return self._tracker.any_changes()

    @property
    def changes(self) -> ChangeSet:
        return self._tracker.changes()

    @property
    def changed_attribute_names(self) -> list[str]:
        return self._tracker.changed_names()

    def attribute_changed(self, name: str, from_: Any = _ANY, to: Any = _ANY) -> bool:
        return self._tracker.is_changed(name, from_=from_, to=to)

    def attribute_change(self, name: str) -> tuple[Any, Any] | None:
        return self._tracker.change(name)

    def attribute_was(self, name: str) -> Any:
        change = self._tracker.change(name)
        if change is not None:
            return change[0]
        return self._tracker.read(name)

    def attribute_in_database(self, name: str) -> Any:
        return self.attribute_was(name)

    def attribute_will_change(self, name: str) -> None:
        self._tracker.will_change(name)

    def restore_attribute(self, name: str) -> None:
        self._tracker.restore(name)

    def restore_attributes(self, names: Iterable[str] | None = None) -> None:
        self._tracker.restore_all(names)

    def changes_to_save(self) -> ChangeSet:
        return self._tracker.changes()

    @property
    def previous_changes(self) -> ChangeSet:
        return self._tracker.previous_changes

    saved_changes = previous_changes

    def saved_change_to_attribute(self, name: str) -> bool:
        return name in self._tracker.previous_changes

    def attribute_before_last_save(self, name: str) -> Any:
        change = self._tracker.previous_changes.get(name)
        if change is not None:
            return change[0]
        return self._tracker.read(name)

    def _changes_applied(self) -> None:
        self._tracker.changes_applied()

    # -- associations ------------------------------------------------------

    def association(self, name: str) -> AssociationGraphNode:
        node = self._associations.get(name)
        if node is None:
            node = AssociationGraphNode(self, self.record_type.association(name))
            self._associations[name] = node
        return node

    def association_if_present(self, name: str) -> AssociationGraphNode | None:
        return self._associations.get(name)

    def nodes(self) -> list[AssociationGraphNode]:
        """Instantiated association nodes in declaration order."""
        return [self._associations[name] for name in self.record_type.associations if name in self._associations]

    # -- destruction marks and autosave state -----------------------------

    def mark_for_destruction(self) -> None:
        self._marked_for_destruction = True

    @property
    def marked_for_destruction(self) -> bool:
        return self._marked_for_destruction

    def changed_for_autosave(self) -> bool:
        return self.is_new or self.has_changes or self._marked_for_destruction or self._nested_records_changed()

    def _nested_records_changed(self) -> bool:
        if self._checking_nested:
            return False
        self._checking_nested = True
        try:
            for node in self.nodes():
                autosave = node.association.autosave
                if autosave is False:
                    continue
                for child in node.in_memory():
                    if child.is_destroyed:
                        continue
                    if autosave is None and child.is_new:
                        return True
                    if autosave and child.changed_for_autosave():
                        return True
            return False
        finally:
            self._checking_nested = False
