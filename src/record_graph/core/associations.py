"""Association declarations and their per-record runtime nodes.

An ``Association`` is the static, frozen description of one relationship of a
record type. An ``AssociationGraphNode`` binds that description to one owner
record and holds the child records currently attached in memory.
"""

import logging
from collections.abc import Callable, Iterable
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict

from record_graph.errors import RecordDestroyedError

if TYPE_CHECKING:
    from record_graph.core.record import Record, RecordType

logger = logging.getLogger(__name__)


class AssociationKind(str, Enum):
    HAS_ONE = "has_one"
    BELONGS_TO = "belongs_to"
    HAS_MANY = "has_many"
    HAS_AND_BELONGS_TO_MANY = "has_and_belongs_to_many"


class Cardinality(str, Enum):
    ONE = "one"
    MANY = "many"


class Ownership(str, Enum):
    FOREIGN_KEY_ON_OWNER = "foreign_key_on_owner"
    FOREIGN_KEY_ON_TARGET = "foreign_key_on_target"
    JOIN_TABLE = "join_table"


RejectIf = Callable[[dict[str, Any]], bool] | Literal["all_blank"]


class NestedAttributesOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    reject_if: RejectIf | None = None
    limit: int | Callable[[], int] | None = None
    update_only: bool = False

    def resolved_limit(self) -> int | None:
        if callable(self.limit):
            return self.limit()
        return self.limit


class Association(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    kind: AssociationKind
    target: "RecordType"
    foreign_key: str
    join_table: str | None = None
    association_foreign_key: str | None = None
    autosave: bool | None = None
    validate_associated: bool | None = None
    allow_destroy: bool = False
    index_errors: bool = False
    nested: NestedAttributesOptions | None = None

    @property
    def cardinality(self) -> Cardinality:
        if self.kind in (AssociationKind.HAS_MANY, AssociationKind.HAS_AND_BELONGS_TO_MANY):
            return Cardinality.MANY
        return Cardinality.ONE

    @property
    def is_collection(self) -> bool:
        return self.cardinality is Cardinality.MANY

    @property
    def ownership(self) -> Ownership:
        if self.kind is AssociationKind.BELONGS_TO:
            return Ownership.FOREIGN_KEY_ON_OWNER
        if self.kind is AssociationKind.HAS_AND_BELONGS_TO_MANY:
            return Ownership.JOIN_TABLE
        return Ownership.FOREIGN_KEY_ON_TARGET

    @property
    def validates(self) -> bool:
        if self.validate_associated is not None:
            return self.validate_associated
        return self.autosave is True or self.is_collection


class AssociationGraphNode:
    """Children attached to one owner through one association.

    ``target`` never touches the store. ``reader()`` loads the association
    once for persisted owners; records attached or fetched by id before that
    load take precedence over the rows it returns.
    """

    def __init__(self, owner: "Record", association: Association) -> None:
        self.owner = owner
        self.association = association
        self._one: Record | None = None
        self._many: list[Record] = []
        self._loaded = False
        self._linked: set[Any] = set()
        self.updated = False
        # persisted children replaced on a has-one; their foreign key is cleared on save
        self.detached: list[Record] = []

    def __repr__(self) -> str:
        state = "loaded" if self._loaded else "unloaded"
        return f"<AssociationGraphNode {self.owner.record_type.name}.{self.association.name} {state}>"

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def target(self) -> "Record | list[Record] | None":
        if self.association.is_collection:
            return list(self._many)
        return self._one

    def in_memory(self) -> list["Record"]:
        """Attached children as a list, without loading anything."""
        if self.association.is_collection:
            return list(self._many)
        return [self._one] if self._one is not None else []

    def reader(self) -> "Record | list[Record] | None":
        if not self._loaded:
            if self._can_load():
                self._load()
            else:
                self._loaded = True
        return self.target

    def children(self) -> list["Record"]:
        self.reader()
        return self.in_memory()

    def _can_load(self) -> bool:
        owner = self.owner
        if owner.is_new or owner.store is None:
            return False
        if self.association.is_collection:
            return True
        if self._one is not None:
            return False
        if self.association.ownership is Ownership.FOREIGN_KEY_ON_OWNER:
            return owner.read(self.association.foreign_key) is not None
        return True

    def _load(self) -> None:
        store = self.owner.store
        assert store is not None
        rows = store.fetch_associated(self.association, self.owner)
        logger.debug("Loaded %d row(s) for %r", len(rows), self)
        if self.association.is_collection:
            self._many = self._merge(rows)
            if self.association.ownership is Ownership.JOIN_TABLE:
                self._linked.update(row.primary_key for row in rows)
        elif self._one is None and rows:
            self._one = rows[0]
        self._loaded = True

    def _merge(self, rows: list["Record"]) -> list["Record"]:
        if not self._many:
            return list(rows)
        in_memory = {record.primary_key: record for record in self._many if not record.is_new}
        merged = [in_memory.pop(row.primary_key, row) for row in rows]
        merged.extend(record for record in self._many if record.is_new)
        return merged

    def attach(self, child: "Record | None") -> None:
        if child is not None and child.is_destroyed:
            raise RecordDestroyedError(f"cannot attach destroyed {child!r} to {self!r}")
        association = self.association
        if association.is_collection:
            if child is not None and not any(existing is child for existing in self._many):
                self._many.append(child)
            return
        if association.ownership is Ownership.FOREIGN_KEY_ON_TARGET:
            if not self._loaded and self._can_load():
                self._load()
            self._detach(self._one, child)
        self._one = child
        self._loaded = True
        if association.ownership is Ownership.FOREIGN_KEY_ON_OWNER:
            self.owner.write(association.foreign_key, child.primary_key if child is not None else None)
            self.updated = True

    def _detach(self, previous: "Record | None", child: "Record | None") -> None:
        self.detached = [record for record in self.detached if record is not child]
        if previous is None or previous is child or previous.is_new or previous.is_destroyed:
            return
        if not any(record is previous for record in self.detached):
            self.detached.append(previous)

    def build(self, attributes: dict[str, Any] | None = None) -> "Record":
        from record_graph.core.record import Record

        child = Record(self.association.target, attributes or {})
        child.store = self.owner.store
        if self.association.ownership is Ownership.FOREIGN_KEY_ON_TARGET and not self.owner.is_new:
            child.write(self.association.foreign_key, self.owner.primary_key)
        self.attach(child)
        return child

    def replace(self, children: Iterable["Record"]) -> None:
        """Set the in-memory collection; records left out are detached, not destroyed."""
        if not self.association.is_collection:
            raise TypeError(f"{self!r} holds a single record; use attach()")
        self._many = []
        for child in children:
            self.attach(child)
        self._loaded = True

    def mark_child_for_destruction(self, child: "Record") -> None:
        child.mark_for_destruction()

    def find_by_ids(self, ids: Iterable[Any]) -> dict[str, "Record"]:
        """Resolve child ids without loading the whole collection.

        Attached records are consulted first; ids that are still unknown are
        fetched with one targeted query scoped to the owner. Fetched rows are
        not attached; pass the ones to keep to ``adopt``.
        """
        wanted = {str(i) for i in ids}
        found = {
            str(record.primary_key): record
            for record in self.in_memory()
            if not record.is_new and str(record.primary_key) in wanted
        }
        missing = sorted(wanted - found.keys())
        owner = self.owner
        if missing and not self._loaded and not owner.is_new and owner.store is not None:
            rows = owner.store.fetch_associated(self.association, owner, ids=missing)
            logger.debug("Fetched %d of %d requested id(s) for %r", len(rows), len(missing), self)
            for row in rows:
                found[str(row.primary_key)] = row
        return found

    def adopt(self, records: Iterable["Record"]) -> None:
        """Attach persisted children of this owner, e.g. rows returned by ``find_by_ids``."""
        for record in records:
            if any(existing is record for existing in self.in_memory()):
                continue
            if self.association.is_collection:
                self._many.append(record)
            else:
                self._one = record
            if self.association.ownership is Ownership.JOIN_TABLE:
                self._linked.add(record.primary_key)

    def is_linked(self, child: "Record") -> bool:
        return child.primary_key in self._linked

    def linked(self, key: Any) -> None:
        self._linked.add(key)

    def remove(self, child: "Record") -> None:
        if self.association.is_collection:
            self._many = [record for record in self._many if record is not child]
        elif self._one is child:
            self._one = None
        self._linked.discard(child.primary_key)

    def loaded(self) -> None:
        self._loaded = True

    def reset(self) -> None:
        self._one = None
        self._many = []
        self._loaded = False
        self._linked = set()
        self.updated = False
        self.detached = []
