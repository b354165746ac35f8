"""Cascading validate / save / destroy over a record's association graph.

``AutosaveEngine.save`` validates the whole reachable graph first and writes
nothing when anything is invalid. Writes then run inside one store
transaction: belongs-to targets before the owner row, has-one and has-many
children after it, join rows after both sides exist. A rollback restores every
touched record to its state before the call.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from record_graph.core.associations import Association, AssociationGraphNode, Ownership
from record_graph.core.nested import NestedAttributesAssigner
from record_graph.core.ports.store import RecordStore
from record_graph.core.ports.validator import Validator
from record_graph.core.record import Record, RecordType, _RecordMemento
from record_graph.errors import InvariantViolation, RecordDestroyedError, ValidationFailed

logger = logging.getLogger(__name__)


class _Rollback(Exception):
    """Aborts the current save without surfacing an error to the caller."""


class _Journal:
    """Pre-images and deferred effects of one top-level call."""

    def __init__(self) -> None:
        self._mementos: dict[int, tuple[Record, _RecordMemento]] = {}
        self.written: list[Record] = []
        self.destroyed: list[tuple[Record, AssociationGraphNode | None]] = []
        self.links: list[tuple[AssociationGraphNode, Any]] = []
        self.released: list[tuple[AssociationGraphNode, Record]] = []
        self.loaded: list[AssociationGraphNode] = []

    def remember(self, record: Record) -> None:
        if id(record) not in self._mementos:
            self._mementos[id(record)] = (record, record._remember())

    def is_destroyed(self, record: Record) -> bool:
        return any(destroyed is record for destroyed, _ in self.destroyed)

    def rollback(self) -> None:
        for record, memento in self._mementos.values():
            record._restore(memento)

    def commit(self) -> None:
        for record in self.written:
            record._changes_applied()
        for record, node in self.destroyed:
            record._mark_destroyed()
            if node is not None:
                node.remove(record)
        for node, key in self.links:
            node.linked(key)
        for node, record in self.released:
            node.detached = [detached for detached in node.detached if detached is not record]
        for node in self.loaded:
            node.loaded()


class AutosaveEngine:
    def __init__(
        self,
        store: RecordStore,
        validator: Validator,
        *,
        index_nested_attribute_errors: bool = False,
    ) -> None:
        self.store = store
        self.validator = validator
        self.index_nested_attribute_errors = index_nested_attribute_errors
        self.nested = NestedAttributesAssigner()

    # -- public surface ----------------------------------------------------

    def find(self, record_type: RecordType, primary_key: Any) -> Record:
        return self.store.fetch(record_type, primary_key)

    def reload(self, record: Record) -> Record:
        if record.is_new:
            raise InvariantViolation(f"cannot reload unsaved {record!r}")
        fresh = self.store.fetch(record.record_type, record.primary_key)
        record._reloaded(fresh.attributes)
        record.store = self.store
        logger.debug("Reloaded %r", record)
        return record

    def assign_nested_attributes(self, record: Record, name: str, payload: Any) -> None:
        self.nested.assign(record, name, payload)

    def is_valid(self, record: Record) -> bool:
        return self._validate(record, set())

    def save(self, record: Record, validate: bool = True) -> bool:
        if record.is_destroyed:
            raise RecordDestroyedError(f"cannot save destroyed {record!r}")
        if validate and not self.is_valid(record):
            logger.debug("Not saving %r: %s", record, record.errors.to_dict())
            return False
        return self._commit(record)

    def save_or_raise(self, record: Record) -> None:
        if not self.save(record):
            raise ValidationFailed(record)

    def destroy(self, record: Record) -> None:
        """Delete ``record``; a second call on the same record does nothing."""
        if record.is_destroyed:
            return
        journal = _Journal()
        with self._transaction(journal):
            journal.remember(record)
            if not record.is_new:
                self.store.delete(record.record_type, record.primary_key)
            journal.destroyed.append((record, None))
        logger.info("Destroyed %r", record)

    # -- validation --------------------------------------------------------

    def _validate(self, record: Record, seen: set[int]) -> bool:
        if id(record) in seen:
            return True
        seen.add(id(record))
        record.errors.clear()
        record.errors.extend(self.validator.validate(record))
        for node in record.nodes():
            if not node.association.validates:
                continue
            for index, child in enumerate(self._children_to_process(node, record.is_new)):
                self._validate_child(record, node.association, child, index, seen)
        return not record.errors

    def _validate_child(
        self, owner: Record, association: Association, child: Record, index: int, seen: set[int]
    ) -> None:
        if child.is_destroyed or child.marked_for_destruction:
            return
        if self._validate(child, seen):
            return
        if association.autosave:
            indexed = association.is_collection and (association.index_errors or self.index_nested_attribute_errors)
            prefix = f"{association.name}[{index}]" if indexed else association.name
            for issue in child.errors:
                owner.errors.append(issue.prefixed(prefix))
        else:
            owner.errors.add(association.name, "invalid")

    @staticmethod
    def _children_to_process(node: AssociationGraphNode, owner_is_new: bool) -> list[Record]:
        children = node.in_memory()
        if not node.association.is_collection or owner_is_new or node.association.autosave:
            return children
        return [child for child in children if child.is_new]

    # -- writes --------------------------------------------------------------

    @contextmanager
    def _transaction(self, journal: _Journal) -> Iterator[None]:
        self.store.begin_transaction()
        try:
            yield
            self.store.commit()
        except Exception as exc:
            logger.warning("Rolling back transaction after %s: %s", type(exc).__name__, exc)
            self.store.rollback()
            journal.rollback()
            raise
        journal.commit()

    def _commit(self, record: Record) -> bool:
        journal = _Journal()
        try:
            with self._transaction(journal):
                self._save_record(record, journal, set())
        except _Rollback:
            return False
        logger.info(
            "Saved %r (%d written, %d destroyed)", record, len(journal.written), len(journal.destroyed)
        )
        return True

    def _save_record(self, record: Record, journal: _Journal, visited: set[int]) -> None:
        if id(record) in visited or record.is_destroyed:
            return
        visited.add(id(record))
        journal.remember(record)
        was_new = record.is_new

        pending_destroys: list[tuple[Record, AssociationGraphNode]] = []
        for node in record.nodes():
            if node.association.ownership is Ownership.FOREIGN_KEY_ON_OWNER:
                self._save_belongs_to(record, node, journal, visited, pending_destroys)

        self._write(record, journal)
        for child, node in pending_destroys:
            self._destroy_child(child, node, journal)

        for node in record.nodes():
            ownership = node.association.ownership
            if ownership is Ownership.FOREIGN_KEY_ON_OWNER:
                continue
            if node.association.is_collection:
                self._save_collection(record, node, was_new, journal, visited)
            else:
                self._save_has_one(record, node, was_new, journal, visited)
            if was_new:
                journal.loaded.append(node)

    def _write(self, record: Record, journal: _Journal) -> None:
        if record.is_new:
            key = self.store.insert(record)
            record._mark_persisted(key)
            record.store = self.store
            logger.debug("Inserted %r", record)
        elif record.has_changes:
            self.store.update(record, record.changes_to_save())
            logger.debug("Updated %r", record)
        else:
            return
        journal.written.append(record)

    def _save_child(self, child: Record, association: Association, journal: _Journal, visited: set[int]) -> bool:
        # autosave children were validated with the owner; others are checked here
        if association.autosave is not True and not self._validate(child, set()):
            if association.is_collection:
                raise _Rollback(f"invalid {child!r} in {association.name}")
            logger.debug("Skipping invalid %r on %s", child, association.name)
            return False
        self._save_record(child, journal, visited)
        return True

    def _save_belongs_to(
        self,
        owner: Record,
        node: AssociationGraphNode,
        journal: _Journal,
        visited: set[int],
        pending_destroys: list[tuple[Record, AssociationGraphNode]],
    ) -> None:
        association = node.association
        child = node.target
        if not node.is_loaded or child is None:
            return
        assert isinstance(child, Record)
        if child.is_destroyed:
            return
        if child.marked_for_destruction:
            if association.allow_destroy:
                owner.write(association.foreign_key, None)
                pending_destroys.append((child, node))
            return
        if association.autosave is False:
            return
        if child.is_new or (association.autosave and child.changed_for_autosave()):
            if not self._save_child(child, association, journal, visited):
                return
        if node.updated and owner.read(association.foreign_key) != child.primary_key:
            owner.write(association.foreign_key, child.primary_key)

    def _save_has_one(
        self, owner: Record, node: AssociationGraphNode, was_new: bool, journal: _Journal, visited: set[int]
    ) -> None:
        association = node.association
        child = node.target
        self._release_detached(owner, node, journal)
        if child is None:
            return
        assert isinstance(child, Record)
        if child.is_destroyed:
            return
        if child.marked_for_destruction:
            if association.allow_destroy:
                self._destroy_child(child, node, journal)
            return
        if association.autosave is False:
            return
        stale = self._foreign_key_is_stale(owner, association, child)
        if was_new or child.is_new or stale or (association.autosave and child.changed_for_autosave()):
            journal.remember(child)
            if stale:
                child.write(association.foreign_key, owner.primary_key)
            self._save_child(child, association, journal, visited)

    def _release_detached(self, owner: Record, node: AssociationGraphNode, journal: _Journal) -> None:
        """Clear the foreign key of children replaced on a has-one so they no longer point at ``owner``."""
        foreign_key = node.association.foreign_key
        for previous in node.detached:
            if previous.is_destroyed or journal.is_destroyed(previous):
                continue
            journal.remember(previous)
            if previous.has_attribute(foreign_key) and previous.read(foreign_key) == owner.primary_key:
                previous.write(foreign_key, None)
                self._write(previous, journal)
                logger.debug("Released %r from %r.%s", previous, owner, node.association.name)
            journal.released.append((node, previous))

    def _save_collection(
        self, owner: Record, node: AssociationGraphNode, was_new: bool, journal: _Journal, visited: set[int]
    ) -> None:
        association = node.association
        autosave = association.autosave
        for child in self._children_to_process(node, was_new):
            if child.is_destroyed or journal.is_destroyed(child):
                continue
            if child.marked_for_destruction:
                if association.allow_destroy:
                    self._destroy_child(child, node, journal)
                continue
            if autosave is False:
                continue
            if association.ownership is Ownership.JOIN_TABLE:
                if child.is_new or (autosave and child.changed_for_autosave()):
                    self._save_child(child, association, journal, visited)
                if not node.is_linked(child):
                    self.store.link(association, owner.primary_key, child.primary_key)
                    journal.links.append((node, child.primary_key))
                continue
            stale = self._foreign_key_is_stale(owner, association, child)
            if was_new or child.is_new or stale or (autosave and child.changed_for_autosave()):
                journal.remember(child)
                if stale:
                    child.write(association.foreign_key, owner.primary_key)
                self._save_child(child, association, journal, visited)

    @staticmethod
    def _foreign_key_is_stale(owner: Record, association: Association, child: Record) -> bool:
        if not child.has_attribute(association.foreign_key):
            return True
        return child.read(association.foreign_key) != owner.primary_key

    def _destroy_child(self, child: Record, node: AssociationGraphNode, journal: _Journal) -> None:
        if child.is_destroyed or journal.is_destroyed(child):
            return
        journal.remember(child)
        association = node.association
        if association.ownership is Ownership.JOIN_TABLE and not node.owner.is_new and not child.is_new:
            self.store.unlink(association, node.owner.primary_key, child.primary_key)
        if not child.is_new:
            self.store.delete(child.record_type, child.primary_key)
        journal.destroyed.append((child, node))
        logger.debug("Destroyed %r through %s", child, association.name)
