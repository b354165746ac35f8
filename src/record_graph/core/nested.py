"""Nested-attribute assignment.

Translates a payload such as ``{"name": "Black Pearl", "parts_attributes":
[{"id": 3, "_destroy": "1"}, {"name": "Mast"}]}`` into build, update and
mark-for-destruction operations on association children. Nothing is written
to the store here; the autosave engine persists the result.
"""

import logging
from collections.abc import Mapping
from typing import Any

from record_graph.core.associations import Association, Ownership
from record_graph.core.record import Record
from record_graph.core.types import cast_boolean, is_blank
from record_graph.errors import InvariantViolation, NotFoundError, TooManyRecordsError

logger = logging.getLogger(__name__)

UNASSIGNABLE_KEYS = frozenset({"id", "_destroy"})
NESTED_SUFFIX = "_attributes"


class NestedAttributesAssigner:
    def assign(self, record: Record, name: str, payload: Any) -> None:
        association = record.record_type.association(name)
        if association.nested is None:
            raise InvariantViolation(f"{record.record_type.label} does not accept nested attributes for '{name}'")
        if association.is_collection:
            self._assign_collection(record, association, payload)
        else:
            self._assign_one(record, association, payload)

    def assign_attributes(self, record: Record, attributes: Mapping[str, Any]) -> None:
        """Assign plain attributes and route ``<association>_attributes`` keys to ``assign``."""
        plain: dict[str, Any] = {}
        nested: list[tuple[str, Any]] = []
        associations = record.record_type.associations
        for key, value in attributes.items():
            key = str(key)
            if key.endswith(NESTED_SUFFIX) and key[: -len(NESTED_SUFFIX)] in associations:
                nested.append((key[: -len(NESTED_SUFFIX)], value))
            else:
                plain[key] = value
        record.assign_attributes(plain)
        for name, payload in nested:
            self.assign(record, name, payload)

    # -- one-to-one --------------------------------------------------------

    def _assign_one(self, record: Record, association: Association, payload: Any) -> None:
        attributes = self._normalize(association, payload)
        options = association.nested
        assert options is not None
        node = record.association(association.name)
        existing = node.reader()
        assert existing is None or isinstance(existing, Record)
        raw_id = attributes.get("id")

        if (
            (options.update_only or not is_blank(raw_id))
            and existing is not None
            and (options.update_only or str(existing.primary_key) == str(raw_id))
        ):
            if not self._call_reject_if(association, attributes):
                self._assign_to_or_mark_for_destruction(existing, attributes, association.allow_destroy)
        elif not is_blank(raw_id):
            raise self._not_found(record, association, raw_id)
        elif self._has_destroy_flag(attributes):
            if association.allow_destroy and existing is not None:
                existing.mark_for_destruction()
        elif not self._call_reject_if(association, attributes):
            assignable = self._assignable(attributes)
            if existing is not None and existing.is_new:
                child = existing
            else:
                child = node.build()
            self.assign_attributes(child, assignable)
            self._initialize_foreign_key(record, association, child)

    # -- collections -------------------------------------------------------

    def _assign_collection(self, record: Record, association: Association, payload: Any) -> None:
        options = association.nested
        assert options is not None
        if isinstance(payload, Mapping):
            keys = {str(key) for key in payload}
            if "id" in keys or "_destroy" in keys:
                raw_entries = [payload]
            else:
                raw_entries = [payload[key] for key in sorted(payload, key=str)]
        elif isinstance(payload, (list, tuple)):
            raw_entries = list(payload)
        else:
            raise TypeError(
                f"Hash or Array expected for attribute `{association.name}`, "
                f"got {type(payload).__name__} ({payload!r})"
            )
        entries = [self._normalize(association, entry) for entry in raw_entries]

        limit = options.resolved_limit()
        if limit is not None:
            new_entries = sum(1 for entry in entries if is_blank(entry.get("id")))
            if new_entries > limit:
                raise TooManyRecordsError(
                    f"Maximum {limit} records are allowed. Got {new_entries} records instead."
                )

        node = record.association(association.name)
        ids = [entry["id"] for entry in entries if not is_blank(entry.get("id"))]
        existing = node.find_by_ids(ids) if ids else {}
        for raw_id in ids:
            if str(raw_id) not in existing:
                raise self._not_found(record, association, raw_id)

        for attributes in entries:
            raw_id = attributes.get("id")
            if is_blank(raw_id):
                if not self._reject_new_record(association, attributes):
                    child = node.build()
                    self.assign_attributes(child, self._assignable(attributes))
                    self._initialize_foreign_key(record, association, child)
            elif not self._call_reject_if(association, attributes):
                child = existing[str(raw_id)]
                node.adopt([child])
                self._assign_to_or_mark_for_destruction(child, attributes, association.allow_destroy)
        logger.debug("Assigned %d nested entr(ies) to %s.%s", len(entries), record, association.name)

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _normalize(association: Association, attributes: Any) -> dict[str, Any]:
        if not isinstance(attributes, Mapping):
            raise TypeError(
                f"Hash expected for attribute `{association.name}`, "
                f"got {type(attributes).__name__} ({attributes!r})"
            )
        return {str(key): value for key, value in attributes.items()}

    @staticmethod
    def _assignable(attributes: Mapping[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in attributes.items() if key not in UNASSIGNABLE_KEYS}

    def _assign_to_or_mark_for_destruction(
        self, record: Record, attributes: Mapping[str, Any], allow_destroy: bool
    ) -> None:
        self.assign_attributes(record, self._assignable(attributes))
        if allow_destroy and self._has_destroy_flag(attributes):
            record.mark_for_destruction()

    @staticmethod
    def _has_destroy_flag(attributes: Mapping[str, Any]) -> bool:
        return cast_boolean(attributes.get("_destroy")) is True

    def _will_be_destroyed(self, association: Association, attributes: Mapping[str, Any]) -> bool:
        return association.allow_destroy and self._has_destroy_flag(attributes)

    def _reject_new_record(self, association: Association, attributes: dict[str, Any]) -> bool:
        return self._will_be_destroyed(association, attributes) or self._call_reject_if(association, attributes)

    def _call_reject_if(self, association: Association, attributes: dict[str, Any]) -> bool:
        if self._will_be_destroyed(association, attributes):
            return False
        assert association.nested is not None
        reject_if = association.nested.reject_if
        if reject_if is None:
            return False
        if reject_if == "all_blank":
            return all(is_blank(value) for key, value in attributes.items() if key != "_destroy")
        return bool(reject_if(dict(attributes)))

    @staticmethod
    def _initialize_foreign_key(owner: Record, association: Association, child: Record) -> None:
        if association.ownership is Ownership.FOREIGN_KEY_ON_TARGET and not owner.is_new:
            child.write(association.foreign_key, owner.primary_key)

    @staticmethod
    def _not_found(owner: Record, association: Association, raw_id: Any) -> NotFoundError:
        return NotFoundError(
            f"Couldn't find {association.target.label} with ID={raw_id} "
            f"for {owner.record_type.label} with ID={owner.primary_key}",
            model=association.target.label,
            primary_key=raw_id,
        )


_default_assigner = NestedAttributesAssigner()


def assign_nested_attributes(record: Record, name: str, payload: Any) -> None:
    _default_assigner.assign(record, name, payload)
