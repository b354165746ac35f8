import copy
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from record_graph.core.associations import Association, Ownership
from record_graph.core.record import Record, RecordType
from record_graph.core.tracker import ChangeSet
from record_graph.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InMemoryJoinRow:
    owner_key: Any
    target_key: Any


@dataclass
class InMemoryTable:
    name: str
    rows: dict[Any, dict[str, Any]] = field(default_factory=dict)
    next_id: int = 1


class InMemoryRecordStore:
    """Dict-backed ``RecordStore``.

    Rows are kept in their serialized form, keyed by primary key. A
    transaction snapshots every table at ``begin_transaction`` and puts the
    snapshot back on ``rollback``. ``fetch_count`` and ``statements`` record
    the traffic so callers can assert that nothing was loaded behind their
    back.
    """

    def __init__(self, record_types: Iterable[RecordType] = ()) -> None:
        self.tables: dict[str, InMemoryTable] = {}
        self.join_tables: dict[str, set[InMemoryJoinRow]] = {}
        self.fetch_count = 0
        self.statements: list[str] = []
        self._saved: tuple[dict[str, InMemoryTable], dict[str, set[InMemoryJoinRow]]] | None = None
        for record_type in record_types:
            self.register(record_type)

    def register(self, record_type: RecordType) -> None:
        self._table(record_type)
        for association in record_type.associations.values():
            if association.join_table is not None:
                self.join_tables.setdefault(association.join_table, set())

    def _table(self, record_type: RecordType) -> InMemoryTable:
        table = self.tables.get(record_type.table)
        if table is None:
            table = self.tables[record_type.table] = InMemoryTable(record_type.table)
        return table

    def _log(self, statement: str) -> None:
        self.statements.append(statement)
        logger.debug("memory: %s", statement)

    @staticmethod
    def _key(record_type: RecordType, primary_key: Any) -> Any:
        return record_type.attributes[record_type.primary_key].cast(primary_key)

    def _instantiate(self, record_type: RecordType, row: dict[str, Any]) -> Record:
        return record_type.instantiate(copy.deepcopy(row), self)

    # -- reads -----------------------------------------------------------

    def fetch(self, record_type: RecordType, primary_key: Any) -> Record:
        self.fetch_count += 1
        self._log(f"SELECT {record_type.table} WHERE {record_type.primary_key} = {primary_key!r}")
        row = self._table(record_type).rows.get(self._key(record_type, primary_key))
        if row is None:
            raise NotFoundError(
                f"Couldn't find {record_type.label} with '{record_type.primary_key}'={primary_key}",
                model=record_type.label,
                primary_key=primary_key,
            )
        return self._instantiate(record_type, row)

    def fetch_associated(
        self, association: Association, owner: Record, ids: Sequence[Any] | None = None
    ) -> list[Record]:
        self.fetch_count += 1
        target = association.target
        table = self._table(target)
        ownership = association.ownership
        self._log(f"SELECT {target.table} FOR {owner.record_type.table}.{association.name} ids={ids!r}")

        if ownership is Ownership.FOREIGN_KEY_ON_OWNER:
            key = owner.read(association.foreign_key)
            rows = [table.rows[key]] if key in table.rows else []
        elif ownership is Ownership.JOIN_TABLE:
            assert association.join_table is not None
            keys = sorted(
                link.target_key
                for link in self.join_tables.get(association.join_table, set())
                if link.owner_key == owner.primary_key
            )
            rows = [table.rows[key] for key in keys if key in table.rows]
        else:
            rows = [row for row in table.rows.values() if row.get(association.foreign_key) == owner.primary_key]

        if ids is not None:
            wanted = {str(i) for i in ids}
            rows = [row for row in rows if str(row[target.primary_key]) in wanted]
        if not association.is_collection:
            rows = rows[:1]
        return [self._instantiate(target, row) for row in rows]

    def rows(self, record_type: RecordType) -> list[dict[str, Any]]:
        return [dict(row) for row in self._table(record_type).rows.values()]

    def count(self, record_type: RecordType) -> int:
        return len(self._table(record_type).rows)

    def links(self, association: Association) -> set[tuple[Any, Any]]:
        assert association.join_table is not None
        return {(link.owner_key, link.target_key) for link in self.join_tables.get(association.join_table, set())}

    # -- writes ----------------------------------------------------------

    def insert(self, record: Record) -> Any:
        record_type = record.record_type
        table = self._table(record_type)
        row = {
            name: record_type.attributes[name].serialize(copy.deepcopy(value))
            for name, value in record.attributes.items()
        }
        key = row.get(record_type.primary_key)
        if key is None:
            key = table.next_id
        if key in table.rows:
            raise StorageError(f"duplicate primary key {key!r} in {table.name}")
        if isinstance(key, int):
            table.next_id = max(table.next_id, key + 1)
        row[record_type.primary_key] = key
        table.rows[key] = row
        self._log(f"INSERT {table.name} {key!r}")
        return key

    def update(self, record: Record, changes: ChangeSet) -> None:
        record_type = record.record_type
        table = self._table(record_type)
        row = table.rows.get(record.primary_key)
        if row is None:
            raise StorageError(f"no row {record.primary_key!r} in {table.name} to update")
        for name, (_, value) in changes.items():
            row[name] = record_type.attributes[name].serialize(copy.deepcopy(value))
        self._log(f"UPDATE {table.name} {record.primary_key!r} SET {', '.join(changes)}")

    def delete(self, record_type: RecordType, primary_key: Any) -> None:
        table = self._table(record_type)
        table.rows.pop(self._key(record_type, primary_key), None)
        self._log(f"DELETE {table.name} {primary_key!r}")

    def link(self, association: Association, owner_key: Any, target_key: Any) -> None:
        assert association.join_table is not None
        self.join_tables.setdefault(association.join_table, set()).add(InMemoryJoinRow(owner_key, target_key))
        self._log(f"INSERT {association.join_table} ({owner_key!r}, {target_key!r})")

    def unlink(self, association: Association, owner_key: Any, target_key: Any) -> None:
        assert association.join_table is not None
        self.join_tables.setdefault(association.join_table, set()).discard(InMemoryJoinRow(owner_key, target_key))
        self._log(f"DELETE {association.join_table} ({owner_key!r}, {target_key!r})")

    # -- transactions ----------------------------------------------------

    def begin_transaction(self) -> None:
        if self._saved is not None:
            raise StorageError("a transaction is already open")
        self._saved = (copy.deepcopy(self.tables), copy.deepcopy(self.join_tables))
        self._log("BEGIN")

    def commit(self) -> None:
        self._saved = None
        self._log("COMMIT")

    def rollback(self) -> None:
        if self._saved is not None:
            self.tables, self.join_tables = self._saved
            self._saved = None
        self._log("ROLLBACK")

    def ensure_ready(self) -> None:
        pass

    def dispose(self) -> None:
        self.tables.clear()
        self.join_tables.clear()
        self._saved = None
