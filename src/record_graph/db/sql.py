import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Connection,
    Date,
    DateTime,
    Engine,
    Float,
    Integer,
    LargeBinary,
    MetaData,
    Numeric,
    Table,
    Text,
    Transaction,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeEngine

from record_graph.core.associations import Association, Ownership
from record_graph.core.record import Record, RecordType
from record_graph.core.tracker import ChangeSet
from record_graph.core.types import (
    AttributeType,
    BinaryType,
    BooleanType,
    DateType,
    DecimalType,
    FloatType,
    IntegerType,
    JsonType,
    TextType,
    TimestampType,
)
from record_graph.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

_SIMPLE_COLUMN_TYPES: list[tuple[type[AttributeType], type[TypeEngine[Any]]]] = [
    (BooleanType, Boolean),
    (IntegerType, Integer),
    (FloatType, Float),
    (TextType, Text),
    (TimestampType, DateTime),
    (DateType, Date),
    (JsonType, JSON),
    (BinaryType, LargeBinary),
]


def column_type(attr_type: AttributeType) -> TypeEngine[Any]:
    if isinstance(attr_type, DecimalType):
        if attr_type.scale is None:
            return Numeric(asdecimal=True)
        return Numeric(precision=18, scale=attr_type.scale, asdecimal=True)
    for attr_class, sql_type in _SIMPLE_COLUMN_TYPES:
        if isinstance(attr_type, attr_class):
            return sql_type()
    return Text()


def build_metadata(record_types: Iterable[RecordType]) -> MetaData:
    """One table per record type plus one per join table, in declaration order."""
    metadata = MetaData()
    record_types = list(record_types)
    for record_type in record_types:
        columns = [
            Column(
                name,
                column_type(attr_type),
                primary_key=name == record_type.primary_key,
                autoincrement=name == record_type.primary_key and isinstance(attr_type, IntegerType),
            )
            for name, attr_type in record_type.attributes.items()
        ]
        Table(record_type.table, metadata, *columns)
    for record_type in record_types:
        for association in record_type.associations.values():
            if association.join_table is None or association.join_table in metadata.tables:
                continue
            assert association.association_foreign_key is not None
            Table(
                association.join_table,
                metadata,
                Column(association.foreign_key, Integer, primary_key=True, autoincrement=False),
                Column(association.association_foreign_key, Integer, primary_key=True, autoincrement=False),
            )
    return metadata


class SqlRecordStore:
    """``RecordStore`` backed by SQLAlchemy Core tables generated from record types."""

    def __init__(self, engine: Engine, record_types: Iterable[RecordType]) -> None:
        self._engine = engine
        self.record_types = list(record_types)
        self.metadata = build_metadata(self.record_types)
        self._conn: Connection | None = None
        self._tx: Transaction | None = None

    @contextmanager
    def _use_conn(self) -> Iterator[Connection]:
        """Yield the open transaction's connection or a new transactional one."""
        try:
            if self._conn is not None:
                yield self._conn
            else:
                with self._engine.begin() as conn:
                    yield conn
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    def _table(self, name: str) -> Table:
        return self.metadata.tables[name]

    @staticmethod
    def _key(record_type: RecordType, primary_key: Any) -> Any:
        return record_type.attributes[record_type.primary_key].cast(primary_key)

    # -- reads -----------------------------------------------------------

    def fetch(self, record_type: RecordType, primary_key: Any) -> Record:
        table = self._table(record_type.table)
        key = self._key(record_type, primary_key)
        with self._use_conn() as conn:
            row = conn.execute(select(table).where(table.c[record_type.primary_key] == key)).mappings().first()
        if row is None:
            raise NotFoundError(
                f"Couldn't find {record_type.label} with '{record_type.primary_key}'={primary_key}",
                model=record_type.label,
                primary_key=primary_key,
            )
        return record_type.instantiate(dict(row), self)

    def fetch_associated(
        self, association: Association, owner: Record, ids: Sequence[Any] | None = None
    ) -> list[Record]:
        target = association.target
        table = self._table(target.table)
        target_key = table.c[target.primary_key]
        ownership = association.ownership

        if ownership is Ownership.FOREIGN_KEY_ON_OWNER:
            query = select(table).where(target_key == owner.read(association.foreign_key))
        elif ownership is Ownership.JOIN_TABLE:
            assert association.join_table is not None and association.association_foreign_key is not None
            join = self._table(association.join_table)
            query = (
                select(table)
                .join(join, join.c[association.association_foreign_key] == target_key)
                .where(join.c[association.foreign_key] == owner.primary_key)
            )
        else:
            query = select(table).where(table.c[association.foreign_key] == owner.primary_key)

        if ids is not None:
            query = query.where(target_key.in_([self._key(target, i) for i in ids]))
        query = query.order_by(target_key)
        if not association.is_collection:
            query = query.limit(1)

        with self._use_conn() as conn:
            rows = conn.execute(query).mappings().all()
        logger.debug("Fetched %d %s row(s) for %r.%s", len(rows), target.table, owner, association.name)
        return [target.instantiate(dict(row), self) for row in rows]

    # -- writes ----------------------------------------------------------

    def insert(self, record: Record) -> Any:
        record_type = record.record_type
        table = self._table(record_type.table)
        values = {
            name: record_type.attributes[name].serialize(value)
            for name, value in record.attributes.items()
            if not (name == record_type.primary_key and value is None)
        }
        with self._use_conn() as conn:
            result = conn.execute(insert(table).values(**values))
            key = result.inserted_primary_key[0] if result.inserted_primary_key else None
        return values.get(record_type.primary_key, key)

    def update(self, record: Record, changes: ChangeSet) -> None:
        record_type = record.record_type
        table = self._table(record_type.table)
        values = {name: record_type.attributes[name].serialize(new) for name, (_, new) in changes.items()}
        with self._use_conn() as conn:
            result = conn.execute(
                update(table).where(table.c[record_type.primary_key] == record.primary_key).values(**values)
            )
            matched = result.rowcount
        if matched == 0:
            raise StorageError(f"no row {record.primary_key!r} in {table.name} to update")

    def delete(self, record_type: RecordType, primary_key: Any) -> None:
        table = self._table(record_type.table)
        key = self._key(record_type, primary_key)
        with self._use_conn() as conn:
            conn.execute(delete(table).where(table.c[record_type.primary_key] == key))

    def _join_condition(self, association: Association, owner_key: Any, target_key: Any) -> tuple[Table, Any]:
        assert association.join_table is not None and association.association_foreign_key is not None
        join = self._table(association.join_table)
        condition = (join.c[association.foreign_key] == owner_key) & (
            join.c[association.association_foreign_key] == target_key
        )
        return join, condition

    def link(self, association: Association, owner_key: Any, target_key: Any) -> None:
        join, condition = self._join_condition(association, owner_key, target_key)
        assert association.association_foreign_key is not None
        with self._use_conn() as conn:
            if conn.execute(select(join).where(condition)).first() is not None:
                return
            conn.execute(
                insert(join).values(
                    {association.foreign_key: owner_key, association.association_foreign_key: target_key}
                )
            )

    def unlink(self, association: Association, owner_key: Any, target_key: Any) -> None:
        join, condition = self._join_condition(association, owner_key, target_key)
        with self._use_conn() as conn:
            conn.execute(delete(join).where(condition))

    # -- transactions ----------------------------------------------------

    def begin_transaction(self) -> None:
        if self._conn is not None:
            raise StorageError("a transaction is already open")
        try:
            self._conn = self._engine.connect()
            self._tx = self._conn.begin()
        except SQLAlchemyError as exc:
            self._release()
            raise StorageError(str(exc)) from exc

    def commit(self) -> None:
        try:
            if self._tx is not None:
                self._tx.commit()
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc
        finally:
            self._release()

    def rollback(self) -> None:
        try:
            if self._tx is not None and self._tx.is_active:
                self._tx.rollback()
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc
        finally:
            self._release()

    def _release(self) -> None:
        if self._conn is not None:
            self._conn.close()
        self._conn = None
        self._tx = None

    def ensure_ready(self) -> None:
        try:
            self.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc
        logger.info("Ensured %d table(s)", len(self.metadata.tables))

    def dispose(self) -> None:
        self._release()
        self._engine.dispose()
