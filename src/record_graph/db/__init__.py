from record_graph.db.engine import DEFAULT_DATABASE_URL, get_engine
from record_graph.db.memory import InMemoryJoinRow, InMemoryRecordStore, InMemoryTable
from record_graph.db.sql import SqlRecordStore, build_metadata, column_type

__all__ = [
    "DEFAULT_DATABASE_URL",
    "InMemoryJoinRow",
    "InMemoryRecordStore",
    "InMemoryTable",
    "SqlRecordStore",
    "build_metadata",
    "column_type",
    "get_engine",
]
