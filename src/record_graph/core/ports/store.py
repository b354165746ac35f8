from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol

from record_graph.core.tracker import ChangeSet

if TYPE_CHECKING:
    from record_graph.core.associations import Association
    from record_graph.core.record import Record, RecordType


class RecordStore(Protocol):
    def fetch(self, record_type: "RecordType", primary_key: Any) -> "Record": ...

    def fetch_associated(
        self, association: "Association", owner: "Record", ids: Sequence[Any] | None = None
    ) -> list["Record"]: ...

    def insert(self, record: "Record") -> Any: ...

    def update(self, record: "Record", changes: ChangeSet) -> None: ...

    def delete(self, record_type: "RecordType", primary_key: Any) -> None: ...

    def link(self, association: "Association", owner_key: Any, target_key: Any) -> None: ...

    def unlink(self, association: "Association", owner_key: Any, target_key: Any) -> None: ...

    def begin_transaction(self) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def ensure_ready(self) -> None: ...

    def dispose(self) -> None: ...
