from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from record_graph.core.record import Record
    from record_graph.core.validation import ValidationIssue


class Validator(Protocol):
    def validate(self, record: "Record") -> Sequence["ValidationIssue"]: ...
