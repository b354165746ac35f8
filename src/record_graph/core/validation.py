"""Validation results and a small rule-based validator.

``Errors`` collects ``ValidationIssue``s keyed by attribute path, where nested
paths look like ``ship.name`` or ``birds[1].name``. ``RuleValidator`` is a
ready-made implementation of the ``Validator`` port.
"""

from collections.abc import Callable, Iterable, Iterator
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from record_graph.core.types import is_blank

if TYPE_CHECKING:
    from record_graph.core.record import Record, RecordType

BASE = "base"

DEFAULT_MESSAGES: dict[str, str] = {
    "blank": "can't be blank",
    "invalid": "is invalid",
    "too_long": "is too long (maximum is {count} characters)",
    "too_short": "is too short (minimum is {count} characters)",
    "inclusion": "is not included in the list",
    "not_a_number": "is not a number",
}


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    kind: str = "invalid"
    message: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        if self.message is not None:
            return self.message
        template = DEFAULT_MESSAGES.get(self.kind, self.kind.replace("_", " "))
        return template.format(**self.options)

    def prefixed(self, prefix: str) -> "ValidationIssue":
        return self.model_copy(update={"path": f"{prefix}.{self.path}"})


def _humanize(path: str) -> str:
    text = path.replace(".", " ").replace("_", " ")
    return text[:1].upper() + text[1:]


class Errors:
    def __init__(self) -> None:
        self._issues: list[ValidationIssue] = []

    def add(self, path: str, kind: str = "invalid", message: str | None = None, **options: Any) -> ValidationIssue:
        issue = ValidationIssue(path=path, kind=kind, message=message, options=options)
        self.append(issue)
        return issue

    def append(self, issue: ValidationIssue) -> None:
        if issue not in self._issues:
            self._issues.append(issue)

    def extend(self, issues: Iterable[ValidationIssue]) -> None:
        for issue in issues:
            self.append(issue)

    def clear(self) -> None:
        self._issues.clear()

    def __getitem__(self, path: str) -> list[str]:
        return [issue.text for issue in self._issues if issue.path == path]

    def __contains__(self, path: object) -> bool:
        return any(issue.path == path for issue in self._issues)

    def __iter__(self) -> Iterator[ValidationIssue]:
        return iter(list(self._issues))

    def __len__(self) -> int:
        return len(self._issues)

    def __bool__(self) -> bool:
        return bool(self._issues)

    def __repr__(self) -> str:
        return f"Errors({self.to_dict()!r})"

    @property
    def paths(self) -> list[str]:
        seen: dict[str, None] = {}
        for issue in self._issues:
            seen.setdefault(issue.path, None)
        return list(seen)

    def details(self, path: str) -> list[dict[str, Any]]:
        return [{"error": issue.kind, **issue.options} for issue in self._issues if issue.path == path]

    def to_dict(self) -> dict[str, list[str]]:
        return {path: self[path] for path in self.paths}

    def full_messages(self) -> list[str]:
        messages = []
        for issue in self._issues:
            if issue.path == BASE:
                messages.append(issue.text)
            else:
                messages.append(f"{_humanize(issue.path)} {issue.text}")
        return messages


class Rule:
    """One validation rule; subclasses yield issues for a record."""

    def check(self, record: "Record") -> Iterable[ValidationIssue]:
        raise NotImplementedError


class Presence(Rule):
    def __init__(self, *names: str) -> None:
        self.names = names

    def check(self, record: "Record") -> Iterable[ValidationIssue]:
        for name in self.names:
            if not record.has_attribute(name):
                continue
            value = record.read(name)
            if value is not False and is_blank(value):
                yield ValidationIssue(path=name, kind="blank")


class Length(Rule):
    def __init__(self, name: str, *, minimum: int | None = None, maximum: int | None = None) -> None:
        self.name = name
        self.minimum = minimum
        self.maximum = maximum

    def check(self, record: "Record") -> Iterable[ValidationIssue]:
        if not record.has_attribute(self.name):
            return
        value = record.read(self.name)
        if value is None:
            return
        size = len(value)
        if self.maximum is not None and size > self.maximum:
            yield ValidationIssue(path=self.name, kind="too_long", options={"count": self.maximum})
        if self.minimum is not None and size < self.minimum:
            yield ValidationIssue(path=self.name, kind="too_short", options={"count": self.minimum})


class Numericality(Rule):
    def __init__(self, name: str, *, allow_none: bool = True) -> None:
        self.name = name
        self.allow_none = allow_none

    def check(self, record: "Record") -> Iterable[ValidationIssue]:
        if not record.has_attribute(self.name):
            return
        value = record.read(self.name)
        if value is None:
            if not self.allow_none:
                yield ValidationIssue(path=self.name, kind="not_a_number")
            return
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            yield ValidationIssue(path=self.name, kind="not_a_number")


class Predicate(Rule):
    """Adds ``kind`` on ``name`` whenever ``test(record)`` is false."""

    def __init__(self, name: str, test: Callable[["Record"], bool], kind: str = "invalid") -> None:
        self.name = name
        self.test = test
        self.kind = kind

    def check(self, record: "Record") -> Iterable[ValidationIssue]:
        if not self.test(record):
            yield ValidationIssue(path=self.name, kind=self.kind)


class RuleValidator:
    def __init__(self) -> None:
        self._rules: dict[str, list[Rule]] = {}

    def register(self, record_type: "RecordType", *rules: Rule) -> None:
        self._rules.setdefault(record_type.name, []).extend(rules)

    def validate(self, record: "Record") -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        for rule in self._rules.get(record.record_type.name, []):
            issues.extend(rule.check(record))
        return issues
