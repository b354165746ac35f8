"""Shared fixtures and helpers for tests."""

import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from record_graph.core.autosave import AutosaveEngine
from record_graph.core.record import Record, RecordType
from record_graph.core.types import IntegerType, JsonType, TextType
from record_graph.core.validation import Presence, RuleValidator, ValidationIssue
from record_graph.db import InMemoryRecordStore
from record_graph.errors import StorageError

logger = logging.getLogger(__name__)

_REPO_ROOT = Path(__file__).parent.parent


# ---------------------------------------------------------------------------
# Auto-marker: tag tests as "unit" or "integration" based on directory
# ---------------------------------------------------------------------------


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        test_path = Path(str(item.fspath))
        rel = test_path.relative_to(_REPO_ROOT / "tests")
        parts = rel.parts
        if parts and parts[0] == "integration":
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# ---------------------------------------------------------------------------
# Pirate schema
# ---------------------------------------------------------------------------


@dataclass
class PirateSchema:
    pirate: RecordType
    ship: RecordType
    part: RecordType
    trinket: RecordType
    bird: RecordType
    parrot: RecordType
    rules: RuleValidator

    @property
    def types(self) -> list[RecordType]:
        return [self.pirate, self.ship, self.part, self.trinket, self.bird, self.parrot]


def build_pirate_schema() -> PirateSchema:
    """pirate -> ship -> parts -> trinkets, pirate -> birds, pirate <-> parrots."""
    pirate = RecordType("pirate", {"catchphrase": TextType(), "skill": IntegerType(), "loot": JsonType()})
    ship = RecordType("ship", {"name": TextType()})
    part = RecordType("ship_part", {"name": TextType()})
    trinket = RecordType("trinket", {"name": TextType()})
    bird = RecordType("bird", {"name": TextType(), "color": TextType()})
    parrot = RecordType("parrot", {"name": TextType()})

    pirate.has_one("ship", ship)
    pirate.has_many("birds", bird)
    pirate.has_and_belongs_to_many("parrots", parrot)
    ship.belongs_to("pirate", pirate)
    ship.has_many("parts", part)
    part.has_many("trinkets", trinket)

    pirate.accepts_nested_attributes_for("ship", allow_destroy=True)
    pirate.accepts_nested_attributes_for("birds", allow_destroy=True, reject_if=lambda attrs: not attrs)
    pirate.accepts_nested_attributes_for("parrots", allow_destroy=True, reject_if="all_blank")
    ship.accepts_nested_attributes_for("parts", allow_destroy=True)
    part.accepts_nested_attributes_for("trinkets", allow_destroy=True)

    rules = RuleValidator()
    rules.register(pirate, Presence("catchphrase"))
    for record_type in (ship, part, trinket, bird, parrot):
        rules.register(record_type, Presence("name"))
    return PirateSchema(pirate, ship, part, trinket, bird, parrot, rules)


class SpyValidator:
    """Records every record handed to the wrapped validator."""

    def __init__(self, inner: RuleValidator) -> None:
        self.inner = inner
        self.validated: list[Record] = []

    def validate(self, record: Record) -> list[ValidationIssue]:
        self.validated.append(record)
        return self.inner.validate(record)

    def saw(self, record: Record) -> bool:
        return any(seen is record for seen in self.validated)


class FaultyRecordStore(InMemoryRecordStore):
    """In-memory store that can be told to raise on the Nth call of a write method."""

    def __init__(self, record_types: Any = ()) -> None:
        super().__init__(record_types)
        self.calls: Counter[str] = Counter()
        self._faults: dict[str, tuple[int, Exception]] = {}

    def fail_on(self, method: str, call: int = 1, error: Exception | None = None) -> None:
        self._faults[method] = (self.calls[method] + call, error or StorageError(f"{method} failed"))

    def _tick(self, method: str) -> None:
        self.calls[method] += 1
        fault = self._faults.get(method)
        if fault is not None and self.calls[method] == fault[0]:
            del self._faults[method]
            raise fault[1]

    def insert(self, record: Record) -> Any:
        self._tick("insert")
        return super().insert(record)

    def update(self, record: Record, changes: Any) -> None:
        self._tick("update")
        super().update(record, changes)

    def delete(self, record_type: RecordType, primary_key: Any) -> None:
        self._tick("delete")
        super().delete(record_type, primary_key)

    def link(self, association: Any, owner_key: Any, target_key: Any) -> None:
        self._tick("link")
        super().link(association, owner_key, target_key)

    def unlink(self, association: Any, owner_key: Any, target_key: Any) -> None:
        self._tick("unlink")
        super().unlink(association, owner_key, target_key)


@pytest.fixture
def schema() -> PirateSchema:
    return build_pirate_schema()


@pytest.fixture
def store(schema: PirateSchema) -> FaultyRecordStore:
    return FaultyRecordStore(schema.types)


@pytest.fixture
def validator(schema: PirateSchema) -> SpyValidator:
    return SpyValidator(schema.rules)


@pytest.fixture
def engine(store: FaultyRecordStore, validator: SpyValidator) -> AutosaveEngine:
    return AutosaveEngine(store, validator)


@pytest.fixture
def pirate_with_crew(schema: PirateSchema, engine: AutosaveEngine) -> Record:
    """A saved pirate with a ship and two birds, freshly loaded with nothing attached."""
    pirate = schema.pirate.new(catchphrase="Don' botharrr talkin' like one, savvy?")
    pirate.association("ship").build({"name": "Nights Dirty Lightning"})
    birds = pirate.association("birds")
    birds.build({"name": "Polly"})
    birds.build({"name": "Tweety"})
    engine.save_or_raise(pirate)
    return engine.find(schema.pirate, pirate.primary_key)
