import pytest

from record_graph.core.autosave import AutosaveEngine
from record_graph.core.nested import assign_nested_attributes
from record_graph.core.record import Record
from record_graph.errors import InvariantViolation, NotFoundError, TooManyRecordsError, UnknownAssociationError
from tests.conftest import FaultyRecordStore, PirateSchema

# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


def test_updating_by_id_does_not_load_the_collection(
    schema: PirateSchema, engine: AutosaveEngine, store: FaultyRecordStore, pirate_with_crew: Record
) -> None:
    fetches = store.fetch_count

    engine.assign_nested_attributes(pirate_with_crew, "birds", [{"id": 1, "name": "Grace"}])

    birds = pirate_with_crew.association("birds")
    assert not birds.is_loaded
    assert store.fetch_count == fetches + 1
    assert [bird["name"] for bird in birds.target] == ["Grace"]

    engine.save_or_raise(pirate_with_crew)
    assert [row["name"] for row in store.rows(schema.bird)] == ["Grace", "Tweety"]


def test_mapping_payload_is_processed_in_sorted_key_order(schema: PirateSchema, engine: AutosaveEngine) -> None:
    """Keys are compared as strings, so "10" sorts before "2"."""
    pirate = schema.pirate.new(catchphrase="Arr")

    engine.assign_nested_attributes(
        pirate,
        "birds",
        {"2": {"name": "Second"}, "1": {"name": "First"}, "10": {"name": "Tenth"}},
    )

    assert [bird["name"] for bird in pirate.association("birds").target] == ["First", "Tenth", "Second"]


def test_mapping_payload_with_id_is_a_single_entry(engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    engine.assign_nested_attributes(pirate_with_crew, "birds", {"id": "2", "name": "Jay"})

    assert [bird["name"] for bird in pirate_with_crew.association("birds").target] == ["Jay"]


def test_new_entries_are_built_with_foreign_key(engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    engine.assign_nested_attributes(pirate_with_crew, "birds", [{"name": "Kiwi", "color": "green"}])

    kiwi = pirate_with_crew.association("birds").target[0]
    assert kiwi.is_new
    assert kiwi["pirate_id"] == 1
    assert kiwi["color"] == "green"


def test_destroy_flag_marks_and_is_never_assigned(
    schema: PirateSchema, engine: AutosaveEngine, store: FaultyRecordStore, pirate_with_crew: Record
) -> None:
    engine.assign_nested_attributes(
        pirate_with_crew,
        "birds",
        [{"id": 1, "_destroy": "1"}, {"name": "Kiwi", "_destroy": "0"}],
    )

    polly, kiwi = pirate_with_crew.association("birds").target
    assert polly.marked_for_destruction
    assert not kiwi.marked_for_destruction

    engine.save_or_raise(pirate_with_crew)

    assert polly.is_destroyed
    assert [row["name"] for row in store.rows(schema.bird)] == ["Tweety", "Kiwi"]


def test_destroy_flag_is_ignored_without_allow_destroy(
    schema: PirateSchema, engine: AutosaveEngine, store: FaultyRecordStore, pirate_with_crew: Record
) -> None:
    schema.pirate.accepts_nested_attributes_for("birds")

    engine.assign_nested_attributes(pirate_with_crew, "birds", [{"id": 1, "name": "Grace", "_destroy": "1"}])
    engine.save_or_raise(pirate_with_crew)

    polly = pirate_with_crew.association("birds").target[0]
    assert not polly.marked_for_destruction
    assert polly["name"] == "Grace"
    assert store.count(schema.bird) == 2


def test_reject_if_callable_drops_new_entries(schema: PirateSchema, engine: AutosaveEngine) -> None:
    pirate = schema.pirate.new(catchphrase="Arr")

    engine.assign_nested_attributes(pirate, "birds", [{}, {"name": "Polly"}])

    assert [bird["name"] for bird in pirate.association("birds").target] == ["Polly"]


def test_reject_if_all_blank(schema: PirateSchema, engine: AutosaveEngine) -> None:
    pirate = schema.pirate.new(catchphrase="Arr")

    engine.assign_nested_attributes(
        pirate,
        "parrots",
        [{"name": ""}, {"name": "Iago"}, {"name": "  ", "_destroy": "0"}],
    )

    assert [parrot["name"] for parrot in pirate.association("parrots").target] == ["Iago"]


def test_reject_if_applies_to_existing_records(
    schema: PirateSchema, engine: AutosaveEngine, pirate_with_crew: Record
) -> None:
    schema.pirate.accepts_nested_attributes_for("birds", reject_if=lambda attrs: attrs.get("name") == "Nope")

    engine.assign_nested_attributes(pirate_with_crew, "birds", [{"id": 1, "name": "Nope"}])

    assert pirate_with_crew.association("birds").target == []


def test_reject_if_is_skipped_for_entries_being_destroyed(
    schema: PirateSchema, engine: AutosaveEngine, pirate_with_crew: Record
) -> None:
    """An entry flagged for destruction is marked even when reject_if would drop it."""
    schema.pirate.accepts_nested_attributes_for("birds", allow_destroy=True, reject_if=lambda attrs: True)

    engine.assign_nested_attributes(pirate_with_crew, "birds", [{"id": 1, "_destroy": "true"}])

    assert pirate_with_crew.association("birds").target[0].marked_for_destruction


def test_limit_is_enforced_before_anything_is_built(schema: PirateSchema, engine: AutosaveEngine) -> None:
    schema.pirate.accepts_nested_attributes_for("birds", limit=2)
    pirate = schema.pirate.new(catchphrase="Arr")

    with pytest.raises(TooManyRecordsError, match="Maximum 2 records are allowed. Got 3 records instead."):
        engine.assign_nested_attributes(pirate, "birds", [{"name": "A"}, {"name": "B"}, {"name": "C"}])

    assert pirate.association("birds").target == []


def test_limit_may_be_callable_and_ignores_entries_with_id(
    schema: PirateSchema, engine: AutosaveEngine, pirate_with_crew: Record
) -> None:
    """Only entries that would build a new record count towards the limit."""
    schema.pirate.accepts_nested_attributes_for("birds", limit=lambda: 1)

    engine.assign_nested_attributes(pirate_with_crew, "birds", [{"id": 1, "name": "Grace"}, {"name": "Kiwi"}])

    assert len(pirate_with_crew.association("birds").target) == 2
    with pytest.raises(TooManyRecordsError):
        engine.assign_nested_attributes(pirate_with_crew, "birds", [{"name": "A"}, {"name": "B"}])


def test_unknown_id_raises_before_any_change(engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    """A payload mixing a known and an unknown id leaves the collection and the known child untouched."""
    with pytest.raises(NotFoundError, match="Couldn't find Bird with ID=99 for Pirate with ID=1") as info:
        engine.assign_nested_attributes(
            pirate_with_crew,
            "birds",
            [{"name": "Kiwi"}, {"id": 1, "name": "Grace"}, {"id": 99, "name": "Ghost"}],
        )

    assert info.value.model == "Bird"
    assert info.value.primary_key == 99
    assert pirate_with_crew.association("birds").target == []


def test_unknown_id_on_new_owner(schema: PirateSchema, engine: AutosaveEngine) -> None:
    pirate = schema.pirate.new(catchphrase="Arr")

    with pytest.raises(NotFoundError, match="Couldn't find Bird with ID=1 for Pirate with ID=None"):
        engine.assign_nested_attributes(pirate, "birds", [{"id": 1}])


def test_invalid_payload_type(schema: PirateSchema, engine: AutosaveEngine) -> None:
    pirate = schema.pirate.new(catchphrase="Arr")

    with pytest.raises(TypeError, match="Hash or Array expected for attribute `birds`"):
        engine.assign_nested_attributes(pirate, "birds", "Polly")
    with pytest.raises(TypeError, match="Hash expected for attribute `birds`"):
        engine.assign_nested_attributes(pirate, "birds", ["Polly"])


# ---------------------------------------------------------------------------
# One-to-one
# ---------------------------------------------------------------------------


def test_one_to_one_update_by_id(engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    engine.assign_nested_attributes(pirate_with_crew, "ship", {"id": "1", "name": "Black Pearl"})
    engine.save_or_raise(pirate_with_crew)

    ship = pirate_with_crew.association("ship").target
    assert ship is not None
    assert ship.primary_key == 1
    assert ship.previous_changes == {"name": ("Nights Dirty Lightning", "Black Pearl")}


def test_one_to_one_unknown_id(engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    with pytest.raises(NotFoundError, match="Couldn't find Ship with ID=5 for Pirate with ID=1"):
        engine.assign_nested_attributes(pirate_with_crew, "ship", {"id": 5, "name": "Ghost"})


def test_one_to_one_without_id_replaces_child(engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    old_ship = pirate_with_crew.association("ship").reader()

    engine.assign_nested_attributes(pirate_with_crew, "ship", {"name": "Flying Dutchman"})

    new_ship = pirate_with_crew.association("ship").target
    assert new_ship is not old_ship
    assert new_ship is not None and new_ship.is_new
    assert new_ship["pirate_id"] == 1
    assert old_ship is not None and not old_ship.marked_for_destruction
    assert pirate_with_crew.association("ship").detached == [old_ship]


def test_one_to_one_destroy_without_id(engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    engine.assign_nested_attributes(pirate_with_crew, "ship", {"_destroy": "1"})

    ship = pirate_with_crew.association("ship").target
    assert ship is not None
    assert ship.marked_for_destruction
    assert ship.primary_key == 1


def test_one_to_one_update_only(schema: PirateSchema, engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    schema.pirate.accepts_nested_attributes_for("ship", update_only=True)

    engine.assign_nested_attributes(pirate_with_crew, "ship", {"name": "Black Pearl"})

    ship = pirate_with_crew.association("ship").target
    assert ship is not None
    assert ship.primary_key == 1
    assert ship["name"] == "Black Pearl"


def test_one_to_one_reuses_unsaved_child(schema: PirateSchema, engine: AutosaveEngine) -> None:
    """Assigning twice to an unsaved has-one updates the same child."""
    pirate = schema.pirate.new(catchphrase="Arr")
    engine.assign_nested_attributes(pirate, "ship", {"name": "Sloop"})
    first = pirate.association("ship").target

    engine.assign_nested_attributes(pirate, "ship", {"name": "Brig"})

    assert pirate.association("ship").target is first
    assert first is not None and first["name"] == "Brig"


def test_foreign_key_in_payload_does_not_override_owner(engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    engine.assign_nested_attributes(pirate_with_crew, "ship", {"name": "Sloop", "pirate_id": 42})

    ship = pirate_with_crew.association("ship").target
    assert ship is not None
    assert ship["pirate_id"] == 1


# ---------------------------------------------------------------------------
# Routing and declarations
# ---------------------------------------------------------------------------


def test_nested_payload_builds_whole_tree(
    schema: PirateSchema, engine: AutosaveEngine, store: FaultyRecordStore
) -> None:
    pirate = schema.pirate.new()

    engine.nested.assign_attributes(
        pirate,
        {
            "catchphrase": "Arr",
            "ship_attributes": {
                "name": "Black Pearl",
                "parts_attributes": [{"name": "Mast", "trinkets_attributes": [{"name": "Compass"}]}],
            },
        },
    )
    engine.save_or_raise(pirate)

    assert store.count(schema.ship) == 1
    assert store.rows(schema.part)[0]["ship_id"] == 1
    assert store.rows(schema.trinket)[0]["ship_part_id"] == 1


def test_destroying_child_through_owner_payload(engine: AutosaveEngine, pirate_with_crew: Record) -> None:
    engine.nested.assign_attributes(
        pirate_with_crew,
        {"catchphrase": "Arr", "ship_attributes": {"id": 1, "_destroy": "1"}},
    )

    assert engine.save(pirate_with_crew)

    engine.reload(pirate_with_crew)
    assert pirate_with_crew["catchphrase"] == "Arr"
    assert pirate_with_crew.association("ship").reader() is None


def test_association_without_nested_attributes(schema: PirateSchema) -> None:
    ship = schema.ship.new(name="Sloop")

    with pytest.raises(InvariantViolation, match="Ship does not accept nested attributes for 'pirate'"):
        assign_nested_attributes(ship, "pirate", {"catchphrase": "Arr"})
    with pytest.raises(UnknownAssociationError):
        assign_nested_attributes(ship, "hull", {})
