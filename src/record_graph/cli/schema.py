import importlib
from collections.abc import Iterable
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from record_graph.core.record import RecordType

schema_app = typer.Typer(help="Inspect record type declarations.")
console = Console()


def load_schema(path: str) -> list[RecordType]:
    """Import ``module:attribute`` and return the record types it names.

    The attribute may be a single ``RecordType``, an iterable of them, or a
    zero-argument callable returning either.
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise typer.BadParameter(f"expected MODULE:ATTRIBUTE, got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise typer.BadParameter(f"cannot import {module_name!r}: {exc}") from exc
    try:
        value = getattr(module, attribute)
    except AttributeError as exc:
        raise typer.BadParameter(f"{module_name!r} has no attribute {attribute!r}") from exc
    if callable(value) and not isinstance(value, RecordType):
        value = value()
    if isinstance(value, RecordType):
        return [value]
    types = list(value) if isinstance(value, Iterable) else []
    if not types or not all(isinstance(item, RecordType) for item in types):
        raise typer.BadParameter(f"{path!r} does not name record types")
    return types


def _flag(value: bool | None) -> str:
    if value is None:
        return "-"
    return "yes" if value else "no"


@schema_app.command("show")
def show(
    schema: Annotated[str, typer.Argument(help="Schema as MODULE:ATTRIBUTE.")],
) -> None:
    """Show attributes and associations of every record type."""
    for record_type in load_schema(schema):
        attributes = Table(title=f"{record_type.label} ({record_type.table})", show_lines=False)
        attributes.add_column("attribute")
        attributes.add_column("type")
        attributes.add_column("default")
        for name, attr_type in record_type.attributes.items():
            marker = " (pk)" if name == record_type.primary_key else ""
            default = record_type.defaults.get(name)
            attributes.add_row(f"{name}{marker}", attr_type.name, "" if default is None else repr(default))
        console.print(attributes)

        if not record_type.associations:
            continue
        associations = Table(show_lines=False)
        headers = ("association", "kind", "target", "foreign key", "autosave", "validate", "allow destroy", "nested")
        for header in headers:
            associations.add_column(header)
        for association in record_type.associations.values():
            associations.add_row(
                association.name,
                association.kind.value,
                association.target.label,
                association.foreign_key,
                _flag(association.autosave),
                _flag(association.validates),
                _flag(association.allow_destroy),
                _flag(association.nested is not None),
            )
        console.print(associations)
