"""Database commands."""

from typing import Annotated

import typer
from rich.console import Console

from record_graph.cli.schema import load_schema
from record_graph.errors import StorageError

db_app = typer.Typer(help="Manage the tables backing a schema.")
console = Console()


@db_app.command("init")
def init(
    schema: Annotated[str, typer.Argument(help="Schema as MODULE:ATTRIBUTE.")],
    url: Annotated[str | None, typer.Option(help="Database URL (defaults to $DATABASE_URL).")] = None,
) -> None:
    """Create the tables for every record type in the schema."""
    from record_graph.db.engine import get_engine
    from record_graph.db.sql import SqlRecordStore

    record_types = load_schema(schema)
    store = SqlRecordStore(get_engine(url), record_types)
    try:
        store.ensure_ready()
    except StorageError as exc:
        console.print(f"[red]Could not create tables: {exc}[/red]")
        raise typer.Exit(1) from exc
    finally:
        store.dispose()
    for name in store.metadata.tables:
        console.print(f"[green]ok[/green] {name}")
