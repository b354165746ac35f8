import logging
from typing import Annotated

import typer

from record_graph.cli.db import db_app
from record_graph.cli.schema import schema_app

app = typer.Typer(
    name="record-graph",
    help="Record Graph CLI: inspect record schemas and create their tables.",
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


@app.callback()
def configure(
    log_level: Annotated[str, typer.Option("--log-level", help="Logging level for record_graph.")] = "WARNING",
) -> None:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise typer.BadParameter(f"unknown log level {log_level!r}", param_hint="--log-level")
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


app.add_typer(schema_app, name="schema")
app.add_typer(db_app, name="db")


def main() -> None:
    app()
