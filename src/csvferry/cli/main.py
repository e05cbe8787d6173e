"""
Main CLI entry point.
"""

import typer

from csvferry import __version__
from csvferry.cli import templates, watch


def version_callback(value: bool):
    """Callback to display version and exit."""
    if value:
        typer.echo(f"csvferry version {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="csvferry",
    help="csvferry - ship CSV drops to per-table directories on a remote host",
    add_completion=False,
)

app.add_typer(watch.app, name="watch")
app.add_typer(templates.app, name="templates")
app.command("match", help="Classify CSV files against the templates")(templates.match_files)


@app.callback(invoke_without_command=True)
def entrypoint(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        help="Show version and exit.",
    ),
):
    """
    csvferry - ship CSV drops to per-table directories on a remote host.

    Run 'csvferry <command> --help' for help on a specific command.
    """
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
