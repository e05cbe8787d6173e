"""
csvferry templates / csvferry match - inspect the template index.
"""

import os
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from csvferry.config import load_config
from csvferry.config.settings import apply_env_overrides
from csvferry.exceptions import ConfigurationError
from csvferry.templates import DEFAULT_SUFFIX, TemplateIndex, build_index, match

console = Console()

app = typer.Typer(name="templates", help="List loaded table templates", invoke_without_command=True)


def _load_index(template_dir: Path | None, project_dir: Path, suffix: str | None) -> TemplateIndex:
    data = apply_env_overrides(load_config(project_dir).data, os.environ)
    directory = template_dir or (data.get("templates") or {}).get("dir")
    if not directory:
        raise ConfigurationError("No template directory: pass --template-dir or set TEMPLATE_DIR")
    suffix = suffix or (data.get("templates") or {}).get("suffix") or DEFAULT_SUFFIX
    extension = (data.get("watch") or {}).get("extension") or ".csv"
    return build_index(Path(directory), suffix, extension)


@app.callback()
def list_templates(
    template_dir: Path | None = typer.Option(None, "--template-dir", "-t", help="Template directory"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Directory holding config.yaml"),
    suffix: str | None = typer.Option(None, help="Template file name suffix"),
) -> None:
    """Show every table and its expected header."""
    try:
        index = _load_index(template_dir, project_dir, suffix)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    table = Table(title=f"{len(index)} template(s)")
    table.add_column("Table", style="cyan")
    table.add_column("Columns", justify="right")
    table.add_column("Header")
    for signature, name in sorted(index.items(), key=lambda item: item[1]):
        table.add_row(name, str(len(signature)), ",".join(signature))
    console.print(table)


def match_files(
    files: list[Path] = typer.Argument(..., help="CSV files to classify"),
    template_dir: Path | None = typer.Option(None, "--template-dir", "-t", help="Template directory"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Directory holding config.yaml"),
    suffix: str | None = typer.Option(None, help="Template file name suffix"),
) -> None:
    """Report which table each file would be shipped to. Exits 2 if any file is unmatched."""
    try:
        index = _load_index(template_dir, project_dir, suffix)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    table = Table()
    table.add_column("File")
    table.add_column("Table", style="cyan")
    table.add_column("Reason", style="yellow")
    misses = 0
    for path in files:
        result = match(index, path)
        if not result.matched:
            misses += 1
        table.add_row(str(path), result.table_name or "-", result.reason or "")
    console.print(table)

    if misses:
        raise typer.Exit(2)
