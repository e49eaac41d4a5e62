from pathlib import Path

import typer
from rich.table import Table

from compscan.core.container import get_container
from compscan.core.decorators import handle_errors
from compscan.core.logging import console
from compscan.core.validation import validate_base_dir

app = typer.Typer()


@app.callback(invoke_without_command=True)
@handle_errors
def main(
    base_dir: Path = typer.Argument(..., help='Directory to inspect for package metadata'),
):
    """
    Detect component patterns without modifying the directory.
    """
    validate_base_dir(base_dir)
    patterns = get_container().get_pattern_producer().extract_component_patterns(base_dir)

    table = Table(title=f"Component Patterns ({len(patterns)})")
    table.add_column('Component', style='cyan')
    table.add_column('Part', style='magenta')
    table.add_column('Version', style='green')
    table.add_column('Type')
    table.add_column('Version Anchor', style='dim')
    table.add_column('Include Pattern', style='dim')
    for cpd in patterns:
        table.add_row(
            cpd.component_name or '',
            cpd.component_part or '',
            cpd.component_version or '',
            cpd.type or '',
            cpd.version_anchor or '',
            cpd.include_pattern or '',
        )
    console.print(table)
