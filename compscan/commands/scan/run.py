from pathlib import Path

import structlog
import typer
from rich.progress import Progress
from rich.progress import SpinnerColumn
from rich.progress import TextColumn
from rich.progress import TimeElapsedColumn
from rich.markup import escape
from rich.table import Table

from compscan.core.container import get_container
from compscan.core.decorators import handle_errors
from compscan.core.logging import console
from compscan.core.storage import load_reference_inventory
from compscan.core.storage import save_inventory
from compscan.core.validation import validate_base_dir
from compscan.core.validation import validate_reference_file
from compscan.models.inventory import Inventory
from compscan.models.scan_param import ScanParam
from compscan.scan.executor import ScanResult

logger = structlog.get_logger('scan_run')
app = typer.Typer()


def print_summary(result: ScanResult) -> None:
    stats = result.stats
    table = Table(title='Scan Summary')
    table.add_column('Metric', style='cyan')
    table.add_column('Value', style='magenta')
    table.add_row('Artifacts', str(len(result.inventory.artifacts)))
    table.add_row('Component Patterns', str(len(result.inventory.component_patterns)))
    table.add_row('Assets', str(len(result.inventory.asset_metadata)))
    table.add_row('Directories', str(stats.directories))
    table.add_row('Files', str(stats.files))
    table.add_row('Extracted', str(stats.extracted))
    table.add_row('Extraction Failed', str(stats.extraction_failed))
    table.add_row('Failed Tasks', str(stats.tasks_failed))
    table.add_row('Merged', str(stats.merged))
    table.add_row('Iterations', str(result.iterations))
    if result.validation is not None:
        table.add_row('Unresolved Duplicates', str(len(result.validation.duplicates)))
    table.add_row('Total Duration', f"{stats.elapsed_time:.2f}s")
    console.print(table)


@app.callback(invoke_without_command=True)
@handle_errors
def main(
    base_dir: Path = typer.Argument(..., help='Directory to scan (archives are unwrapped in place)'),
    reference: Path | None = typer.Option(
        None, '--reference', help='Reference inventory (.json) or component patterns (.jsonl)',
    ),
    output: Path | None = typer.Option(None, '--output', '-o', help='Write the inventory as JSON'),
    workers: int | None = typer.Option(None, help='Number of concurrent workers'),
    implicit_unwrap: bool = typer.Option(True, help='Unwrap archives while collecting files'),
    include_embedded: bool = typer.Option(False, help='Report artifacts embedded in jars'),
    detect_patterns: bool = typer.Option(True, help='Detect component patterns from package metadata'),
    collect_include: list[str] | None = typer.Option(None, help='Ant pattern of files to collect'),
    collect_exclude: list[str] | None = typer.Option(None, help='Ant pattern of files to skip'),
    validate: bool = typer.Option(False, help='Validate component file ownership'),
    fail_on_duplicates: bool = typer.Option(
        False, help='Exit with 1 when files are owned by multiple components',
    ),
):
    """
    Scan a directory and build its inventory.
    """
    validate_base_dir(base_dir)
    reference_inventory = Inventory()
    if reference is not None:
        validate_reference_file(reference)
        reference_inventory = load_reference_inventory(reference)

    scan_param = ScanParam(
        collect_includes=collect_include or ['**/*'],
        collect_excludes=collect_exclude or [],
        implicit_unwrap=implicit_unwrap,
        include_embedded=include_embedded,
        detect_component_patterns=detect_patterns,
        reference_inventory=reference_inventory,
    )

    executor = get_container().create_scan_executor(base_dir, scan_param, workers=workers)
    with Progress(
        SpinnerColumn(),
        TextColumn('[bold blue]{task.description}'),
        TextColumn('•'),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(f"Scanning {escape(str(base_dir))}...", total=None)
        result = executor.execute(validate=validate or fail_on_duplicates)

    if output is not None:
        save_inventory(result.inventory, output)

    print_summary(result)

    if result.validation is not None and not result.validation.is_valid:
        logger.warning('Unresolved duplicate files', count=len(result.validation.duplicates))
        if fail_on_duplicates:
            raise typer.Exit(1)
