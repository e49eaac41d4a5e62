import typer

from compscan import __version__
from compscan.commands import patterns
from compscan.commands import scan
from compscan.core.logging import setup_logging

app = typer.Typer(
    help='compscan: inventory the software components of a directory tree.',
    no_args_is_help=True,
    pretty_exceptions_show_locals=False,
)

app.add_typer(scan.app, name='scan')
app.add_typer(patterns.app, name='patterns')


def _print_version(value: bool):
    if value:
        typer.echo(f"compscan {__version__.__version__}")
        raise typer.Exit()


@app.callback()
def main(
    debug: bool = typer.Option(False, '--debug', help='Enable debug logging'),
    version: bool = typer.Option(
        False, '--version', callback=_print_version, is_eager=True, help='Show the version and exit',
    ),
):
    """
    compscan CLI - composition scan of extracted images, archives and source trees.
    """
    level = 'DEBUG' if debug else 'INFO'
    setup_logging(level=level)


if __name__ == '__main__':
    app()
