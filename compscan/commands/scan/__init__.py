import typer

from . import run

app = typer.Typer(help='Scan operations')

app.add_typer(run.app, name='run')
