import typer

from . import detect

app = typer.Typer(help='Component pattern operations')

app.add_typer(detect.app, name='detect')
