import io

import pytest
import structlog
import typer
from rich.console import Console

from compscan.core.decorators import handle_errors
from compscan.core.logging import RichConsoleRenderer
from compscan.core.logging import drop_style_processor
from compscan.core.validation import ScanInvariantError
from compscan.core.validation import ValidationError


def test_rich_renderer_prints_event_and_drops_it():
    """Test the rich renderer prints the event and drops it."""
    buffer = io.StringIO()
    renderer = RichConsoleRenderer(Console(file=buffer, width=200))

    with pytest.raises(structlog.DropEvent):
        renderer(
            None, 'warning', {
                'event': 'Archive extraction failed',
                'level': 'warning',
                'logger': 'archive',
                'archive': 'broken.zip',
                '_style': 'yellow',
            },
        )

    line = buffer.getvalue()
    assert 'Archive extraction failed' in line
    assert "archive='broken.zip'" in line
    assert '_style' not in line


def test_drop_style_processor():
    """Test the private style key is removed from the event dict."""
    assert drop_style_processor(None, 'info', {'event': 'x', '_style': 'red'}) == {'event': 'x'}


@pytest.mark.parametrize(
    'error,exit_code', [
        (ValidationError('bad input'), 1),
        (ValueError('bad value'), 1),
        (ScanInvariantError('broken'), 2),
        (RuntimeError('unexpected'), 1),
        (KeyboardInterrupt(), 130),
    ],
)
def test_handle_errors_exit_codes(error, exit_code):
    """Test handle_errors maps exceptions to exit codes."""
    @handle_errors
    def command():
        raise error

    with pytest.raises(typer.Exit) as exc_info:
        command()
    assert exc_info.value.exit_code == exit_code


def test_handle_errors_passes_exit_through():
    """Test handle_errors re-raises typer exits unchanged."""
    @handle_errors
    def command():
        raise typer.Exit(3)

    with pytest.raises(typer.Exit) as exc_info:
        command()
    assert exc_info.value.exit_code == 3
