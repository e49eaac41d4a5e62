import logging
import os
import sys
from typing import Any

import structlog
from rich.console import Console
from rich.markup import escape

# Central console for rich output (tables, progress, error messages)
console = Console()

# log lines go to stderr so that inventories can be piped from stdout
log_console = Console(stderr=True)


class RichConsoleRenderer:
    """
    Renders structlog events as a single rich line: time, logger, level,
    event and key=value pairs. An '_style' key overrides the line style.
    """

    level_styles = {
        'debug': 'dim',
        'info': 'green',
        'warning': 'yellow',
        'error': 'bold red',
        'critical': 'bold magenta',
    }

    def __init__(self, target: Console | None = None):
        self._console = target or log_console

    def __call__(self, logger, name, event_dict):
        custom_style = event_dict.pop('_style', None)

        event = event_dict.pop('event', '')
        level = event_dict.pop('level', 'info')
        logger_name = event_dict.pop('logger', None)
        timestamp = event_dict.pop('timestamp', None)
        exception = event_dict.pop('exception', None) or event_dict.pop('exc_info', None)

        level_style = self.level_styles.get(level, 'white')
        parts = []
        if timestamp:
            parts.append(f"[dim]{timestamp}[/dim]")
        if logger_name:
            parts.append(f"[bold]{logger_name}[/bold]")
        parts.append(f"[{level_style}]{level:<8}[/{level_style}]")
        parts.append(escape(str(event)))
        parts.extend(
            f"[cyan]{key}[/cyan]=[green]{escape(repr(value))}[/green]"
            for key, value in event_dict.items()
        )

        message = ' '.join(parts)
        if exception:
            message += f"\n[red]{escape(str(exception))}[/red]"

        self._console.print(message, style=custom_style, highlight=False)

        # the event is fully rendered; nothing left for the logger factory
        raise structlog.DropEvent


def drop_style_processor(logger, method_name, event_dict):
    """Keeps the '_style' hint out of JSON output."""
    event_dict.pop('_style', None)
    return event_dict


def setup_logging(level: str = 'INFO') -> None:
    """Configure structlog; JSON lines when ENV=production, rich console otherwise."""
    logging.basicConfig(format='%(message)s', stream=sys.stderr, level=level)
    logging.getLogger().setLevel(level)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt='%H:%M:%S'),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if os.getenv('ENV') == 'production':
        processors = shared_processors + [
            drop_style_processor,
            structlog.processors.TimeStamper(fmt='iso'),
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [RichConsoleRenderer()]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
