"""
Centralized Rich console management for bulkde.

Provides the shared console used by the CLI and the RichHandler that
takes over logging output once a CLI session starts.
"""

import logging
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme
from rich.traceback import install as install_rich_traceback

from bulkde.utils.logger import set_package_level

DEFAULT_THEME = Theme(
    {
        "bulkde.primary": "bold cyan",
        "status.success": "bold green",
        "status.error": "bold red",
        "status.warning": "yellow",
        "text.secondary": "dim",
    }
)


class ConsoleManager:
    """Singleton holding the main and error consoles."""

    _instance: Optional["ConsoleManager"] = None

    def __new__(cls) -> "ConsoleManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not hasattr(self, "_initialized"):
            self._console = Console(theme=DEFAULT_THEME, highlight=True)
            self._error_console = Console(theme=DEFAULT_THEME, stderr=True)
            self._setup_logging()
            install_rich_traceback(
                console=self._error_console, show_locals=False, max_frames=20
            )
            self._initialized = True

    def _setup_logging(self):
        """Install a RichHandler on the root logger."""
        rich_handler = RichHandler(
            console=self._error_console,
            show_time=True,
            show_level=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
        )
        rich_handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))

        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[rich_handler],
        )

        # Third-party chatter
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("matplotlib").setLevel(logging.WARNING)
        logging.getLogger("kaleido").setLevel(logging.WARNING)

    @property
    def console(self) -> Console:
        return self._console

    @property
    def error_console(self) -> Console:
        return self._error_console

    def print(self, *args, **kwargs):
        self._console.print(*args, **kwargs)

    def status(self, status: str, spinner: str = "dots"):
        """Create a status context manager."""
        return self._console.status(
            status, spinner=spinner, spinner_style="bulkde.primary"
        )

    def print_error_panel(self, error: str, suggestion: Optional[str] = None):
        """Print an error panel with optional suggestion."""
        content = Text()
        content.append("Error: ", style="status.error")
        content.append(error)

        if suggestion:
            content.append("\n\n")
            content.append("Suggestion: ", style="bulkde.primary")
            content.append(suggestion, style="text.secondary")

        self._error_console.print(
            Panel(content, title="Error", border_style="red", title_align="left")
        )

    def print_success_panel(self, message: str, details: Any = None):
        """Print a success panel with optional details."""
        content = Text()
        content.append(message, style="status.success")
        if details:
            content.append("\n")
            content.append(str(details), style="text.secondary")

        self._console.print(
            Panel(content, title="Success", border_style="green", title_align="left")
        )


_console_manager: Optional[ConsoleManager] = None


def get_console_manager() -> ConsoleManager:
    """Get the console manager instance."""
    global _console_manager
    if _console_manager is None:
        _console_manager = ConsoleManager()
    return _console_manager


def get_console() -> Console:
    """Get the main console instance."""
    return get_console_manager().console


def setup_logging(level: int = logging.INFO):
    """Setup logging with Rich handlers and update all handler levels."""
    get_console_manager()
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers:
        handler.setLevel(level)

    set_package_level(level)
