"""Terminal user interface helpers."""

from bulkde.ui.console_manager import get_console, setup_logging

__all__ = ["get_console", "setup_logging"]
