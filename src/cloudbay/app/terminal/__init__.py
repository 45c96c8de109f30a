"""Browser terminal relay."""

from cloudbay.app.terminal.relay import TerminalRelay

__all__ = ["TerminalRelay"]
