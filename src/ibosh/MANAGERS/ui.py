"""
User-facing output and confirmation prompts.
"""
import sys
from typing import Protocol

import click

from ..errors import UpgradeCancelled


class UI(Protocol):
    def print_linef(self, pattern: str, *args) -> None: ...

    def error_linef(self, pattern: str, *args) -> None: ...

    def ask_for_confirmation(self) -> None:
        """Raise UpgradeCancelled unless the user confirms."""
        ...


def _format(pattern: str, args) -> str:
    return pattern % args if args else pattern


class ClickUI:
    """
    UI backed by click. Progress goes to stdout, errors to stderr.
    """

    def __init__(self, assume_yes: bool = False):
        self.assume_yes = assume_yes

    def print_linef(self, pattern: str, *args) -> None:
        click.echo(_format(pattern, args))

    def error_linef(self, pattern: str, *args) -> None:
        click.echo(_format(pattern, args), err=True)

    def ask_for_confirmation(self) -> None:
        if self.assume_yes:
            return
        if not click.confirm("Continue?", default=False):
            raise UpgradeCancelled("stopped by user")

    @property
    def colorize(self) -> bool:
        return sys.stdout.isatty()


class UIWriter:
    """Adapts a UI to the ``write(str)`` interface of the log writers."""

    def __init__(self, ui: UI):
        self.ui = ui

    def write(self, data: str) -> int:
        for line in data.splitlines():
            self.ui.print_linef("%s", line)
        return len(data)
