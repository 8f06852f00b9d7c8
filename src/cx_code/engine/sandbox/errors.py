"""
Errors raised while running a code step snippet.
"""

from typing import Optional


class CodeExecutionError(Exception):
    """Base exception for all code step failures."""

    kind: str = "Error"

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        description: Optional[str] = None,
        item_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if kind:
            self.kind = kind
        self.description = description
        self.item_index = item_index

    def __str__(self) -> str:
        return self.message


class ValidationError(CodeExecutionError):
    """The value returned by a snippet does not have the shape of items."""

    kind = "ValidationError"


class RuntimeExecutionError(CodeExecutionError):
    """The snippet raised or threw while it was running."""


class DependencyInstallError(CodeExecutionError):
    """A requested module could not be installed."""

    kind = "DependencyInstallError"


class ConversionError(CodeExecutionError):
    """A runtime result could not be turned into plain host data."""

    kind = "ConversionError"


def get_pretty_message(message: str, kind: Optional[str]) -> str:
    """
    Drops everything in a raw runtime message before the first occurrence of
    the error kind, e.g. the traceback preamble in front of
    `ZeroDivisionError: division by zero`.
    """
    if not kind:
        return message
    index = message.find(kind)
    if index == -1:
        return message
    return message[index:]
