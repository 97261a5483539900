"""Exception hierarchy for loading, configuration, and rule evaluation."""

from __future__ import annotations

from enum import Enum


class MitiscanError(Exception):
    """Base class for all mitiscan errors."""


class LoadErrorKind(str, Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    TRUNCATED = "truncated"
    MALFORMED = "malformed"
    UNREADABLE = "unreadable"


class LoadError(MitiscanError):
    """A binary could not be turned into an artifact.

    Fatal only for the binary it was raised for.
    """

    kind: LoadErrorKind = LoadErrorKind.MALFORMED

    def __init__(self, message: str, *, offset: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind.value, "message": self.message, "offset": self.offset}


class UnsupportedFormatError(LoadError):
    kind = LoadErrorKind.UNSUPPORTED_FORMAT


class TruncatedError(LoadError):
    kind = LoadErrorKind.TRUNCATED


class MalformedError(LoadError):
    kind = LoadErrorKind.MALFORMED


class UnreadableError(LoadError):
    """The file could not be read from disk."""

    kind = LoadErrorKind.UNREADABLE


class RuleEvaluationError(MitiscanError):
    """Raised by a rule that cannot reach a verdict for the current binary."""


class ConfigurationError(MitiscanError):
    """Invalid configuration; aborts the whole run before analysis starts."""


class StateTransitionError(MitiscanError):
    """Illegal lifecycle transition for a binary report."""
