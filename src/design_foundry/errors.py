"""Exception taxonomy for design space exploration.

Every recoverable condition is an exception the caller can catch and surface;
only CacheIntegrityError signals a fault the process should not continue past.
"""

from __future__ import annotations


class DesignFoundryError(Exception):
    """Base exception for design_foundry."""


class ParseError(DesignFoundryError, ValueError):
    """Raised when parameter text is malformed.

    Attributes:
        reason: Human-readable description of the problem.
        text: The offending raw text.
        parameter: Parameter name, when the text belonged to a named parameter.
    """

    def __init__(self, reason: str, *, text: str | None = None, parameter: str | None = None) -> None:
        self.reason = reason
        self.text = text
        self.parameter = parameter
        super().__init__(self._format())

    def _format(self) -> str:
        prefix = f"Parameter {self.parameter!r}: " if self.parameter else ""
        suffix = f" (input: {self.text!r})" if self.text is not None else ""
        return f"{prefix}{self.reason}{suffix}"

    def for_parameter(self, parameter: str) -> ParseError:
        """Return a copy of this error tagged with the parameter name."""
        return type(self)(self.reason, text=self.text, parameter=parameter)


class ExpansionError(DesignFoundryError):
    """Raised when a design space cannot be expanded.

    Attributes:
        size: Number of design points the expansion would produce, if known.
        ceiling: Configured maximum number of design points, if exceeded.
    """

    def __init__(self, message: str, *, size: int | None = None, ceiling: int | None = None) -> None:
        self.size = size
        self.ceiling = ceiling
        super().__init__(message)

    @classmethod
    def too_large(cls, size: int, ceiling: int) -> ExpansionError:
        return cls(
            f"Design space has {size} points, which exceeds the limit of {ceiling}",
            size=size,
            ceiling=ceiling,
        )


class InstantiationError(DesignFoundryError):
    """Raised by a designer evaluator when parameters do not form a valid design."""


class EvaluationCancelled(DesignFoundryError):
    """Raised when a caller cancels an in-progress evaluation."""


class CacheStoreError(DesignFoundryError):
    """Raised when a cache entry cannot be persisted."""


class CacheIntegrityError(DesignFoundryError):
    """Raised when two different inputs map to the same cache key."""


class SettingsError(DesignFoundryError, ValueError):
    """Raised when explorer settings are invalid."""
