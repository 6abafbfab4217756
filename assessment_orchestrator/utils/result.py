"""Ok/Err values for configuration loading, plus CLI exit codes.

Config loading reports problems as values instead of raising, so the CLI
can print the offending field and exit with CONFIG_INVALID.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class ResultError(Exception):
    """Unwrapped the wrong side of a Result."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying ``value``."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def unwrap_err(self) -> NoReturn:
        raise ResultError(f"Expected an error, got Ok({self.value!r})")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed outcome carrying ``error``."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise ResultError(f"Expected a value, got Err({self.error!r})")

    def unwrap_or(self, default: T) -> T:
        return default

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class ConfigError:
    """A configuration value that failed to load or validate."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ExitCode:
    """Process exit codes of the CLI."""

    SUCCESS = 0
    GENERAL_ERROR = 1

    # Setup (10-19)
    CONFIG_INVALID = 10
    CREDENTIAL_MISSING = 11

    # Workflow outcome (20-29)
    SUBMISSION_FAILED = 20
    JOB_FAILED = 21
    JOB_CANCELLED = 22
    RESULT_UNAVAILABLE = 23
