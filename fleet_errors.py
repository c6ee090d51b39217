"""
fleet_errors.py — error taxonomy and the Outcome boundary type.

Every component catches its own backend failures, re-raises them as one of
the FleetError subclasses below, and returns an Outcome from its public
methods. The gateway turns a failed Outcome into an error record; nothing
raw crosses that boundary.
"""

import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable


class FleetError(Exception):
    """Base class for every error the gateway knows how to report."""

    kind = "FleetError"


class ValidationError(FleetError):
    """Bad or missing tool arguments, rejected before dispatch."""

    kind = "ValidationError"


class RemoteConnectionError(FleetError):
    """Remote shell unreachable, refused, or timed out."""

    kind = "ConnectionError"


class ExternalAPIError(FleetError):
    """The compute API or the state store rejected the call."""

    kind = "ExternalAPIError"


class ConfigurationError(FleetError):
    """Invalid project name, missing credential file, bad config file."""

    kind = "ConfigurationError"


class DataIntegrityError(FleetError):
    """A backend returned data that breaks an identity invariant."""

    kind = "DataIntegrityError"


class AssignmentError(FleetError):
    """A pool assignment request conflicts with the current assignment."""

    kind = "AssignmentError"


@dataclass(frozen=True)
class Outcome:
    """Either a success value or a FleetError, never both."""

    value: Any = None
    error: FleetError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: Any) -> "Outcome":
        return cls(value=value)

    @classmethod
    def failure(cls, error: FleetError) -> "Outcome":
        return cls(error=error)


def returns_outcome(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Outcome]]:
    """Wrap an async component method so FleetErrors come back as Outcomes."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Outcome:
        try:
            return Outcome.success(await fn(*args, **kwargs))
        except FleetError as e:
            return Outcome.failure(e)

    return wrapper


def error_record(error: BaseException, tool: str, args: Any) -> dict[str, Any]:
    """Structured error object returned to callers in place of a fault."""
    kind = error.kind if isinstance(error, FleetError) else "InternalError"
    return {
        "error": str(error) or error.__class__.__name__,
        "type": kind,
        "tool": tool,
        "args": args,
    }
