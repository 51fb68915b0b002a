"""Exception types raised by the generation engine.

All errors are request-scoped: the engine records them on the failing
request and keeps serving everything else.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for engine errors."""


class ValidationError(EngineError, ValueError):
    """A request was rejected at submit time (bad sampling params or prompt)."""


class QueueFullError(EngineError):
    """The waiting queue is at ``max_waiting_requests``."""


class CapacityExceeded(EngineError, RuntimeError):
    """A write would run past the end of a cache slot."""


class BackendError(EngineError, RuntimeError):
    """The model forward pass raised.  The original exception is ``__cause__``."""


class UnknownRequestError(EngineError, KeyError):
    """No request with the given id is tracked by the engine."""
