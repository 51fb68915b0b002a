"""Unit tests for the engine error hierarchy."""

from __future__ import annotations

import pytest

from lmengine.errors import (
    BackendError,
    CapacityExceeded,
    EngineError,
    QueueFullError,
    UnknownRequestError,
    ValidationError,
)


@pytest.mark.parametrize(
    ("error", "builtin"),
    [
        (ValidationError, ValueError),
        (CapacityExceeded, RuntimeError),
        (BackendError, RuntimeError),
        (UnknownRequestError, KeyError),
        (QueueFullError, Exception),
    ],
)
def test_hierarchy(error: type[EngineError], builtin: type[Exception]) -> None:
    assert issubclass(error, EngineError)
    assert issubclass(error, builtin)
