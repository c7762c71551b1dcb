"""
errors.py

Error taxonomy for the Code Property Graph engine.

Lookups that miss return ``None`` rather than raising, and batch failures
are reported through ``GraphUpdateResult.errors``; only the conditions below
are raised.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations


class CPGError(Exception):
    """
    Base class for engine errors.

    :param message: Human-readable description.
    :param code: Short machine-readable error code.
    """

    code = "CPG_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class Conflict(CPGError):
    """Duplicate key or invalid state transition (e.g. a second node with the same key)."""

    code = "CONFLICT"


class StorageFailure(CPGError):
    """Backend I/O failure.  The original exception is available as ``__cause__``."""

    code = "STORAGE_FAILURE"
