"""
Error taxonomy for brainvault.

Per-record ValidationError / NotFoundError conditions are recovered by batch
callers (counted and reported). IntegrityError aborts only the operation that
detected it. I/O failures surface as the builtin OSError.
"""

from __future__ import annotations


class VaultError(Exception):
    """Base class for all brainvault errors."""


class ValidationError(VaultError, ValueError):
    """A record or argument is missing a required field or is malformed."""


class NotFoundError(VaultError, LookupError):
    """Unknown record id, snapshot, rollback point, or source path."""


class IntegrityError(VaultError):
    """Hash mismatch during copy, or a store that fails verification."""


class UserAbort(VaultError):
    """The caller declined an interactive confirmation."""
