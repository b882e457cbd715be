"""
ContentLink Patch Management System
Copyright (C) 2026 The ContentLink Authors

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Exception taxonomy shared by every ContentLink component.

Callers at the service boundary convert these into result values; inside the
core they propagate so the single transaction rollback path can handle them.
"""


class ContentLinkError(Exception):
    """Base class for all ContentLink failures."""
    pass


class NetworkTransientError(ContentLinkError):
    """A retryable HTTP failure (5xx, 429, connection reset, timeout)."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkFatalError(ContentLinkError):
    """Every source for one logical download has failed."""

    def __init__(self, message: str, attempts: list = None):
        super().__init__(message)
        self.attempts = attempts or []


class IntegrityMismatchError(ContentLinkError):
    """A downloaded file does not match its published hash."""

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Hash mismatch: expected={expected} got={actual}")
        self.expected = expected
        self.actual = actual


class FileSystemOperationError(ContentLinkError):
    """A file system step failed outside of a transaction."""
    pass


class OperationCancelledError(ContentLinkError):
    """The caller's cancellation token was set at a checkpoint."""
    pass


class CorruptControlFileError(ContentLinkError):
    """A control file does not have the structure the patcher relies on."""
    pass


class TransactionError(ContentLinkError):
    """A transactional file operation failed and was rolled back."""
    pass


class TransactionStateError(TransactionError, RuntimeError):
    """A transaction method was called in the wrong lifecycle state."""
    pass
