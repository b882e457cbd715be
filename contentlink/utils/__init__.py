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
Utilities shared by the ContentLink components.

This package provides logging and hashing helpers, the error taxonomy, the
transactional file writer and the mirror-fallback downloader.
"""

from .index import (
    log_message,
    compute_file_sha256,
    compute_content_hash,
    hashes_equal,
    check_cancelled,
    run_blocking,
    atomic_write_bytes,
    atomic_write_text,
    read_text_fresh
)
from .errors import (
    ContentLinkError,
    NetworkTransientError,
    NetworkFatalError,
    IntegrityMismatchError,
    FileSystemOperationError,
    OperationCancelledError,
    CorruptControlFileError,
    TransactionError,
    TransactionStateError
)
from .transaction import (
    TransactionalFileWriter,
    TransactionState,
    CreateDirectoryOperation,
    CopyOperation,
    MoveOperation
)
from .downloader import MirrorDownloader, DownloadProgress, DownloadResult
from .release_manifest import ReleaseManifest, ReleaseEntry

__all__ = [
    'log_message',
    'compute_file_sha256',
    'compute_content_hash',
    'hashes_equal',
    'check_cancelled',
    'run_blocking',
    'atomic_write_bytes',
    'atomic_write_text',
    'read_text_fresh',
    'ContentLinkError',
    'NetworkTransientError',
    'NetworkFatalError',
    'IntegrityMismatchError',
    'FileSystemOperationError',
    'OperationCancelledError',
    'CorruptControlFileError',
    'TransactionError',
    'TransactionStateError',
    'TransactionalFileWriter',
    'TransactionState',
    'CreateDirectoryOperation',
    'CopyOperation',
    'MoveOperation',
    'MirrorDownloader',
    'DownloadProgress',
    'DownloadResult',
    'ReleaseManifest',
    'ReleaseEntry'
]
