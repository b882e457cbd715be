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

import asyncio
import functools
import hashlib
import logging
import os
import tempfile
import threading
from typing import Any, Callable, Optional

from .errors import OperationCancelledError

logger = logging.getLogger("contentlink")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def log_message(message: str, level: str = "INFO") -> None:
    """
    Log a message through the package logger.
    Args:
        message (str): The message to log.
        level (str): Log level (e.g., 'INFO', 'ERROR').
    """
    logger.log(_LEVELS.get(level.upper(), logging.INFO), message)


def compute_file_sha256(file_path: str) -> str:
    """Calculate the lowercase hex SHA-256 checksum of a file."""
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def compute_content_hash(content: str, length: int = 16) -> str:
    """Short uppercase SHA-256 prefix of text content; empty content hashes to ''."""
    if not content:
        return ""
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest().upper()
    return digest[:length]


def hashes_equal(left: Optional[str], right: Optional[str]) -> bool:
    """Case-insensitive comparison of hex digests, ignoring surrounding whitespace."""
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


def check_cancelled(cancel_token: Optional[threading.Event], where: str = "") -> None:
    """Raise OperationCancelledError if the token has been set."""
    if cancel_token is not None and cancel_token.is_set():
        raise OperationCancelledError(f"Operation cancelled{f' ({where})' if where else ''}")


async def run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run blocking file or network work in the loop's default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def atomic_write_bytes(path: str, data: bytes) -> None:
    """Write data to a temp sibling of path, then os.replace it into place."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def atomic_write_text(path: str, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def read_text_fresh(path: str) -> str:
    """Read a whole text file, tolerating undecodable bytes."""
    with open(path, "r", encoding="utf-8", errors="replace", newline="") as f:
        return f.read()
