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
Transactional File Writer

Queues file operations and runs them as a unit. If any operation fails, every
operation that already completed is undone in reverse order, so the touched
paths look the way they did before the transaction started.

Key Features:
- Create directory, copy and atomic move operations
- Implicit backup of any file that gets overwritten
- Move writes to a temp sibling first, then os.replace()s the destination
- Rollback problems are logged, never raised over the original error

Usage:
    from contentlink.utils.transaction import TransactionalFileWriter, MoveOperation

    txn = TransactionalFileWriter(name="patch")
    txn.add_operation(MoveOperation(tmp_signatures, signatures_path))
    txn.add_operation(MoveOperation(tmp_gameinfo, gameinfo_path))
    try:
        await txn.execute()
    except TransactionError:
        ...  # already rolled back
    else:
        txn.commit()
"""

import os
import shutil
import threading
from enum import Enum
from typing import List, Optional

from .errors import TransactionError, TransactionStateError
from .index import check_cancelled, log_message, run_blocking

BACKUP_SUFFIX = ".transaction_bak"
TEMP_SUFFIX = ".transaction_tmp"


class TransactionState(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    EXECUTED = "executed"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class FileOperation:
    """Base class for one reversible file operation."""

    def execute(self) -> None:
        raise NotImplementedError

    def rollback(self) -> None:
        raise NotImplementedError

    def cleanup(self) -> None:
        """Remove backups and other leftovers once the transaction commits."""
        pass

    def describe(self) -> str:
        return self.__class__.__name__


class CreateDirectoryOperation(FileOperation):
    """Create a directory (and missing parents); rollback removes what was created if empty."""

    def __init__(self, path: str):
        self.path = path
        self._created: List[str] = []

    def execute(self) -> None:
        missing = []
        current = os.path.abspath(self.path)
        while not os.path.isdir(current):
            missing.append(current)
            parent = os.path.dirname(current)
            if parent == current:
                break
            current = parent
        os.makedirs(self.path, exist_ok=True)
        # Deepest first, so rollback can rmdir in order
        self._created = missing

    def rollback(self) -> None:
        for directory in self._created:
            if os.path.isdir(directory) and not os.listdir(directory):
                os.rmdir(directory)
        self._created = []

    def describe(self) -> str:
        return f"CreateDirectory({self.path})"


class CopyOperation(FileOperation):
    """Copy a file, backing up an existing destination first."""

    def __init__(self, source: str, destination: str, overwrite: bool = True):
        self.source = source
        self.destination = destination
        self.overwrite = overwrite
        self._existed_before = False
        self._backup_path: Optional[str] = None

    def execute(self) -> None:
        self._existed_before = os.path.exists(self.destination)
        if self._existed_before:
            if not self.overwrite:
                raise FileExistsError(f"Destination already exists: {self.destination}")
            self._backup_path = self.destination + BACKUP_SUFFIX
            shutil.copy2(self.destination, self._backup_path)

        parent = os.path.dirname(self.destination)
        if parent:
            os.makedirs(parent, exist_ok=True)
        shutil.copy2(self.source, self.destination)

    def rollback(self) -> None:
        if self._existed_before and self._backup_path and os.path.exists(self._backup_path):
            os.replace(self._backup_path, self.destination)
            self._backup_path = None
        elif not self._existed_before and os.path.exists(self.destination):
            os.remove(self.destination)

    def cleanup(self) -> None:
        if self._backup_path and os.path.exists(self._backup_path):
            os.remove(self._backup_path)

    def describe(self) -> str:
        return f"Copy({self.source} -> {self.destination})"


class MoveOperation(FileOperation):
    """
    Atomically replace destination with the contents of source.

    The source is first copied to a temp file next to the destination so the
    final os.replace() never crosses file systems. An existing destination is
    backed up beforehand. The source itself is only removed at commit.
    """

    def __init__(self, source: str, destination: str):
        self.source = source
        self.destination = destination
        self._existed_before = False
        self._backup_path: Optional[str] = None
        self._temp_path: Optional[str] = None
        self._replaced = False

    def execute(self) -> None:
        if not os.path.isfile(self.source):
            raise FileNotFoundError(f"Move source not found: {self.source}")

        parent = os.path.dirname(self.destination)
        if parent:
            os.makedirs(parent, exist_ok=True)

        self._temp_path = self.destination + TEMP_SUFFIX
        shutil.copy2(self.source, self._temp_path)

        self._existed_before = os.path.exists(self.destination)
        if self._existed_before:
            self._backup_path = self.destination + BACKUP_SUFFIX
            shutil.copy2(self.destination, self._backup_path)

        os.replace(self._temp_path, self.destination)
        self._temp_path = None
        self._replaced = True

    def rollback(self) -> None:
        if self._temp_path and os.path.exists(self._temp_path):
            os.remove(self._temp_path)
            self._temp_path = None

        if not self._replaced:
            if self._backup_path and os.path.exists(self._backup_path):
                os.remove(self._backup_path)
            self._backup_path = None
            return

        if self._existed_before and self._backup_path and os.path.exists(self._backup_path):
            os.replace(self._backup_path, self.destination)
            self._backup_path = None
        elif not self._existed_before and os.path.exists(self.destination):
            os.remove(self.destination)
        self._replaced = False

    def cleanup(self) -> None:
        for leftover in (self._temp_path, self._backup_path):
            if leftover and os.path.exists(leftover):
                os.remove(leftover)
        if os.path.exists(self.source):
            os.remove(self.source)

    def describe(self) -> str:
        return f"Move({self.source} -> {self.destination})"


class TransactionalFileWriter:
    """
    Runs a queue of file operations as one unit with rollback.

    One instance per attempt; a committed or rolled back transaction cannot be
    reused.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self.state = TransactionState.PENDING
        self._operations: List[FileOperation] = []
        self._completed: List[FileOperation] = []

    @property
    def operation_count(self) -> int:
        return len(self._operations)

    def _prefix(self) -> str:
        return f"[TXN:{self.name}]" if self.name else "[TXN]"

    def add_operation(self, operation: FileOperation) -> None:
        if self.state is not TransactionState.PENDING:
            raise TransactionStateError(
                f"Cannot add operations to a transaction in state {self.state.value}"
            )
        self._operations.append(operation)

    async def execute(self, cancel_token: Optional[threading.Event] = None) -> None:
        """
        Perform all queued operations in order.

        Cancellation is honored only before the first operation starts; once
        writing has begun the batch runs to completion or failure.

        Raises:
            TransactionError: an operation failed; completed ones were rolled back.
            OperationCancelledError: cancelled before anything was written.
        """
        if self.state is not TransactionState.PENDING:
            raise TransactionStateError(f"Transaction already {self.state.value}")

        check_cancelled(cancel_token, "before transaction")
        self.state = TransactionState.EXECUTING
        await run_blocking(self._execute_all)

    def _execute_all(self) -> None:
        total = len(self._operations)
        for i, operation in enumerate(self._operations, start=1):
            try:
                operation.execute()
                self._completed.append(operation)
            except Exception as e:
                # Includes the failed op: it may have half-applied (e.g. backup taken)
                self._completed.append(operation)
                log_message(
                    f"{self._prefix()} Operation {i}/{total} failed ({operation.describe()}): {e}. Starting rollback...",
                    "ERROR"
                )
                self._rollback_completed()
                raise TransactionError(f"{operation.describe()} failed: {e}") from e

        self.state = TransactionState.EXECUTED
        log_message(f"{self._prefix()} Executed {total} operations", "DEBUG")

    def _rollback_completed(self) -> None:
        failures = 0
        for operation in reversed(self._completed):
            try:
                operation.rollback()
            except Exception as e:
                failures += 1
                log_message(f"{self._prefix()} Rollback failed for {operation.describe()}: {e}", "ERROR")
        count = len(self._completed)
        self._completed = []
        self.state = TransactionState.ROLLED_BACK
        if failures:
            log_message(f"{self._prefix()} Rollback finished with {failures} failures for {count} operations", "WARNING")
        else:
            log_message(f"{self._prefix()} Rollback completed for {count} operations")

    async def rollback(self, cancel_token: Optional[threading.Event] = None) -> None:
        """
        Undo a successful execute() before it was committed.

        Rollback always runs, even when the cancellation token is set, because
        the files on disk are already modified.
        """
        if self.state is TransactionState.COMMITTED:
            raise TransactionStateError("Cannot roll back a committed transaction")
        if self.state is TransactionState.ROLLED_BACK:
            return
        if cancel_token is not None and cancel_token.is_set():
            log_message(f"{self._prefix()} Rolling back despite cancellation request", "WARNING")
        await run_blocking(self._rollback_completed)

    def commit(self) -> None:
        """Finalize after a successful execute(); removes backups and temp sources."""
        if self.state is not TransactionState.EXECUTED:
            raise TransactionStateError(
                f"Commit requires a successfully executed transaction (state: {self.state.value})"
            )
        for operation in self._operations:
            try:
                operation.cleanup()
            except OSError as e:
                log_message(f"{self._prefix()} Cleanup failed for {operation.describe()}: {e}", "WARNING")
        self._completed = []
        self.state = TransactionState.COMMITTED
