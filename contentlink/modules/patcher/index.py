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
Two-control-file patch engine.

The signature file keeps every line up to and including the anchor line and
gets exactly one marker line after it. The gameinfo file is replaced wholesale
with the server payload. Both replacements go through a single transaction, so
either both files change or neither does.
"""

import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ...config import ContentLinkConfig
from ...utils.downloader import MirrorDownloader
from ...utils.errors import (
    ContentLinkError,
    CorruptControlFileError,
    FileSystemOperationError,
    NetworkFatalError,
    OperationCancelledError,
    TransactionError,
)
from ...utils.index import check_cancelled, log_message, read_text_fresh, run_blocking
from ...utils.transaction import MoveOperation, TransactionalFileWriter

TEMP_SUFFIX = ".tmp"


class PatchResult(Enum):
    SUCCESS = "success"
    ALREADY_PATCHED = "already_patched"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PatchState(Enum):
    UNPATCHED = "unpatched"
    PATCHING = "patching"
    PATCHED = "patched"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PatchOutcome:
    result: PatchResult
    reason: str = ""

    @property
    def success(self) -> bool:
        return self.result in (PatchResult.SUCCESS, PatchResult.ALREADY_PATCHED)


def detect_newline(content: str) -> str:
    return "\r\n" if "\r\n" in content else "\n"


def find_anchor_index(lines, anchor: str) -> int:
    for index, line in enumerate(lines):
        if line.startswith(anchor):
            return index
    return -1


def build_signature_content(content: str, anchor: str, marker_line: Optional[str]) -> str:
    """
    Keep everything up to and including the anchor line and append marker_line.

    Passing marker_line=None trims the file back to the anchor. The file's
    newline style is preserved and every output line is newline-terminated,
    so applying this twice yields identical text.

    Raises:
        CorruptControlFileError: no line starts with the anchor.
    """
    lines = content.splitlines(keepends=True)
    index = find_anchor_index(lines, anchor)
    if index < 0:
        raise CorruptControlFileError(f"Anchor line '{anchor}' not found in signature file")

    newline = detect_newline(content)
    kept = lines[:index + 1]
    if not kept[-1].endswith(("\n", "\r")):
        kept[-1] += newline
    if marker_line is not None:
        kept.append(marker_line + newline)
    return "".join(kept)


def signature_section_after_anchor(content: str, anchor: str) -> Optional[str]:
    """Text from the first line starting with anchor to the end; None without such a line."""
    offset = 0
    for line in content.splitlines(keepends=True):
        if line.startswith(anchor):
            return content[offset:]
        offset += len(line)
    return None


def marker_identity(marker_line: str) -> str:
    """File name and SHA1 part of a marker line, e.g. 'gameinfo_branchspecific.gi~SHA1:<hex>'."""
    entry = marker_line.split(";", 1)[0]
    path, sep, digest = entry.partition("~")
    name = path.replace("/", "\\").rsplit("\\", 1)[-1]
    return f"{name}{sep}{digest}"


def signature_has_malformed_marker(content: str, anchor: str, marker_line: str) -> bool:
    """The marker's file name and SHA1 appear after the anchor, but not the exact line."""
    section = signature_section_after_anchor(content, anchor)
    if section is None or marker_line in section:
        return False
    return marker_identity(marker_line).lower() in section.lower()


def signature_has_marker(path: str, anchor: str, marker_line: str) -> bool:
    """Exact (case-sensitive) marker line present after the anchor."""
    if not os.path.isfile(path):
        return False
    section = signature_section_after_anchor(read_text_fresh(path), anchor)
    return section is not None and marker_line in section


def gameinfo_has_marker(path: str, marker: str) -> bool:
    """Case-insensitive marker substring check on the gameinfo file."""
    if not os.path.isfile(path):
        return False
    return marker.lower() in read_text_fresh(path).lower()


def _write_text_exact(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


def _write_bytes(path: str, data: bytes) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def _remove_if_exists(path: str) -> None:
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            log_message(f"[PATCH] Could not remove temp file {path}: {e}", "WARNING")


class PatchEngine:
    """Applies and removes the coordinated signature/gameinfo patch."""

    def __init__(self, config: ContentLinkConfig, downloader: MirrorDownloader, fingerprint=None):
        self.config = config
        self.downloader = downloader
        self.fingerprint = fingerprint
        self.state = PatchState.UNPATCHED

    def _control_paths(self, host_root: str):
        return (self.config.paths.resolve(host_root, "signatures"),
                self.config.paths.resolve(host_root, "gameinfo"))

    def _read_signatures(self, signatures_path: str) -> str:
        if not os.path.isfile(signatures_path):
            raise FileSystemOperationError(f"Signature file not found: {signatures_path}")
        content = read_text_fresh(signatures_path)
        if find_anchor_index(content.splitlines(), self.config.markers.anchor) < 0:
            raise CorruptControlFileError(
                f"Core file format invalid (no {self.config.markers.anchor} line found)"
            )
        return content

    async def is_already_patched(self, host_root: str) -> bool:
        """Fast path: both markers present. Not required before patch()."""
        signatures_path, gameinfo_path = self._control_paths(host_root)
        markers = self.config.markers
        signatures_ok = await run_blocking(signature_has_marker, signatures_path, markers.anchor, markers.signature_line)
        if not signatures_ok:
            return False
        return await run_blocking(gameinfo_has_marker, gameinfo_path, markers.gameinfo_marker)

    async def patch(self, host_root: str, cancel_token: Optional[threading.Event] = None,
                    skip_if_patched: bool = False) -> PatchOutcome:
        """
        Patch both control files as one unit.

        Cancellation is honored before validation, before building the new
        signature content, before the gameinfo download and before the
        transaction starts. Once the transaction runs it finishes or rolls back.

        With skip_if_patched, a host whose markers are both present returns
        ALREADY_PATCHED without touching anything.
        """
        markers = self.config.markers
        signatures_path, gameinfo_path = self._control_paths(host_root)
        signatures_tmp = signatures_path + TEMP_SUFFIX
        gameinfo_tmp = gameinfo_path + TEMP_SUFFIX

        if skip_if_patched and await self.is_already_patched(host_root):
            self.state = PatchState.PATCHED
            log_message("[PATCH] Already patched, nothing to do.")
            return PatchOutcome(PatchResult.ALREADY_PATCHED)

        self.state = PatchState.PATCHING

        try:
            check_cancelled(cancel_token, "before validation")
            content = await run_blocking(self._read_signatures, signatures_path)

            section = signature_section_after_anchor(content, markers.anchor)
            was_patched = section is not None and markers.signature_line in section
            log_message(f"[PATCH] Current signature state: {'patched' if was_patched else 'unpatched'}")

            check_cancelled(cancel_token, "before building signatures")
            new_content = build_signature_content(content, markers.anchor, markers.signature_line)
            await run_blocking(_write_text_exact, signatures_tmp, new_content)
            log_message("[PATCH] Core files prepared for patching.")

            check_cancelled(cancel_token, "before gameinfo download")
            download = await run_blocking(
                self.downloader.fetch_bytes, self.config.sources.gameinfo, cancel_token, "gameinfo"
            )
            await run_blocking(_write_bytes, gameinfo_tmp, download.data)

            check_cancelled(cancel_token, "before transaction")
            txn = TransactionalFileWriter(name="patch")
            txn.add_operation(MoveOperation(signatures_tmp, signatures_path))
            txn.add_operation(MoveOperation(gameinfo_tmp, gameinfo_path))
            await txn.execute()
            txn.commit()
            log_message("[PATCH] All file operations completed successfully.")

            await self._snapshot_baseline(host_root)
            self.state = PatchState.PATCHED
            log_message("[PATCH] Patch completed successfully!")
            return PatchOutcome(PatchResult.SUCCESS)

        except OperationCancelledError as e:
            self.state = PatchState.CANCELLED
            log_message(f"[PATCH] Patch cancelled: {e}", "WARNING")
            return PatchOutcome(PatchResult.CANCELLED, str(e))
        except CorruptControlFileError as e:
            return self._fail(f"Corrupt control file: {e}")
        except NetworkFatalError as e:
            return self._fail(f"Failed to download game config: {e}")
        except TransactionError as e:
            return self._fail(f"Patch transaction rolled back: {e}")
        except (ContentLinkError, OSError) as e:
            return self._fail(str(e))
        finally:
            await run_blocking(_remove_if_exists, signatures_tmp)
            await run_blocking(_remove_if_exists, gameinfo_tmp)

    async def disable(self, host_root: str, cancel_token: Optional[threading.Event] = None) -> PatchOutcome:
        """
        Trim the signature file back to the anchor and restore the clean gameinfo payload.

        If the clean payload cannot be downloaded neither file is touched.
        """
        markers = self.config.markers
        signatures_path, gameinfo_path = self._control_paths(host_root)
        signatures_tmp = signatures_path + TEMP_SUFFIX
        gameinfo_tmp = gameinfo_path + TEMP_SUFFIX

        try:
            check_cancelled(cancel_token, "before disable")
            content = await run_blocking(self._read_signatures, signatures_path)
            trimmed = build_signature_content(content, markers.anchor, None)

            download = await run_blocking(
                self.downloader.fetch_bytes, self.config.sources.gameinfo_disable, cancel_token, "gameinfo (disable)"
            )
            await run_blocking(_write_text_exact, signatures_tmp, trimmed)
            await run_blocking(_write_bytes, gameinfo_tmp, download.data)

            check_cancelled(cancel_token, "before transaction")
            txn = TransactionalFileWriter(name="disable")
            txn.add_operation(MoveOperation(signatures_tmp, signatures_path))
            txn.add_operation(MoveOperation(gameinfo_tmp, gameinfo_path))
            await txn.execute()
            txn.commit()

            self.state = PatchState.UNPATCHED
            log_message("[PATCH] Content disabled successfully.")
            return PatchOutcome(PatchResult.SUCCESS)

        except OperationCancelledError as e:
            log_message(f"[PATCH] Disable cancelled: {e}", "WARNING")
            return PatchOutcome(PatchResult.CANCELLED, str(e))
        except CorruptControlFileError as e:
            return self._fail(f"Corrupt control file: {e}", update_state=False)
        except NetworkFatalError as e:
            return self._fail(f"Failed to download clean game config: {e}", update_state=False)
        except (ContentLinkError, OSError) as e:
            return self._fail(str(e), update_state=False)
        finally:
            await run_blocking(_remove_if_exists, signatures_tmp)
            await run_blocking(_remove_if_exists, gameinfo_tmp)

    async def _snapshot_baseline(self, host_root: str) -> None:
        if self.fingerprint is None:
            return
        try:
            await self.fingerprint.snapshot(host_root)
            log_message("[PATCH] Version info saved.")
        except (ContentLinkError, OSError, ValueError) as e:
            # Patch is already committed
            log_message(f"[PATCH] Warning: Failed to save version info: {e}", "WARNING")

    def _fail(self, reason: str, update_state: bool = True) -> PatchOutcome:
        if update_state:
            self.state = PatchState.FAILED
        log_message(f"[PATCH] Error: {reason}", "ERROR")
        return PatchOutcome(PatchResult.FAILED, reason)
