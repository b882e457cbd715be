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
Status evaluation.

StatusPipeline runs a fixed list of read-only steps. Each step returns
CONTINUE or Terminal(result); the first Terminal wins, so cheap structural
checks always run before content hashing. StatusMonitor wraps the pipeline
with a refresh guard, a last-result cache, a periodic timer and watcher wiring.
"""

import asyncio
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Union

from ...config import ContentLinkConfig
from ...utils.errors import OperationCancelledError
from ...utils.index import check_cancelled, log_message, read_text_fresh, run_blocking
from ..fingerprint.index import VersionFingerprintService, needs_repatch
from ..patcher.index import gameinfo_has_marker, signature_has_malformed_marker, signature_section_after_anchor


class StatusKind(Enum):
    NOT_CHECKED = "NotChecked"
    NOT_INSTALLED = "NotInstalled"
    DISABLED = "Disabled"
    NEED_UPDATE = "NeedUpdate"
    READY = "Ready"
    ERROR = "Error"


class RecommendedAction(Enum):
    INSTALL = "Install"
    ENABLE = "Enable"
    UPDATE = "Update"
    NONE = "None"


@dataclass(frozen=True)
class StatusResult:
    status: StatusKind
    title: str
    description: str
    action: RecommendedAction = RecommendedAction.NONE
    version: Optional[str] = None
    last_modified: Optional[datetime] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "title": self.title,
            "description": self.description,
            "action": self.action.value,
            "version": self.version,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "error_message": self.error_message,
        }


class Continue:
    """Step verdict: nothing conclusive, run the next step."""

    def __repr__(self) -> str:
        return "CONTINUE"


CONTINUE = Continue()


@dataclass(frozen=True)
class Terminal:
    """Step verdict: stop and report result."""
    result: StatusResult


StepVerdict = Union[Continue, Terminal]


@dataclass
class StatusContext:
    """Per-evaluation scratch state shared between steps."""
    host_root: Optional[str]
    version: Optional[str] = None
    last_modified: Optional[datetime] = None
    notes: List[str] = field(default_factory=list)


class StatusPipeline:
    """Ordered, short-circuiting status evaluation."""

    def __init__(self, config: ContentLinkConfig, fingerprint: VersionFingerprintService):
        self.config = config
        self.fingerprint = fingerprint
        self.steps: List[Callable[[StatusContext], StepVerdict]] = [
            self.check_host_path,
            self.check_host_files,
            self.check_package_installed,
            self.check_gameinfo_patched,
            self.check_signatures_patched,
            self.check_fingerprint_drift,
        ]

    def _path(self, ctx: StatusContext, name: str) -> str:
        return self.config.paths.resolve(ctx.host_root, name)

    def _status(self, ctx: StatusContext, status: StatusKind, title: str, description: str,
                action: RecommendedAction = RecommendedAction.NONE,
                error_message: Optional[str] = None) -> StatusResult:
        return StatusResult(status, title, description, action,
                            version=ctx.version, last_modified=ctx.last_modified,
                            error_message=error_message)

    # ---- steps (blocking, read-only) ----

    def check_host_path(self, ctx: StatusContext) -> StepVerdict:
        if not ctx.host_root or not ctx.host_root.strip():
            return Terminal(self._status(ctx, StatusKind.NOT_CHECKED, "Path Not Set",
                                         "Please detect or select the host installation folder."))
        return CONTINUE

    def check_host_files(self, ctx: StatusContext) -> StepVerdict:
        if not os.path.isfile(self._path(ctx, "host_executable")):
            return Terminal(self._status(ctx, StatusKind.ERROR, "Invalid Path",
                                         "Host executable not found. Please select a valid installation folder.",
                                         error_message=f"Missing {self.config.paths.host_executable}"))
        if not os.path.isfile(self._path(ctx, "signatures")):
            return Terminal(self._status(ctx, StatusKind.ERROR, "Error",
                                         "Core files are missing. Verify the host installation.",
                                         error_message=f"Missing {self.config.paths.signatures}"))
        return CONTINUE

    def check_package_installed(self, ctx: StatusContext) -> StepVerdict:
        archive = self._path(ctx, "package_archive")
        if not os.path.isfile(archive):
            return Terminal(self._status(ctx, StatusKind.NOT_INSTALLED, "Not Installed",
                                         "The content package is not installed. Install it to get started.",
                                         RecommendedAction.INSTALL))
        version_file = self._path(ctx, "package_version")
        if os.path.isfile(version_file):
            ctx.version = read_text_fresh(version_file).strip() or None
        ctx.last_modified = datetime.fromtimestamp(os.path.getmtime(archive))
        return CONTINUE

    def check_gameinfo_patched(self, ctx: StatusContext) -> StepVerdict:
        if not gameinfo_has_marker(self._path(ctx, "gameinfo"), self.config.markers.gameinfo_marker):
            return Terminal(self._status(ctx, StatusKind.DISABLED, "Disabled",
                                         "The content package is installed but not active. Patch to activate it.",
                                         RecommendedAction.ENABLE))
        return CONTINUE

    def check_signatures_patched(self, ctx: StatusContext) -> StepVerdict:
        markers = self.config.markers
        content = read_text_fresh(self._path(ctx, "signatures"))
        section = signature_section_after_anchor(content, markers.anchor)
        if section is None:
            return Terminal(self._status(ctx, StatusKind.ERROR, "Invalid Core Files",
                                         "The core files are corrupted. Verify the host installation.",
                                         error_message=f"{markers.anchor} not found in core files"))
        if signature_has_malformed_marker(content, markers.anchor, markers.signature_line):
            return Terminal(self._status(ctx, StatusKind.ERROR, "Invalid Patch Format",
                                         "The patch line has the wrong format. Run the patch again to fix it.",
                                         RecommendedAction.UPDATE,
                                         error_message="Signature patch line has incorrect path format"))
        if markers.signature_line not in section:
            return Terminal(self._status(ctx, StatusKind.NEED_UPDATE, "Update Required",
                                         "The host was updated. Run the patch again to fix it.",
                                         RecommendedAction.UPDATE))
        return CONTINUE

    def check_fingerprint_drift(self, ctx: StatusContext) -> StepVerdict:
        baseline = self.fingerprint.load_baseline(ctx.host_root)
        if baseline is None:
            # Recorded after the first successful patch
            return CONTINUE
        current = self.fingerprint.capture(ctx.host_root)
        if needs_repatch(current, baseline):
            log_message(f"[STATUS] Fingerprint drift: {baseline.display} -> {current.display}")
            return Terminal(self._status(ctx, StatusKind.NEED_UPDATE, "Update Required",
                                         f"The host changed since the last patch ({current.display}). Run the patch again.",
                                         RecommendedAction.UPDATE))
        return CONTINUE

    def ready(self, ctx: StatusContext) -> StatusResult:
        return self._status(ctx, StatusKind.READY, "Ready",
                            "The content package is active and up to date.")

    # ---- evaluation ----

    def run_steps(self, host_root: Optional[str], cancel_token: Optional[threading.Event] = None) -> StatusResult:
        ctx = StatusContext(host_root=host_root)
        for step in self.steps:
            check_cancelled(cancel_token, "status check")
            verdict = step(ctx)
            if isinstance(verdict, Terminal):
                return verdict.result
        return self.ready(ctx)

    async def evaluate(self, host_root: Optional[str],
                       cancel_token: Optional[threading.Event] = None) -> StatusResult:
        """Evaluate the status; never raises, failures become an Error result."""
        try:
            return await run_blocking(self.run_steps, host_root, cancel_token)
        except OperationCancelledError:
            return StatusResult(StatusKind.NOT_CHECKED, "Cancelled", "Status check was cancelled.")
        except Exception as e:
            log_message(f"[STATUS] Error: {e}", "ERROR")
            return StatusResult(StatusKind.ERROR, "Error", f"Failed to check status: {e}",
                                error_message=str(e))


StatusCallback = Callable[[StatusResult], None]


class StatusMonitor:
    """
    Keeps the last evaluated status and refreshes it on demand, on a timer
    and on settled watcher events. Overlapping refreshes collapse into the one
    already running.
    """

    def __init__(self, pipeline: StatusPipeline, host_root: Optional[str] = None,
                 on_status_changed: Optional[StatusCallback] = None,
                 on_checking_started: Optional[Callable[[], None]] = None,
                 refresh_interval: float = 30.0):
        self.pipeline = pipeline
        self.host_root = host_root
        self.on_status_changed = on_status_changed
        self.on_checking_started = on_checking_started
        self.refresh_interval = refresh_interval
        self.last_status: Optional[StatusResult] = None
        self._lock = asyncio.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_refreshing(self) -> bool:
        return self._lock.locked()

    async def refresh(self, cancel_token: Optional[threading.Event] = None) -> Optional[StatusResult]:
        """
        Re-evaluate and notify if the status or version changed.

        Returns None without evaluating when another refresh is in flight.
        """
        if self._lock.locked():
            log_message("[STATUS] Refresh already in progress, skipping", "DEBUG")
            return None
        async with self._lock:
            result = await self.pipeline.evaluate(self.host_root, cancel_token)
            previous = self.last_status
            self.last_status = result
            changed = (previous is None or previous.status != result.status
                       or previous.version != result.version)
            if changed:
                log_message(f"[STATUS] Status changed to {result.status.value}")
                if self.on_status_changed is not None:
                    try:
                        self.on_status_changed(result)
                    except Exception as e:
                        log_message(f"[STATUS] Status callback failed: {e}", "ERROR")
            return result

    def start_periodic(self) -> None:
        """Start the fallback refresh timer on the running event loop."""
        self._loop = asyncio.get_running_loop()
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = self._loop.create_task(self._periodic_loop())

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh()
            except Exception as e:
                log_message(f"[STATUS] Periodic refresh failed: {e}", "ERROR")

    def stop_periodic(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

    # ---- watcher wiring; these run on the watcher's dispatcher thread ----

    def handle_immediate(self, path: str) -> None:
        if self.on_checking_started is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self.on_checking_started)

    def handle_settled(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            future = asyncio.run_coroutine_threadsafe(self.refresh(), self._loop)
            future.add_done_callback(_log_refresh_failure)


def _log_refresh_failure(future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        log_message(f"[STATUS] Watcher-triggered refresh failed: {error}", "ERROR")
