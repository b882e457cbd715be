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

import argparse
import asyncio
import json
import logging
import os
import sys
import threading
from typing import Callable, Optional, Tuple

import requests

from .config import ContentLinkConfig, load_config
from .modules.acquirer.index import PackageAcquirer, ProgressCallback
from .modules.fingerprint.index import VersionFingerprintService
from .modules.patcher.index import PatchEngine, PatchOutcome, PatchResult
from .modules.status.index import StatusMonitor, StatusPipeline, StatusResult
from .modules.watcher.index import ChangeWatcher
from .utils.downloader import DownloadProgress, MirrorDownloader
from .utils.errors import ContentLinkError
from .utils.index import log_message, run_blocking
from .utils.release_manifest import ReleaseManifest


def setup_global_update_logging():
    """
    Set up the stdout handler used by the command line entry point.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler.setFormatter(unified_format)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    logging.info("=" * 80)
    logging.info("CONTENTLINK SESSION STARTED")
    logging.info(f"Command: {' '.join(sys.argv)}")
    logging.info(f"Working Directory: {os.getcwd()}")
    logging.info("=" * 80)


class ContentLinkService:
    """
    Caller-facing facade over acquisition, patching, status and watching.

    Every operation converts failures into result values; nothing here raises
    ContentLinkError to the caller.
    """

    def __init__(self, host_root: Optional[str] = None,
                 config: Optional[ContentLinkConfig] = None,
                 session: Optional[requests.Session] = None,
                 downloader: Optional[MirrorDownloader] = None):
        self.host_root = host_root
        self.config = config or load_config()
        network = self.config.network
        self.downloader = downloader or MirrorDownloader(
            session=session,
            max_attempts=network.retry_attempts,
            retry_delay=network.retry_delay_seconds,
            timeout=network.timeout_seconds,
            user_agent=network.user_agent,
        )
        self.fingerprint = VersionFingerprintService(self.config)
        self.acquirer = PackageAcquirer(self.config, self.downloader)
        self.patcher = PatchEngine(self.config, self.downloader, self.fingerprint)
        self.pipeline = StatusPipeline(self.config, self.fingerprint)
        self.monitor: Optional[StatusMonitor] = None
        self.watcher: Optional[ChangeWatcher] = None

    def _require_host(self) -> Optional[str]:
        if not self.host_root:
            log_message("No host path configured", "ERROR")
            return None
        return self.host_root

    async def check_for_update(self, cancel_token: Optional[threading.Event] = None) -> Tuple[bool, bool]:
        """Returns (has_newer, has_local_install)."""
        host_root = self._require_host()
        if host_root is None:
            return False, False
        return await self.acquirer.check_for_update(self.acquirer.local_hash_path(host_root), cancel_token)

    async def install(self, progress: Optional[ProgressCallback] = None,
                      cancel_token: Optional[threading.Event] = None,
                      force: bool = False) -> Tuple[bool, bool]:
        """Returns (success, already_up_to_date)."""
        host_root = self._require_host()
        if host_root is None:
            return False, False
        return await self.acquirer.install(host_root, progress, cancel_token, force)

    async def patch(self, cancel_token: Optional[threading.Event] = None) -> PatchOutcome:
        host_root = self._require_host()
        if host_root is None:
            return PatchOutcome(PatchResult.FAILED, "No host path configured")
        return await self.patcher.patch(host_root, cancel_token)

    async def disable(self, cancel_token: Optional[threading.Event] = None) -> PatchOutcome:
        host_root = self._require_host()
        if host_root is None:
            return PatchOutcome(PatchResult.FAILED, "No host path configured")
        return await self.patcher.disable(host_root, cancel_token)

    async def get_status(self, cancel_token: Optional[threading.Event] = None) -> StatusResult:
        return await self.pipeline.evaluate(self.host_root, cancel_token)

    async def fetch_release_manifest(self, cancel_token: Optional[threading.Event] = None) -> Optional[ReleaseManifest]:
        """Latest tool releases, or None if no mirror could deliver a valid manifest."""
        try:
            data = await run_blocking(self.downloader.fetch_json, self.config.sources.release_manifest,
                                      cancel_token, "release manifest")
            return ReleaseManifest.from_dict(data)
        except (ContentLinkError, ValueError) as e:
            log_message(f"Could not read release manifest: {e}", "WARNING")
            return None

    def start_watching(self, host_root: str, callback: Callable[[StatusResult], None],
                       on_checking_started: Optional[Callable[[], None]] = None) -> None:
        """
        Watch the host's control files and report status changes to callback.

        Must be called from a running event loop; refreshes are scheduled on it.
        """
        self.stop_watching()
        self.host_root = host_root
        self.monitor = StatusMonitor(
            self.pipeline,
            host_root=host_root,
            on_status_changed=callback,
            on_checking_started=on_checking_started,
            refresh_interval=self.config.refresh_interval_seconds,
        )
        self.monitor.start_periodic()
        self.watcher = ChangeWatcher(
            on_settled=self.monitor.handle_settled,
            on_immediate=self.monitor.handle_immediate,
            debounce_seconds=self.config.debounce_seconds,
            health_check_seconds=self.config.health_check_seconds,
        )
        paths = self.config.paths
        self.watcher.start([paths.resolve(host_root, name) for name in paths.watched()])

    def stop_watching(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        if self.monitor is not None:
            self.monitor.stop_periodic()
            self.monitor = None


def _print_result(result: dict) -> None:
    print(json.dumps(result, indent=2, default=str))


def _log_progress(progress: DownloadProgress) -> None:
    if progress.percent is not None:
        log_message(f"[INSTALL] Downloading {progress.percent}% ({progress.details}, {progress.speed})")


async def _watch_forever(service: ContentLinkService, host_root: str) -> None:
    def on_status(result: StatusResult) -> None:
        _print_result(result.to_dict())

    service.start_watching(host_root, on_status)
    try:
        await service.monitor.refresh()
        while True:
            await asyncio.sleep(3600)
    finally:
        service.stop_watching()


async def run_command(service: ContentLinkService, command: str, force: bool = False) -> bool:
    if command == "status":
        status = await service.get_status()
        _print_result(status.to_dict())
        return status.error_message is None
    if command == "check":
        has_newer, has_local = await service.check_for_update()
        _print_result({"success": True, "has_newer": has_newer, "has_local_install": has_local})
        return True
    if command == "install":
        success, up_to_date = await service.install(_log_progress, force=force)
        _print_result({"success": success, "already_up_to_date": up_to_date})
        return success
    if command in ("patch", "disable"):
        outcome = await (service.patch() if command == "patch" else service.disable())
        _print_result({"success": outcome.success, "result": outcome.result.value, "reason": outcome.reason})
        return outcome.success
    if command == "watch":
        await _watch_forever(service, service.host_root)
        return True
    raise ValueError(f"Unknown command: {command}")


def main(argv=None) -> int:
    """
    Command line entry point.
    """
    parser = argparse.ArgumentParser(description="ContentLink patch manager")
    parser.add_argument("--host", required=True,
                        help="Host installation root folder")
    parser.add_argument("--config", default=None,
                        help="Path to an index.json overriding the defaults")
    parser.add_argument("--force", action="store_true",
                        help="Reinstall even if the local package is current")
    parser.add_argument("command", choices=["status", "check", "install", "patch", "disable", "watch"],
                        help="Operation to run")
    args = parser.parse_args(argv)

    setup_global_update_logging()
    service = ContentLinkService(host_root=args.host, config=load_config(args.config))
    try:
        success = asyncio.run(run_command(service, args.command, force=args.force))
    except KeyboardInterrupt:
        log_message("Interrupted by user", "WARNING")
        return 130
    return 0 if success else 1
