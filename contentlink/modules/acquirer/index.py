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
Content package acquisition.

Resolves the package download URL through the releases API, downloads it with
mirror fallback, verifies the published SHA-256, extracts it into an isolated
staging directory and commits the staged files into the install directory with
one transaction. The local hash record is only written after that commit.
"""

import os
import shutil
import tempfile
import threading
import zipfile
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from ...config import ContentLinkConfig
from ...utils.downloader import DownloadProgress, MirrorDownloader
from ...utils.errors import (
    ContentLinkError,
    FileSystemOperationError,
    IntegrityMismatchError,
    NetworkFatalError,
    OperationCancelledError,
)
from ...utils.index import (
    atomic_write_text,
    check_cancelled,
    compute_file_sha256,
    hashes_equal,
    log_message,
    run_blocking,
)
from ...utils.transaction import CopyOperation, CreateDirectoryOperation, TransactionalFileWriter
from ..patcher.index import gameinfo_has_marker, signature_has_marker

ProgressCallback = Callable[[DownloadProgress], None]


@dataclass(frozen=True)
class PackageManifest:
    """Remote hash and resolved download URL for one install attempt."""
    remote_hash: str
    download_url: str


@dataclass
class LocalInstallState:
    vpk_present: bool
    local_hash: Optional[str]
    signature_marker_present: bool
    gameinfo_marker_present: bool


@dataclass
class StagedPackage:
    """A verified, extracted package waiting to be committed."""
    staging_root: str
    extract_dir: str
    archive_path: str
    remote_hash: str

    def cleanup(self) -> None:
        if os.path.isdir(self.staging_root):
            shutil.rmtree(self.staging_root, ignore_errors=True)


def read_hash_record(path: str) -> Optional[str]:
    """Return the stored package hash; None if there is no record, "" if it is empty."""
    if not os.path.isfile(path):
        return None
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return f.read().strip()


def parse_hash_text(text: str) -> str:
    """Accept either a bare hex digest or 'sha256sum' style '<hash>  <file>'."""
    parts = text.split()
    return parts[0] if parts else ""


def safe_extract_zip(archive_path: str, destination: str) -> int:
    """
    Extract archive_path into destination, rejecting entries that would land outside it.

    Returns:
        int: Number of files extracted.
    """
    root = os.path.realpath(destination)
    os.makedirs(root, exist_ok=True)
    try:
        with zipfile.ZipFile(archive_path) as archive:
            members = archive.infolist()
            for member in members:
                target = os.path.realpath(os.path.join(root, member.filename))
                if target != root and not target.startswith(root + os.sep):
                    raise FileSystemOperationError(f"Archive entry escapes staging directory: {member.filename}")
            for member in members:
                archive.extract(member, root)
            return sum(1 for m in members if not m.is_dir())
    except zipfile.BadZipFile as e:
        raise FileSystemOperationError(f"Downloaded package is not a valid zip archive: {e}") from e


class PackageAcquirer:
    """Downloads, verifies and installs the content package."""

    def __init__(self, config: ContentLinkConfig, downloader: MirrorDownloader):
        self.config = config
        self.downloader = downloader

    def local_hash_path(self, host_root: str) -> str:
        return self.config.paths.resolve(host_root, "hash_record")

    def package_dir(self, host_root: str) -> str:
        return self.config.paths.resolve(host_root, "package_dir")

    # ---- remote lookups (blocking) ----

    def _fetch_remote_hash(self, cancel_token: Optional[threading.Event]) -> str:
        text = self.downloader.fetch_text(self.config.sources.package_hash, cancel_token, label="package hash")
        remote_hash = parse_hash_text(text)
        if not remote_hash:
            raise NetworkFatalError("Published package hash is empty")
        return remote_hash

    def _resolve_asset_url(self, cancel_token: Optional[threading.Event]) -> str:
        suffix = self.config.sources.asset_suffix.lower()
        release = self.downloader.fetch_json([self.config.sources.releases_api], cancel_token, label="releases API")
        assets = release.get("assets") if isinstance(release, dict) else None
        if not isinstance(assets, list):
            raise NetworkFatalError("Releases API response has no asset list")
        for asset in assets:
            if not isinstance(asset, dict):
                continue
            name = asset.get("name") or ""
            url = asset.get("browser_download_url") or ""
            if name and url and name.lower().endswith(suffix):
                log_message(f"[INSTALL] Resolved package asset {name}")
                return url
        raise NetworkFatalError(f"No release asset ending in {suffix}")

    # ---- async facade ----

    async def check_for_update(self, local_hash_path: str,
                               cancel_token: Optional[threading.Event] = None) -> Tuple[bool, bool]:
        """
        Compare the local hash record with the published one.

        Returns:
            (has_newer, has_local_install). Without a local record the package
            always counts as newer; if the remote hash cannot be fetched the
            local install is assumed current.
        """
        local_hash = await run_blocking(read_hash_record, local_hash_path)
        if local_hash is None:
            return True, False

        try:
            remote_hash = await run_blocking(self._fetch_remote_hash, cancel_token)
        except NetworkFatalError as e:
            log_message(f"[INSTALL] Could not fetch remote hash: {e}", "WARNING")
            return False, True

        has_newer = not hashes_equal(local_hash, remote_hash)
        log_message(f"[INSTALL] Update check: local={local_hash[:12]} remote={remote_hash[:12]} newer={has_newer}", "DEBUG")
        return has_newer, True

    async def fetch_manifest(self, cancel_token: Optional[threading.Event] = None) -> PackageManifest:
        remote_hash = await run_blocking(self._fetch_remote_hash, cancel_token)
        download_url = await self.resolve_asset_url(cancel_token)
        return PackageManifest(remote_hash=remote_hash, download_url=download_url)

    async def resolve_asset_url(self, cancel_token: Optional[threading.Event] = None) -> str:
        return await run_blocking(self._resolve_asset_url, cancel_token)

    async def download_and_stage(self, manifest: PackageManifest,
                                 progress: Optional[ProgressCallback] = None,
                                 cancel_token: Optional[threading.Event] = None) -> StagedPackage:
        """
        Download, verify and extract the package into a fresh staging directory.

        Raises:
            IntegrityMismatchError: the download does not match manifest.remote_hash.
            NetworkFatalError: no source delivered the archive.
            OperationCancelledError: cancelled; the staging directory is removed.
        """
        return await run_blocking(self._download_and_stage, manifest, progress, cancel_token)

    def _download_and_stage(self, manifest: PackageManifest,
                            progress: Optional[ProgressCallback],
                            cancel_token: Optional[threading.Event]) -> StagedPackage:
        check_cancelled(cancel_token, "before package download")
        staging_root = tempfile.mkdtemp(prefix="contentlink_")
        staged = StagedPackage(
            staging_root=staging_root,
            extract_dir=os.path.join(staging_root, "extracted"),
            archive_path=os.path.join(staging_root, "package.zip"),
            remote_hash=manifest.remote_hash,
        )
        try:
            self.downloader.download_to_file(
                [manifest.download_url], staged.archive_path, progress, cancel_token, label="package"
            )
            check_cancelled(cancel_token, "before verification")

            actual_hash = compute_file_sha256(staged.archive_path)
            if not hashes_equal(actual_hash, manifest.remote_hash):
                log_message(f"[INSTALL] Integrity check failed for {manifest.download_url}", "ERROR")
                raise IntegrityMismatchError(manifest.remote_hash, actual_hash)
            log_message("[INSTALL] Package hash verified")

            check_cancelled(cancel_token, "before extraction")
            count = safe_extract_zip(staged.archive_path, staged.extract_dir)
            log_message(f"[INSTALL] Extracted {count} files to staging")
            return staged
        except BaseException:
            staged.cleanup()
            raise

    async def commit_staged_files(self, staging_dir: str, install_dir: str, remote_hash: str,
                                  hash_record_path: Optional[str] = None,
                                  cancel_token: Optional[threading.Event] = None) -> int:
        """
        Copy every staged file into install_dir as one transaction, then record the hash.

        The hash goes to hash_record_path, or next to the installed files when
        no path is given.

        Returns:
            int: Number of files committed.
        """
        txn = TransactionalFileWriter(name="install")
        txn.add_operation(CreateDirectoryOperation(install_dir))
        file_count = 0
        for dirpath, dirnames, filenames in os.walk(staging_dir):
            rel_dir = os.path.relpath(dirpath, staging_dir)
            target_dir = install_dir if rel_dir == "." else os.path.join(install_dir, rel_dir)
            for dirname in sorted(dirnames):
                txn.add_operation(CreateDirectoryOperation(os.path.join(target_dir, dirname)))
            for filename in sorted(filenames):
                txn.add_operation(CopyOperation(os.path.join(dirpath, filename), os.path.join(target_dir, filename)))
                file_count += 1

        await txn.execute(cancel_token)
        txn.commit()
        if hash_record_path is None:
            hash_record_path = os.path.join(install_dir, os.path.basename(self.config.paths.hash_record))
        await run_blocking(atomic_write_text, hash_record_path, remote_hash.strip())
        log_message(f"[INSTALL] Committed {file_count} files to {install_dir}")
        return file_count

    async def install(self, host_root: str,
                      progress: Optional[ProgressCallback] = None,
                      cancel_token: Optional[threading.Event] = None,
                      force: bool = False) -> Tuple[bool, bool]:
        """
        Full install: manifest, download, verify, stage, commit.

        Returns:
            (success, already_up_to_date)
        """
        install_dir = self.package_dir(host_root)
        hash_record_path = self.local_hash_path(host_root)
        executable = self.config.paths.resolve(host_root, "host_executable")
        if not os.path.isfile(executable):
            log_message(f"[INSTALL] Host executable not found: {executable}", "ERROR")
            return False, False
        try:
            manifest = await self.fetch_manifest(cancel_token)

            local_hash = await run_blocking(read_hash_record, hash_record_path)
            if not force and hashes_equal(local_hash, manifest.remote_hash):
                log_message("[INSTALL] Package already up to date")
                return True, True

            staged = await self.download_and_stage(manifest, progress, cancel_token)
            try:
                await self.commit_staged_files(staged.extract_dir, install_dir, manifest.remote_hash,
                                               hash_record_path, cancel_token)
            finally:
                await run_blocking(staged.cleanup)
            return True, False
        except OperationCancelledError as e:
            log_message(f"[INSTALL] Cancelled: {e}", "WARNING")
            return False, False
        except IntegrityMismatchError as e:
            log_message(f"[INSTALL] {e}; nothing was installed", "ERROR")
            return False, False
        except ContentLinkError as e:
            log_message(f"[INSTALL] Install failed: {e}", "ERROR")
            return False, False
        except OSError as e:
            log_message(f"[INSTALL] File system error during install: {e}", "ERROR")
            return False, False

    async def read_local_state(self, host_root: str) -> LocalInstallState:
        return await run_blocking(self._read_local_state, host_root)

    def _read_local_state(self, host_root: str) -> LocalInstallState:
        paths = self.config.paths
        markers = self.config.markers
        signatures = paths.resolve(host_root, "signatures")
        gameinfo = paths.resolve(host_root, "gameinfo")
        return LocalInstallState(
            vpk_present=os.path.isfile(paths.resolve(host_root, "package_archive")),
            local_hash=read_hash_record(self.local_hash_path(host_root)),
            signature_marker_present=signature_has_marker(signatures, markers.anchor, markers.signature_line),
            gameinfo_marker_present=gameinfo_has_marker(gameinfo, markers.gameinfo_marker),
        )
