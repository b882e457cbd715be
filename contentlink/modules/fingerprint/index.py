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

import json
import os
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ...config import ContentLinkConfig
from ...utils.index import (
    atomic_write_text,
    compute_content_hash,
    hashes_equal,
    log_message,
    read_text_fresh,
    run_blocking,
)

BUILD_PATTERN = re.compile(r"ClientVersion=(\d+)")
VERSION_DATE_PATTERN = re.compile(r"VersionDate=(.+)")
DIGEST_PATTERN = re.compile(r"DIGEST:([A-Fa-f0-9]+)")

UNKNOWN_BUILD = "Unknown"


@dataclass
class VersionFingerprint:
    """Host version, build and control file hashes read in one pass."""
    host_version: str
    host_build: str
    core_digest: str
    gameinfo_hash: str
    marker_present: bool
    captured_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionFingerprint":
        return cls(
            host_version=str(data.get("host_version", "")),
            host_build=str(data.get("host_build", UNKNOWN_BUILD)),
            core_digest=str(data.get("core_digest", "") or ""),
            gameinfo_hash=str(data.get("gameinfo_hash", "") or ""),
            marker_present=bool(data.get("marker_present", True)),
            captured_at=data.get("captured_at"),
        )

    @property
    def display(self) -> str:
        return f"{self.host_version} (Build {self.host_build})"


def parse_version_indicator(content: str) -> Tuple[str, str]:
    """Extract (display version, build id) from steam.inf style key=value text."""
    build_match = BUILD_PATTERN.search(content)
    build = build_match.group(1) if build_match else UNKNOWN_BUILD
    date_match = VERSION_DATE_PATTERN.search(content)
    version = date_match.group(1).strip() if date_match else f"Build {build}"
    return version, build


def parse_core_digest(content: str) -> str:
    match = DIGEST_PATTERN.search(content)
    return match.group(1) if match else ""


def needs_repatch(current: VersionFingerprint, baseline: Optional[VersionFingerprint]) -> bool:
    """
    True if the patch can no longer be trusted.

    Any one signal is enough: marker missing, gameinfo content hash changed,
    build id changed, or core digest changed (when the baseline recorded one).
    Without a baseline only the marker is checked.
    """
    if not current.marker_present:
        return True
    if baseline is None:
        return False
    if baseline.gameinfo_hash and not hashes_equal(current.gameinfo_hash, baseline.gameinfo_hash):
        return True
    if current.host_build != baseline.host_build:
        return True
    if baseline.core_digest and not hashes_equal(current.core_digest, baseline.core_digest):
        return True
    return False


def _truncate(value: Optional[str], length: int) -> str:
    if not value:
        return "None"
    return value if len(value) <= length else value[:length] + "..."


def get_change_summary(current: VersionFingerprint, baseline: Optional[VersionFingerprint]) -> str:
    """Human-readable report of what changed since the last successful patch."""
    lines = [f"Current host:  {current.display}"]
    if baseline is None:
        lines.append("Last patched:  never")
    else:
        lines.append(f"Last patched:  {baseline.display} at {baseline.captured_at or 'unknown time'}")
        if current.host_build != baseline.host_build:
            lines.append(f"  build: {baseline.host_build} -> {current.host_build}")
        if baseline.core_digest and not hashes_equal(current.core_digest, baseline.core_digest):
            lines.append(f"  digest: {_truncate(baseline.core_digest, 12)} -> {_truncate(current.core_digest, 12)}")
        if baseline.gameinfo_hash and not hashes_equal(current.gameinfo_hash, baseline.gameinfo_hash):
            lines.append(f"  gameinfo: {_truncate(baseline.gameinfo_hash, 12)} -> {_truncate(current.gameinfo_hash, 12)}")
    lines.append(f"Marker present: {'yes' if current.marker_present else 'no'}")
    lines.append(f"Needs repatch:  {'yes' if needs_repatch(current, baseline) else 'no'}")
    return "\n".join(lines)


class VersionFingerprintService:
    """Reads the current host fingerprint and persists the post-patch baseline."""

    def __init__(self, config: ContentLinkConfig):
        self.config = config

    def baseline_path(self, host_root: str) -> str:
        return self.config.paths.resolve(host_root, "baseline")

    def version_cache_path(self, host_root: str) -> str:
        return self.config.paths.resolve(host_root, "version_cache")

    def capture(self, host_root: str) -> VersionFingerprint:
        paths = self.config.paths
        indicator = paths.resolve(host_root, "version_indicator")
        signatures = paths.resolve(host_root, "signatures")
        gameinfo = paths.resolve(host_root, "gameinfo")

        version, build = (parse_version_indicator(read_text_fresh(indicator))
                          if os.path.isfile(indicator) else ("Unknown", UNKNOWN_BUILD))
        digest = parse_core_digest(read_text_fresh(signatures)) if os.path.isfile(signatures) else ""
        gameinfo_content = read_text_fresh(gameinfo) if os.path.isfile(gameinfo) else ""
        marker = self.config.markers.gameinfo_marker.lower()

        return VersionFingerprint(
            host_version=version,
            host_build=build,
            core_digest=digest,
            gameinfo_hash=compute_content_hash(gameinfo_content),
            marker_present=marker in gameinfo_content.lower(),
            captured_at=datetime.now().isoformat(timespec="seconds"),
        )

    async def read_current(self, host_root: str) -> VersionFingerprint:
        return await run_blocking(self.capture, host_root)

    def load_baseline(self, host_root: str) -> Optional[VersionFingerprint]:
        path = self.baseline_path(host_root)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log_message(f"[VERSION] Ignoring unreadable baseline {path}: {e}", "WARNING")
            return None
        if not isinstance(data, dict):
            log_message(f"[VERSION] Ignoring malformed baseline {path}", "WARNING")
            return None
        return VersionFingerprint.from_dict(data)

    async def read_baseline(self, host_root: str) -> Optional[VersionFingerprint]:
        return await run_blocking(self.load_baseline, host_root)

    def _write_baseline(self, host_root: str, fingerprint: VersionFingerprint) -> None:
        atomic_write_text(self.baseline_path(host_root), json.dumps(fingerprint.to_dict(), indent=2))
        cache_lines = [
            f"Version={fingerprint.host_version}",
            f"Build={fingerprint.host_build}",
            f"Digest={fingerprint.core_digest}",
            f"GameInfoHash={fingerprint.gameinfo_hash}",
            f"PatchDate={fingerprint.captured_at or datetime.now().isoformat(timespec='seconds')}",
        ]
        atomic_write_text(self.version_cache_path(host_root), "\n".join(cache_lines) + "\n")
        log_message(f"[VERSION] Baseline saved: {fingerprint.display}")

    async def write_baseline(self, host_root: str, fingerprint: VersionFingerprint) -> None:
        await run_blocking(self._write_baseline, host_root, fingerprint)

    async def snapshot(self, host_root: str) -> VersionFingerprint:
        """Record the current fingerprint as the new baseline."""
        fingerprint = await self.read_current(host_root)
        await self.write_baseline(host_root, fingerprint)
        return fingerprint

    def read_version_cache(self, host_root: str) -> Dict[str, str]:
        """Parse the legacy key=value version cache; missing file gives {}."""
        path = self.version_cache_path(host_root)
        values: Dict[str, str] = {}
        if not os.path.isfile(path):
            return values
        for line in read_text_fresh(path).splitlines():
            key, sep, value = line.partition("=")
            if sep:
                values[key.strip()] = value.strip()
        return values

    def needs_repatch(self, current: VersionFingerprint, baseline: Optional[VersionFingerprint]) -> bool:
        return needs_repatch(current, baseline)

    async def compare_patched_version(self, host_root: str) -> Tuple[bool, str, Optional[str]]:
        """
        Compare the current host version with the one recorded at the last patch.

        Returns:
            (matches, current_display, patched_display); patched_display is None
            when no patch has been recorded yet.
        """
        current = await self.read_current(host_root)
        baseline = await self.read_baseline(host_root)
        if baseline is None:
            return False, current.display, None
        matches = (current.host_version == baseline.host_version
                   and current.host_build == baseline.host_build)
        return matches, current.display, baseline.display

    def get_change_summary(self, current: VersionFingerprint, baseline: Optional[VersionFingerprint]) -> str:
        return get_change_summary(current, baseline)
