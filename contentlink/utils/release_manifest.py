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
Reader for the remote release manifest:

    {"latest": "2.1.2",
     "releases": {"2.1.2": {"installer": url, "portable": url, "notes": "...", "build": 42}}}
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from packaging import version

from .errors import CorruptControlFileError
from .index import log_message


@dataclass(frozen=True)
class ReleaseEntry:
    version: str
    installer: Optional[str] = None
    portable: Optional[str] = None
    notes: str = ""
    build: Optional[int] = None


def normalize_version(value: str) -> str:
    return value.strip().lstrip("vV")


class ReleaseManifest:
    """Parsed release manifest with version-ordered lookups."""

    def __init__(self, latest: str, releases: Dict[str, ReleaseEntry]):
        self.latest = normalize_version(latest) if latest else ""
        self.releases = releases

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReleaseManifest":
        if not isinstance(data, dict):
            raise CorruptControlFileError("Release manifest must be a JSON object")
        raw_releases = data.get("releases") or {}
        if not isinstance(raw_releases, dict):
            raise CorruptControlFileError("Release manifest 'releases' must be an object")

        releases: Dict[str, ReleaseEntry] = {}
        for key, entry in raw_releases.items():
            if not isinstance(entry, dict):
                log_message(f"Skipping malformed release entry {key!r}", "WARNING")
                continue
            name = normalize_version(str(key))
            try:
                version.parse(name)
            except version.InvalidVersion:
                log_message(f"Skipping release with invalid version {key!r}", "WARNING")
                continue
            build = entry.get("build")
            releases[name] = ReleaseEntry(
                version=name,
                installer=entry.get("installer"),
                portable=entry.get("portable"),
                notes=entry.get("notes", "") or "",
                build=int(build) if build is not None else None,
            )
        return cls(str(data.get("latest", "")), releases)

    def ordered_versions(self) -> List[str]:
        """Release versions, newest first."""
        return sorted(self.releases, key=version.parse, reverse=True)

    def latest_release(self) -> Optional[ReleaseEntry]:
        """The entry named by 'latest', else the highest version present."""
        if self.latest in self.releases:
            return self.releases[self.latest]
        ordered = self.ordered_versions()
        return self.releases[ordered[0]] if ordered else None

    def is_newer(self, current: str) -> bool:
        latest = self.latest_release()
        if latest is None:
            return False
        try:
            return version.parse(latest.version) > version.parse(normalize_version(current))
        except version.InvalidVersion:
            log_message(f"Cannot compare against invalid version {current!r}", "WARNING")
            return False

    def releases_since(self, current: str) -> List[ReleaseEntry]:
        """Entries strictly newer than current, newest first (for combined release notes)."""
        current_version = version.parse(normalize_version(current))
        return [self.releases[v] for v in self.ordered_versions() if version.parse(v) > current_version]
