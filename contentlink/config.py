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

import copy
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .utils.index import log_message

CONFIG_ENV_VAR = "CONTENTLINK_CONFIG"

CDN_PRIMARY = "https://cdn.contentlink.example"
CDN_JSDELIVR = "https://cdn.jsdelivr.net/gh/contentlink/ContentPack@main"
CDN_GITHUB_RAW = "https://raw.githubusercontent.com/contentlink/ContentPack/main"


def _mirrors(relative_path: str) -> List[str]:
    return [f"{base}/{relative_path}" for base in (CDN_PRIMARY, CDN_JSDELIVR, CDN_GITHUB_RAW)]


# Host-relative paths use forward slashes; they are joined onto the host root at runtime.
DEFAULT_CONFIG: Dict[str, Any] = {
    "metadata": {
        "schema_version": "1.0.0",
        "module_name": "contentlink"
    },
    "config": {
        "paths": {
            "host_executable": "game/bin/win64/dota2.exe",
            "signatures": "game/bin/win64/dota.signatures",
            "gameinfo": "game/dota/gameinfo_branchspecific.gi",
            "version_indicator": "game/dota/steam.inf",
            "package_dir": "game/_ContentLink",
            "package_archive": "game/_ContentLink/pak01_dir.vpk",
            "package_version": "game/_ContentLink/version.txt",
            "hash_record": "game/_ContentLink/ContentPack.hash",
            "cache_dir": "game/_ContentLink/_temp",
            "version_cache": "game/_ContentLink/_temp/version_cache.txt",
            "baseline": "game/_ContentLink/_temp/version.json"
        },
        "markers": {
            "anchor": "DIGEST:",
            "gameinfo_marker": "_ContentLink",
            "signature_line": "...\\..\\..\\dota\\gameinfo_branchspecific.gi~SHA1:1A9B91FB43FE89AD104B8001282D292EED94584D;CRC:043F604A"
        },
        "sources": {
            "package_hash": _mirrors("remote/ContentPack.hash"),
            "gameinfo": _mirrors("remote/gameinfo_branchspecific.gi"),
            "gameinfo_disable": _mirrors("remote/gameinfo_branchspecific_disable.gi"),
            "release_manifest": [f"{CDN_PRIMARY}/releases/releases.json"],
            "releases_api": "https://api.github.com/repos/contentlink/ContentPack/releases/latest",
            "asset_suffix": ".zip"
        },
        "network": {
            "timeout_seconds": 60,
            "retry_attempts": 3,
            "retry_delay_seconds": 2.0,
            "user_agent": "ContentLink/1.0"
        },
        "watcher": {
            "debounce_seconds": 0.5,
            "health_check_seconds": 5.0
        },
        "status": {
            "refresh_interval_seconds": 30.0
        }
    }
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of base with override merged in; nested dicts merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Optional[str] = None) -> "ContentLinkConfig":
    """
    Load configuration from an index.json file merged over the defaults.

    Args:
        config_path: Path to index.json. Falls back to $CONTENTLINK_CONFIG.
    Returns:
        ContentLinkConfig: Defaults if no file is configured or it cannot be read.
    """
    config_path = config_path or os.environ.get(CONFIG_ENV_VAR)
    data = DEFAULT_CONFIG
    if config_path:
        try:
            with open(config_path, "r") as f:
                data = deep_merge(DEFAULT_CONFIG, json.load(f))
            log_message(f"Loaded configuration from {config_path}", "DEBUG")
        except (OSError, ValueError) as e:
            log_message(f"Failed to load config {config_path}: {e}", "WARNING")
    return ContentLinkConfig.from_dict(data)


@dataclass
class HostPaths:
    host_executable: str
    signatures: str
    gameinfo: str
    version_indicator: str
    package_dir: str
    package_archive: str
    package_version: str
    hash_record: str
    cache_dir: str
    version_cache: str
    baseline: str

    def resolve(self, host_root: str, name: str) -> str:
        return os.path.join(host_root, *getattr(self, name).split("/"))

    def watched(self) -> List[str]:
        """Names of the files whose changes can invalidate the patch."""
        return ["package_archive", "gameinfo", "signatures", "version_indicator"]


@dataclass
class MarkerConfig:
    anchor: str
    gameinfo_marker: str
    signature_line: str


@dataclass
class SourceConfig:
    package_hash: List[str]
    gameinfo: List[str]
    gameinfo_disable: List[str]
    release_manifest: List[str]
    releases_api: str
    asset_suffix: str = ".zip"


@dataclass
class NetworkConfig:
    timeout_seconds: float = 60
    retry_attempts: int = 3
    retry_delay_seconds: float = 2.0
    user_agent: str = "ContentLink/1.0"


@dataclass
class ContentLinkConfig:
    """Explicit configuration object handed to every component."""
    paths: HostPaths
    markers: MarkerConfig
    sources: SourceConfig
    network: NetworkConfig = field(default_factory=NetworkConfig)
    debounce_seconds: float = 0.5
    health_check_seconds: float = 5.0
    refresh_interval_seconds: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentLinkConfig":
        config = data.get("config", data)
        return cls(
            paths=HostPaths(**config["paths"]),
            markers=MarkerConfig(**config["markers"]),
            sources=SourceConfig(**config["sources"]),
            network=NetworkConfig(**config.get("network", {})),
            debounce_seconds=float(config.get("watcher", {}).get("debounce_seconds", 0.5)),
            health_check_seconds=float(config.get("watcher", {}).get("health_check_seconds", 5.0)),
            refresh_interval_seconds=float(config.get("status", {}).get("refresh_interval_seconds", 30.0)),
        )

    @classmethod
    def default(cls) -> "ContentLinkConfig":
        return cls.from_dict(DEFAULT_CONFIG)
