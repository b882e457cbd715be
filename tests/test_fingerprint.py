"""
Tests for version fingerprinting and drift detection.
"""

import asyncio
import json

import pytest

from contentlink.modules.fingerprint.index import (
    VersionFingerprint,
    VersionFingerprintService,
    get_change_summary,
    needs_repatch,
    parse_core_digest,
    parse_version_indicator,
)
from conftest import GAMEINFO_PATCHED, STEAM_INF_TEXT, write


def run(coro):
    return asyncio.run(coro)


def fingerprint(**overrides):
    values = dict(host_version="Dec 20 2025", host_build="100", core_digest="ABCDEF",
                  gameinfo_hash="0123456789ABCDEF", marker_present=True)
    values.update(overrides)
    return VersionFingerprint(**values)


@pytest.fixture
def service(config):
    return VersionFingerprintService(config)


@pytest.fixture
def patched_host(host_root, config):
    write(config.paths.resolve(host_root, "gameinfo"), GAMEINFO_PATCHED)
    return host_root


# =============================================================================
# Drift rules
# =============================================================================


class TestNeedsRepatch:

    def test_build_change_with_same_gameinfo_hash(self):
        """A new build alone is enough, even when gameinfo still matches."""
        assert needs_repatch(fingerprint(host_build="101"), fingerprint(host_build="100"))

    def test_gameinfo_hash_change_alone(self):
        assert needs_repatch(fingerprint(gameinfo_hash="FFFF"), fingerprint())

    def test_digest_change(self):
        assert needs_repatch(fingerprint(core_digest="000000"), fingerprint())

    def test_digest_ignored_when_baseline_has_none(self):
        assert not needs_repatch(fingerprint(core_digest="000000"), fingerprint(core_digest=""))

    def test_marker_missing(self):
        assert needs_repatch(fingerprint(marker_present=False), fingerprint())

    def test_unchanged(self):
        assert not needs_repatch(fingerprint(), fingerprint())

    def test_no_baseline_checks_marker_only(self):
        assert not needs_repatch(fingerprint(host_build="999"), None)
        assert needs_repatch(fingerprint(marker_present=False), None)

    def test_hash_comparison_ignores_case(self):
        assert not needs_repatch(fingerprint(gameinfo_hash="abcdef"), fingerprint(gameinfo_hash="ABCDEF"))


# =============================================================================
# Parsing
# =============================================================================


class TestParsing:

    def test_version_indicator(self):
        assert parse_version_indicator(STEAM_INF_TEXT) == ("Dec 20 2025", "6412")

    def test_version_indicator_without_date(self):
        assert parse_version_indicator("ClientVersion=77\n") == ("Build 77", "77")

    def test_version_indicator_without_build(self):
        assert parse_version_indicator("PatchVersion=1\n") == ("Build Unknown", "Unknown")

    def test_core_digest(self):
        assert parse_core_digest("VERSION:3\nDIGEST:abc123\nx\n") == "abc123"
        assert parse_core_digest("no digest") == ""


# =============================================================================
# Service
# =============================================================================


class TestService:

    def test_capture(self, service, patched_host):
        current = service.capture(patched_host)

        assert current.host_build == "6412"
        assert current.host_version == "Dec 20 2025"
        assert current.core_digest == "9F8E7D6C5B4A39281706F5E4D3C2B1A0"
        assert len(current.gameinfo_hash) == 16
        assert current.marker_present

    def test_capture_unpatched(self, service, host_root):
        assert not service.capture(host_root).marker_present

    def test_snapshot_writes_baseline_and_legacy_cache(self, service, patched_host):
        saved = run(service.snapshot(patched_host))

        assert service.load_baseline(patched_host) == saved
        cache = service.read_version_cache(patched_host)
        assert cache["Build"] == "6412"
        assert cache["Version"] == "Dec 20 2025"
        assert cache["GameInfoHash"] == saved.gameinfo_hash
        assert cache["PatchDate"] == saved.captured_at

    def test_host_update_is_detected_after_snapshot(self, service, patched_host, config):
        run(service.snapshot(patched_host))
        write(config.paths.resolve(patched_host, "version_indicator"), STEAM_INF_TEXT.replace("6412", "6413"))

        current = run(service.read_current(patched_host))
        baseline = run(service.read_baseline(patched_host))

        assert service.needs_repatch(current, baseline)

    def test_no_baseline(self, service, host_root):
        assert service.load_baseline(host_root) is None
        assert service.read_version_cache(host_root) == {}

    def test_corrupt_baseline_is_ignored(self, service, host_root):
        write(service.baseline_path(host_root), "{not json")
        assert service.load_baseline(host_root) is None

    def test_non_object_baseline_is_ignored(self, service, host_root):
        write(service.baseline_path(host_root), json.dumps(["a", "b"]))
        assert service.load_baseline(host_root) is None

    def test_compare_patched_version(self, service, patched_host, config):
        assert run(service.compare_patched_version(patched_host)) == (False, "Dec 20 2025 (Build 6412)", None)

        run(service.snapshot(patched_host))
        assert run(service.compare_patched_version(patched_host))[0]

        write(config.paths.resolve(patched_host, "version_indicator"), "ClientVersion=7000\nVersionDate=Jan 5 2026\n")
        matches, current, patched = run(service.compare_patched_version(patched_host))
        assert not matches
        assert current == "Jan 5 2026 (Build 7000)"
        assert patched == "Dec 20 2025 (Build 6412)"


# =============================================================================
# Change summary
# =============================================================================


class TestChangeSummary:

    def test_summary_lists_changed_signals(self):
        summary = get_change_summary(fingerprint(host_build="101", gameinfo_hash="FFFF"),
                                     fingerprint(captured_at="2025-12-20T10:00:00"))

        assert "build: 100 -> 101" in summary
        assert "gameinfo: 0123456789AB... -> FFFF" in summary
        assert "digest" not in summary
        assert "2025-12-20T10:00:00" in summary
        assert summary.endswith("Needs repatch:  yes")

    def test_summary_without_baseline(self):
        summary = get_change_summary(fingerprint(), None)
        assert "Last patched:  never" in summary
        assert summary.endswith("Needs repatch:  no")
