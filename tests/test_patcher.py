"""
Tests for the patch engine.

Covers:
- Signature rewrite: lines after the anchor replaced by exactly one marker line
- Idempotence and newline style preservation
- Both-or-neither behavior when any step fails
- Cancellation, disable and the already-patched fast path
"""

import asyncio
import os
import threading

import pytest

from contentlink.modules.fingerprint.index import VersionFingerprintService
from contentlink.modules.patcher.index import (
    PatchEngine,
    PatchResult,
    PatchState,
    build_signature_content,
    gameinfo_has_marker,
    signature_has_malformed_marker,
    signature_has_marker,
    signature_section_after_anchor,
)
from contentlink.utils.downloader import MirrorDownloader
from contentlink.utils.errors import CorruptControlFileError
from conftest import GAMEINFO_CLEAN, GAMEINFO_PATCHED, SIGNATURES_TEXT, read_bytes, write

ANCHOR_PREFIX = SIGNATURES_TEXT[:SIGNATURES_TEXT.index("stale_line_one")]


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def engine(config, session):
    downloader = MirrorDownloader(session=session, retry_delay=0, sleep=lambda s: None)
    return PatchEngine(config, downloader, VersionFingerprintService(config))


@pytest.fixture
def control_paths(config, host_root):
    return (config.paths.resolve(host_root, "signatures"),
            config.paths.resolve(host_root, "gameinfo"))


def temp_leftovers(directory):
    return [name for name in os.listdir(directory)
            if name.endswith((".tmp", ".transaction_tmp", ".transaction_bak"))]


# =============================================================================
# Signature content
# =============================================================================


class TestBuildSignatureContent:

    def test_replaces_lines_after_anchor_with_marker(self, config):
        marker = config.markers.signature_line
        result = build_signature_content(SIGNATURES_TEXT, "DIGEST:", marker)

        assert result == ANCHOR_PREFIX + marker + "\n"
        assert result.count(marker) == 1
        assert "stale_line" not in result

    def test_applying_twice_is_identical(self, config):
        marker = config.markers.signature_line
        once = build_signature_content(SIGNATURES_TEXT, "DIGEST:", marker)
        assert build_signature_content(once, "DIGEST:", marker) == once

    def test_crlf_preserved(self, config):
        crlf = SIGNATURES_TEXT.replace("\n", "\r\n")
        result = build_signature_content(crlf, "DIGEST:", config.markers.signature_line)

        assert result.endswith(config.markers.signature_line + "\r\n")
        assert "\n" not in result.replace("\r\n", "")

    def test_anchor_without_trailing_newline(self, config):
        content = "VERSION:3\nDIGEST:ABCD"
        result = build_signature_content(content, "DIGEST:", "MARK")
        assert result == "VERSION:3\nDIGEST:ABCD\nMARK\n"

    def test_none_marker_trims_to_anchor(self):
        assert build_signature_content(SIGNATURES_TEXT, "DIGEST:", None) == ANCHOR_PREFIX

    def test_missing_anchor(self):
        with pytest.raises(CorruptControlFileError):
            build_signature_content("VERSION:3\nno anchor here\n", "DIGEST:", "MARK")


# =============================================================================
# Patch
# =============================================================================


class TestPatch:

    def test_patch_rewrites_both_files(self, engine, config, host_root, control_paths, gameinfo_mirrors):
        signatures, gameinfo = control_paths

        outcome = run(engine.patch(host_root))

        assert outcome.result is PatchResult.SUCCESS
        assert outcome.success
        assert read_bytes(signatures).decode() == ANCHOR_PREFIX + config.markers.signature_line + "\n"
        assert read_bytes(gameinfo) == GAMEINFO_PATCHED
        assert engine.state is PatchState.PATCHED
        assert temp_leftovers(os.path.dirname(signatures)) == []
        assert temp_leftovers(os.path.dirname(gameinfo)) == []

    def test_patch_records_baseline(self, engine, host_root, gameinfo_mirrors):
        run(engine.patch(host_root))

        baseline = engine.fingerprint.load_baseline(host_root)
        assert baseline is not None
        assert baseline.host_build == "6412"
        assert baseline.marker_present

    def test_patch_is_idempotent(self, engine, host_root, control_paths, gameinfo_mirrors):
        signatures, gameinfo = control_paths
        run(engine.patch(host_root))
        first = (read_bytes(signatures), read_bytes(gameinfo))

        outcome = run(engine.patch(host_root))

        assert outcome.result is PatchResult.SUCCESS
        assert (read_bytes(signatures), read_bytes(gameinfo)) == first

    def test_crlf_signature_file(self, engine, config, host_root, control_paths, gameinfo_mirrors):
        signatures, _ = control_paths
        write(signatures, SIGNATURES_TEXT.replace("\n", "\r\n"))

        run(engine.patch(host_root))

        expected = (ANCHOR_PREFIX + config.markers.signature_line + "\n").replace("\n", "\r\n")
        assert read_bytes(signatures) == expected.encode()

    def test_missing_anchor_changes_nothing(self, engine, host_root, control_paths, gameinfo_mirrors):
        signatures, gameinfo = control_paths
        write(signatures, "VERSION:3\nsomething\n")

        outcome = run(engine.patch(host_root))

        assert outcome.result is PatchResult.FAILED
        assert "DIGEST:" in outcome.reason
        assert read_bytes(signatures) == b"VERSION:3\nsomething\n"
        assert read_bytes(gameinfo) == GAMEINFO_CLEAN
        assert gameinfo_mirrors.calls == []

    def test_mid_line_anchor_is_rejected(self, engine, host_root, control_paths, gameinfo_mirrors):
        signatures, _ = control_paths
        write(signatures, "VERSION:3 DIGEST:ABCD\nline\n")

        outcome = run(engine.patch(host_root))

        assert outcome.result is PatchResult.FAILED
        assert read_bytes(signatures) == b"VERSION:3 DIGEST:ABCD\nline\n"

    def test_missing_signature_file(self, engine, host_root, control_paths, gameinfo_mirrors):
        os.remove(control_paths[0])

        outcome = run(engine.patch(host_root))

        assert outcome.result is PatchResult.FAILED
        assert engine.state is PatchState.FAILED

    def test_download_failure_changes_nothing(self, engine, config, session, host_root, control_paths):
        signatures, gameinfo = control_paths
        for url in config.sources.gameinfo:
            session.fail(url, 503)

        outcome = run(engine.patch(host_root))

        assert outcome.result is PatchResult.FAILED
        assert read_bytes(signatures).decode() == SIGNATURES_TEXT
        assert read_bytes(gameinfo) == GAMEINFO_CLEAN
        assert temp_leftovers(os.path.dirname(signatures)) == []

    def test_second_replacement_failing_restores_signatures(self, engine, host_root, control_paths,
                                                            gameinfo_mirrors):
        """gameinfo cannot be replaced (it is a directory); signatures must come back byte-identical."""
        signatures, gameinfo = control_paths
        original = read_bytes(signatures)
        os.remove(gameinfo)
        os.makedirs(gameinfo)

        outcome = run(engine.patch(host_root))

        assert outcome.result is PatchResult.FAILED
        assert read_bytes(signatures) == original
        assert os.path.isdir(gameinfo)
        assert temp_leftovers(os.path.dirname(signatures)) == []
        assert temp_leftovers(os.path.dirname(gameinfo)) == []

    def test_cancelled_before_start(self, engine, host_root, control_paths, gameinfo_mirrors):
        signatures, gameinfo = control_paths
        token = threading.Event()
        token.set()

        outcome = run(engine.patch(host_root, cancel_token=token))

        assert outcome.result is PatchResult.CANCELLED
        assert engine.state is PatchState.CANCELLED
        assert read_bytes(signatures).decode() == SIGNATURES_TEXT
        assert read_bytes(gameinfo) == GAMEINFO_CLEAN

    def test_skip_if_patched(self, engine, host_root, gameinfo_mirrors):
        run(engine.patch(host_root))
        calls_after_patch = len(gameinfo_mirrors.calls)

        outcome = run(engine.patch(host_root, skip_if_patched=True))

        assert outcome.result is PatchResult.ALREADY_PATCHED
        assert outcome.success
        assert len(gameinfo_mirrors.calls) == calls_after_patch

    def test_is_already_patched(self, engine, host_root, gameinfo_mirrors):
        assert not run(engine.is_already_patched(host_root))
        run(engine.patch(host_root))
        assert run(engine.is_already_patched(host_root))


# =============================================================================
# Disable
# =============================================================================


class TestDisable:

    def test_disable_restores_clean_state(self, engine, config, host_root, control_paths, gameinfo_mirrors):
        signatures, gameinfo = control_paths
        run(engine.patch(host_root))

        outcome = run(engine.disable(host_root))

        assert outcome.result is PatchResult.SUCCESS
        assert read_bytes(signatures).decode() == ANCHOR_PREFIX
        assert read_bytes(gameinfo) == GAMEINFO_CLEAN
        assert not signature_has_marker(signatures, "DIGEST:", config.markers.signature_line)
        assert not gameinfo_has_marker(gameinfo, config.markers.gameinfo_marker)
        assert engine.state is PatchState.UNPATCHED

    def test_disable_download_failure_touches_nothing(self, engine, config, session, host_root,
                                                      control_paths, gameinfo_mirrors):
        signatures, gameinfo = control_paths
        run(engine.patch(host_root))
        before = (read_bytes(signatures), read_bytes(gameinfo))
        for url in config.sources.gameinfo_disable:
            session.fail(url, 500)

        outcome = run(engine.disable(host_root))

        assert outcome.result is PatchResult.FAILED
        assert (read_bytes(signatures), read_bytes(gameinfo)) == before
        assert temp_leftovers(os.path.dirname(signatures)) == []


# =============================================================================
# Marker predicates
# =============================================================================


class TestMarkerPredicates:

    def test_gameinfo_marker_is_case_insensitive(self, tmp_path):
        path = str(tmp_path / "gameinfo.gi")
        write(path, b"game _CONTENTLINK\n")
        assert gameinfo_has_marker(path, "_ContentLink")

    def test_signature_marker_is_case_sensitive(self, tmp_path, config):
        path = str(tmp_path / "sig")
        write(path, ANCHOR_PREFIX + config.markers.signature_line.lower() + "\n")
        assert not signature_has_marker(path, "DIGEST:", config.markers.signature_line)

    def test_signature_marker_before_anchor_does_not_count(self, tmp_path, config):
        path = str(tmp_path / "sig")
        write(path, config.markers.signature_line + "\n" + ANCHOR_PREFIX)
        assert not signature_has_marker(path, "DIGEST:", config.markers.signature_line)

    def test_missing_files(self, tmp_path, config):
        assert not gameinfo_has_marker(str(tmp_path / "nope"), "_ContentLink")
        assert not signature_has_marker(str(tmp_path / "nope"), "DIGEST:", config.markers.signature_line)

    def test_anchor_must_start_a_line(self):
        content = "VERSION:3 DIGEST:ABCD\nDIGEST:EF01\nrest\n"
        assert signature_section_after_anchor(content, "DIGEST:") == "DIGEST:EF01\nrest\n"
        assert signature_section_after_anchor("VERSION:3 DIGEST:ABCD\n", "DIGEST:") is None

    def test_malformed_marker_detection(self, config):
        marker = config.markers.signature_line
        wrong_path = marker.replace("...\\..\\..\\dota\\", "dota\\")

        assert signature_has_malformed_marker(ANCHOR_PREFIX + wrong_path + "\n", "DIGEST:", marker)
        assert not signature_has_malformed_marker(ANCHOR_PREFIX + marker + "\n", "DIGEST:", marker)
        assert not signature_has_malformed_marker(ANCHOR_PREFIX, "DIGEST:", marker)
