"""
Shared fixtures: a fake host installation tree, a test configuration pointing
at fake mirrors, and a scripted stand-in for requests.Session.
"""

import dataclasses
import hashlib
import io
import os
import zipfile

import pytest
import requests

from contentlink.config import ContentLinkConfig

SIGNATURES_TEXT = (
    "VERSION:3\n"
    "game\\bin\\win64\\client.dll~SHA1:0123456789ABCDEF0123456789ABCDEF01234567;CRC:1A2B3C4D\n"
    "DIGEST:9F8E7D6C5B4A39281706F5E4D3C2B1A0\n"
    "stale_line_one\n"
    "stale_line_two\n"
)
STEAM_INF_TEXT = "ClientVersion=6412\nVersionDate=Dec 20 2025\nPatchVersion=1\n"
GAMEINFO_CLEAN = b"\"GameInfo\"\n{\n\tgame dota\n}\n"
GAMEINFO_PATCHED = b"\"GameInfo\"\n{\n\tgame _ContentLink\n\tgame dota\n}\n"

MIRRORS = ["https://mirror-a.test", "https://mirror-b.test", "https://origin.test"]
RELEASES_API = "https://api.test/repos/contentlink/ContentPack/releases/latest"
PACKAGE_URL = "https://downloads.test/ContentPack.zip"


def mirror_urls(relative_path):
    return [f"{base}/{relative_path}" for base in MIRRORS]


class FakeResponse:
    """Minimal requests.Response stand-in."""

    def __init__(self, status_code=200, content=b"", headers=None, chunk_size=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers if headers is not None else {"Content-Length": str(len(content))}
        self.closed = False
        self._chunk_size = chunk_size

    def iter_content(self, chunk_size=1):
        size = self._chunk_size or chunk_size
        for start in range(0, len(self.content), size):
            yield self.content[start:start + size]

    def close(self):
        self.closed = True


class FakeSession:
    """
    Scripted session. Each URL maps to a list of outcomes consumed in order;
    the last outcome repeats. An outcome is a FakeResponse or an exception.
    Unknown URLs answer 404.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.headers = {}

    def route(self, url, *outcomes):
        self.routes[url] = list(outcomes)
        return self

    def ok(self, url, content):
        return self.route(url, FakeResponse(200, content))

    def fail(self, url, status_code=500):
        return self.route(url, FakeResponse(status_code, b""))

    def get(self, url, timeout=None, stream=False):
        self.calls.append(url)
        outcomes = self.routes.get(url)
        if not outcomes:
            return FakeResponse(404, b"")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def count(self, url):
        return self.calls.count(url)


def build_zip(files):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in files.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def sha256_hex(data):
    return hashlib.sha256(data).hexdigest()


@pytest.fixture
def config():
    base = ContentLinkConfig.default()
    sources = dataclasses.replace(
        base.sources,
        package_hash=mirror_urls("remote/ContentPack.hash"),
        gameinfo=mirror_urls("remote/gameinfo_branchspecific.gi"),
        gameinfo_disable=mirror_urls("remote/gameinfo_branchspecific_disable.gi"),
        release_manifest=mirror_urls("releases/releases.json"),
        releases_api=RELEASES_API,
    )
    network = dataclasses.replace(base.network, retry_delay_seconds=0)
    return dataclasses.replace(base, sources=sources, network=network,
                               debounce_seconds=0.1, health_check_seconds=0.05)


@pytest.fixture
def session():
    return FakeSession()


def write(path, data):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    mode = "wb" if isinstance(data, bytes) else "w"
    kwargs = {} if isinstance(data, bytes) else {"newline": "", "encoding": "utf-8"}
    with open(path, mode, **kwargs) as f:
        f.write(data)


def read_bytes(path):
    with open(path, "rb") as f:
        return f.read()


@pytest.fixture
def host_root(tmp_path, config):
    """A host installation with executable, control files and version indicator, not patched."""
    root = str(tmp_path / "host")
    paths = config.paths
    write(paths.resolve(root, "host_executable"), b"MZ")
    write(paths.resolve(root, "signatures"), SIGNATURES_TEXT)
    write(paths.resolve(root, "gameinfo"), GAMEINFO_CLEAN)
    write(paths.resolve(root, "version_indicator"), STEAM_INF_TEXT)
    return root


@pytest.fixture
def installed_host(host_root, config):
    """host_root with the content package archive present."""
    write(config.paths.resolve(host_root, "package_archive"), b"VPK-DATA")
    write(config.paths.resolve(host_root, "package_version"), "2.4.0\n")
    return host_root


@pytest.fixture
def gameinfo_mirrors(session, config):
    """Every gameinfo mirror serves the patched payload; disable mirrors serve the clean one."""
    for url in config.sources.gameinfo:
        session.ok(url, GAMEINFO_PATCHED)
    for url in config.sources.gameinfo_disable:
        session.ok(url, GAMEINFO_CLEAN)
    return session


@pytest.fixture
def connection_error():
    return requests.ConnectionError("connection reset")
