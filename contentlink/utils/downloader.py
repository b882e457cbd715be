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
Mirror-fallback download primitive.

Every logical download (package archive, gameinfo payload, hash record) is
tried against an ordered list of sources: fast CDN mirrors first, origin last.
Each source gets a bounded number of attempts for transient failures (5xx,
429, connection errors, timeouts). Other 4xx responses and empty bodies move
on to the next source immediately.

The requests session is passed in, so tests can substitute a fake transport.
"""

import json
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

import requests

from .errors import ContentLinkError, NetworkFatalError, NetworkTransientError
from .index import check_cancelled, log_message

DEFAULT_USER_AGENT = "ContentLink/1.0"
CHUNK_SIZE = 81920
SPEED_REPORT_INTERVAL = 0.5


class SourceRejectedError(ContentLinkError):
    """A source answered with a non-retryable failure; try the next one."""
    pass


@dataclass
class DownloadProgress:
    """Byte progress for one streamed download."""
    bytes_read: int
    total_bytes: Optional[int]
    percent: Optional[int]
    speed: str
    source_url: str

    @property
    def details(self) -> str:
        read_mb = self.bytes_read // 1024 // 1024
        if self.total_bytes:
            return f"{read_mb} / {self.total_bytes // 1024 // 1024} MB"
        return f"{read_mb} MB"


@dataclass
class DownloadResult:
    """Outcome of a successful fallback download."""
    url: str
    fallbacks_attempted: int
    data: Optional[bytes] = None
    path: Optional[str] = None
    size: int = 0
    errors: List[str] = field(default_factory=list)


def format_speed(num_bytes: int, seconds: float) -> str:
    if seconds <= 0:
        return "0.0 MB/S"
    return f"{num_bytes / 1024.0 / 1024.0 / seconds:.1f} MB/S"


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def is_local_source(source: str) -> bool:
    return os.path.isabs(source) and os.path.isfile(source)


class MirrorDownloader:
    """Downloads with per-source retry and ordered mirror fallback."""

    def __init__(self, session: Optional[requests.Session] = None,
                 max_attempts: int = 3,
                 retry_delay: float = 2.0,
                 timeout: float = 60.0,
                 user_agent: str = DEFAULT_USER_AGENT,
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": user_agent})
        self.session = session
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._sleep = sleep

    def _get(self, url: str, stream: bool = False):
        """Single GET that classifies failures as transient or rejected."""
        try:
            response = self.session.get(url, timeout=self.timeout, stream=stream)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkTransientError(f"{type(e).__name__}: {e}")
        except requests.RequestException as e:
            raise SourceRejectedError(f"{type(e).__name__}: {e}")

        status = response.status_code
        if 200 <= status < 300:
            return response

        response.close()
        if is_transient_status(status):
            raise NetworkTransientError(f"HTTP {status}", status_code=status)
        raise SourceRejectedError(f"HTTP {status}")

    def _with_retry(self, url: str, attempt_fn: Callable[[str], Any],
                    cancel_token: Optional[threading.Event], label: str) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            check_cancelled(cancel_token, f"before downloading {label}")
            try:
                return attempt_fn(url)
            except NetworkTransientError as e:
                last_error = e
                if attempt < self.max_attempts:
                    log_message(
                        f"[DOWNLOAD] {label}: attempt {attempt}/{self.max_attempts} failed ({e}), retrying in {self.retry_delay}s",
                        "WARNING"
                    )
                    self._sleep(self.retry_delay)
        raise last_error

    def _run_sources(self, urls: Sequence[str], attempt_fn: Callable[[str], Any],
                     cancel_token: Optional[threading.Event], label: str):
        if not urls:
            raise NetworkFatalError(f"No sources configured for {label}")

        errors: List[str] = []
        for index, url in enumerate(urls):
            if index > 0:
                log_message(f"[DOWNLOAD] {label}: trying fallback source {index + 1}/{len(urls)}...")
            try:
                value = self._with_retry(url, attempt_fn, cancel_token, label)
                return value, url, index, errors
            except (NetworkTransientError, SourceRejectedError) as e:
                errors.append(f"{url}: {e}")
                log_message(f"[DOWNLOAD] {label}: source failed {url}: {e}", "WARNING")

        log_message(f"[DOWNLOAD] {label}: all {len(urls)} sources failed", "ERROR")
        raise NetworkFatalError(f"All sources failed for {label}", attempts=errors)

    def fetch_bytes(self, urls: Sequence[str], cancel_token: Optional[threading.Event] = None,
                    label: str = "download") -> DownloadResult:
        """Fetch the first non-empty body from the ordered source list."""
        def attempt(url: str) -> bytes:
            if is_local_source(url):
                with open(url, "rb") as f:
                    data = f.read()
            else:
                response = self._get(url)
                try:
                    data = response.content
                finally:
                    response.close()
            if not data:
                raise SourceRejectedError("Empty response")
            return data

        data, url, index, errors = self._run_sources(urls, attempt, cancel_token, label)
        return DownloadResult(url=url, fallbacks_attempted=index, data=data, size=len(data), errors=errors)

    def fetch_text(self, urls: Sequence[str], cancel_token: Optional[threading.Event] = None,
                   label: str = "download") -> str:
        result = self.fetch_bytes(urls, cancel_token, label)
        return result.data.decode("utf-8", errors="replace").strip()

    def fetch_json(self, urls: Sequence[str], cancel_token: Optional[threading.Event] = None,
                   label: str = "download") -> Any:
        return json.loads(self.fetch_text(urls, cancel_token, label))

    def download_to_file(self, urls: Sequence[str], destination: str,
                         progress: Optional[Callable[[DownloadProgress], None]] = None,
                         cancel_token: Optional[threading.Event] = None,
                         label: str = "download") -> DownloadResult:
        """
        Stream the first working source into destination.

        Progress is reported whenever the whole-percent value changes, and at
        least every half second with the current speed. Cancellation is checked
        between chunks; a cancelled or failed attempt leaves no partial file.
        """
        def attempt(url: str) -> int:
            try:
                if is_local_source(url):
                    written = self._copy_local(url, destination, progress, cancel_token)
                else:
                    written = self._stream_remote(url, destination, progress, cancel_token)
            except BaseException:
                if os.path.exists(destination):
                    os.remove(destination)
                raise
            if written == 0:
                os.remove(destination)
                raise SourceRejectedError("Empty response")
            return written

        written, url, index, errors = self._run_sources(urls, attempt, cancel_token, label)
        log_message(f"[DOWNLOAD] {label}: {written} bytes from {url}")
        return DownloadResult(url=url, fallbacks_attempted=index, path=destination, size=written, errors=errors)

    def _stream_remote(self, url: str, destination: str,
                       progress: Optional[Callable[[DownloadProgress], None]],
                       cancel_token: Optional[threading.Event]) -> int:
        response = self._get(url, stream=True)
        try:
            total = _content_length(response)
            reporter = _ProgressReporter(progress, total, url)
            with open(destination, "wb") as f:
                try:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        check_cancelled(cancel_token, "during download")
                        if not chunk:
                            continue
                        f.write(chunk)
                        reporter.advance(len(chunk))
                except (requests.ConnectionError, requests.Timeout,
                        requests.exceptions.ChunkedEncodingError) as e:
                    raise NetworkTransientError(f"Stream interrupted: {e}")
            reporter.finish()
            return reporter.bytes_read
        finally:
            response.close()

    def _copy_local(self, source: str, destination: str,
                    progress: Optional[Callable[[DownloadProgress], None]],
                    cancel_token: Optional[threading.Event]) -> int:
        reporter = _ProgressReporter(progress, os.path.getsize(source), source)
        with open(source, "rb") as src, open(destination, "wb") as dst:
            for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                check_cancelled(cancel_token, "during copy")
                dst.write(chunk)
                reporter.advance(len(chunk))
        reporter.finish()
        return reporter.bytes_read


def _content_length(response) -> Optional[int]:
    value = response.headers.get("Content-Length") if response.headers else None
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


class _ProgressReporter:
    """Throttles progress callbacks to percent changes and periodic speed updates."""

    def __init__(self, callback, total: Optional[int], url: str):
        self.callback = callback
        self.total = total
        self.url = url
        self.bytes_read = 0
        self._last_percent = -1
        self._last_report_bytes = 0
        self._last_report_time = time.monotonic()
        self._speed = "0.0 MB/S"

    def _percent(self) -> Optional[int]:
        if not self.total:
            return None
        return min(100, int(self.bytes_read * 100 / self.total))

    def advance(self, count: int) -> None:
        self.bytes_read += count
        if self.callback is None:
            return
        now = time.monotonic()
        elapsed = now - self._last_report_time
        speed_due = elapsed >= SPEED_REPORT_INTERVAL
        if speed_due:
            self._speed = format_speed(self.bytes_read - self._last_report_bytes, elapsed)
            self._last_report_bytes = self.bytes_read
            self._last_report_time = now
        percent = self._percent()
        if speed_due or (percent is not None and percent != self._last_percent):
            self._last_percent = percent if percent is not None else self._last_percent
            self.callback(DownloadProgress(self.bytes_read, self.total, percent, self._speed, self.url))

    def finish(self) -> None:
        if self.callback is not None:
            self.callback(DownloadProgress(self.bytes_read, self.total, 100, "0.0 MB/S", self.url))
