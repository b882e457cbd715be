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
Debounced watcher for the handful of host files that can invalidate a patch.

watchdog delivers events on its own observer thread. The handler only puts the
changed path on a queue; a single dispatcher thread drains it, fires the
immediate callback per event and the settled callback once no event has
arrived for the debounce window. While idle, the dispatcher also checks the
watch and re-establishes it when the observer or one of its emitters has
died, or when a watched directory appeared, vanished or was replaced.
"""

import os
import queue
import stat
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ...utils.index import log_message

_STOP = object()
_RECHECK = object()

DirectoryState = Dict[str, Tuple[int, int]]


def _normalize(path: str) -> str:
    return os.path.normcase(os.path.abspath(os.fsdecode(path)))


class ControlFileEventHandler(FileSystemEventHandler):
    """Forwards events for watched files to the watcher's queue."""

    def __init__(self, watcher: "ChangeWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event):
        if event.is_directory:
            if event.event_type in ("deleted", "moved") and self.watcher.is_watched_directory(event.src_path):
                self.watcher.request_recheck()
            return
        for path in (event.src_path, getattr(event, "dest_path", None)):
            if path and self.watcher.is_watched(path):
                self.watcher.notify(path)


class ChangeWatcher:
    """Watches a fixed set of files and reports raw and settled changes."""

    def __init__(self, on_settled: Callable[[], None],
                 on_immediate: Optional[Callable[[str], None]] = None,
                 debounce_seconds: float = 0.5,
                 health_check_seconds: float = 5.0,
                 observer_factory: Callable[[], object] = Observer):
        self.on_settled = on_settled
        self.on_immediate = on_immediate
        self.debounce_seconds = debounce_seconds
        self.health_check_seconds = health_check_seconds
        self.observer_factory = observer_factory
        self._paths: List[str] = []
        self._watched: Set[str] = set()
        self._watched_dirs: Set[str] = set()
        self._observed: DirectoryState = {}
        self._queue: "queue.Queue" = queue.Queue()
        self._observer = None
        self._dispatcher: Optional[threading.Thread] = None
        self._running = False
        self.restart_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def watched_paths(self) -> List[str]:
        return list(self._paths)

    def is_watched(self, path: str) -> bool:
        return _normalize(path) in self._watched

    def is_watched_directory(self, path: str) -> bool:
        return _normalize(path) in self._watched_dirs

    def notify(self, path: str) -> None:
        """Queue a change for path. Safe to call from any thread."""
        self._queue.put(path)

    def request_recheck(self) -> None:
        """Ask the dispatcher to verify the watch right away."""
        self._queue.put(_RECHECK)

    def start(self, paths: Iterable[str]) -> None:
        if self._running:
            self.stop()
        self._paths = [os.path.abspath(p) for p in paths]
        self._watched = {_normalize(p) for p in self._paths}
        self._watched_dirs = {_normalize(os.path.dirname(p)) for p in self._paths}
        self._queue = queue.Queue()
        self._running = True

        self._start_observer()
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="contentlink-watcher", daemon=True)
        self._dispatcher.start()
        log_message(f"[WATCHER] Watching {len(self._paths)} files")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._queue.put(_STOP)
        if self._dispatcher is not None:
            self._dispatcher.join(timeout=5)
            self._dispatcher = None
        self._stop_observer()
        log_message("[WATCHER] Stopped")

    # ---- observer lifecycle ----

    def _directory_state(self) -> DirectoryState:
        """Existing parent directories of the watched files, with their identity."""
        state: DirectoryState = {}
        for path in self._paths:
            directory = os.path.dirname(path)
            if directory in state:
                continue
            try:
                st = os.stat(directory)
            except OSError:
                continue
            if stat.S_ISDIR(st.st_mode):
                state[directory] = (st.st_dev, st.st_ino)
        return state

    def _start_observer(self) -> bool:
        state = self._directory_state()
        self._observed = state
        if not state:
            log_message("[WATCHER] No watched directory exists yet; will retry", "WARNING")
            return False
        missing = len({os.path.dirname(p) for p in self._paths}) - len(state)
        if missing:
            log_message(f"[WATCHER] {missing} watched directories do not exist yet; will retry", "DEBUG")
        handler = ControlFileEventHandler(self)
        observer = self.observer_factory()
        try:
            for directory in state:
                observer.schedule(handler, directory, recursive=False)
            observer.start()
        except OSError as e:
            log_message(f"[WATCHER] Failed to start file watch: {e}", "ERROR")
            return False
        self._observer = observer
        return True

    def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=5)
        except (OSError, RuntimeError) as e:
            log_message(f"[WATCHER] Error stopping observer: {e}", "WARNING")

    def _has_dead_emitter(self) -> bool:
        emitters = getattr(self._observer, "emitters", None) or ()
        return any(not emitter.is_alive() for emitter in emitters)

    def _check_health(self) -> None:
        current = self._directory_state()
        changed = [d for d in set(current) | set(self._observed) if current.get(d) != self._observed.get(d)]
        observer_ok = self._observer is not None and self._observer.is_alive() and not self._has_dead_emitter()
        if observer_ok and not changed:
            return

        if changed:
            log_message(f"[WATCHER] Watched directories changed ({', '.join(sorted(changed))}), re-establishing",
                        "WARNING")
        else:
            log_message("[WATCHER] File watch is not running, re-establishing", "WARNING")
        self._stop_observer()
        if not self._start_observer():
            return
        self.restart_count += 1
        # Changes made while the directory was unwatched were never reported
        for path in self._paths:
            directory = os.path.dirname(path)
            if directory in changed and directory in self._observed:
                self.notify(path)

    # ---- dispatcher thread ----

    def _dispatch_loop(self) -> None:
        deadline: Optional[float] = None
        while True:
            if deadline is None:
                timeout = self.health_check_seconds
            else:
                timeout = max(0.0, deadline - time.monotonic())
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                if deadline is not None:
                    deadline = None
                    self._emit(self.on_settled)
                elif self._running:
                    self._check_health()
                continue

            if item is _STOP:
                return
            if item is _RECHECK:
                if self._running:
                    self._check_health()
                continue
            if self.on_immediate is not None:
                self._emit(self.on_immediate, item)
            deadline = time.monotonic() + self.debounce_seconds

    def _emit(self, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception as e:
            log_message(f"[WATCHER] Callback failed: {e}", "ERROR")
