from __future__ import annotations

import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Protocol, Tuple


@dataclass
class WindowState:
    count: int
    window_start: float


class WindowStore(Protocol):
    """
    Keyed fixed-window counters. `hit` must increment and return the new state
    in one atomic step.
    """

    def hit(self, key: str, *, now: float, window_seconds: float) -> WindowState: ...

    def peek(self, key: str) -> WindowState | None: ...

    def reset(self, key: str) -> bool: ...

    def stats(self) -> Dict[str, int]: ...


def _count_by_policy(keys: Iterable[str]) -> Dict[str, int]:
    # Keys are "<policy>:<scope>:<identifier>".
    out: Dict[str, int] = {}
    for k in keys:
        name = k.split(":", 1)[0]
        out[name] = out.get(name, 0) + 1
    return out


class InMemoryWindowStore:
    """Process-local counters. State is lost on restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: Dict[str, WindowState] = {}

    def hit(self, key: str, *, now: float, window_seconds: float) -> WindowState:
        with self._lock:
            w = self._windows.get(key)
            if w is None or now >= w.window_start + float(window_seconds):
                w = WindowState(count=1, window_start=float(now))
                self._windows[key] = w
            else:
                w.count += 1
            return WindowState(count=w.count, window_start=w.window_start)

    def peek(self, key: str) -> WindowState | None:
        with self._lock:
            w = self._windows.get(key)
            return WindowState(count=w.count, window_start=w.window_start) if w else None

    def reset(self, key: str) -> bool:
        with self._lock:
            return self._windows.pop(key, None) is not None

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return _count_by_policy(self._windows.keys())

    def prune(self, *, now: float, max_window_seconds: float) -> int:
        with self._lock:
            stale = [k for k, w in self._windows.items() if now >= w.window_start + float(max_window_seconds)]
            for k in stale:
                del self._windows[k]
            return len(stale)


class SqliteWindowStore:
    """
    Shared counters (several worker processes on one host). Each hit is a single
    BEGIN IMMEDIATE transaction, so concurrent increments never undercount; a
    locked database fails after the busy timeout instead of waiting forever.
    """

    def __init__(self, *, path: str, busy_timeout_seconds: float = 2.0):
        self.path = str(path)
        self.busy_timeout_seconds = max(0.1, float(busy_timeout_seconds))
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        conn = self._conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_windows (
                  key TEXT PRIMARY KEY,
                  count INTEGER NOT NULL,
                  window_start REAL NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_seconds, isolation_level=None, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def hit(self, key: str, *, now: float, window_seconds: float) -> WindowState:
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT INTO rate_windows(key, count, window_start) VALUES (?, 1, ?)
                    ON CONFLICT(key) DO UPDATE SET
                      count = CASE WHEN ? >= rate_windows.window_start + ? THEN 1 ELSE rate_windows.count + 1 END,
                      window_start = CASE WHEN ? >= rate_windows.window_start + ? THEN ? ELSE rate_windows.window_start END
                    """,
                    (key, float(now), float(now), float(window_seconds), float(now), float(window_seconds), float(now)),
                )
                row: Tuple[int, float] = conn.execute("SELECT count, window_start FROM rate_windows WHERE key=?", (key,)).fetchone()
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()
        return WindowState(count=int(row[0]), window_start=float(row[1]))

    def peek(self, key: str) -> WindowState | None:
        conn = self._conn()
        try:
            row = conn.execute("SELECT count, window_start FROM rate_windows WHERE key=?", (key,)).fetchone()
        finally:
            conn.close()
        return WindowState(count=int(row[0]), window_start=float(row[1])) if row else None

    def reset(self, key: str) -> bool:
        conn = self._conn()
        try:
            cur = conn.execute("DELETE FROM rate_windows WHERE key=?", (key,))
            return bool(cur.rowcount)
        finally:
            conn.close()

    def stats(self) -> Dict[str, int]:
        conn = self._conn()
        try:
            keys = [str(r[0]) for r in conn.execute("SELECT key FROM rate_windows").fetchall()]
        finally:
            conn.close()
        return _count_by_policy(keys)

    def prune(self, *, now: float | None = None, max_window_seconds: float) -> int:
        t = float(time.time() if now is None else now)
        conn = self._conn()
        try:
            cur = conn.execute("DELETE FROM rate_windows WHERE window_start + ? <= ?", (float(max_window_seconds), t))
            return int(cur.rowcount or 0)
        finally:
            conn.close()
