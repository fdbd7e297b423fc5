from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory counters for the upload pipeline."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "uploads": 0,
            "multipart_sessions": 0,
            "parts": 0,
            "downloads": 0,
            "failures": 0,
            "bytes_uploaded": 0,
        }

    def record_upload(self, size_bytes: int) -> None:
        with self._lock:
            self._counters["uploads"] += 1
            self._counters["bytes_uploaded"] += size_bytes

    def record_session_opened(self) -> None:
        with self._lock:
            self._counters["multipart_sessions"] += 1

    def record_part(self) -> None:
        with self._lock:
            self._counters["parts"] += 1

    def record_download(self) -> None:
        with self._lock:
            self._counters["downloads"] += 1

    def record_failure(self) -> None:
        with self._lock:
            self._counters["failures"] += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = MetricsStore()
