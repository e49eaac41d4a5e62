import threading
import time
from dataclasses import dataclass
from dataclasses import field


@dataclass
class ScanStats:
    directories: int = 0
    files: int = 0
    extracted: int = 0
    extraction_failed: int = 0
    tasks_failed: int = 0
    patterns_matched: int = 0
    merged: int = 0
    start_time: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def inc_directories(self, count: int = 1):
        with self._lock:
            self.directories += count

    def inc_files(self, count: int = 1):
        with self._lock:
            self.files += count

    def inc_extracted(self, count: int = 1):
        with self._lock:
            self.extracted += count

    def inc_extraction_failed(self, count: int = 1):
        with self._lock:
            self.extraction_failed += count

    def inc_tasks_failed(self, count: int = 1):
        with self._lock:
            self.tasks_failed += count

    def inc_patterns_matched(self, count: int = 1):
        with self._lock:
            self.patterns_matched += count

    def inc_merged(self, count: int = 1):
        with self._lock:
            self.merged += count

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time
