"""Shared state of a single scan run."""
import threading
from collections.abc import Callable
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from compscan.core.archive import ArchiveExtractor
from compscan.core.stats import ScanStats
from compscan.core.validation import ScanInvariantError
from compscan.models.artifact import Artifact
from compscan.models.asset import AssetMetaData
from compscan.models.component_pattern import ComponentPatternData
from compscan.models.inventory import Inventory
from compscan.models.scan_param import ScanParam

if TYPE_CHECKING:
    from compscan.scan.tasks import ScanTask

logger = structlog.get_logger('scan_context')


class PathToAssetIdMap:
    """Thread-safe mapping of asset paths (relative to the base dir) to asset ids."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> str | None:
        with self._lock:
            return self._data.get(path)

    def put(self, path: str, asset_id: str) -> None:
        with self._lock:
            self._data[path] = asset_id

    def put_if_absent(self, path: str, asset_id: str) -> None:
        with self._lock:
            self._data.setdefault(path, asset_id)

    def items(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._data.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class ScanContext:
    """
    Owns the inventory of a scan.

    Tasks only hold a reference to the context; every mutation of the
    inventory lists goes through the methods below and is serialized by a
    single lock.
    """

    def __init__(
        self,
        base_dir: Path,
        scan_param: ScanParam | None = None,
        inventory: Inventory | None = None,
        extractor: ArchiveExtractor | None = None,
        stats: ScanStats | None = None,
    ):
        self.base_dir = base_dir.resolve()
        self.scan_param = scan_param or ScanParam()
        self.inventory = inventory or Inventory()
        self.extractor = extractor or ArchiveExtractor()
        self.stats = stats or ScanStats()
        self.path_to_asset_id = PathToAssetIdMap()
        self.task_listener: Callable[['ScanTask'], None] | None = None
        self._lock = threading.RLock()

    def push(self, task: 'ScanTask') -> None:
        if self.task_listener is None:
            raise ScanInvariantError(f"No task listener registered; cannot push {task!r}")
        self.task_listener(task)

    def contribute(self, artifact: Artifact | None) -> None:
        """Adds the artifact to the inventory. No deduplication is performed."""
        if artifact is None:
            raise ScanInvariantError('Artifact <None> contributed to scan inventory.')
        if not artifact.id or not artifact.id.strip():
            raise ScanInvariantError('Artifact with empty id contributed to scan inventory.')
        with self._lock:
            self.inventory.artifacts.append(artifact)

    def contribute_pattern(self, component_pattern: ComponentPatternData) -> None:
        with self._lock:
            self.inventory.component_patterns.append(component_pattern)

    def contribute_asset(self, asset: AssetMetaData) -> None:
        with self._lock:
            self.inventory.asset_metadata.append(asset)

    def remove_all(self, artifacts: Iterable[Artifact]) -> None:
        with self._lock:
            self.inventory.remove_artifacts(list(artifacts))

    def snapshot_artifacts(self) -> list[Artifact]:
        with self._lock:
            return list(self.inventory.artifacts)

    def snapshot_assets(self) -> list[AssetMetaData]:
        with self._lock:
            return list(self.inventory.asset_metadata)

    def relative_path(self, path: Path) -> str:
        """Linux-style path of path relative to the base dir."""
        return path.resolve().relative_to(self.base_dir).as_posix()
