"""Dependency Injection Container."""
from pathlib import Path
from typing import Optional

from compscan.core.archive import ArchiveExtractor
from compscan.core.config import CompscanConfig
from compscan.core.config import get_config
from compscan.core.stats import ScanStats
from compscan.models.scan_param import ScanParam
from compscan.scan.context import ScanContext
from compscan.scan.executor import ScanExecutor
from compscan.services.merge_service import DuplicateMerger
from compscan.services.pattern_service import ComponentPatternProducer
from compscan.services.validator_service import ComponentPatternValidator


class Container:
    """Simple DI Container to manage service lifecycles."""

    _instance: Optional['Container'] = None

    def __init__(self) -> None:
        self.config: CompscanConfig = get_config()
        self._archive_extractor: ArchiveExtractor | None = None
        self._pattern_producer: ComponentPatternProducer | None = None

    @classmethod
    def get_instance(cls) -> 'Container':
        if cls._instance is None:
            cls._instance = Container()
        return cls._instance

    # -- Services (Singletons) --

    def get_archive_extractor(self) -> ArchiveExtractor:
        if not self._archive_extractor:
            self._archive_extractor = ArchiveExtractor(self.config.extraction)
        return self._archive_extractor

    def get_pattern_producer(self) -> ComponentPatternProducer:
        if not self._pattern_producer:
            self._pattern_producer = ComponentPatternProducer()
        return self._pattern_producer

    def get_duplicate_merger(self) -> DuplicateMerger:
        return DuplicateMerger()

    # -- Factories (state per scan) --

    def create_scan_context(self, base_dir: Path, scan_param: ScanParam | None = None) -> ScanContext:
        return ScanContext(
            base_dir,
            scan_param=scan_param,
            extractor=self.get_archive_extractor(),
            stats=ScanStats(),
        )

    def create_scan_executor(
        self,
        base_dir: Path,
        scan_param: ScanParam | None = None,
        workers: int | None = None,
    ) -> ScanExecutor:
        return ScanExecutor(
            self.create_scan_context(base_dir, scan_param),
            workers=workers or self.config.scan.workers,
            max_iterations=self.config.scan.max_iterations,
            producer=self.get_pattern_producer(),
            merger=self.get_duplicate_merger(),
            validator=ComponentPatternValidator(),
        )

# Global Accessor


def get_container() -> Container:
    return Container.get_instance()
