"""Scan tasks: directory walk, file collection and archive unwrapping."""
import shutil
from abc import ABC
from abc import abstractmethod
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from compscan.core.checksum import compute_checksums
from compscan.core.checksum import compute_md5
from compscan.models.artifact import Artifact
from compscan.models.asset import AssetMetaData
from compscan.models.constants import ATTRIBUTE_KEY_ANCHOR
from compscan.models.constants import ATTRIBUTE_KEY_ARTIFACT_PATH
from compscan.models.constants import ATTRIBUTE_KEY_ASSET_ID_CHAIN
from compscan.models.constants import ATTRIBUTE_KEY_SCAN_DIRECTIVE
from compscan.models.constants import ATTRIBUTE_KEY_UNWRAP
from compscan.models.constants import ATTRIBUTE_KEY_UNWRAPPED
from compscan.models.constants import HINT_ATOMIC
from compscan.models.constants import HINT_IGNORE
from compscan.models.constants import HINT_SCAN
from compscan.models.constants import KEY_ERRORS
from compscan.models.constants import KEY_HASH_SHA1
from compscan.models.constants import KEY_HASH_SHA256
from compscan.models.constants import KEY_PATH_IN_ASSET
from compscan.models.constants import MARKER_CROSS
from compscan.models.constants import PATH_DELIMITER
from compscan.models.constants import SCAN_DIRECTIVE_DELETE

if TYPE_CHECKING:
    from compscan.scan.context import ScanContext

logger = structlog.get_logger('scan_tasks')


class TaskState(Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


def unwrap_target(file: Path) -> Path:
    """Implicit folder an archive is unwrapped into: '[<name>]' beside the archive."""
    return file.parent / f"[{file.name}]"


def add_checksums(artifact: Artifact, file: Path) -> None:
    checksums = compute_checksums(file)
    artifact.checksum = checksums['md5']
    artifact.set_attribute(KEY_HASH_SHA1, checksums['sha1'])
    artifact.set_attribute(KEY_HASH_SHA256, checksums['sha256'])


def mark_anchor(artifact: Artifact, context: 'ScanContext') -> None:
    """Marks artifacts whose checksum anchors a reference component pattern."""
    if context.scan_param.has_anchor_checksum(artifact.checksum):
        artifact.set_attribute(ATTRIBUTE_KEY_ANCHOR, MARKER_CROSS)


def register_asset(
    context: 'ScanContext',
    artifact_id: str,
    checksum: str,
    relative_path: str,
    inspection_source: str,
) -> str:
    asset_id = AssetMetaData.derive_asset_id(artifact_id, checksum)
    context.contribute_asset(
        AssetMetaData(
            asset_id=asset_id,
            checksum=checksum,
            asset_path=relative_path,
            artifact_path=relative_path,
            inspection_source=inspection_source,
        ),
    )
    context.path_to_asset_id.put(relative_path, asset_id)
    return asset_id


class ScanTask(ABC):
    """A unit of work of the scan pipeline; processes a single filesystem node."""

    def __init__(self, asset_id_chain: list[str] | None = None):
        self.asset_id_chain: list[str] = list(asset_id_chain or [])
        self.state = TaskState.PENDING
        self.error: Exception | None = None

    def run(self, context: 'ScanContext') -> None:
        self.state = TaskState.RUNNING
        try:
            self.process(context)
        except Exception as e:
            self.state = TaskState.FAILED
            self.error = e
            raise
        self.state = TaskState.COMPLETED

    @abstractmethod
    def process(self, context: 'ScanContext') -> None:
        ...


class DirectoryScanTask(ScanTask):
    def __init__(self, directory: Path, asset_id_chain: list[str] | None = None):
        super().__init__(asset_id_chain)
        if not directory.is_dir():
            logger.error('Passed path is not a directory', path=str(directory))
            raise ValueError(f"Not a directory: {directory}")
        self.directory = directory

    def __repr__(self) -> str:
        return f"DirectoryScanTask({self.directory})"

    def process(self, context: 'ScanContext') -> None:
        logger.debug('Scanning directory', path=str(self.directory))
        context.stats.inc_directories()
        scan_param = context.scan_param

        for child in sorted(self.directory.iterdir()):
            if child.is_symlink():
                logger.debug('Ignoring symlink', path=str(child))
                continue

            relative_path = context.relative_path(child)
            if child.is_file():
                if scan_param.collects(relative_path):
                    context.push(FileCollectTask(child, self.asset_id_chain))
                else:
                    logger.debug('Ignored due to collect patterns', path=relative_path)
            elif child.is_dir():
                if not scan_param.collects_directory(relative_path):
                    logger.debug('Ignored due to collect patterns', path=relative_path)
                    continue
                name = child.name
                if name.startswith('[') and name.endswith(']'):
                    # implicit folders are collected when their archive is unwrapped
                    if (child.parent / name[1:-1]).exists():
                        continue
                context.push(DirectoryScanTask(child, self.asset_id_chain))


class FileCollectTask(ScanTask):
    def __init__(self, file: Path, asset_id_chain: list[str] | None = None):
        super().__init__(asset_id_chain)
        self.file = file

    def __repr__(self) -> str:
        return f"FileCollectTask({self.file})"

    def process(self, context: 'ScanContext') -> None:
        file = self.file
        relative_path = context.relative_path(file)
        scan_param = context.scan_param
        context.stats.inc_files()

        issues: list[str] = []
        unwrap = (
            scan_param.implicit_unwrap
            and scan_param.unwraps(relative_path)
            and not self._is_atomic(context, file.name)
        )
        if unwrap and self._unwrap(context, relative_path, issues):
            return

        artifact = Artifact(id=file.name)
        artifact.set_attribute(ATTRIBUTE_KEY_ARTIFACT_PATH, relative_path)
        artifact.append_attribute(KEY_PATH_IN_ASSET, relative_path)
        artifact.add_project(relative_path)
        if issues:
            artifact.set_attribute(KEY_ERRORS, PATH_DELIMITER.join(issues))

        add_checksums(artifact, file)
        mark_anchor(artifact, context)

        if self.asset_id_chain:
            artifact.set_attribute(ATTRIBUTE_KEY_ASSET_ID_CHAIN, PATH_DELIMITER.join(self.asset_id_chain))

        context.contribute(artifact)

    @staticmethod
    def _is_atomic(context: 'ScanContext', file_name: str) -> bool:
        for reference in context.scan_param.reference_inventory.find_all_with_id(file_name):
            if not reference.checksum and reference.has_classification(HINT_ATOMIC):
                return True
        return False

    def _unwrap(self, context: 'ScanContext', relative_path: str, issues: list[str]) -> bool:
        file = self.file
        extractor = context.extractor
        if extractor.detect_family(file) is None:
            return False

        target = unwrap_target(file)
        shutil.rmtree(target, ignore_errors=True)
        if not extractor.unpack_if_possible(file, target, issues):
            context.stats.inc_extraction_failed()
            return False

        context.stats.inc_extracted()
        register_asset(context, file.name, compute_md5(file), relative_path, type(self).__name__)
        logger.info('Collecting subtree', path=relative_path)
        context.push(DirectoryScanTask(target, self.asset_id_chain + [relative_path]))
        return True


class ArtifactUnwrapTask(ScanTask):
    """Explicitly unwraps an inventory artifact that was flagged for unwrapping."""

    def __init__(self, artifact: Artifact, asset_id_chain: list[str] | None = None):
        super().__init__(asset_id_chain)
        self.artifact = artifact

    def __repr__(self) -> str:
        return f"ArtifactUnwrapTask({self.artifact.artifact_path})"

    def process(self, context: 'ScanContext') -> None:
        artifact = self.artifact
        relative_path = artifact.artifact_path
        if not relative_path:
            raise ValueError(f"Artifact {artifact.id} carries no artifact path")
        file = context.base_dir / relative_path
        target = unwrap_target(file)
        logger.debug('Unwrapping artifact', path=relative_path)

        artifact.set_attribute(ATTRIBUTE_KEY_UNWRAP, None)

        # previously unwrapped content is replaced
        shutil.rmtree(target, ignore_errors=True)

        # reference artifacts without checksum match by file name only
        reference = next(
            (
                a for a in context.scan_param.reference_inventory.find_all_with_id(file.name)
                if not a.checksum
            ),
            None,
        )
        implicit_unwrap = reference is None
        explicit_unwrap = reference is not None and reference.has_classification(HINT_SCAN)
        explicit_ignore = reference is not None and reference.has_classification(HINT_IGNORE)
        unpack_submodules = artifact.has_classification(HINT_SCAN) if reference is None else False

        issues: list[str] = []
        if (implicit_unwrap or explicit_unwrap) and self._unpack(context, file, target, unpack_submodules, issues):
            context.stats.inc_extracted()
            artifact.add_classification(HINT_SCAN)
            artifact.set_attribute(ATTRIBUTE_KEY_UNWRAPPED, MARKER_CROSS)

            if explicit_unwrap and explicit_ignore:
                artifact.set_attribute(ATTRIBUTE_KEY_SCAN_DIRECTIVE, SCAN_DIRECTIVE_DELETE)
            else:
                add_checksums(artifact, file)

            checksum = artifact.checksum or compute_md5(file)
            register_asset(context, artifact.id, checksum, relative_path, type(self).__name__)

            logger.info('Collecting subtree', path=relative_path)
            chain_value = artifact.get_attribute(ATTRIBUTE_KEY_ASSET_ID_CHAIN)
            chain = (chain_value.split(PATH_DELIMITER) if chain_value else []) + [relative_path]
            context.push(DirectoryScanTask(target, chain))
        else:
            if issues:
                context.stats.inc_extraction_failed()
                artifact.set_attribute(KEY_ERRORS, PATH_DELIMITER.join(issues))
            # candidates for unwrap may not carry a checksum yet
            add_checksums(artifact, file)
            mark_anchor(artifact, context)

    @staticmethod
    def _unpack(
        context: 'ScanContext',
        file: Path,
        target: Path,
        unpack_submodules: bool,
        issues: list[str],
    ) -> bool:
        if not unpack_submodules and file.name.lower().endswith('.jar'):
            return False
        return context.extractor.unpack_if_possible(file, target, issues)
