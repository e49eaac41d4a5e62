"""Runs scan tasks concurrently until the inventory reaches a fixed point."""
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import structlog

from compscan.core.config import get_config
from compscan.core.stats import ScanStats
from compscan.core.validation import ScanInvariantError
from compscan.models.artifact import Artifact
from compscan.models.constants import ATTRIBUTE_KEY_ASSET_ID_CHAIN
from compscan.models.constants import ATTRIBUTE_KEY_INSPECTED
from compscan.models.constants import ATTRIBUTE_KEY_SCAN_DIRECTIVE
from compscan.models.constants import ATTRIBUTE_KEY_UNWRAP
from compscan.models.constants import ATTRIBUTE_KEY_UNWRAPPED
from compscan.models.constants import HINT_ATOMIC
from compscan.models.constants import HINT_IGNORE
from compscan.models.constants import HINT_SCAN
from compscan.models.constants import INTERMEDIATE_ATTRIBUTES
from compscan.models.constants import MARKER_CONTAINS
from compscan.models.constants import MARKER_CROSS
from compscan.models.constants import PATH_DELIMITER
from compscan.models.constants import SCAN_DIRECTIVE_DELETE
from compscan.models.inventory import Inventory
from compscan.scan.context import ScanContext
from compscan.scan.tasks import ArtifactUnwrapTask
from compscan.scan.tasks import DirectoryScanTask
from compscan.scan.tasks import ScanTask
from compscan.services.inspection_service import InspectorRunner
from compscan.services.inspection_service import JarInspector
from compscan.services.inspection_service import NestedJarInspector
from compscan.services.merge_service import DuplicateMerger
from compscan.services.pattern_service import ComponentPatternProducer
from compscan.services.validator_service import ComponentPatternValidator
from compscan.services.validator_service import ValidationResult
from compscan.services.validator_service import map_artifacts_to_covered_files

logger = structlog.get_logger('scan_executor')


@dataclass
class ScanResult:
    inventory: Inventory
    iterations: int
    stats: ScanStats
    validation: ValidationResult | None = None
    converged: bool = True


class ScanExecutor:
    """
    Scans the base dir of a context.

    Directory walks and unwrapping run on a thread pool. Whenever the pool is
    quiescent the inventory is inspected for nested archives; flagged
    artifacts are unwrapped in a further iteration until nothing is left to
    unwrap. Component patterns, metadata inspection and the duplicate merge
    run once the tree is fully unwrapped.
    """

    def __init__(
        self,
        context: ScanContext,
        workers: int | None = None,
        max_iterations: int | None = None,
        producer: ComponentPatternProducer | None = None,
        merger: DuplicateMerger | None = None,
        validator: ComponentPatternValidator | None = None,
    ):
        defaults = get_config().scan
        self.context = context
        self.workers = workers or defaults.workers
        self.max_iterations = max_iterations or defaults.max_iterations
        self.producer = producer or ComponentPatternProducer()
        self.merger = merger or DuplicateMerger()
        self.validator = validator or ComponentPatternValidator()
        self.nested_inspector = NestedJarInspector()

        self.failed_tasks: list[ScanTask] = []
        self._pool: ThreadPoolExecutor | None = None
        self._outstanding = 0
        self._condition = threading.Condition()
        self._fatal: Exception | None = None

    # -- Task scheduling --

    def push(self, task: ScanTask) -> None:
        with self._condition:
            if self._fatal is not None:
                logger.debug('Scan aborted; task dropped', task=repr(task))
                return
            if self._pool is None:
                raise ScanInvariantError(f"Executor is not running; cannot schedule {task!r}")
            self._outstanding += 1
        self._pool.submit(self._run_task, task)

    def _run_task(self, task: ScanTask) -> None:
        try:
            task.run(self.context)
        except ScanInvariantError as e:
            logger.error('Scan invariant violated', task=repr(task), error=str(e), _style='bold red')
            with self._condition:
                if self._fatal is None:
                    self._fatal = e
        except Exception as e:
            self.context.stats.inc_tasks_failed()
            logger.error('Scan task failed', task=repr(task), error=str(e), _style='bold red')
            with self._condition:
                self.failed_tasks.append(task)
        finally:
            with self._condition:
                self._outstanding -= 1
                self._condition.notify_all()

    def await_tasks(self) -> None:
        """Blocks until no task is queued or running."""
        with self._condition:
            self._condition.wait_for(lambda: self._outstanding == 0)
            fatal = self._fatal
        if fatal is not None:
            raise fatal

    # -- Iteration --

    def execute(self, validate: bool = False) -> ScanResult:
        context = self.context
        logger.info('Scan started', base_dir=str(context.base_dir), workers=self.workers)

        iterations = 0
        converged = True
        context.task_listener = self.push
        try:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='compscan') as pool:
                with self._condition:
                    self._pool = pool
                self.push(DirectoryScanTask(context.base_dir))
                while True:
                    iterations += 1
                    self.await_tasks()
                    self.run_nested_component_inspection()
                    unwrap_tasks = self.collect_outstanding_scan_tasks()
                    if not unwrap_tasks:
                        break
                    if iterations >= self.max_iterations:
                        logger.warning(
                            'Maximum number of iterations reached',
                            iterations=iterations,
                            pending=len(unwrap_tasks),
                        )
                        converged = False
                        break
                    logger.info('Unwrapping nested artifacts', iteration=iterations, count=len(unwrap_tasks))
                    for task in unwrap_tasks:
                        self.push(task)
        finally:
            context.task_listener = None
            with self._condition:
                self._pool = None

        self.finalize()

        validation = None
        if validate:
            mappers = map_artifacts_to_covered_files(
                context.inventory, context.base_dir, context.scan_param.reference_inventory,
            )
            validation = self.validator.validate(mappers)

        stats = context.stats
        logger.info(
            'Scan completed',
            iterations=iterations,
            artifacts=len(context.inventory.artifacts),
            files=stats.files,
            extracted=stats.extracted,
            failed=stats.tasks_failed,
            elapsed=f"{stats.elapsed_time:.2f}s",
        )
        return ScanResult(
            inventory=context.inventory,
            iterations=iterations,
            stats=stats,
            validation=validation,
            converged=converged,
        )

    def run_nested_component_inspection(self) -> None:
        """Inspects new artifacts; scan-classified ones not yet unwrapped are flagged for unwrapping."""
        for artifact in self.context.snapshot_artifacts():
            if artifact.get_attribute(ATTRIBUTE_KEY_INSPECTED):
                continue
            if self._reference_requests_scan(artifact):
                artifact.add_classification(HINT_SCAN)
            if not (artifact.has_classification(HINT_ATOMIC) or artifact.has_classification(HINT_IGNORE)):
                self.nested_inspector.inspect(artifact, self.context.base_dir)
            artifact.set_attribute(ATTRIBUTE_KEY_INSPECTED, MARKER_CROSS)

            if artifact.has_classification(HINT_SCAN) and not artifact.get_attribute(ATTRIBUTE_KEY_UNWRAPPED):
                artifact.set_attribute(ATTRIBUTE_KEY_UNWRAP, MARKER_CROSS)

    def _reference_requests_scan(self, artifact: Artifact) -> bool:
        reference = self.context.scan_param.reference_inventory
        return any(
            not r.checksum and r.has_classification(HINT_SCAN)
            for r in reference.find_all_with_id(artifact.id)
        )

    def collect_outstanding_scan_tasks(self) -> list[ScanTask]:
        context = self.context
        self.producer.match_and_apply_component_patterns(
            context.scan_param.reference_inventory, context, deferred=False,
        )

        tasks: list[ScanTask] = []
        for artifact in context.snapshot_artifacts():
            if artifact.get_attribute(ATTRIBUTE_KEY_UNWRAP) != MARKER_CROSS:
                continue
            chain = artifact.get_attribute(ATTRIBUTE_KEY_ASSET_ID_CHAIN)
            tasks.append(ArtifactUnwrapTask(artifact, chain.split(PATH_DELIMITER) if chain else []))
        return tasks

    # -- Finalization --

    def finalize(self) -> None:
        context = self.context
        reference = context.scan_param.reference_inventory

        if context.scan_param.detect_component_patterns:
            self.producer.detect_and_apply_component_patterns(context)
        self.producer.match_and_apply_component_patterns(reference, context, deferred=True)

        InspectorRunner([JarInspector(context.scan_param.include_embedded)]).execute_all(context)

        self.remove_deleted_artifacts()
        self.register_asset_paths()
        self.propagate_asset_markers()
        self.strip_intermediate_attributes()

        merged = self.merger.merge(context.inventory)
        context.stats.inc_merged(merged)

    def remove_deleted_artifacts(self) -> None:
        """Drops artifacts whose content is reported by their unwrapped subtree only."""
        to_be_deleted = [
            a for a in self.context.snapshot_artifacts()
            if SCAN_DIRECTIVE_DELETE in (a.get_attribute(ATTRIBUTE_KEY_SCAN_DIRECTIVE) or '')
        ]
        if to_be_deleted:
            logger.debug('Removing ignored artifacts', count=len(to_be_deleted))
            self.context.remove_all(to_be_deleted)

    def register_asset_paths(self) -> None:
        for asset in self.context.snapshot_assets():
            if asset.asset_path:
                self.context.path_to_asset_id.put_if_absent(asset.asset_path, asset.asset_id)

    def propagate_asset_markers(self) -> None:
        """Artifacts are marked as contained in each asset of their chain; assets mark their own artifact."""
        path_to_asset_id = self.context.path_to_asset_id
        for artifact in self.context.snapshot_artifacts():
            for asset_path in artifact.get_attribute_set(ATTRIBUTE_KEY_ASSET_ID_CHAIN):
                asset_id = path_to_asset_id.get(asset_path)
                if asset_id is None:
                    logger.debug('No asset registered for path', path=asset_path, artifact=artifact.id)
                    continue
                artifact.set_attribute(asset_id, MARKER_CONTAINS)

            artifact_path = artifact.artifact_path
            if artifact_path:
                asset_id = path_to_asset_id.get(artifact_path)
                if asset_id is not None:
                    artifact.set_attribute(asset_id, MARKER_CROSS)

    def strip_intermediate_attributes(self) -> None:
        for artifact in self.context.snapshot_artifacts():
            for key in INTERMEDIATE_ATTRIBUTES:
                artifact.set_attribute(key, None)
