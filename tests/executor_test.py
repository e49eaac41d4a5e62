import hashlib
import io
import zipfile
from unittest.mock import patch

import pytest

from compscan.core.archive import ArchiveExtractor
from compscan.core.checksum import compute_checksums
from compscan.core.config import ExtractionConfig
from compscan.core.validation import ScanInvariantError
from compscan.models.artifact import Artifact
from compscan.models.asset import AssetMetaData
from compscan.models.constants import INTERMEDIATE_ATTRIBUTES
from compscan.models.constants import KEY_PATH_IN_ASSET
from compscan.models.constants import MARKER_CONTAINS
from compscan.models.constants import MARKER_CROSS
from compscan.models.scan_param import ScanParam
from compscan.scan.context import ScanContext
from compscan.scan.executor import ScanExecutor
from compscan.scan.tasks import ScanTask
from compscan.scan.tasks import TaskState


def zip_bytes(entries):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def scan(base_dir, scan_param=None, **kwargs):
    context = ScanContext(
        base_dir,
        scan_param=scan_param or ScanParam(detect_component_patterns=False),
        extractor=ArchiveExtractor(ExtractionConfig(seven_zip='compscan-missing-7z')),
    )
    executor = ScanExecutor(context, workers=2, **kwargs)
    return executor, executor.execute()


def by_id(inventory):
    return {a.id: a for a in inventory.artifacts}


def test_scan_plain_directory(tmp_path):
    """Test every file of a plain directory becomes an artifact."""
    (tmp_path / 'a.txt').write_text('a')
    (tmp_path / 'sub').mkdir()
    (tmp_path / 'sub' / 'b.txt').write_text('b')

    _, result = scan(tmp_path)

    artifacts = by_id(result.inventory)
    assert set(artifacts) == {'a.txt', 'b.txt'}
    assert artifacts['b.txt'].get_attribute(KEY_PATH_IN_ASSET) == 'sub/b.txt'
    assert result.iterations == 1
    assert result.converged
    assert result.stats.files == 2


def test_scan_unwraps_archive(tmp_path):
    """Test the archive is replaced by its contents linked through the asset id."""
    jar = tmp_path / 'app.jar'
    jar.write_bytes(zip_bytes({'lib/a.txt': 'a', 'b.txt': 'b'}))
    asset_id = AssetMetaData.derive_asset_id('app.jar', hashlib.md5(jar.read_bytes()).hexdigest())

    _, result = scan(tmp_path)

    artifacts = by_id(result.inventory)
    assert set(artifacts) == {'a.txt', 'b.txt'}
    assert (tmp_path / '[app.jar]' / 'lib' / 'a.txt').is_file()
    assert artifacts['b.txt'].get_attribute(KEY_PATH_IN_ASSET) == '[app.jar]/b.txt'
    assert artifacts['a.txt'].get_attribute(asset_id) == MARKER_CONTAINS
    assert [a.asset_id for a in result.inventory.asset_metadata] == [asset_id]
    assert result.inventory.asset_metadata[0].asset_path == 'app.jar'


def test_scan_unwraps_nested_archives_in_one_pass(tmp_path):
    """Test implicit unwrapping decomposes nested archives in one iteration."""
    inner = zip_bytes({'c.txt': 'c'})
    (tmp_path / 'outer.zip').write_bytes(zip_bytes({'inner.zip': inner}))

    _, result = scan(tmp_path)

    [artifact] = result.inventory.artifacts
    assert artifact.id == 'c.txt'
    assert artifact.get_attribute(KEY_PATH_IN_ASSET) == '[outer.zip]/[inner.zip]/c.txt'
    assert len(result.inventory.asset_metadata) == 2
    assert result.iterations == 1


def test_scan_unwraps_nested_jars_in_further_iterations(tmp_path):
    """Test only jars containing jars are decomposed without implicit unwrapping."""
    outer = tmp_path / 'outer.jar'
    outer.write_bytes(zip_bytes({'lib/inner.jar': zip_bytes({'x.txt': 'x'})}))
    outer_id = AssetMetaData.derive_asset_id('outer.jar', hashlib.md5(outer.read_bytes()).hexdigest())

    _, result = scan(tmp_path, ScanParam(implicit_unwrap=False, detect_component_patterns=False))

    artifacts = by_id(result.inventory)
    assert set(artifacts) == {'outer.jar', 'inner.jar'}
    assert result.iterations == 2
    assert artifacts['outer.jar'].has_classification('scan')
    assert artifacts['outer.jar'].get_attribute(outer_id) == MARKER_CROSS
    assert artifacts['inner.jar'].get_attribute(outer_id) == MARKER_CONTAINS
    assert not artifacts['inner.jar'].has_classification('scan')
    assert (tmp_path / '[outer.jar]' / 'lib' / 'inner.jar').is_file()


def test_scan_stops_at_max_iterations(tmp_path):
    """Test the scan stops unconverged at the iteration limit."""
    (tmp_path / 'outer.jar').write_bytes(zip_bytes({'lib/inner.jar': zip_bytes({'x.txt': 'x'})}))

    _, result = scan(
        tmp_path,
        ScanParam(implicit_unwrap=False, detect_component_patterns=False),
        max_iterations=1,
    )

    assert not result.converged
    assert result.iterations == 1
    assert not (tmp_path / '[outer.jar]').exists()


def test_intermediate_attributes_are_stripped(tmp_path):
    """Test no intermediate attribute survives the scan."""
    (tmp_path / 'app.zip').write_bytes(zip_bytes({'a.txt': 'a'}))
    (tmp_path / 'b.txt').write_text('b')

    _, result = scan(tmp_path)

    for artifact in result.inventory.artifacts:
        assert not set(INTERMEDIATE_ATTRIBUTES) & set(artifact.attributes)


def test_identical_files_are_merged(tmp_path):
    """Test that entries with the same name and content collapse into one artifact."""
    (tmp_path / 'bundle.zip').write_bytes(zip_bytes({'one/NOTICE': 'same', 'Two/NOTICE': 'same'}))

    _, result = scan(tmp_path)

    [artifact] = result.inventory.artifacts
    assert artifact.paths_in_asset == {'[bundle.zip]/one/NOTICE', '[bundle.zip]/Two/NOTICE'}
    assert artifact.get_attribute(KEY_PATH_IN_ASSET) == '[bundle.zip]/one/NOTICE|\n[bundle.zip]/Two/NOTICE'
    assert result.stats.merged == 1


def test_same_content_with_different_names_stays_separate(tmp_path):
    """Test that files sharing content but not their name remain distinct artifacts."""
    (tmp_path / 'a').mkdir()
    (tmp_path / 'b').mkdir()
    (tmp_path / 'pkg').mkdir()
    (tmp_path / 'a' / 'LICENSE').write_text('MIT')
    (tmp_path / 'b' / 'COPYING').write_text('MIT')
    (tmp_path / 'pkg' / '__init__.py').write_text('')
    (tmp_path / 'pkg' / 'py.typed').write_text('')

    _, result = scan(tmp_path)

    artifacts = by_id(result.inventory)
    assert sorted(artifacts) == ['COPYING', 'LICENSE', '__init__.py', 'py.typed']
    assert artifacts['LICENSE'].get_attribute(KEY_PATH_IN_ASSET) == 'a/LICENSE'
    assert artifacts['py.typed'].get_attribute(KEY_PATH_IN_ASSET) == 'pkg/py.typed'
    assert result.stats.merged == 0


def test_failing_task_does_not_abort_scan(tmp_path):
    """Test a failing task is recorded while the scan continues."""
    (tmp_path / 'bad.txt').write_text('bad')
    (tmp_path / 'good.txt').write_text('good')

    def flaky_checksums(file):
        if file.name == 'bad.txt':
            raise PermissionError(f"Permission denied: {file}")
        return compute_checksums(file)

    with patch('compscan.scan.tasks.compute_checksums', side_effect=flaky_checksums):
        executor, result = scan(tmp_path)

    assert set(by_id(result.inventory)) == {'good.txt'}
    assert result.stats.tasks_failed == 1
    [failed] = executor.failed_tasks
    assert failed.state is TaskState.FAILED
    assert isinstance(failed.error, PermissionError)


class BlankArtifactTask(ScanTask):
    def process(self, context):
        context.contribute(Artifact(id=' '))


def test_invariant_violation_aborts_scan(tmp_path):
    """Test an invariant violation aborts the scan."""
    with patch('compscan.scan.executor.DirectoryScanTask', lambda directory: BlankArtifactTask()):
        with pytest.raises(ScanInvariantError):
            scan(tmp_path)


def test_push_outside_execute_violates_invariant(tmp_path):
    """Test pushing a task outside execute raises an invariant error."""
    executor = ScanExecutor(ScanContext(tmp_path), workers=1)
    with pytest.raises(ScanInvariantError):
        executor.push(BlankArtifactTask())


def test_reference_scan_hint_forces_unwrap(tmp_path):
    """Test a reference scan hint unwraps an archive in a further iteration."""
    (tmp_path / 'lib.zip').write_bytes(zip_bytes({'x.txt': 'x'}))
    scan_param = ScanParam(implicit_unwrap=False, detect_component_patterns=False)
    scan_param.reference_inventory.artifacts.append(Artifact(id='lib.zip', classification={'scan'}))

    _, result = scan(tmp_path, scan_param)

    artifacts = by_id(result.inventory)
    assert set(artifacts) == {'lib.zip', 'x.txt'}
    assert result.iterations == 2
    assert (tmp_path / '[lib.zip]' / 'x.txt').is_file()


def test_reference_ignore_hint_removes_unwrapped_artifact(tmp_path):
    """Test that an archive marked scan and ignore is reported through its contents only."""
    archive = tmp_path / 'lib.zip'
    archive.write_bytes(zip_bytes({'x.txt': 'x'}))
    asset_id = AssetMetaData.derive_asset_id('lib.zip', hashlib.md5(archive.read_bytes()).hexdigest())
    scan_param = ScanParam(implicit_unwrap=False, detect_component_patterns=False)
    scan_param.reference_inventory.artifacts.append(Artifact(id='lib.zip', classification={'scan', 'ignore'}))

    _, result = scan(tmp_path, scan_param)

    artifacts = by_id(result.inventory)
    assert set(artifacts) == {'x.txt'}
    assert artifacts['x.txt'].get_attribute(asset_id) == MARKER_CONTAINS
    assert [a.asset_path for a in result.inventory.asset_metadata] == ['lib.zip']


def test_validation_result_is_attached(tmp_path):
    """Test execute attaches the validation result when asked to."""
    (tmp_path / 'a.txt').write_text('a')
    context = ScanContext(tmp_path, scan_param=ScanParam(detect_component_patterns=False))

    result = ScanExecutor(context, workers=1).execute(validate=True)

    assert result.validation is not None
    assert result.validation.is_valid
