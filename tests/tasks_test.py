import hashlib
import zipfile

import pytest

from compscan.core.archive import ArchiveExtractor
from compscan.core.config import ExtractionConfig
from compscan.models.artifact import Artifact
from compscan.models.component_pattern import ComponentPatternData
from compscan.models.constants import ATTRIBUTE_KEY_ANCHOR
from compscan.models.constants import ATTRIBUTE_KEY_ARTIFACT_PATH
from compscan.models.constants import ATTRIBUTE_KEY_ASSET_ID_CHAIN
from compscan.models.constants import KEY_ERRORS
from compscan.models.constants import KEY_HASH_SHA1
from compscan.models.constants import KEY_PATH_IN_ASSET
from compscan.models.constants import MARKER_CROSS
from compscan.models.inventory import Inventory
from compscan.models.scan_param import ScanParam
from compscan.scan.context import ScanContext
from compscan.scan.tasks import DirectoryScanTask
from compscan.scan.tasks import FileCollectTask
from compscan.scan.tasks import TaskState
from compscan.scan.tasks import unwrap_target


def make_context(base_dir, scan_param=None):
    context = ScanContext(
        base_dir,
        scan_param=scan_param,
        extractor=ArchiveExtractor(ExtractionConfig(seven_zip='compscan-missing-7z')),
    )
    pushed = []
    context.task_listener = pushed.append
    return context, pushed


def test_unwrap_target(tmp_path):
    """Test the unwrap target is the bracketed file name."""
    assert unwrap_target(tmp_path / 'lib' / 'a.jar') == tmp_path / 'lib' / '[a.jar]'


def test_directory_scan_task_rejects_files(tmp_path):
    """Test the directory task refuses regular files."""
    file = tmp_path / 'a.txt'
    file.write_text('a')
    with pytest.raises(ValueError):
        DirectoryScanTask(file)


def test_directory_scan_task_pushes_children(tmp_path):
    """Test the directory task pushes a task per collected child."""
    (tmp_path / 'a.txt').write_text('a')
    (tmp_path / 'skip.log').write_text('log')
    (tmp_path / 'sub').mkdir()
    context, pushed = make_context(tmp_path, ScanParam(collect_excludes=['**/*.log']))

    task = DirectoryScanTask(tmp_path)
    task.run(context)

    assert task.state is TaskState.COMPLETED
    assert sorted(repr(t) for t in pushed) == [
        f"DirectoryScanTask({tmp_path / 'sub'})",
        f"FileCollectTask({tmp_path / 'a.txt'})",
    ]
    assert context.stats.directories == 1


def test_directory_scan_task_skips_implicit_folders_of_present_archives(tmp_path):
    """Test unwrap folders of present archives are not scanned twice."""
    (tmp_path / 'app.jar').write_bytes(b'PK')
    (tmp_path / '[app.jar]').mkdir()
    (tmp_path / '[orphan]').mkdir()
    context, pushed = make_context(tmp_path)

    DirectoryScanTask(tmp_path).run(context)

    directories = [t.directory.name for t in pushed if isinstance(t, DirectoryScanTask)]
    assert directories == ['[orphan]']


def test_file_collect_task_creates_artifact(tmp_path):
    """Test a collected file becomes an artifact with checksums."""
    file = tmp_path / 'readme.txt'
    file.write_bytes(b'hello')
    context, pushed = make_context(tmp_path)

    FileCollectTask(file, ['outer.zip']).run(context)

    [artifact] = context.inventory.artifacts
    assert pushed == []
    assert artifact.id == 'readme.txt'
    assert artifact.checksum == hashlib.md5(b'hello').hexdigest()
    assert artifact.get_attribute(KEY_HASH_SHA1) == hashlib.sha1(b'hello').hexdigest()
    assert artifact.get_attribute(KEY_PATH_IN_ASSET) == 'readme.txt'
    assert artifact.get_attribute(ATTRIBUTE_KEY_ARTIFACT_PATH) == 'readme.txt'
    assert artifact.get_attribute(ATTRIBUTE_KEY_ASSET_ID_CHAIN) == 'outer.zip'
    assert artifact.projects == {'readme.txt'}


def test_file_collect_task_unwraps_archive(tmp_path):
    """Test the collect task unwraps archives implicitly."""
    archive = tmp_path / 'bundle.zip'
    with zipfile.ZipFile(archive, 'w') as zf:
        zf.writestr('inner.txt', 'x')
    context, pushed = make_context(tmp_path)

    FileCollectTask(archive).run(context)

    assert context.inventory.artifacts == []
    [task] = pushed
    assert isinstance(task, DirectoryScanTask)
    assert task.directory == tmp_path / '[bundle.zip]'
    assert task.asset_id_chain == ['bundle.zip']
    md5 = hashlib.md5(archive.read_bytes()).hexdigest()
    assert context.path_to_asset_id.get('bundle.zip') == f"AID-bundle.zip-{md5}"
    assert context.stats.extracted == 1


def test_file_collect_task_records_unpack_failure(tmp_path):
    """Test unpack failures are recorded on the artifact."""
    archive = tmp_path / 'broken.zip'
    archive.write_bytes(b'not a zip')
    context, pushed = make_context(tmp_path)

    FileCollectTask(archive).run(context)

    [artifact] = context.inventory.artifacts
    assert pushed == []
    assert 'Cannot unpack broken.zip' in artifact.get_attribute(KEY_ERRORS)
    assert context.stats.extraction_failed == 1
    assert not (tmp_path / '[broken.zip]').exists()


def test_file_collect_task_respects_atomic_reference(tmp_path):
    """Test atomic reference artifacts are not unwrapped."""
    archive = tmp_path / 'bundle.zip'
    with zipfile.ZipFile(archive, 'w') as zf:
        zf.writestr('inner.txt', 'x')
    reference = Inventory(artifacts=[Artifact(id='bundle.zip', classification={'atomic'})])
    context, pushed = make_context(tmp_path, ScanParam(reference_inventory=reference))

    FileCollectTask(archive).run(context)

    assert pushed == []
    assert [a.id for a in context.inventory.artifacts] == ['bundle.zip']
    assert not (tmp_path / '[bundle.zip]').exists()


def test_file_collect_task_marks_anchor_candidates(tmp_path):
    """Test files matching a reference anchor are marked as anchor candidates."""
    file = tmp_path / 'VERSION'
    file.write_text('1.0')
    checksum = hashlib.md5(b'1.0').hexdigest()
    reference = Inventory(
        component_patterns=[
            ComponentPatternData(version_anchor='VERSION', version_anchor_checksum=checksum),
        ],
    )
    context, _ = make_context(tmp_path, ScanParam(reference_inventory=reference))

    FileCollectTask(file).run(context)

    assert context.inventory.artifacts[0].get_attribute(ATTRIBUTE_KEY_ANCHOR) == MARKER_CROSS


def test_scan_param_collect_and_unwrap_patterns():
    """Test collect and unwrap excludes of the scan parameters."""
    scan_param = ScanParam(
        collect_excludes=['**/*.log'],
        unwrap_excludes=['vendor/**/*'],
    )
    assert scan_param.collects('a/b.txt')
    assert not scan_param.collects('a/b.log')
    assert scan_param.collects_directory('a')
    assert scan_param.unwraps('lib/a.jar')
    assert not scan_param.unwraps('vendor/a.jar')
