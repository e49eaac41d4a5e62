import json
import zipfile
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from compscan.__main__ import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def no_logging_setup():
    # logging configuration is process wide; tests keep the structlog defaults
    with patch('compscan.__main__.setup_logging') as mock_setup:
        yield mock_setup


@pytest.fixture
def scan_dir(tmp_path):
    base_dir = tmp_path / 'image'
    base_dir.mkdir()
    (base_dir / 'readme.txt').write_text('hello')
    with zipfile.ZipFile(base_dir / 'app.jar', 'w') as zf:
        zf.writestr('lib/a.txt', 'a')
    return base_dir


def test_version():
    """Test the version command prints the package version."""
    result = runner.invoke(app, ['--version'])
    assert result.exit_code == 0
    assert result.output.startswith('compscan ')


def test_scan_run_writes_inventory(scan_dir, tmp_path, no_logging_setup):
    """Test scan run writes the inventory file."""
    output = tmp_path / 'out' / 'inventory.json'

    result = runner.invoke(app, ['scan', 'run', str(scan_dir), '--output', str(output), '--workers', '2'])

    assert result.exit_code == 0, result.output
    assert 'Scan Summary' in result.output
    data = json.loads(output.read_text())
    assert {a['id'] for a in data['artifacts']} == {'readme.txt', 'a.txt'}
    no_logging_setup.assert_called_once_with(level='INFO')


def test_scan_run_without_implicit_unwrap(scan_dir, tmp_path):
    """Test scan run honours --no-implicit-unwrap."""
    output = tmp_path / 'inventory.json'

    result = runner.invoke(app, ['scan', 'run', str(scan_dir), '-o', str(output), '--no-implicit-unwrap'])

    assert result.exit_code == 0, result.output
    data = json.loads(output.read_text())
    assert {a['id'] for a in data['artifacts']} == {'readme.txt', 'app.jar'}


def test_scan_run_with_reference(scan_dir, tmp_path):
    """Test scan run honours atomic hints of a reference inventory."""
    reference = tmp_path / 'reference.jsonl'
    reference.write_text(json.dumps({'id': 'app.jar', 'classification': 'atomic'}) + '\n')
    output = tmp_path / 'inventory.json'

    result = runner.invoke(
        app, ['scan', 'run', str(scan_dir), '--reference', str(reference), '-o', str(output)],
    )

    assert result.exit_code == 0, result.output
    data = json.loads(output.read_text())
    assert {a['id'] for a in data['artifacts']} == {'readme.txt', 'app.jar'}


def test_scan_run_missing_directory(tmp_path):
    """Test scan run fails for a missing base directory."""
    result = runner.invoke(app, ['scan', 'run', str(tmp_path / 'missing')])

    assert result.exit_code == 1
    assert 'Validation Error' in result.output


def test_patterns_detect(tmp_path):
    """Test patterns detect lists the detected component patterns."""
    module = tmp_path / 'node_modules' / 'left-pad'
    module.mkdir(parents=True)
    (module / 'package.json').write_text(json.dumps({'name': 'left-pad', 'version': '1.3.0'}))

    result = runner.invoke(app, ['patterns', 'detect', str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert 'Component Patterns (1)' in result.output
