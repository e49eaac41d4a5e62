import os
import threading
from pathlib import Path
from unittest.mock import patch

from compscan.core import config as config_module
from compscan.core.config import CompscanConfig
from compscan.core.config import ExtractionConfig
from compscan.core.config import ScanDefaults
from compscan.core.config import get_config
from compscan.core.stats import ScanStats


def test_scan_defaults_from_environment():
    """Test scan defaults are read from environment variables."""
    with patch.dict(os.environ, {'COMPSCAN_WORKERS': '8', 'COMPSCAN_MAX_ITERATIONS': '3'}):
        defaults = ScanDefaults()
    assert defaults.workers == 8
    assert defaults.max_iterations == 3


def test_extraction_config_prefers_jdk_path():
    """Test the JDK path takes precedence over the PATH lookup."""
    with patch.dict(os.environ, {'JDK_PATH': '/opt/jdk', 'JAVA_HOME': '/usr/lib/jvm/java'}):
        assert ExtractionConfig().jdk_path == Path('/opt/jdk')
    with patch.dict(os.environ, {'JAVA_HOME': '/usr/lib/jvm/java'}, clear=True):
        assert ExtractionConfig().jdk_path == Path('/usr/lib/jvm/java')


def test_resolve_jdk_tool(tmp_path):
    """Test JDK tools are resolved below the JDK bin folder."""
    tool = tmp_path / 'bin' / 'jmod'
    tool.parent.mkdir()
    tool.write_text('#!/bin/sh\n')

    assert ExtractionConfig(jdk_path=tmp_path).resolve_jdk_tool('jmod') == tool
    assert ExtractionConfig(jdk_path=tmp_path).resolve_jdk_tool('jimage') is None
    assert ExtractionConfig(jdk_path=None).resolve_jdk_tool('jmod') is None


def test_resolve_missing_binaries():
    """Test missing binaries resolve to None."""
    config = ExtractionConfig(seven_zip='compscan-missing-7z', tar='compscan-missing-tar')
    assert config.resolve_seven_zip() is None
    assert config.resolve_tar() is None


def test_get_config_is_cached():
    """Test get_config returns the same instance."""
    with patch.object(config_module, '_config', None):
        first = get_config()
        assert isinstance(first, CompscanConfig)
        assert get_config() is first


def test_stats_concurrent_increments():
    """Test stats counters are safe under concurrent increments."""
    stats = ScanStats()

    def work():
        for _ in range(1000):
            stats.inc_files()

    threads = [threading.Thread(target=work) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert stats.files == 4000
    assert stats.elapsed_time >= 0
