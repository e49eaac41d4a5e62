"""Configuration management for compscan."""
import os
import shutil
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path


def _env_path(*names: str) -> Path | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return Path(value)
    return None


@dataclass
class ScanDefaults:
    """Scan executor defaults."""
    workers: int = field(
        default_factory=lambda: int(
            os.getenv('COMPSCAN_WORKERS', '4'),
        ),
    )
    # upper bound of unwrap iterations; real inputs converge far earlier
    max_iterations: int = field(
        default_factory=lambda: int(
            os.getenv('COMPSCAN_MAX_ITERATIONS', '64'),
        ),
    )


@dataclass
class ExtractionConfig:
    """External tools and limits used by the archive extractor."""
    seven_zip: str = field(
        default_factory=lambda: os.getenv('COMPSCAN_SEVEN_ZIP', '7z'),
    )
    tar: str = field(
        default_factory=lambda: os.getenv('COMPSCAN_TAR', 'tar'),
    )
    jdk_path: Path | None = field(
        default_factory=lambda: _env_path('JDK_PATH', 'JAVA_HOME'),
    )
    timeout: float = field(
        default_factory=lambda: float(
            os.getenv('COMPSCAN_EXTRACT_TIMEOUT', '3600'),
        ),
    )
    grace_period: float = 10.0

    def resolve_seven_zip(self) -> str | None:
        return shutil.which(self.seven_zip)

    def resolve_tar(self) -> str | None:
        return shutil.which(self.tar)

    def resolve_jdk_tool(self, tool: str) -> Path | None:
        """Returns <jdk>/bin/<tool> when a JDK is configured and provides it."""
        if self.jdk_path is None:
            return None
        candidate = self.jdk_path / 'bin' / tool
        if candidate.is_file():
            return candidate
        return None


@dataclass
class CompscanConfig:
    scan: ScanDefaults = field(default_factory=ScanDefaults)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)

    @classmethod
    def load(cls) -> 'CompscanConfig':
        return cls()


_config: CompscanConfig | None = None


def get_config() -> CompscanConfig:
    global _config
    if _config is None:
        _config = CompscanConfig.load()
    return _config
