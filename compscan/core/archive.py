"""Archive detection and extraction with ordered fallback strategies."""
import bz2
import gzip
import lzma
import os
import shutil
import tarfile
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from pathlib import PurePosixPath

import structlog

from compscan.core.config import ExtractionConfig
from compscan.core.config import get_config
from compscan.core.process import run_process

logger = structlog.get_logger('archive')

AR_MAGIC = b'!<arch>\n'
INTERMEDIATE_PREFIX = '.unpack_'


class ExtractionStatus(Enum):
    SUCCESS = 'success'
    UNSUPPORTED = 'unsupported'
    FAILED = 'failed'


@dataclass
class ExtractionResult:
    status: ExtractionStatus
    reason: str = ''

    @classmethod
    def success(cls, reason: str = '') -> 'ExtractionResult':
        return cls(ExtractionStatus.SUCCESS, reason)

    @classmethod
    def unsupported(cls, reason: str) -> 'ExtractionResult':
        return cls(ExtractionStatus.UNSUPPORTED, reason)

    @classmethod
    def failed(cls, reason: str) -> 'ExtractionResult':
        return cls(ExtractionStatus.FAILED, reason)

    @property
    def ok(self) -> bool:
        return self.status is ExtractionStatus.SUCCESS


class ArchiveFamily(str, Enum):
    ZIP = 'zip'
    GZIP = 'gzip'
    TAR = 'tar'
    JMOD = 'jmod'
    JIMAGE = 'jimage'
    WINDOWS = 'windows'


DEFAULT_EXTENSIONS: dict[str, ArchiveFamily] = {
    **{ext: ArchiveFamily.ZIP for ext in ('zip', 'jar', 'war', 'ear', 'nar', 'aar', 'sar', 'nupkg', 'whl', 'egg')},
    **{ext: ArchiveFamily.GZIP for ext in ('gz', 'gzip')},
    **{
        ext: ArchiveFamily.TAR for ext in (
            'tar', 'tgz', 'bz2', 'xz', 'deb', 'apk', 'gem', 'rpm',
            'tar.gz', 'tar.bz2', 'tar.xz',
        )
    },
    'jmod': ArchiveFamily.JMOD,
    'modules': ArchiveFamily.JIMAGE,
    **{ext: ArchiveFamily.WINDOWS for ext in ('cab', 'exe', 'msi')},
}

# outer compression layers of tar archives; suffix -> opener
TAR_WRAPPERS: tuple[tuple[str, Callable], ...] = (
    ('.gz', gzip.open),
    ('.tgz', gzip.open),
    ('.xz', lzma.open),
    ('.bz2', bz2.open),
)

Strategy = Callable[[Path, Path], ExtractionResult]


def _is_within(base: Path, candidate: Path) -> bool:
    try:
        return candidate.resolve().is_relative_to(base.resolve())
    except (OSError, RuntimeError):
        return False


def _clear_directory(directory: Path, keep: list[Path]) -> None:
    keep_names = {p.name for p in keep}
    for child in directory.iterdir():
        if child.name in keep_names:
            continue
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child, ignore_errors=True)
        else:
            child.unlink(missing_ok=True)


class ArchiveExtractor:
    """
    Unpacks archives into a target directory.

    The archive family is derived from the file extension (or the full file
    name when it has none). Each family owns an ordered list of strategies;
    the first successful strategy wins. A failed extraction never leaves a
    target directory behind that was created by the extraction attempt.
    """

    def __init__(self, config: ExtractionConfig | None = None):
        self.config = config or get_config().extraction
        self.extensions: dict[str, ArchiveFamily] = dict(DEFAULT_EXTENSIONS)
        self.strategies: dict[ArchiveFamily, list[Strategy]] = {
            ArchiveFamily.ZIP: [self.unzip, self.seven_zip],
            ArchiveFamily.GZIP: [self.gunzip],
            ArchiveFamily.TAR: [self.unpack_ar, self.untar, self.seven_zip, self.tar_command],
            ArchiveFamily.JMOD: [self.jmod_extract],
            ArchiveFamily.JIMAGE: [self.jimage_extract],
            ArchiveFamily.WINDOWS: [self.seven_zip],
        }

    def register(self, extension: str, family: ArchiveFamily) -> None:
        self.extensions[extension.lower().lstrip('.')] = family

    def register_strategy(self, family: ArchiveFamily, strategy: Strategy, index: int | None = None) -> None:
        chain = self.strategies.setdefault(family, [])
        if index is None:
            chain.append(strategy)
        else:
            chain.insert(index, strategy)

    def detect_family(self, archive: Path) -> ArchiveFamily | None:
        name = archive.name.lower()
        parts = name.split('.')
        # compound extensions first ('tar.gz' before 'gz')
        for i in range(1, len(parts)):
            family = self.extensions.get('.'.join(parts[i:]))
            if family is not None:
                return family
        if len(parts) == 1:
            return self.extensions.get(name)
        return None

    def unpack_if_possible(self, archive: Path, target_dir: Path, issues: list[str] | None = None) -> bool:
        """
        Attempts to unpack archive into target_dir.

        Returns True on success. Reasons of failed attempts are appended to issues.
        """
        issues = issues if issues is not None else []
        family = self.detect_family(archive)
        if family is None:
            return False

        created = not target_dir.exists()
        target_dir.mkdir(parents=True, exist_ok=True)

        intermediate_files: list[Path] = []
        try:
            source = archive
            if family is ArchiveFamily.TAR:
                source = self._strip_tar_wrappers(archive, target_dir, intermediate_files, issues)
            result = self._run_chain(family, source, target_dir, intermediate_files)
        finally:
            for intermediate_file in intermediate_files:
                intermediate_file.unlink(missing_ok=True)

        if result.ok:
            logger.debug(
                'Archive extracted',
                archive=str(archive),
                family=family.value,
                via=result.reason,
            )
            return True

        issues.append(f"Cannot unpack {archive.name}: {result.reason}")
        logger.warning(
            'Archive extraction failed',
            archive=str(archive),
            family=family.value,
            reason=result.reason,
            _style='yellow',
        )
        if created:
            shutil.rmtree(target_dir, ignore_errors=True)
        return False

    def _run_chain(
        self,
        family: ArchiveFamily,
        source: Path,
        target_dir: Path,
        intermediate_files: list[Path],
    ) -> ExtractionResult:
        reasons = []
        any_failed = False
        for strategy in self.strategies.get(family, []):
            result = strategy(source, target_dir)
            if result.ok:
                return result
            reasons.append(result.reason)
            if result.status is ExtractionStatus.FAILED:
                any_failed = True
                _clear_directory(target_dir, keep=intermediate_files)
        reason = '; '.join(r for r in reasons if r) or 'no strategy available'
        if any_failed:
            return ExtractionResult.failed(reason)
        return ExtractionResult.unsupported(reason)

    def _strip_tar_wrappers(
        self,
        archive: Path,
        target_dir: Path,
        intermediate_files: list[Path],
        issues: list[str],
    ) -> Path:
        name = archive.name
        for suffix, opener in TAR_WRAPPERS:
            if not name.lower().endswith(suffix):
                continue
            intermediate = target_dir / (INTERMEDIATE_PREFIX + name[:len(name) - len(suffix)])
            intermediate_files.append(intermediate)
            try:
                with opener(archive, 'rb') as src, open(intermediate, 'wb') as dst:
                    shutil.copyfileobj(src, dst)
            except (OSError, EOFError, lzma.LZMAError) as e:
                issues.append(f"Cannot strip {suffix} from {name}: {e}")
                logger.warning(
                    'Cannot strip compression layer',
                    archive=str(archive),
                    suffix=suffix,
                    error=str(e),
                )
                intermediate.unlink(missing_ok=True)
                return archive
            return intermediate
        return archive

    # -- strategies --

    def unzip(self, source: Path, target_dir: Path) -> ExtractionResult:
        try:
            with zipfile.ZipFile(source) as zf:
                for info in zf.infolist():
                    if not _is_within(target_dir, target_dir / info.filename):
                        logger.warning('Skipping entry outside target', archive=str(source), entry=info.filename)
                        continue
                    zf.extract(info, target_dir)
        except (zipfile.BadZipFile, OSError, EOFError, NotImplementedError, RuntimeError) as e:
            return ExtractionResult.failed(f"zip: {e}")
        return ExtractionResult.success('zip')

    def gunzip(self, source: Path, target_dir: Path) -> ExtractionResult:
        name = source.name
        lower = name.lower()
        for suffix in ('.gzip', '.gz'):
            if lower.endswith(suffix):
                name = name[:len(name) - len(suffix)]
                break
        try:
            with gzip.open(source, 'rb') as src, open(target_dir / name, 'wb') as dst:
                shutil.copyfileobj(src, dst)
        except (OSError, EOFError) as e:
            return ExtractionResult.failed(f"gzip: {e}")
        return ExtractionResult.success('gzip')

    def unpack_ar(self, source: Path, target_dir: Path) -> ExtractionResult:
        try:
            with open(source, 'rb') as f:
                if f.read(len(AR_MAGIC)) != AR_MAGIC:
                    return ExtractionResult.unsupported('')
                count = _read_ar_members(f, target_dir)
        except (OSError, ValueError) as e:
            return ExtractionResult.failed(f"ar: {e}")
        return ExtractionResult.success(f"ar ({count} members)")

    def untar(self, source: Path, target_dir: Path) -> ExtractionResult:
        try:
            with tarfile.open(source, mode='r:*', ignore_zeros=True) as tf:
                skipped = _extract_tar_members(tf, target_dir)
        except (tarfile.TarError, OSError, EOFError, lzma.LZMAError) as e:
            return ExtractionResult.failed(f"tar: {e}")
        if skipped:
            return ExtractionResult.success(f"tar ({skipped} entries skipped)")
        return ExtractionResult.success('tar')

    def seven_zip(self, source: Path, target_dir: Path) -> ExtractionResult:
        binary = self.config.resolve_seven_zip()
        if not binary:
            logger.warning('7-zip binary not available', binary=self.config.seven_zip)
            return ExtractionResult.unsupported(f"7-zip binary '{self.config.seven_zip}' not available")
        return self._run_tool([binary, 'x', '-y', f"-o{target_dir}", str(source)], '7-zip')

    def tar_command(self, source: Path, target_dir: Path) -> ExtractionResult:
        binary = self.config.resolve_tar()
        if not binary:
            return ExtractionResult.unsupported(f"tar binary '{self.config.tar}' not available")
        return self._run_tool([binary, '-xf', str(source.resolve()), '-C', str(target_dir.resolve())], 'tar command')

    def jmod_extract(self, source: Path, target_dir: Path) -> ExtractionResult:
        return self._jdk_extract('jmod', source, target_dir)

    def jimage_extract(self, source: Path, target_dir: Path) -> ExtractionResult:
        return self._jdk_extract('jimage', source, target_dir)

    def _jdk_extract(self, tool: str, source: Path, target_dir: Path) -> ExtractionResult:
        executable = self.config.resolve_jdk_tool(tool)
        if executable is None:
            logger.error(
                f"Cannot extract {tool} file; no JDK available",
                archive=str(source),
                hint='Set JDK_PATH or JAVA_HOME to a JDK with version > 11.',
                _style='bold red',
            )
            return ExtractionResult.failed(f"{tool}: no JDK available")
        return self._run_tool([str(executable), 'extract', str(source.resolve())], tool, cwd=target_dir)

    def _run_tool(self, command: list[str], label: str, cwd: Path | None = None) -> ExtractionResult:
        try:
            result = run_process(
                command,
                cwd=cwd,
                timeout=self.config.timeout,
                grace_period=self.config.grace_period,
            )
        except OSError as e:
            return ExtractionResult.failed(f"{label}: {e}")
        if result.timed_out:
            return ExtractionResult.failed(f"{label}: timed out after {self.config.timeout}s")
        if result.returncode != 0:
            stderr = result.stderr.strip().splitlines()
            detail = stderr[-1] if stderr else f"exit code {result.returncode}"
            return ExtractionResult.failed(f"{label}: {detail}")
        return ExtractionResult.success(label)


def _read_ar_members(f, target_dir: Path) -> int:
    """Extracts the members of an ar archive (common and GNU/BSD name variants)."""
    extended_names = b''
    count = 0
    while True:
        header = f.read(60)
        if not header:
            break
        if len(header) < 60 or header[58:60] != b'`\n':
            raise ValueError('malformed ar header')
        raw_name = header[0:16].decode('utf-8', errors='replace').rstrip()
        size = int(header[48:58].decode('ascii').strip() or '0')
        data_size = size

        if raw_name.startswith('#1/'):
            name_length = int(raw_name[3:])
            name = f.read(name_length).decode('utf-8', errors='replace').rstrip('\x00')
            data_size -= name_length
        elif raw_name == '//':
            extended_names = f.read(size)
            f.read(size % 2)
            continue
        elif raw_name in ('/', '/SYM64/'):
            f.seek(size + size % 2, os.SEEK_CUR)
            continue
        elif raw_name.startswith('/') and raw_name[1:].isdigit():
            offset = int(raw_name[1:])
            end = extended_names.find(b'/\n', offset)
            name = extended_names[offset:end].decode('utf-8', errors='replace')
        else:
            name = raw_name.rstrip('/')

        # member names never address sub directories
        member = target_dir / PurePosixPath(name).name
        with open(member, 'wb') as out:
            remaining = data_size
            while remaining > 0:
                chunk = f.read(min(remaining, 64 * 1024))
                if not chunk:
                    raise ValueError(f"truncated ar member {name}")
                out.write(chunk)
                remaining -= len(chunk)
        f.read(size % 2)
        count += 1
    return count


def _extract_tar_members(tf: tarfile.TarFile, target_dir: Path) -> int:
    """
    Extracts tar members below target_dir.

    Entries escaping the target directory, devices and fifos are skipped.
    Ownership of a member's parent directory entry is applied to the member
    when the platform and permissions allow it.
    """
    skipped = 0
    owners: dict[str, tuple[int, int]] = {}
    deferred_links: list[tarfile.TarInfo] = []

    for member in tf:
        member_name = member.name.lstrip('/')
        destination = target_dir / member_name
        if not member_name or not _is_within(target_dir, destination):
            skipped += 1
            continue

        if member.isdir():
            destination.mkdir(parents=True, exist_ok=True)
            owners[member_name.rstrip('/')] = (member.uid, member.gid)
        elif member.isfile():
            destination.parent.mkdir(parents=True, exist_ok=True)
            source = tf.extractfile(member)
            if source is None:
                skipped += 1
                continue
            with source, open(destination, 'wb') as out:
                shutil.copyfileobj(source, out)
            destination.chmod(member.mode & 0o777 | 0o600)
        elif member.issym() or member.islnk():
            deferred_links.append(member)
            continue
        else:
            skipped += 1
            continue

        _propagate_owner(destination, member_name, owners)

    for member in deferred_links:
        member_name = member.name.lstrip('/')
        destination = target_dir / member_name
        destination.parent.mkdir(parents=True, exist_ok=True)
        if member.issym():
            try:
                if destination.is_symlink() or destination.exists():
                    destination.unlink()
                os.symlink(member.linkname, destination)
            except (OSError, NotImplementedError) as e:
                logger.warning(
                    'Cannot create symbolic link; skipped',
                    link=member_name,
                    target=member.linkname,
                    error=str(e),
                )
                skipped += 1
                continue
        else:
            link_source = target_dir / member.linkname.lstrip('/')
            if not _is_within(target_dir, link_source) or not link_source.is_file():
                skipped += 1
                continue
            shutil.copyfile(link_source, destination)
        _propagate_owner(destination, member_name, owners)

    return skipped


def _propagate_owner(destination: Path, member_name: str, owners: dict[str, tuple[int, int]]) -> None:
    if not hasattr(os, 'lchown'):
        return
    parent = str(PurePosixPath(member_name).parent)
    owner = owners.get(parent)
    if owner is None:
        return
    try:
        os.lchown(destination, owner[0], owner[1])
    except OSError as e:
        # requires privileges unless the ids match the current user
        logger.debug('Cannot propagate owner', path=str(destination), uid=owner[0], gid=owner[1], error=str(e))
