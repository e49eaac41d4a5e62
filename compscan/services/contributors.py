"""Contributors deriving component patterns from well-known package metadata files."""
import json
import re
from abc import ABC
from abc import abstractmethod
from pathlib import Path

import structlog

from compscan.core.checksum import compute_md5
from compscan.models.component_pattern import ComponentPatternData
from compscan.services.inspection_service import read_properties

logger = structlog.get_logger('contributors')

UNSPECIFIC = 'unspecific'

# anchor files in the order they are evaluated; an anchor is consumed by the first pattern it matches
ANCHOR_PATTERNS_BY_PRIORITY = (
    'specifications/*.gemspec',
    'var/lib/dpkg/status',
    'lib/apk/db/installed',
    'node_modules/**/package.json',
    'package.json',
    '.bower.json',
    'bower.json',
    'composer.json',
    'composer.lock',
    '.composer.lock',
    'META-INF/maven/**/pom.properties',
    '*.dist-info/METADATA',
)

WEB_MODULE_EXCLUDES = (
    '**/.yarn-integrity',
    '**/node_modules/**/*',
    '**/bower_components/**/*',
    '**/bower.json',
    '**/.bower.json',
    '**/composer.json',
    '**/composer.lock',
)

JAR_MODULE_EXCLUDES = (
    '**/node_modules/**/*',
    '**/bower_components/**/*',
    '**/*.jar',
    '**/*.so*',
    '**/*.dll',
)


def _anchor_in_parent(base_dir: Path, anchor_file: Path) -> tuple[str, str]:
    """Version anchor and include pattern for components rooted in the anchor's folder."""
    parent = anchor_file.parent
    if parent == base_dir:
        return anchor_file.name, '**/*'
    return f"{parent.name}/{anchor_file.name}", f"{parent.name}/**/*"


def _read_header_fields(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip():
            break
        if line[0].isspace():
            continue
        key, sep, value = line.partition(':')
        if sep and key not in fields:
            fields[key.strip()] = value.strip()
    return fields


def build_purl(package_manager: str, name: str | None, version: str | None) -> str | None:
    if not name:
        return None
    normalized = name if name.startswith('@') else name.lower()
    if not version or version.lower() == UNSPECIFIC:
        return f"pkg:{package_manager}/{normalized}"
    return f"pkg:{package_manager}/{normalized}@{version.removeprefix('v')}"


class ComponentPatternContributor(ABC):
    """Derives component patterns from an anchor file."""

    suffixes: tuple[str, ...] = ()

    def applies(self, relative_anchor_path: str) -> bool:
        return relative_anchor_path.lower().endswith(self.suffixes)

    @abstractmethod
    def contribute(self, base_dir: Path, anchor_file: Path, checksum: str) -> list[ComponentPatternData]:
        ...


class GemSpecContributor(ComponentPatternContributor):
    suffixes = ('.gemspec',)

    _version = re.compile(r'-[0-9]+\.[0-9]+')

    def contribute(self, base_dir: Path, anchor_file: Path, checksum: str) -> list[ComponentPatternData]:
        file_name = anchor_file.name
        stem = file_name.removesuffix('.gemspec')

        match = self._version.search(stem)
        if match is None:
            logger.warning('No version extracted from gemspec', path=str(anchor_file))
            return []
        name, version = stem[:match.start()], stem[match.start() + 1:]

        includes = [
            f"**/{name}-{version}/**/*",
            f"/**/cache/**/{name}-{version}*",
            f"**/{file_name}",
        ]
        return [
            ComponentPatternData(
                version_anchor=f"{anchor_file.parent.name}/{file_name}",
                version_anchor_checksum=checksum,
                component_name=name,
                component_version=version,
                component_part=f"{name}-{version}",
                include_pattern=','.join(includes),
                type='ruby-gem',
                component_source_type='ruby-gem',
                purl=build_purl('gem', name, version),
            ),
        ]


class NpmModuleContributor(ComponentPatternContributor):
    suffixes = ('package.json',)

    def applies(self, relative_anchor_path: str) -> bool:
        return relative_anchor_path == 'package.json' or relative_anchor_path.endswith('/package.json')

    def contribute(self, base_dir: Path, anchor_file: Path, checksum: str) -> list[ComponentPatternData]:
        try:
            data = json.loads(anchor_file.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            logger.warning('Cannot parse package.json', path=str(anchor_file), error=str(e))
            return []
        if not isinstance(data, dict) or not data.get('name'):
            return []

        name = data['name']
        version = data.get('version') or UNSPECIFIC
        part = name if version == UNSPECIFIC else f"{name}-{version}"
        version_anchor, include = _anchor_in_parent(base_dir, anchor_file)
        return [
            ComponentPatternData(
                version_anchor=version_anchor,
                version_anchor_checksum=checksum,
                component_name=name,
                component_version=version,
                component_part=part,
                include_pattern=include,
                exclude_pattern=','.join(WEB_MODULE_EXCLUDES),
                type='web-module',
                component_source_type='npm-module',
                purl=build_purl('npm', name, version),
            ),
        ]


class JarModuleContributor(ComponentPatternContributor):
    """Unwrapped jars; anchored on the maven metadata below META-INF/maven."""

    suffixes = ('/pom.properties',)

    def applies(self, relative_anchor_path: str) -> bool:
        return super().applies(relative_anchor_path) and 'meta-inf/maven/' in relative_anchor_path.lower()

    def contribute(self, base_dir: Path, anchor_file: Path, checksum: str) -> list[ComponentPatternData]:
        properties = read_properties(anchor_file.read_text(encoding='utf-8', errors='replace'))
        artifact_id = properties.get('artifactId')
        version = properties.get('version')
        if not artifact_id or not version or '$' in version:
            return []

        parts = anchor_file.relative_to(base_dir).parts
        meta_inf = next(i for i, part in enumerate(parts) if part.lower() == 'meta-inf')
        return [
            ComponentPatternData(
                version_anchor='/'.join(parts[meta_inf:]),
                version_anchor_checksum=checksum,
                component_name=artifact_id,
                component_version=version,
                component_part=f"{artifact_id}-{version}.jar",
                include_pattern='**/*',
                exclude_pattern=','.join(JAR_MODULE_EXCLUDES),
                type='module',
                component_source_type='jar-module',
                purl=build_purl('maven', f"{properties.get('groupId')}/{artifact_id}", version)
                if properties.get('groupId') else None,
            ),
        ]


class PythonModuleContributor(ComponentPatternContributor):
    suffixes = ('.dist-info/metadata',)

    def contribute(self, base_dir: Path, anchor_file: Path, checksum: str) -> list[ComponentPatternData]:
        dist_info = anchor_file.parent
        fields = _read_header_fields(anchor_file.read_text(encoding='utf-8', errors='replace'))
        name = fields.get('Name')
        version = fields.get('Version')
        if not name:
            # <name>-<version>.dist-info
            name, _, version = dist_info.name.removesuffix('.dist-info').rpartition('-')
        if not name:
            return []

        includes = [f"{dist_info.name}/**/*"]
        top_level = dist_info / 'top_level.txt'
        if top_level.is_file():
            for module in top_level.read_text(encoding='utf-8').splitlines():
                if module.strip():
                    includes.extend([f"{module.strip()}/**/*", f"{module.strip()}.py"])
        else:
            includes.append(f"{name}/**/*")

        return [
            ComponentPatternData(
                version_anchor=f"{dist_info.name}/{anchor_file.name}",
                version_anchor_checksum=checksum,
                component_name=name,
                component_version=version or UNSPECIFIC,
                component_part=dist_info.name.removesuffix('.dist-info'),
                include_pattern=','.join(includes),
                exclude_pattern=f"{dist_info.name}/**/node_modules/**/*,{dist_info.name}/**/bower_components/**/*",
                type='python-module',
                component_source_type='python-library',
                purl=build_purl('pypi', name, version),
            ),
        ]


class WebModuleContributor(ComponentPatternContributor):
    """
    Web modules described by json definition files in the module folder.

    Several definition files may describe the same module; only the first
    existing one (in definition_files order) is used as anchor.
    """

    definition_files: tuple[str, ...] = ()
    package_manager = ''
    source_type = ''
    excludes: tuple[str, ...] = ()

    def applies(self, relative_anchor_path: str) -> bool:
        return relative_anchor_path.rpartition('/')[2] in self.definition_files

    @abstractmethod
    def read_module(self, anchor_file: Path) -> tuple[str | None, str | None]:
        """Name and version of the module described by anchor_file."""

    def contribute(self, base_dir: Path, anchor_file: Path, checksum: str) -> list[ComponentPatternData]:
        representative = next(
            (name for name in self.definition_files if (anchor_file.parent / name).is_file()),
            None,
        )
        if representative != anchor_file.name:
            return []

        name, version = self.read_module(anchor_file)
        if not name:
            return []
        version = str(version or UNSPECIFIC)
        if re.match(r'v[0-9]', version):
            version = version[1:]

        part = name if version == UNSPECIFIC else f"{name}-{version}"
        version_anchor, include = _anchor_in_parent(base_dir, anchor_file)
        prefix = '' if anchor_file.parent == base_dir else f"{anchor_file.parent.name}/"
        return [
            ComponentPatternData(
                version_anchor=version_anchor,
                version_anchor_checksum=checksum,
                component_name=name,
                component_version=version,
                component_part=part,
                include_pattern=include,
                exclude_pattern=','.join(prefix + exclude for exclude in self.excludes),
                shared_include_pattern='**/apps/**/*.json',
                type='web-module',
                component_source_type=self.source_type,
                purl=build_purl(self.package_manager, name, version),
            ),
        ]


def _read_json_object(anchor_file: Path) -> dict:
    data = json.loads(anchor_file.read_text(encoding='utf-8'))
    if not isinstance(data, dict):
        raise ValueError(f"{anchor_file.name} does not contain a json object")
    return data


class BowerModuleContributor(WebModuleContributor):
    definition_files = ('.bower.json', 'bower.json')
    package_manager = 'bower'
    source_type = 'bower-module'
    excludes = (
        '.yarn-integrity',
        '**/node_modules/**/*',
        '**/bower_components/**/*',
        '**/.package-lock.json',
        '**/package.json',
        '**/yarn.lock',
        '**/composer.json',
        '**/composer.lock',
    )

    def read_module(self, anchor_file: Path) -> tuple[str | None, str | None]:
        data = _read_json_object(anchor_file)
        return data.get('name'), data.get('version') or data.get('_release')


class ComposerModuleContributor(WebModuleContributor):
    definition_files = ('composer.json', 'composer.lock', '.composer.lock')
    package_manager = 'composer'
    source_type = 'composer-module'
    excludes = (
        '.yarn-integrity',
        '**/node_modules/**/*',
        '**/bower_components/**/*',
        '**/.package-lock.json',
        '**/yarn.lock',
        '**/bower.json',
        '**/.bower.json',
        '**/package.json',
        '**/package-lock.json',
    )

    def read_module(self, anchor_file: Path) -> tuple[str | None, str | None]:
        if anchor_file.name.endswith('composer.lock'):
            # lock files name no module; the folder does
            return anchor_file.parent.name, UNSPECIFIC
        data = _read_json_object(anchor_file)
        return data.get('name'), data.get('version')


def read_control_paragraphs(text: str) -> list[dict[str, str]]:
    """Parses blank line separated 'Key: value' paragraphs; indented lines continue the previous value."""
    paragraphs = []
    for block in re.split(r'\n\s*\n', text):
        fields: dict[str, str] = {}
        key = None
        for line in block.splitlines():
            if not line.strip():
                continue
            if line[0].isspace():
                if key is not None:
                    fields[key] += '\n' + line.strip()
                continue
            name, sep, value = line.partition(':')
            if not sep:
                logger.debug('Skipping line without field name', line=line)
                key = None
                continue
            key = name.strip()
            fields[key] = value.strip()
        if fields:
            paragraphs.append(fields)
    return paragraphs


class DpkgPackageContributor(ComponentPatternContributor):
    """Debian packages registered in the dpkg status database of a file system tree."""

    anchor = 'var/lib/dpkg/status'

    _hex = re.compile(r'^[a-fA-F0-9]+$')

    def applies(self, relative_anchor_path: str) -> bool:
        return relative_anchor_path == self.anchor or relative_anchor_path.endswith('/' + self.anchor)

    def contribute(self, base_dir: Path, anchor_file: Path, checksum: str) -> list[ComponentPatternData]:
        # var/lib/dpkg/status
        root = anchor_file.parents[3]
        info_dir = anchor_file.parent / 'info'

        component_patterns = []
        for entry in read_control_paragraphs(anchor_file.read_text(encoding='utf-8', errors='replace')):
            name = entry.get('Package')
            if not name:
                logger.debug('Skipping dpkg entry without package name', path=str(anchor_file))
                continue
            architecture = entry.get('Architecture')
            md5sums = self._find_md5sums(info_dir, name, architecture)
            if md5sums is None:
                logger.warning('No md5sums file found for package', package=name, path=str(info_dir))
                continue

            includes = list(self._unchanged_files(root, md5sums))
            includes.extend([
                f"var/lib/dpkg/info/{name}:*",
                f"var/lib/dpkg/info/{name}.*",
                f"var/lib/dpkg/info/{name}",
            ])
            version = entry.get('Version') or UNSPECIFIC
            component_patterns.append(
                ComponentPatternData(
                    version_anchor=self.anchor,
                    version_anchor_checksum=checksum,
                    component_name=name,
                    component_version=version,
                    component_part=f"{name}-{version}",
                    include_pattern=','.join(includes),
                    type='package',
                    component_source_type='dpkg',
                    purl=f"pkg:deb/debian/{name}@{version}" + (f"?arch={architecture}" if architecture else ''),
                ),
            )
        return component_patterns

    @staticmethod
    def _find_md5sums(info_dir: Path, name: str, architecture: str | None) -> Path | None:
        candidates = [info_dir / f"{name}.md5sums"]
        if architecture:
            candidates.append(info_dir / f"{name}:{architecture}.md5sums")
        return next((c for c in candidates if c.is_file()), None)

    def _unchanged_files(self, root: Path, md5sums: Path):
        """Files listed in md5sums whose content still matches the recorded digest."""
        for line in md5sums.read_text(encoding='utf-8', errors='replace').splitlines():
            digest, sep, path = line.partition('  ')
            path = path.strip()
            if not sep or not path:
                continue
            if not self._hex.match(digest):
                logger.warning('Invalid md5sums line', path=str(md5sums), line=line)
                continue
            try:
                if compute_md5(root / path) != digest.lower():
                    logger.debug('Skipping modified package file', path=path)
                    continue
            except OSError:
                logger.debug('Skipping missing package file', path=path)
                continue
            yield path


class ApkPackageContributor(ComponentPatternContributor):
    """Alpine packages registered in the apk database of a file system tree."""

    anchor = 'lib/apk/db/installed'

    def applies(self, relative_anchor_path: str) -> bool:
        return relative_anchor_path == self.anchor or relative_anchor_path.endswith('/' + self.anchor)

    def contribute(self, base_dir: Path, anchor_file: Path, checksum: str) -> list[ComponentPatternData]:
        component_patterns = []
        for block in re.split(r'\n\s*\n', anchor_file.read_text(encoding='utf-8', errors='replace')):
            fields: dict[str, str] = {}
            files: list[str] = []
            folder = None
            for line in block.splitlines():
                key, sep, value = line.partition(':')
                if not sep or len(key) != 1:
                    continue
                value = value.strip()
                if key == 'F':
                    folder = value
                elif key == 'R':
                    files.append(f"{folder}/{value}" if folder else value)
                else:
                    fields.setdefault(key, value)

            name, version, architecture = fields.get('P'), fields.get('V'), fields.get('A')
            if not (name and version and architecture):
                continue
            if not files:
                logger.warning('No files listed for package', package=name, version=version)
                files = [
                    f"usr/share/doc/{name}/**/*",
                    f"usr/share/licenses/{name}/**/*",
                    f"usr/share/man/{name}/**/*",
                ]

            component_patterns.append(
                ComponentPatternData(
                    version_anchor=self.anchor,
                    version_anchor_checksum=checksum,
                    component_name=name,
                    component_version=version,
                    component_part=f"{name}-{version}",
                    include_pattern=','.join(files),
                    exclude_pattern='**/*.jar,**/node_modules/**/*',
                    shared_exclude_pattern='**/dad,**/*.pub',
                    type='package',
                    component_source_type='apk',
                    purl=f"pkg:apk/alpine/{name}@{version}?arch={architecture}",
                ),
            )
        return component_patterns


def default_contributors() -> list[ComponentPatternContributor]:
    return [
        GemSpecContributor(),
        DpkgPackageContributor(),
        ApkPackageContributor(),
        NpmModuleContributor(),
        BowerModuleContributor(),
        ComposerModuleContributor(),
        JarModuleContributor(),
        PythonModuleContributor(),
    ]
