"""Artifact inspection: nested jar detection and jar metadata extraction."""
import re
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path
from pathlib import PurePosixPath
from typing import Protocol

import structlog

from compscan.models.artifact import Artifact
from compscan.models.asset import AssetMetaData
from compscan.models.constants import ATTRIBUTE_KEY_ASSET_ID_CHAIN
from compscan.models.constants import HINT_ATOMIC
from compscan.models.constants import HINT_IGNORE
from compscan.models.constants import HINT_SCAN
from compscan.models.constants import KEY_ARTIFACT_ID
from compscan.models.constants import KEY_ERRORS
from compscan.models.constants import KEY_ORGANIZATION
from compscan.models.constants import KEY_PATH_IN_ASSET
from compscan.models.constants import MARKER_CONTAINS
from compscan.models.constants import PATH_DELIMITER
from compscan.scan.context import ScanContext

logger = structlog.get_logger('inspection_service')

JAR_EXTENSIONS = ('.jar', '.war', '.ear', '.sar', '.webjar', '.xar')

# transient keys of candidate artifacts derived from embedded metadata
CANDIDATE_ARTIFACT_ID = 'ARTIFACT_ID'
CANDIDATE_KEYS = (CANDIDATE_ARTIFACT_ID,)


def add_error(artifact: Artifact, message: str) -> None:
    artifact.append_attribute(KEY_ERRORS, message, ', ')


def _artifact_file(artifact: Artifact, base_dir: Path) -> Path | None:
    """The jar file backing the artifact; None when the artifact is no existing jar."""
    for path in sorted({p for p in [artifact.artifact_path, *artifact.projects] if p}):
        if not path.lower().endswith(JAR_EXTENSIONS):
            continue
        file = base_dir / path
        if file.is_file():
            return file
    return None


class ArtifactInspector(Protocol):
    def run(self, context: ScanContext) -> None:
        ...


class NestedJarInspector:
    """Classifies jars containing further jars as 'scan' (to be unwrapped)."""

    def run(self, context: ScanContext) -> None:
        for artifact in context.snapshot_artifacts():
            if artifact.has_classification(HINT_ATOMIC) or artifact.has_classification(HINT_IGNORE):
                continue
            self.inspect(artifact, context.base_dir)

    def inspect(self, artifact: Artifact, base_dir: Path) -> None:
        file = _artifact_file(artifact, base_dir)
        if file is None:
            return
        try:
            with zipfile.ZipFile(file) as zf:
                if any(name.lower().endswith(JAR_EXTENSIONS) for name in zf.namelist()):
                    artifact.add_classification(HINT_SCAN)
        except (zipfile.BadZipFile, OSError):
            add_error(artifact, "NestedJarInspector couldn't read as zip archive")


def read_properties(text: str) -> dict[str, str]:
    properties = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line[0] in '#!':
            continue
        match = re.match(r'([^=:\s]+)\s*[=:]\s*(.*)', line)
        if match:
            properties[match.group(1)] = match.group(2).strip()
    return properties


def read_manifest(text: str) -> dict[str, str]:
    """Reads the main section of a jar manifest (continuation lines start with a space)."""
    attributes: dict[str, str] = {}
    key = None
    for line in text.splitlines():
        if not line.strip():
            break
        if line.startswith(' ') and key:
            attributes[key] += line[1:]
            continue
        key, _, value = line.partition(':')
        key = key.strip()
        attributes[key] = value.strip()
    return attributes


def _local(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def _child_text(element: ET.Element | None, name: str) -> str | None:
    if element is None:
        return None
    for child in element:
        if _local(child.tag) == name:
            return (child.text or '').strip() or None
    return None


def _child(element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


class JarInspector:
    """
    Extracts group id, artifact id and version of jars from embedded maven
    metadata (pom.properties, pom.xml) and the manifest (fallback).

    Metadata not matching the jar file name describes embedded (shaded)
    artifacts; these are contributed when include_embedded is enabled.
    """

    def __init__(self, include_embedded: bool = False):
        self.include_embedded = include_embedded

    def run(self, context: ScanContext) -> None:
        already_reported: set[str] = set()
        for artifact in context.snapshot_artifacts():
            file = _artifact_file(artifact, context.base_dir)
            if file is None:
                continue
            try:
                not_accepted = self.process_artifact(artifact, file)
            except (zipfile.BadZipFile, OSError, ValueError) as e:
                add_error(artifact, f"Error while running {type(self).__name__}")
                logger.error(
                    'Jar inspection failed',
                    artifact=artifact.id,
                    error=str(e),
                    _style='bold red',
                )
                continue
            if self.include_embedded:
                self._include_embedded(context, artifact, not_accepted, already_reported)

        for artifact in context.snapshot_artifacts():
            for key in CANDIDATE_KEYS:
                artifact.set_attribute(key, None)

    def process_artifact(self, artifact: Artifact, file: Path) -> list[Artifact]:
        candidates = self.collect_candidates(artifact, file)
        accepted, not_accepted = [], []
        for candidate in candidates:
            if candidate.group_id is None and candidate.version is None:
                continue
            if self.matches_file_name(file.name, candidate):
                accepted.append(candidate)
            else:
                not_accepted.append(candidate)

        conflicts_with_original = self._conflicts_with_original(artifact, accepted)
        conflicts_with_each_other = self._conflicts_with_each_other(accepted)
        if conflicts_with_original:
            add_error(artifact, 'Detected information shows conflicts with original artifact.')
        if conflicts_with_each_other:
            add_error(artifact, 'Detected information conflicts with each other.')

        if accepted and not conflicts_with_original and not conflicts_with_each_other:
            for candidate in accepted:
                if not artifact.group_id:
                    artifact.group_id = candidate.group_id
                if not artifact.version:
                    artifact.version = candidate.version
                for key, value in candidate.attributes.items():
                    if not artifact.get_attribute(key):
                        artifact.set_attribute(key, value)
            artifact_id = accepted[0].get_attribute(CANDIDATE_ARTIFACT_ID)
            if artifact_id and not artifact.get_attribute(KEY_ARTIFACT_ID):
                artifact.set_attribute(KEY_ARTIFACT_ID, artifact_id)
        return not_accepted

    def collect_candidates(self, artifact: Artifact, file: Path) -> list[Artifact]:
        candidates: list[Artifact] = []
        manifest_candidates: list[Artifact] = []
        with zipfile.ZipFile(file) as zf:
            for name in zf.namelist():
                entry = PurePosixPath(name)
                if entry.name not in ('pom.properties', 'pom.xml', 'MANIFEST.MF'):
                    continue
                text = zf.read(name).decode('utf-8', errors='replace')
                if entry.name == 'pom.properties':
                    candidate = self._from_pom_properties(artifact, text, name)
                elif entry.name == 'pom.xml':
                    candidate = self._from_pom_xml(artifact, text, name)
                else:
                    manifest_candidate = self._from_manifest(artifact, text, name)
                    manifest_candidates.append(manifest_candidate)
                    continue
                if candidate is not None:
                    candidates.append(candidate)

        # candidates sharing artifact id and version are combined; pom.xml wins the embedded path
        by_qualifier: dict[str, Artifact] = {}
        for candidate in candidates:
            artifact_id = candidate.get_attribute(CANDIDATE_ARTIFACT_ID)
            qualifier = f"{artifact_id}-{candidate.version}"
            collector = by_qualifier.get(qualifier)
            if collector is None:
                by_qualifier[qualifier] = candidate
                by_qualifier.setdefault(str(artifact_id), candidate)
                continue
            collector_path = collector.get_attribute(KEY_PATH_IN_ASSET) or ''
            candidate_path = candidate.get_attribute(KEY_PATH_IN_ASSET) or ''
            collector.merge(candidate)
            if candidate_path.endswith('pom.xml'):
                collector.set_attribute(KEY_PATH_IN_ASSET, candidate_path)
            elif candidate_path.endswith('pom.properties') and collector_path.endswith('MANIFEST.MF'):
                collector.set_attribute(KEY_PATH_IN_ASSET, candidate_path)

        # manifest information is only used as fallback
        for candidate in manifest_candidates:
            if not candidate.version:
                continue
            artifact_id = candidate.get_attribute(CANDIDATE_ARTIFACT_ID)
            qualifier = f"{artifact_id}-{candidate.version}"
            if qualifier in by_qualifier or artifact_id in by_qualifier:
                continue
            by_qualifier[qualifier] = candidate
            by_qualifier[str(artifact_id)] = candidate

        unique: dict[int, Artifact] = {id(c): c for c in by_qualifier.values()}
        return list(unique.values())

    @staticmethod
    def _embedded_path(artifact: Artifact, entry_name: str) -> str | None:
        path = artifact.artifact_path
        if not path:
            return None
        return str(PurePosixPath(path).parent / f"[{artifact.id}]" / entry_name)

    def _from_pom_properties(self, artifact: Artifact, text: str, entry_name: str) -> Artifact | None:
        properties = read_properties(text)
        candidate = Artifact(
            group_id=properties.get('groupId'),
            version=properties.get('version'),
        )
        candidate.set_attribute(CANDIDATE_ARTIFACT_ID, properties.get('artifactId'))
        candidate.set_attribute(KEY_PATH_IN_ASSET, self._embedded_path(artifact, entry_name))
        if candidate.group_id is None and candidate.version is None:
            return None
        return candidate

    def _from_pom_xml(self, artifact: Artifact, text: str, entry_name: str) -> Artifact | None:
        try:
            root = ET.fromstring(text)
        except ET.ParseError:
            add_error(artifact, "Exception while parsing a 'pom.xml'.")
            return None
        parent = _child(root, 'parent')
        candidate = Artifact(
            group_id=_child_text(root, 'groupId') or _child_text(parent, 'groupId'),
            version=_child_text(root, 'version') or _child_text(parent, 'version'),
        )
        candidate.set_attribute(CANDIDATE_ARTIFACT_ID, _child_text(root, 'artifactId'))
        candidate.set_attribute('Packaging', 'pom' if _child_text(root, 'packaging') == 'pom' else 'jar')
        organization = _child(root, 'organization')
        if organization is not None:
            candidate.set_attribute(KEY_ORGANIZATION, _child_text(organization, 'name'))
            candidate.set_attribute('Organization URL', _child_text(organization, 'url'))
        candidate.set_attribute(KEY_PATH_IN_ASSET, self._embedded_path(artifact, entry_name))
        return candidate

    def _from_manifest(self, artifact: Artifact, text: str, entry_name: str) -> Artifact:
        attributes = read_manifest(text)
        version = attributes.get('Implementation-Version')
        if version:
            # e.g. '8.11.2 17dee71932c683e345508113523e764c3e4c80f - 2022-06-13'
            version = version.strip().split(' ')[0]
        version = version or attributes.get('Bundle-Version')

        candidate = Artifact(id=artifact.id, version=version)
        candidate.set_attribute(KEY_ORGANIZATION, attributes.get('Implementation-Vendor'))
        candidate.set_attribute('Organization Id', attributes.get('Implementation-Vendor-Id'))
        candidate.set_attribute(KEY_PATH_IN_ASSET, self._embedded_path(artifact, entry_name))

        artifact_id = artifact.id
        if '.' in artifact_id[1:]:
            artifact_id = artifact_id[:artifact_id.rindex('.')]
        if version and f"-{version}" in artifact_id[1:]:
            artifact_id = artifact_id[:artifact_id.rindex(f"-{version}")]
        candidate.set_attribute(CANDIDATE_ARTIFACT_ID, artifact_id)
        return candidate

    @staticmethod
    def matches_file_name(file_name: str, candidate: Artifact) -> bool:
        """
        Strict check whether candidate metadata describes the file itself.

        Accepted: '<artifactId>-<version>[-._]*', '<prefix>.<artifactId>-<version>...',
        '<artifactId>-<version>.' and '<artifactId>.' prefixes.
        """
        artifact_id = candidate.get_attribute(CANDIDATE_ARTIFACT_ID)
        if candidate.id and artifact_id is None and candidate.id == file_name:
            return True
        id_version = f"{artifact_id}-{candidate.version}"
        if re.fullmatch(r'.*\.?' + re.escape(id_version) + r'[-._].*', file_name):
            return True
        return file_name.startswith(f"{id_version}.") or file_name.startswith(f"{artifact_id}.")

    @staticmethod
    def _conflicts_with_original(artifact: Artifact, candidates: list[Artifact]) -> bool:
        for candidate in candidates:
            if candidate.group_id and artifact.group_id and artifact.group_id != candidate.group_id:
                return True
            if candidate.version and artifact.version and artifact.version != candidate.version:
                return True
        return False

    @staticmethod
    def _conflicts_with_each_other(candidates: list[Artifact]) -> bool:
        group_ids = {c.group_id for c in candidates if c.group_id}
        versions = {c.version for c in candidates if c.version}
        return len(group_ids) > 1 or len(versions) > 1

    def _include_embedded(
        self,
        context: ScanContext,
        container: Artifact,
        embedded: list[Artifact],
        already_reported: set[str],
    ) -> None:
        if not embedded:
            return
        asset_id = AssetMetaData.derive_asset_id(container.id, container.checksum)
        container_path = container.artifact_path
        context.contribute_asset(
            AssetMetaData(
                asset_id=asset_id,
                checksum=container.checksum,
                asset_path=container_path,
                artifact_path=container_path,
                inspection_source=type(self).__name__,
            ),
        )

        parent_chain = container.get_attribute(ATTRIBUTE_KEY_ASSET_ID_CHAIN)
        chain = PATH_DELIMITER.join(p for p in (parent_chain, container_path) if p)

        for artifact in embedded:
            if not artifact.id:
                artifact.id = f"{artifact.get_attribute(CANDIDATE_ARTIFACT_ID)}-{artifact.version}.jar"
            if '${' in artifact.id:
                if artifact.id not in already_reported:
                    logger.warning('Skipping embedded artifact without fully qualified id', artifact=artifact.id)
                    already_reported.add(artifact.id)
                continue
            artifact.set_attribute(asset_id, MARKER_CONTAINS)
            artifact.set_attribute(ATTRIBUTE_KEY_ASSET_ID_CHAIN, chain or None)
            context.contribute(artifact)


class InspectorRunner:
    """Runs a queue of inspectors on the inventory of a scan context."""

    def __init__(self, inspectors: list[ArtifactInspector]):
        self.inspectors = inspectors

    def execute_all(self, context: ScanContext) -> None:
        for inspector in self.inspectors:
            logger.debug('Running inspector', inspector=type(inspector).__name__)
            inspector.run(context)
