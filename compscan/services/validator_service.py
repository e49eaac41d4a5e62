"""Detects files claimed by more than one component and resolves subset ownership."""
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

import structlog

from compscan.core.patterns import matches
from compscan.models.artifact import Artifact
from compscan.models.asset import AssetMetaData
from compscan.models.component_pattern import ComponentPatternData
from compscan.models.constants import DOT
from compscan.models.constants import KEY_COMPONENT_PATTERN
from compscan.models.constants import KEY_PATH_IN_ASSET
from compscan.models.constants import MARKER_CONTAINS
from compscan.models.constants import MARKER_CROSS
from compscan.models.inventory import Inventory

logger = structlog.get_logger('validator_service')


def _pattern_matches(comma_separated: str | None, root: str, file: str) -> bool:
    """Matches absolute patterns on the base dir path, relative patterns within root."""
    if not comma_separated:
        return False
    for pattern in comma_separated.split(','):
        pattern = pattern.strip()
        if not pattern:
            continue
        if pattern.startswith('/'):
            if matches(pattern, '/' + file):
                return True
        elif root == DOT:
            if matches(pattern, file):
                return True
        elif file.startswith(root + '/') and matches(pattern, file[len(root) + 1:]):
            return True
    return False


@dataclass
class FilePatternQualifierMapper:
    """Files (relative to the scan base dir) claimed by a single component artifact."""
    qualifier: str
    artifact: Artifact
    root: str = DOT
    component_patterns: list[ComponentPatternData] = field(default_factory=list)
    files: set[str] = field(default_factory=set)
    allowed_duplicates: set[str] = field(default_factory=set)
    subsets: dict[str, set[str]] = field(default_factory=dict)

    def matches_any(self, attribute: str, file: str) -> bool:
        return any(
            _pattern_matches(getattr(cpd, attribute), self.root, file)
            for cpd in self.component_patterns
        )


@dataclass
class ValidationResult:
    subsets: list[tuple[str, str]] = field(default_factory=list)
    duplicates: dict[str, list[str]] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.duplicates


def _collect_files(base_dir: Path, root: str) -> list[str]:
    directory = base_dir if root == DOT else base_dir / root
    if not directory.is_dir():
        return []
    return sorted(
        p.relative_to(base_dir).as_posix()
        for p in directory.rglob('*')
        if p.is_file() and not p.is_symlink()
    )


def map_artifacts_to_covered_files(
    inventory: Inventory,
    base_dir: Path,
    reference: Inventory | None = None,
) -> list[FilePatternQualifierMapper]:
    """Builds a mapper for every artifact derived from a component pattern."""
    base_dir = base_dir.resolve()
    reference_patterns: dict[str, list[ComponentPatternData]] = {}
    for cpd in reference.component_patterns if reference else []:
        reference_patterns.setdefault(cpd.derive_simple_qualifier(), []).append(cpd)

    # reference patterns take precedence over the ones applied during the scan
    patterns = dict(reference_patterns)
    for cpd in inventory.component_patterns:
        qualifier = cpd.derive_simple_qualifier()
        if qualifier in reference_patterns:
            continue
        if cpd not in patterns.setdefault(qualifier, []):
            patterns[qualifier].append(cpd)

    mappers: list[FilePatternQualifierMapper] = []
    used: set[str] = set()
    for artifact in inventory.artifacts:
        pattern_qualifier = artifact.get_attribute(KEY_COMPONENT_PATTERN)
        if not pattern_qualifier:
            continue
        component_patterns = patterns.get(pattern_qualifier, [])
        # package databases anchor one pattern per package
        own_patterns = [cpd for cpd in component_patterns if cpd.component_part == artifact.id]
        component_patterns = own_patterns or component_patterns

        roots = sorted(artifact.get_attribute_set(KEY_PATH_IN_ASSET) or artifact.projects) or [DOT]
        for root in roots:
            qualifier = artifact.id if artifact.id not in used else f"{artifact.id} ({root})"
            used.add(qualifier)
            mapper = FilePatternQualifierMapper(
                qualifier=qualifier,
                artifact=artifact,
                root=root,
                component_patterns=list(component_patterns),
            )
            for file in _collect_files(base_dir, root):
                if mapper.matches_any('include_pattern', file) and not mapper.matches_any('exclude_pattern', file):
                    mapper.files.add(file)
            mappers.append(mapper)
    return mappers


class ComponentPatternValidator:
    """
    Validates that every file is owned by a single component.

    A component whose files are all claimed by another component is a subset
    of it: the files stay with the subset component and are removed from the
    containing one. Remaining files claimed twice are reported as duplicates.
    """

    def validate(self, mappers: list[FilePatternQualifierMapper]) -> ValidationResult:
        result = ValidationResult()
        by_qualifier = {m.qualifier: m for m in mappers}
        qualifiers = sorted(by_qualifier)

        for parent_qualifier in qualifiers:
            for child_qualifier in qualifiers:
                if parent_qualifier == child_qualifier:
                    continue
                parent = by_qualifier[parent_qualifier]
                child = by_qualifier[child_qualifier]
                if not parent.files & child.files:
                    continue
                if self._resolve_subset(parent, child):
                    result.subsets.append((parent_qualifier, child_qualifier))

        claims: dict[str, list[str]] = {}
        for qualifier in qualifiers:
            mapper = by_qualifier[qualifier]
            for file in mapper.files - mapper.allowed_duplicates:
                claims.setdefault(file, []).append(qualifier)

        for file in sorted(claims):
            if len(claims[file]) > 1:
                result.duplicates[file] = claims[file]
                logger.warning('File claimed by multiple components', file=file, qualifiers=claims[file])
        return result

    def _resolve_subset(self, parent: FilePatternQualifierMapper, child: FilePatternQualifierMapper) -> bool:
        remaining = child.files - parent.files

        excluded = set()
        for file in sorted(remaining):
            if parent.matches_any('exclude_pattern', file):
                excluded.add(file)
            if parent.matches_any('shared_include_pattern', file):
                parent.allowed_duplicates.add(file)
                logger.debug('Moving file to allowed duplicates', file=file, qualifier=parent.qualifier)
            if parent.matches_any('shared_exclude_pattern', file):
                parent.files.discard(file)
                logger.debug('Removing file from qualifier', file=file, qualifier=parent.qualifier)

        # only files excluded by the parent count towards the subset decision
        if remaining - excluded:
            return False

        logger.warning(
            'Qualifier is a subset of another qualifier',
            child=child.qualifier,
            parent=parent.qualifier,
        )
        parent.subsets[child.qualifier] = set(child.files)
        parent.files -= child.files

        asset_id = AssetMetaData.derive_asset_id(parent.artifact.id, parent.artifact.checksum)
        child.artifact.set_attribute(asset_id, MARKER_CONTAINS)
        parent.artifact.set_attribute(asset_id, MARKER_CROSS)
        return True
