"""Component pattern matching, application and dynamic detection."""
from dataclasses import dataclass
from pathlib import Path

import structlog

from compscan.core.checksum import compute_md5
from compscan.core.patterns import PatternSetMatcher
from compscan.core.patterns import as_relative_path
from compscan.core.patterns import longest_literal
from compscan.core.patterns import matches
from compscan.core.patterns import normalize_path_to_linux
from compscan.core.validation import ComponentPatternError
from compscan.models.artifact import Artifact
from compscan.models.component_pattern import ComponentPatternData
from compscan.models.constants import ASTERISK
from compscan.models.constants import ATTRIBUTE_KEY_ASSET_ID_CHAIN
from compscan.models.constants import ATTRIBUTE_KEY_SCAN_DIRECTIVE
from compscan.models.constants import DOT
from compscan.models.constants import KEY_COMPONENT_PATTERN
from compscan.models.constants import KEY_COMPONENT_SOURCE_TYPE
from compscan.models.constants import KEY_PATH_IN_ASSET
from compscan.models.constants import KEY_PURL
from compscan.models.constants import KEY_TYPE
from compscan.models.constants import SCAN_DIRECTIVE_DELETE
from compscan.models.inventory import Inventory
from compscan.scan.context import ScanContext
from compscan.services.contributors import ANCHOR_PATTERNS_BY_PRIORITY
from compscan.services.contributors import UNSPECIFIC
from compscan.services.contributors import ComponentPatternContributor
from compscan.services.contributors import default_contributors

logger = structlog.get_logger('pattern_service')


@dataclass
class MatchResult:
    component_pattern: ComponentPatternData
    anchor_file: Path
    scan_root: Path
    virtual_root: Path
    version_anchor_root: Path
    asset_id_chain: str | None = None

    def derive_artifact(self, scan_root: Path) -> Artifact:
        """Artifact representing the matched component; located at the virtual root."""
        cpd = self.component_pattern
        artifact = Artifact(
            id=cpd.component_part or cpd.component_name or '',
            component=cpd.component_name,
            version=cpd.component_version,
        )
        relative_root = as_relative_path(scan_root, self.virtual_root)
        artifact.add_project(relative_root)
        artifact.set_attribute(KEY_PATH_IN_ASSET, relative_root)
        artifact.set_attribute(KEY_TYPE, cpd.type)
        artifact.set_attribute(KEY_COMPONENT_SOURCE_TYPE, cpd.component_source_type)
        artifact.set_attribute(KEY_PURL, cpd.purl)
        artifact.set_attribute(KEY_COMPONENT_PATTERN, cpd.derive_simple_qualifier())
        artifact.set_attribute(ATTRIBUTE_KEY_ASSET_ID_CHAIN, self.asset_id_chain)
        return artifact


def relative_path_from_base_dir(artifact: Artifact) -> str | None:
    path = artifact.artifact_path
    if not path and artifact.projects:
        path = sorted(artifact.projects)[0]
    return path


def is_derived(artifact: Artifact) -> bool:
    """Artifacts derived from component patterns do not represent files."""
    return artifact.get_attribute(KEY_COMPONENT_PATTERN) is not None


def compute_component_base_dir(scan_root: Path, anchor_file: Path, version_anchor: str) -> Path:
    if version_anchor in (ASTERISK, DOT):
        return scan_root
    base_dir = anchor_file
    for _ in range(version_anchor.count('/') + 1):
        if base_dir == scan_root or base_dir.parent == base_dir:
            return scan_root
        base_dir = base_dir.parent
    return base_dir


def _split_patterns(comma_separated: str | None) -> tuple[PatternSetMatcher, PatternSetMatcher]:
    """Splits comma separated patterns into absolute and relative pattern sets."""
    absolute, relative = [], []
    for pattern in (comma_separated or '').split(','):
        pattern = normalize_path_to_linux(pattern.strip())
        if not pattern:
            continue
        (absolute if pattern.startswith('/') else relative).append(pattern)
    return PatternSetMatcher(dict.fromkeys(absolute)), PatternSetMatcher(dict.fromkeys(relative))


def _validate(cpd: ComponentPatternData) -> None:
    anchor = cpd.version_anchor
    if anchor is None:
        raise ComponentPatternError(
            f"The version anchor of component pattern [{cpd.include_pattern}] must be defined.",
        )
    if '**' in anchor:
        raise ComponentPatternError(
            f"The version anchor of component pattern [{cpd.include_pattern}] must not contain **. Use * only.",
        )
    if cpd.version_anchor_checksum is None:
        raise ComponentPatternError(
            f"The version anchor checksum of component pattern [{cpd.include_pattern}] must be defined.",
        )
    if anchor in (ASTERISK, DOT) and cpd.has_specific_checksum:
        raise ComponentPatternError(
            f"The version anchor checksum of component pattern [{cpd.include_pattern}] "
            f"with version anchor [{anchor}] must be '*'.",
        )


class ComponentPatternProducer:
    """Matches component patterns on the scan inventory and replaces covered files by component artifacts."""

    def __init__(self, contributors: list[ComponentPatternContributor] | None = None):
        self.contributors = contributors if contributors is not None else default_contributors()

    def match_component_patterns(
        self,
        artifacts: list[Artifact],
        component_patterns: list[ComponentPatternData],
        scan_root: Path,
    ) -> list[MatchResult]:
        """Matches anchors of component_patterns against the artifacts. Nothing is modified."""
        results: list[MatchResult] = []
        candidates = []
        for artifact in artifacts:
            if is_derived(artifact):
                continue
            path = relative_path_from_base_dir(artifact)
            if path:
                candidates.append((artifact, '/' + path))

        for cpd in component_patterns:
            _validate(cpd)
            anchor = normalize_path_to_linux(cpd.version_anchor)

            if anchor in (ASTERISK, DOT):
                results.append(
                    MatchResult(
                        component_pattern=cpd.with_anchor_checksum(ASTERISK),
                        anchor_file=scan_root,
                        scan_root=scan_root,
                        virtual_root=scan_root,
                        version_anchor_root=scan_root,
                    ),
                )
                continue

            is_anchor_pattern = ASTERISK in anchor
            literal = longest_literal(anchor)
            for artifact, path in candidates:
                if literal not in path:
                    continue
                if is_anchor_pattern:
                    if not matches('**/' + anchor.lstrip('/'), path[1:]):
                        continue
                elif not path.endswith('/' + anchor.lstrip('/')):
                    continue

                checksum = artifact.checksum if cpd.has_specific_checksum else ASTERISK
                if checksum != cpd.version_anchor_checksum:
                    logger.debug(
                        'Anchor checksum mismatch',
                        path=path,
                        expected=cpd.version_anchor_checksum,
                        actual=checksum,
                    )
                    continue

                anchor_file = scan_root / path[1:]
                results.append(
                    MatchResult(
                        component_pattern=cpd.with_anchor_checksum(checksum),
                        anchor_file=anchor_file,
                        scan_root=scan_root,
                        virtual_root=compute_component_base_dir(scan_root, anchor_file, anchor),
                        version_anchor_root=anchor_file.parent,
                        asset_id_chain=artifact.get_attribute(ATTRIBUTE_KEY_ASSET_ID_CHAIN),
                    ),
                )
        return results

    def mark_files_covered(self, match_results: list[MatchResult], artifacts: list[Artifact]) -> list[MatchResult]:
        """
        Marks artifacts covered by the matched component patterns for deletion.

        Returns the match results that did not cover any file.
        """
        without_file_matches = []
        for match_result in match_results:
            cpd = match_result.component_pattern
            component_root = as_relative_path(match_result.scan_root, match_result.virtual_root)
            absolute_includes, relative_includes = _split_patterns(cpd.include_pattern)
            absolute_excludes, relative_excludes = _split_patterns(cpd.exclude_pattern)

            matched = False
            for artifact in artifacts:
                if is_derived(artifact):
                    continue
                path = relative_path_from_base_dir(artifact)
                if not path:
                    continue

                absolute_path = '/' + path
                if absolute_excludes.matches(absolute_path):
                    continue

                covered = absolute_includes.matches(absolute_path)
                if not covered and (component_root == DOT or path.startswith(component_root + '/')):
                    path_in_component = path if component_root == DOT else path[len(component_root) + 1:]
                    covered = (
                        not relative_excludes.matches(path_in_component)
                        and relative_includes.matches(path_in_component)
                    )

                if covered:
                    artifact.set_attribute(ATTRIBUTE_KEY_SCAN_DIRECTIVE, SCAN_DIRECTIVE_DELETE)
                    artifact.set_attribute(ATTRIBUTE_KEY_ASSET_ID_CHAIN, match_result.asset_id_chain)
                    logger.debug(
                        'Artifact covered by component pattern',
                        anchor=cpd.version_anchor,
                        checksum=cpd.version_anchor_checksum,
                        path=path,
                    )
                    matched = True

            if not matched:
                logger.debug('No files matched for component pattern', pattern=cpd.describe())
                without_file_matches.append(match_result)
        return without_file_matches

    def match_and_apply_component_patterns(
        self,
        source: Inventory,
        context: ScanContext,
        deferred: bool | None = None,
    ) -> list[MatchResult]:
        """
        Applies the component patterns of source to the scan inventory.

        With deferred set, only patterns of the given deferred state are considered.
        """
        patterns = [
            cpd for cpd in source.component_patterns
            if deferred is None or cpd.deferred == deferred
        ]
        if not patterns:
            return []

        artifacts = context.snapshot_artifacts()
        match_results = self.match_component_patterns(artifacts, patterns, context.base_dir)
        if match_results:
            logger.info('Component pattern anchors matched', count=len(match_results))

        without_file_matches = self.mark_files_covered(match_results, artifacts)
        unmatched = {id(m) for m in without_file_matches}
        match_results = [m for m in match_results if id(m) not in unmatched]

        for match_result in match_results:
            context.contribute(match_result.derive_artifact(context.base_dir))
            context.contribute_pattern(match_result.component_pattern)
        context.stats.inc_patterns_matched(len(match_results))

        to_be_deleted = [
            a for a in context.snapshot_artifacts()
            if SCAN_DIRECTIVE_DELETE in (a.get_attribute(ATTRIBUTE_KEY_SCAN_DIRECTIVE) or '')
        ]
        context.remove_all(to_be_deleted)
        return match_results

    def extract_component_patterns(self, base_dir: Path) -> list[ComponentPatternData]:
        """Detects component patterns from package metadata files found below base_dir."""
        base_dir = base_dir.resolve()
        files = sorted(
            (
                p.relative_to(base_dir).as_posix()
                for p in base_dir.rglob('*')
                if p.is_file() and not p.is_symlink()
            ),
            key=lambda p: (len(p), p.casefold()),
        )

        consumed: set[str] = set()
        qualifiers: set[str] = set()
        component_patterns: list[ComponentPatternData] = []

        for anchor_pattern in ANCHOR_PATTERNS_BY_PRIORITY:
            for path in files:
                if path in consumed or not matches('**/' + anchor_pattern, path):
                    continue
                for contributor in self.contributors:
                    if not contributor.applies(path):
                        continue
                    # the first applicable contributor consumes the anchor
                    consumed.add(path)
                    anchor_file = base_dir / path
                    try:
                        contributed = contributor.contribute(base_dir, anchor_file, compute_md5(anchor_file))
                    except (OSError, ValueError) as e:
                        logger.warning(
                            'Contributor failed',
                            contributor=type(contributor).__name__,
                            path=path,
                            error=str(e),
                        )
                        break
                    for cpd in contributed:
                        if (cpd.component_version or '').lower() == UNSPECIFIC:
                            continue
                        qualifier = cpd.derive_qualifier()
                        if qualifier in qualifiers:
                            continue
                        logger.info('Identified component pattern', pattern=cpd.describe())
                        qualifiers.add(qualifier)
                        component_patterns.append(cpd)
                    break
        return component_patterns

    def detect_and_apply_component_patterns(self, context: ScanContext) -> Inventory:
        """Detects component patterns in the scanned tree and applies them; returns the detected patterns."""
        detected = Inventory(component_patterns=self.extract_component_patterns(context.base_dir))
        self.match_and_apply_component_patterns(detected, context)
        return detected
