"""Merges artifacts describing the same logical artifact."""
import structlog

from compscan.models.artifact import Artifact
from compscan.models.constants import ASSET_ID_PREFIX
from compscan.models.constants import ATTRIBUTE_KEY_ARTIFACT_PATH
from compscan.models.constants import HINT_SCAN
from compscan.models.constants import KEY_PATH_IN_ASSET
from compscan.models.constants import PATH_DELIMITER
from compscan.models.inventory import Inventory

logger = structlog.get_logger('merge_service')

NON_TRANSFERABLE_KEYS = (KEY_PATH_IN_ASSET, ATTRIBUTE_KEY_ARTIFACT_PATH)


def merge_key(artifact: Artifact) -> str:
    return artifact.derive_qualifier()


def _location_qualifier(artifact: Artifact) -> str:
    paths = artifact.paths_in_asset or artifact.projects
    return f"{artifact.id}/{artifact.version or ''}/{'|'.join(sorted(paths))}"


class DuplicateMerger:
    def merge(self, inventory: Inventory) -> int:
        """Merges duplicates in place; returns the number of removed artifacts."""
        removed = self._merge_duplicates(inventory)
        removed += self._merge_scanned(inventory)
        if removed:
            logger.info('Merged duplicate artifacts', removed=removed, remaining=len(inventory.artifacts))
        return removed

    def _merge_duplicates(self, inventory: Inventory) -> int:
        groups: dict[str, list[Artifact]] = {}
        for artifact in inventory.artifacts:
            groups.setdefault(merge_key(artifact), []).append(artifact)

        to_be_removed = []
        for group in groups.values():
            survivor, *others = group
            if not others:
                continue
            paths = set(survivor.paths_in_asset)
            for other in others:
                paths |= other.paths_in_asset
                survivor.merge(other)
                to_be_removed.append(other)
            if paths:
                survivor.set_attribute(KEY_PATH_IN_ASSET, PATH_DELIMITER.join(sorted(paths, key=str.casefold)))
            logger.debug('Merged artifacts', artifact=survivor.id, count=len(group))

        inventory.remove_artifacts(to_be_removed)
        return len(to_be_removed)

    def _merge_scanned(self, inventory: Inventory) -> int:
        """Scanned archives absorb the attributes of their un-decomposed counterparts."""
        counterparts: dict[str, list[Artifact]] = {}
        for artifact in inventory.artifacts:
            if not artifact.has_classification(HINT_SCAN):
                counterparts.setdefault(_location_qualifier(artifact), []).append(artifact)

        to_be_removed = []
        for artifact in inventory.artifacts:
            if not artifact.has_classification(HINT_SCAN):
                continue
            for counterpart in counterparts.pop(_location_qualifier(artifact), []):
                for key, value in counterpart.attributes.items():
                    if key in NON_TRANSFERABLE_KEYS or key.startswith(ASSET_ID_PREFIX):
                        continue
                    if not artifact.get_attribute(key):
                        artifact.set_attribute(key, value)
                artifact.projects |= counterpart.projects
                to_be_removed.append(counterpart)

        inventory.remove_artifacts(to_be_removed)
        return len(to_be_removed)
