import os
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from compscan.models.artifact import Artifact
from compscan.models.component_pattern import ComponentPatternData
from compscan.models.inventory import Inventory

logger = structlog.get_logger('storage')

PATTERN_MARKER = 'Version Anchor'


def load_reference_inventory(filepath: str | Path) -> Inventory:
    """
    Loads a reference inventory.

    A .json file holds a complete inventory; a .jsonl file holds one record
    per line, either a component pattern (carrying 'Version Anchor') or an
    artifact.
    """
    path = Path(filepath)
    if path.suffix.lower() == '.json':
        inventory = Inventory.model_validate_json(path.read_text(encoding='utf-8'))
    else:
        inventory = Inventory()
        skipped = 0
        with path.open(encoding='utf-8') as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    if PATTERN_MARKER in line:
                        inventory.component_patterns.append(ComponentPatternData.model_validate_json(line))
                    else:
                        inventory.artifacts.append(Artifact.model_validate_json(line))
                except PydanticValidationError as e:
                    skipped += 1
                    logger.warning('Skipping invalid record', path=str(path), line=line_number, error=str(e))
        if skipped:
            logger.warning('Invalid records skipped', path=str(path), count=skipped)

    logger.info(
        'Loaded reference inventory',
        path=str(path),
        artifacts=len(inventory.artifacts),
        component_patterns=len(inventory.component_patterns),
    )
    return inventory


def save_inventory(inventory: Inventory, filepath: str | Path) -> Path:
    """Writes the inventory as JSON; component patterns are written with their display names."""
    path = Path(filepath)
    os.makedirs(path.parent, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(inventory.model_dump_json(indent=2, by_alias=True, exclude_none=True))
    logger.info('Inventory written', path=str(path), artifacts=len(inventory.artifacts))
    return path
