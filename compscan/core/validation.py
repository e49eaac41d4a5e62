"""Error types and input validation for compscan."""
from pathlib import Path


class ValidationError(Exception):
    """Validation error."""


class ScanInvariantError(RuntimeError):
    """A task violated an invariant of the scan; indicates a programming defect."""


class ComponentPatternError(ValueError):
    """A component pattern is malformed and cannot be matched."""


def validate_base_dir(base_dir: Path) -> bool:
    """
    Validate the directory to be scanned.

    Returns:
        True if valid

    Raises:
        ValidationError if invalid
    """
    if not base_dir.exists():
        raise ValidationError(f"Base directory does not exist: {base_dir}")

    if not base_dir.is_dir():
        raise ValidationError(f"Not a directory: {base_dir}")

    try:
        next(base_dir.iterdir(), None)
    except OSError as e:
        raise ValidationError(f"Base directory is not readable: {base_dir}: {e}")

    return True


def validate_reference_file(file_path: Path) -> bool:
    """
    Validate a reference inventory file.

    Expected: non-empty .json (inventory) or .jsonl (component patterns) file.
    """
    if not file_path.exists():
        raise ValidationError(f"File does not exist: {file_path}")

    if not file_path.is_file():
        raise ValidationError(f"Not a file: {file_path}")

    if file_path.stat().st_size == 0:
        raise ValidationError(f"File is empty: {file_path}")

    if file_path.suffix.lower() not in ('.json', '.jsonl'):
        raise ValidationError(
            f"Unsupported reference format (expected .json or .jsonl): {file_path}",
        )

    return True
