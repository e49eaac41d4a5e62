"""File checksum helpers."""
import hashlib
from pathlib import Path

CHUNK_SIZE = 64 * 1024


def _digest(file_path: Path, algorithm: str) -> str:
    hasher = hashlib.new(algorithm)
    with open(file_path, 'rb') as f:
        while chunk := f.read(CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()


def compute_md5(file_path: Path) -> str:
    return _digest(file_path, 'md5')


def compute_sha1(file_path: Path) -> str:
    return _digest(file_path, 'sha1')


def compute_sha256(file_path: Path) -> str:
    return _digest(file_path, 'sha256')


def compute_checksums(file_path: Path) -> dict[str, str]:
    """Computes md5, sha1 and sha256 reading the file only once."""
    hashers = {name: hashlib.new(name) for name in ('md5', 'sha1', 'sha256')}
    with open(file_path, 'rb') as f:
        while chunk := f.read(CHUNK_SIZE):
            for hasher in hashers.values():
                hasher.update(chunk)
    return {name: hasher.hexdigest() for name, hasher in hashers.items()}
