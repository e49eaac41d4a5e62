"""Ant-style path pattern matching with a literal-substring prefilter."""
import os
import re
from collections.abc import Iterable
from functools import lru_cache
from pathlib import Path

SEPARATOR = '/'
_WILDCARD_RUN = re.compile(r'[*?]+')


def normalize_path_to_linux(path: str | None) -> str | None:
    if path is None:
        return None
    return path.replace('\\', '/')


def as_relative_path(base: Path | str, file: Path | str) -> str:
    """Returns the linux-style path of file relative to base ('.' for identity)."""
    relative = os.path.relpath(Path(file).resolve(), Path(base).resolve())
    return normalize_path_to_linux(relative)


def _tokenize(value: str) -> list[str]:
    return [token for token in value.split(SEPARATOR) if token]


def _translate_token(token: str) -> str:
    out = []
    for char in token:
        if char == '*':
            out.append('[^/]*')
        elif char == '?':
            out.append('[^/]')
        else:
            out.append(re.escape(char))
    return ''.join(out)


@lru_cache(maxsize=4096)
def _compile(pattern: str) -> re.Pattern:
    # every token consumes its leading separator; '**' consumes any number of segments
    parts = []
    for token in _tokenize(pattern):
        if token == '**':
            parts.append('(?:/[^/]*)*')
        else:
            parts.append('/' + _translate_token(token))
    return re.compile(''.join(parts))


def ant_match(pattern: str, path: str) -> bool:
    """Matches a single Ant-style pattern against a path."""
    if path.startswith(SEPARATOR) != pattern.startswith(SEPARATOR):
        return False
    segments = _tokenize(path)
    text = SEPARATOR + SEPARATOR.join(segments) if segments else ''
    return _compile(pattern).fullmatch(text) is not None


def matches(pattern: str | None, path: str | None) -> bool:
    """
    Matches a pattern or a comma separated list of patterns against path.

    A None pattern matches everything; a None path matches nothing.
    """
    if pattern is None:
        return True
    if path is None:
        return False
    if ',' not in pattern:
        return ant_match(pattern, path)
    return any(ant_match(p.strip(), path) for p in pattern.split(','))


def match_any_file_in_path(path: str, pattern: str) -> bool | None:
    """Shortcut for '<literal>/**/*' patterns; None when not applicable."""
    if pattern.endswith('/**/*'):
        prefix = pattern[:-4]
        if '*' not in prefix:
            return path.startswith(prefix)
    return None


def internal_matching(path: str, pattern: str) -> bool:
    """
    Matches path against pattern ignoring whether either of them is absolute.

    Plain ant matching only matches absolute paths with absolute patterns;
    this adapts path and pattern so that '/a/**/*' also matches 'a/b'.
    """
    if '*' not in pattern:
        return path == pattern

    if pattern.startswith(SEPARATOR) and not path.startswith(SEPARATOR):
        pattern = pattern[1:]
    elif path.startswith(SEPARATOR) and not pattern.startswith(SEPARATOR):
        path = path[1:]

    if pattern.startswith('**/'):
        sub_pattern = pattern[2:]
        if '*' not in sub_pattern and '?' not in sub_pattern:
            return path.endswith(sub_pattern) or path == sub_pattern[1:]
    else:
        matched = match_any_file_in_path(path, pattern)
        if matched is not None:
            return matched

    return ant_match(pattern, path)


def longest_literal(pattern: str) -> str:
    # '/**' also matches the bare directory and absolute patterns also match
    # relative paths; neither separator may be part of the key
    modulated = pattern.lstrip(SEPARATOR).replace('/**', '*').replace('**/', '*')
    return max(_WILDCARD_RUN.split(modulated), key=len, default='')


class PatternSetMatcher:
    """
    Matches paths against a set of patterns.

    Patterns without '*' compare by equality and are looked up directly;
    the others are indexed by their longest literal part and only evaluated
    when that literal is contained in the path.
    """

    def __init__(self, patterns: Iterable[str | None] | None):
        self.exact: set[str] = set()
        self.literal_index: dict[str, set[str]] = {}
        for pattern in patterns or ():
            if pattern is None:
                continue
            if '*' not in pattern:
                self.exact.add(pattern)
                continue
            self.literal_index.setdefault(longest_literal(pattern), set()).add(pattern)

    def __len__(self) -> int:
        return len(self.exact) + sum(len(p) for p in self.literal_index.values())

    def matches(self, path: str) -> bool:
        if path in self.exact:
            return True
        for literal, patterns in self.literal_index.items():
            if literal not in path:
                continue
            for pattern in patterns:
                if internal_matching(path, pattern):
                    return True
        return False

    @classmethod
    def from_comma_separated(cls, value: str | None) -> 'PatternSetMatcher':
        if not value:
            return cls(None)
        return cls(p.strip() for p in value.split(',') if p.strip())
