from pathlib import Path

import pytest

from compscan.core.patterns import PatternSetMatcher
from compscan.core.patterns import ant_match
from compscan.core.patterns import as_relative_path
from compscan.core.patterns import internal_matching
from compscan.core.patterns import longest_literal
from compscan.core.patterns import matches

PATTERNS = [
    '/**/*',
    '/a/**/*',
    'a/**/b',
    '**/b.txt',
    '**/x/**',
    '/x/*.txt',
    '*.log',
    'lib/*.jar',
    'exact/path.txt',
    '**/node_modules/**/package.json',
    '/lib/?.jar',
]

PATHS = [
    'a',
    'a/b',
    'a/b.txt',
    '/a/b/c/b',
    'b.txt',
    'x',
    'x/a.txt',
    '/x/a.txt',
    'deep/x/y/z.log',
    'z.log',
    'lib/a.jar',
    '/lib/b.jar',
    'exact/path.txt',
    'node_modules/left-pad/package.json',
    '/srv/node_modules/@scope/pkg/package.json',
]


def test_ant_match_basic():
    """Test single and double wildcards."""
    assert ant_match('**/*.txt', 'a/b/c.txt')
    assert ant_match('*.txt', 'c.txt')
    assert not ant_match('*.txt', 'a/c.txt')
    assert ant_match('a/?.txt', 'a/b.txt')
    assert not ant_match('a/?.txt', 'a/bb.txt')


def test_ant_match_requires_same_rooting():
    """Test absolute patterns only match absolute paths."""
    assert not ant_match('/a/*', 'a/b')
    assert not ant_match('a/*', '/a/b')
    assert ant_match('/a/*', '/a/b')


def test_matches_comma_separated():
    """Test any pattern of a comma separated list may match."""
    assert matches('*.txt, *.log', 'a.log')
    assert not matches('*.txt, *.log', 'a.jar')


def test_matches_none_semantics():
    """Test a missing pattern matches everything and a missing path nothing."""
    assert matches(None, 'anything')
    assert not matches('*', None)


@pytest.mark.parametrize(
    'path,pattern,expected', [
        ('a/b.txt', '/a/**/*', True),
        ('/a/b.txt', 'a/**/*', True),
        ('/lib/x.jar', '**/x.jar', True),
        ('x.jar', '**/x.jar', True),
        ('lib/y.jar', '**/x.jar', False),
        ('a/b', 'a/b', True),
        ('a/c', 'a/b', False),
        ('b/a/c.txt', '/a/**/*', False),
    ],
)
def test_internal_matching(path, pattern, expected):
    """Test internal matching ignores rooting differences."""
    assert internal_matching(path, pattern) is expected


def test_longest_literal_ignores_separators_next_to_double_wildcards():
    """Test the literal key never spans a double wildcard separator."""
    assert longest_literal('foo/**/*') == 'foo'
    assert longest_literal('**/b.txt') == 'b.txt'
    assert longest_literal('/x/*.txt') == '.txt'
    assert longest_literal('/**/*') == ''


def test_pattern_set_matcher_agrees_with_naive_matching():
    """Test the literal index never changes the outcome of matching."""
    for size in range(1, len(PATTERNS) + 1):
        patterns = PATTERNS[:size]
        matcher = PatternSetMatcher(patterns)
        for path in PATHS:
            naive = any(internal_matching(path, p) for p in patterns)
            assert matcher.matches(path) is naive, (patterns, path)


def test_pattern_set_matcher_empty_and_none():
    """Test empty matchers match nothing."""
    assert not PatternSetMatcher(None).matches('a')
    assert not PatternSetMatcher([None]).matches('a')
    assert len(PatternSetMatcher(['a', 'b/**/*'])) == 2


def test_pattern_set_matcher_from_comma_separated():
    """Test matchers built from comma separated patterns."""
    matcher = PatternSetMatcher.from_comma_separated('lib/*.jar, **/*.so')
    assert len(matcher) == 2
    assert matcher.matches('lib/a.jar')
    assert matcher.matches('x/y/z.so')
    assert not PatternSetMatcher.from_comma_separated('').matches('a')


def test_pattern_set_matcher_literal_paths():
    """Test patterns without wildcards only match the identical path."""
    matcher = PatternSetMatcher(['usr/bin/bar', 'usr/lib/libfoo.so.1', 'var/lib/dpkg/info/bar.*'])

    assert len(matcher) == 3
    assert matcher.exact == {'usr/bin/bar', 'usr/lib/libfoo.so.1'}
    assert matcher.matches('usr/bin/bar')
    assert matcher.matches('var/lib/dpkg/info/bar.md5sums')
    assert not matcher.matches('usr/bin/barista')
    assert not matcher.matches('x/usr/bin/bar')


def test_as_relative_path(tmp_path):
    """Test relative paths use forward slashes."""
    assert as_relative_path(tmp_path, tmp_path) == '.'
    assert as_relative_path(tmp_path, tmp_path / 'a' / 'b.txt') == 'a/b.txt'
    assert as_relative_path(tmp_path / 'a', tmp_path / 'b' / 'c') == '../b/c'
    assert as_relative_path(str(tmp_path), Path(tmp_path) / 'x') == 'x'
