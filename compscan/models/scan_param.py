import threading

from pydantic import BaseModel
from pydantic import Field
from pydantic import PrivateAttr

from compscan.core.patterns import PatternSetMatcher
from compscan.models.component_pattern import ComponentPatternData
from compscan.models.constants import ASTERISK
from compscan.models.inventory import Inventory


def _absolute(patterns: list[str]) -> list[str]:
    return ['/' + p.lstrip('/') for p in patterns]


class ScanParam(BaseModel):
    """Options controlling which files are visited and unwrapped during a scan."""
    collect_includes: list[str] = Field(default_factory=lambda: ['**/*'])
    collect_excludes: list[str] = Field(default_factory=list)
    unwrap_includes: list[str] = Field(default_factory=lambda: ['**/*'])
    unwrap_excludes: list[str] = Field(default_factory=list)

    implicit_unwrap: bool = True
    include_embedded: bool = False
    detect_component_patterns: bool = True

    reference_inventory: Inventory = Field(default_factory=Inventory)

    _matchers: dict[str, PatternSetMatcher] = PrivateAttr(default_factory=dict)
    _patterns_by_checksum: dict[str, list[ComponentPatternData]] | None = PrivateAttr(default=None)
    _lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    def _matcher(self, name: str) -> PatternSetMatcher:
        matcher = self._matchers.get(name)
        if matcher is None:
            matcher = PatternSetMatcher(_absolute(getattr(self, name)))
            self._matchers[name] = matcher
        return matcher

    def _accepts(self, includes: str, excludes: str, path: str) -> bool:
        normalized = '/' + path.lstrip('/')
        if self._matcher(excludes).matches(normalized):
            return False
        return self._matcher(includes).matches(normalized)

    def collects(self, path: str) -> bool:
        """Whether path (relative to the scan base dir) is visited."""
        return self._accepts('collect_includes', 'collect_excludes', path)

    def collects_directory(self, path: str) -> bool:
        """Directories are only subject to the collect excludes."""
        return not self._matcher('collect_excludes').matches('/' + path.lstrip('/'))

    def unwraps(self, path: str) -> bool:
        """Whether path (relative to the scan base dir) may be unwrapped implicitly."""
        return self._accepts('unwrap_includes', 'unwrap_excludes', path)

    def component_patterns_by_checksum(self, checksum: str) -> list[ComponentPatternData]:
        """Reference component patterns anchored on the given checksum ('*' for any content)."""
        with self._lock:
            if self._patterns_by_checksum is None:
                index: dict[str, list[ComponentPatternData]] = {}
                for cpd in self.reference_inventory.component_patterns:
                    key = cpd.version_anchor_checksum or ASTERISK
                    index.setdefault(key, []).append(cpd)
                self._patterns_by_checksum = index
            return list(self._patterns_by_checksum.get(checksum, []))

    def has_anchor_checksum(self, checksum: str | None) -> bool:
        if not checksum:
            return False
        return bool(self.component_patterns_by_checksum(checksum))
