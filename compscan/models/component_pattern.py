from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from compscan.models.constants import ASTERISK


class ComponentPatternData(BaseModel):
    """
    Predefined component signature.

    A component pattern is anchored on a file (the version anchor), optionally
    constrained to a checksum of that file ('*' accepts any content). The
    include/exclude patterns select the files belonging to the component
    relative to the component base directory derived from the anchor. Patterns
    are comma separated Ant-style globs.
    """
    version_anchor: str | None = Field(default=None, alias='Version Anchor')
    version_anchor_checksum: str | None = Field(
        default=None, alias='Version Anchor Checksum',
    )
    include_pattern: str | None = Field(default=None, alias='Include Pattern')
    exclude_pattern: str | None = Field(default=None, alias='Exclude Pattern')
    shared_include_pattern: str | None = Field(
        default=None, alias='Shared Include Pattern',
    )
    shared_exclude_pattern: str | None = Field(
        default=None, alias='Shared Exclude Pattern',
    )

    component_name: str | None = Field(default=None, alias='Component Name')
    component_part: str | None = Field(default=None, alias='Component Part')
    component_version: str | None = Field(
        default=None, alias='Component Version',
    )
    type: str | None = Field(default=None, alias='Type')
    component_source_type: str | None = Field(
        default=None, alias='Component Source Type',
    )
    purl: str | None = Field(default=None, alias='PURL')

    # deferred patterns are only applied once all archives have been unwrapped
    deferred: bool = False

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra='ignore',
    )

    def derive_qualifier(self) -> str:
        return f"{self.include_pattern}-{self.version_anchor}-{self.version_anchor_checksum}"

    def derive_simple_qualifier(self) -> str:
        return f"{self.version_anchor}-{self.version_anchor_checksum}"

    def with_anchor_checksum(self, checksum: str) -> 'ComponentPatternData':
        return self.model_copy(update={'version_anchor_checksum': checksum})

    @property
    def has_specific_checksum(self) -> bool:
        return (self.version_anchor_checksum or ASTERISK) != ASTERISK

    def describe(self) -> str:
        return (
            f"{self.component_name}/{self.component_part}/{self.component_version} "
            f"[anchor={self.version_anchor}, checksum={self.version_anchor_checksum}]"
        )
