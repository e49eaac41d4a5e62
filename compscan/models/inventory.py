from pydantic import BaseModel
from pydantic import Field

from compscan.models.artifact import Artifact
from compscan.models.asset import AssetMetaData
from compscan.models.component_pattern import ComponentPatternData


class Inventory(BaseModel):
    """Result of a scan: artifacts, applied component patterns and asset metadata."""
    artifacts: list[Artifact] = Field(default_factory=list)
    component_patterns: list[ComponentPatternData] = Field(default_factory=list)
    asset_metadata: list[AssetMetaData] = Field(default_factory=list)

    def find_all_with_id(self, artifact_id: str) -> list[Artifact]:
        return [a for a in self.artifacts if a.id == artifact_id]

    def find_artifact_by_id_and_checksum(self, artifact_id: str, checksum: str) -> Artifact | None:
        for artifact in self.artifacts:
            if artifact.id == artifact_id and artifact.checksum == checksum:
                return artifact
        return None

    def find_component_pattern(self, simple_qualifier: str) -> ComponentPatternData | None:
        for cpd in self.component_patterns:
            if cpd.derive_simple_qualifier() == simple_qualifier:
                return cpd
        return None

    def remove_artifacts(self, to_be_removed: list[Artifact]) -> None:
        """Removes the given artifacts by identity (artifacts with equal content may coexist)."""
        identities = {id(a) for a in to_be_removed}
        self.artifacts[:] = [a for a in self.artifacts if id(a) not in identities]
