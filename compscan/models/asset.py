from pydantic import BaseModel
from pydantic import Field

from compscan.models.constants import ASSET_ID_PREFIX


class AssetMetaData(BaseModel):
    """Describes an asset; i.e. an archive that was unwrapped during the scan."""
    asset_id: str
    checksum: str | None = None
    asset_path: str | None = None
    artifact_path: str | None = None
    inspection_source: str | None = None
    attributes: dict[str, str] = Field(default_factory=dict)

    @staticmethod
    def derive_asset_id(artifact_id: str, checksum: str | None) -> str:
        return f"{ASSET_ID_PREFIX}{artifact_id}-{checksum}"
