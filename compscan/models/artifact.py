from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from compscan.models.constants import ATTRIBUTE_KEY_ARTIFACT_PATH
from compscan.models.constants import KEY_PATH_IN_ASSET
from compscan.models.constants import PATH_DELIMITER


class Artifact(BaseModel):
    """Represents a single software unit (file, module or package) found during a scan."""
    id: str = ''
    component: str | None = None
    version: str | None = None
    group_id: str | None = None
    checksum: str | None = None

    classification: set[str] = Field(default_factory=set)
    projects: set[str] = Field(default_factory=set)
    attributes: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra='ignore')

    @field_validator('classification', mode='before')
    @classmethod
    def parse_classification(cls, v: Any) -> set[str]:
        if not v:
            return set()
        if isinstance(v, str):
            return {c.strip() for c in v.split(',') if c.strip()}
        return set(v)

    def get_attribute(self, key: str, default: str | None = None) -> str | None:
        return self.attributes.get(key, default)

    def set_attribute(self, key: str, value: str | None) -> None:
        """Sets an attribute; a None or empty value removes it."""
        if value is None or value == '':
            self.attributes.pop(key, None)
        else:
            self.attributes[key] = value

    def get_attribute_set(self, key: str, delimiter: str = PATH_DELIMITER) -> set[str]:
        value = self.attributes.get(key)
        if not value:
            return set()
        return {part.strip() for part in value.split(delimiter) if part.strip()}

    def append_attribute(self, key: str, value: str, delimiter: str = PATH_DELIMITER) -> None:
        """Adds value to the delimited set stored under key, sorted case-insensitively."""
        values = self.get_attribute_set(key, delimiter)
        values.add(value)
        self.attributes[key] = delimiter.join(sorted(values, key=str.casefold))

    def has_classification(self, hint: str) -> bool:
        return hint in self.classification

    def add_classification(self, hint: str) -> None:
        self.classification.add(hint)

    def add_project(self, project: str) -> None:
        self.projects.add(project)

    @property
    def artifact_path(self) -> str | None:
        return self.attributes.get(ATTRIBUTE_KEY_ARTIFACT_PATH)

    @property
    def paths_in_asset(self) -> set[str]:
        return self.get_attribute_set(KEY_PATH_IN_ASSET)

    def derive_qualifier(self) -> str:
        if self.checksum:
            return f"{self.id}-{self.checksum}"
        return f"{self.id}-{self.group_id or ''}-{self.version or ''}"

    def merge(self, other: 'Artifact') -> None:
        """Absorbs every field and attribute of other that this artifact lacks."""
        for field_name in ('component', 'version', 'group_id', 'checksum'):
            if not getattr(self, field_name) and getattr(other, field_name):
                setattr(self, field_name, getattr(other, field_name))
        for key, value in other.attributes.items():
            if not self.attributes.get(key):
                self.attributes[key] = value
        self.projects |= other.projects
        self.classification |= other.classification

    def __repr__(self) -> str:
        return f"Artifact(id={self.id!r}, version={self.version!r}, checksum={self.checksum!r})"
