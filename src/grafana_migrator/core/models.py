"""
Data models for content moved between Grafana instances.

Models parse the API's camelCase JSON through aliases and serialize back
with ``to_api()``.
"""

import threading
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

# Grafana's pseudo folder for dashboards without a folder
GENERAL_FOLDER_UID = "general"

ENTITY_TYPES = ("datasource", "folder", "dashboard")


def normalize_folder_uid(folder_uid: Optional[str]) -> Optional[str]:
    """Map the General folder and empty references to None (root level)."""
    if not folder_uid or folder_uid == GENERAL_FOLDER_UID:
        return None
    return folder_uid


class _APIModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Folder(_APIModel):
    uid: str
    title: str
    parent_uid: Optional[str] = Field(default=None, alias="parentUid")
    id: Optional[int] = None
    version: Optional[int] = None
    created: Optional[str] = None
    updated: Optional[str] = None


class Dashboard(_APIModel):
    """A dashboard. ``payload`` is the opaque dashboard JSON (``json`` on the wire)."""

    uid: str
    title: str = ""
    folder_uid: Optional[str] = Field(default=None, alias="folderUid")
    payload: Dict[str, Any] = Field(default_factory=dict, alias="json")
    id: Optional[int] = None
    version: Optional[int] = None
    created: Optional[str] = None
    updated: Optional[str] = None


class Datasource(_APIModel):
    """A datasource. Settings the model does not name are kept as extra fields."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    uid: Optional[str] = None
    type: str = ""
    url: str = ""
    access: Optional[str] = None
    json_data: Dict[str, Any] = Field(default_factory=dict, alias="jsonData")
    secure_json_data: Optional[Dict[str, str]] = Field(default=None, alias="secureJsonData")
    id: Optional[int] = None
    org_id: Optional[int] = Field(default=None, alias="orgId")
    version: Optional[int] = None
    read_only: Optional[bool] = Field(default=None, alias="readOnly")

    @property
    def key(self) -> str:
        """Stable key: uid when the instance assigned one, else the name."""
        return self.uid or self.name

    @property
    def secure_fields(self) -> List[str]:
        """Names of secrets the source holds but never returns."""
        fields = (self.model_extra or {}).get("secureJsonFields") or {}
        return sorted(k for k, v in fields.items() if v)


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class EntityOutcome(BaseModel):
    entity_type: str
    entity_key: str
    phase: str
    outcome: Outcome
    detail: Optional[str] = None


class ContentSnapshot(BaseModel):
    """Sanitized content of one instance."""

    folders: List[Folder] = Field(default_factory=list)
    dashboards: List[Dashboard] = Field(default_factory=list)
    datasources: List[Datasource] = Field(default_factory=list)
    # entity type -> reason the whole class could not be read
    fetch_errors: Dict[str, str] = Field(default_factory=dict)
    # (entity type, key) failures for individual entities, e.g. dashboard detail calls
    entity_errors: List[EntityOutcome] = Field(default_factory=list)
    exported_at: datetime = Field(default_factory=datetime.now)


class MigrationSummary(BaseModel):
    """Per-entity outcomes of one migration run."""

    outcomes: List[EntityOutcome] = Field(default_factory=list)
    class_failures: Dict[str, str] = Field(default_factory=dict)
    # source datasource uid -> uid it ended up with on the destination, when they differ
    remapped_datasources: Dict[str, str] = Field(default_factory=dict)
    aborted_reason: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    _lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    def record(self, outcome: EntityOutcome):
        with self._lock:
            self.outcomes.append(outcome)

    def counts(self) -> Dict[str, Dict[str, int]]:
        """Outcome counts per entity type."""
        result = {
            entity_type: {outcome.value: 0 for outcome in Outcome}
            for entity_type in ENTITY_TYPES
        }
        for item in self.outcomes:
            result.setdefault(item.entity_type, {o.value: 0 for o in Outcome})
            result[item.entity_type][item.outcome.value] += 1
        return result

    def total(self, outcome: Outcome) -> int:
        return sum(1 for item in self.outcomes if item.outcome == outcome)

    @property
    def failed(self) -> List[EntityOutcome]:
        return [item for item in self.outcomes if item.outcome == Outcome.FAILED]

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.class_failures and self.aborted_reason is None
