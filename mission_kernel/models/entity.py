"""Entity — a tracked task projected onto the zone map."""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field

from mission_kernel.models.zone import Coordinate


class EntityStatus(str, Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    COMPLETED = "completed"


# Fields a realtime subscriber may see change on an entity.
MUTABLE_FIELDS = (
    "owner_id",
    "name",
    "description",
    "kind",
    "priority",
    "position",
    "points",
    "completed",
    "seen_by",
)

# Fields that may be edited directly (not through a transition).
EDITABLE_FIELDS = ("name", "description", "kind", "priority", "points")


class Entity(BaseModel):
    """
    A unit of work from the external tracker, owned by at most one agent.

    Invariants:
    - completed entities are immutable except for deletion
    - position lies in the owner's zone (or the unassigned anchor's zone)
    """

    id: str
    external_id: str
    team_id: str
    owner_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    kind: Optional[str] = None              # e.g., "bug", "feature", "task"
    priority: Optional[str] = None          # free-form tracker priority
    position: Coordinate
    points: Optional[int] = Field(default=None, ge=0)
    completed: bool = False
    seen_by: Dict[str, bool] = {}
    revision: int = 1                       # bumped on every committed write
    created_at: datetime
    updated_at: datetime

    @property
    def status(self) -> EntityStatus:
        if self.completed:
            return EntityStatus.COMPLETED
        if self.owner_id:
            return EntityStatus.ASSIGNED
        return EntityStatus.UNASSIGNED

    def public_fields(self) -> dict:
        """JSON view of the fields carried on realtime deltas."""
        data = self.model_dump(mode="json")
        return {name: data[name] for name in MUTABLE_FIELDS}
