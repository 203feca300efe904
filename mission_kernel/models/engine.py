"""Engine configuration — injected at construction time."""

from typing import Dict, List

from pydantic import BaseModel, Field


class AllocatorConfig(BaseModel):
    """Ring/slot geometry for the Spatial Allocator."""

    base_radius: float = 380.0
    ring_spacing: float = 100.0
    slots_per_ring: int = Field(default=9, ge=1)
    angle_step: float = 0.7                 # radians between slots
    ring_stagger: float = 0.35              # radians added per ring
    min_separation: float = 150.0           # 3x planet radius
    max_rings: int = Field(default=23, ge=1)
    fallback_ring_offset: int = 20          # rings beyond the last probed ring
    round_positions: bool = True


class EngineConfig(BaseModel):
    """Configuration for the Ownership Coordinator and Point Ledger."""

    team_id: str = "default"
    allocator: AllocatorConfig = AllocatorConfig()
    priority_points: Dict[str, int] = {
        "critical": 120,
        "high": 80,
        "medium": 50,
        "low": 30,
    }
    default_points: int = 30
    terminal_statuses: List[str] = ["done", "completed", "complete", "archived"]
    completion_label_prefix: str = "Completed: "
