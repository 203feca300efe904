"""Mission kernel data models."""

from mission_kernel.models.engine import AllocatorConfig, EngineConfig
from mission_kernel.models.entity import Entity, EntityStatus
from mission_kernel.models.events import (
    CompleteEvent,
    CreateEvent,
    DeleteEvent,
    InboundEvent,
    KernelEvent,
    ReassignEvent,
    parse_event,
    parse_inbound,
)
from mission_kernel.models.ledger import (
    CreditOutcome,
    CreditResult,
    LedgerAudit,
    PointTransaction,
    TeamBalance,
)
from mission_kernel.models.realtime import ClientSnapshot, EntityDelta, PendingEdit
from mission_kernel.models.transition import TransitionOutcome, TransitionResult
from mission_kernel.models.zone import Coordinate

__all__ = [
    "AllocatorConfig",
    "ClientSnapshot",
    "CompleteEvent",
    "Coordinate",
    "CreateEvent",
    "CreditOutcome",
    "CreditResult",
    "DeleteEvent",
    "EngineConfig",
    "Entity",
    "EntityDelta",
    "EntityStatus",
    "InboundEvent",
    "KernelEvent",
    "LedgerAudit",
    "PendingEdit",
    "PointTransaction",
    "ReassignEvent",
    "TeamBalance",
    "TransitionOutcome",
    "TransitionResult",
    "parse_event",
    "parse_inbound",
]
