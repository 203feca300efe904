"""Transition results returned by the Ownership Coordinator."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from mission_kernel.models.entity import Entity
from mission_kernel.models.ledger import CreditResult


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"


class TransitionResult(BaseModel):
    """
    Outcome of one lifecycle operation.

    `warning` is set when local state committed but mirroring it to the
    tracker failed (partial success).
    """

    outcome: TransitionOutcome
    transition: str
    entity_id: Optional[str] = None
    entity: Optional[Entity] = None
    previous_owner: Optional[str] = None
    credit: Optional[CreditResult] = None
    deleted: bool = False
    warning: Optional[str] = None
