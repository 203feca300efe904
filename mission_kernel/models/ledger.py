"""Point Ledger records — immutable transactions and the team aggregate."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class CreditOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_CREDITED = "already_credited"


class PointTransaction(BaseModel):
    """
    One point award. Append-only: never mutated or deleted.

    At most one transaction exists per (source_id, payee_id).
    """

    id: str
    team_id: str
    payee_id: Optional[str] = None          # None = credited to the team itself
    source_id: str                          # external id of the task
    label: str
    points: int
    created_at: datetime


class TeamBalance(BaseModel):
    """Running total for a team, maintained alongside ledger inserts."""

    team_id: str
    total_points: int = 0


class CreditResult(BaseModel):
    outcome: CreditOutcome
    transaction: Optional[PointTransaction] = None
    balance: TeamBalance


class LedgerAudit(BaseModel):
    """Result of checking the balance against the transaction sum."""

    team_id: str
    total_points: int
    transaction_sum: int
    transaction_count: int
    consistent: bool
