"""
Point Ledger — exactly-once crediting backed by an append-only record.

Behavioral Contract:
- credit() inserts a transaction and bumps the team balance in one unit of
  work; both commit or neither does.
- A replay of (source_id, payee_id) returns ALREADY_CREDITED and mutates
  nothing. It is not an error.
- Transactions are never updated or deleted. A human correction is a new
  transaction (adjust()), the only path by which a balance may decrease.
"""

from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from mission_kernel.errors import ValidationError
from mission_kernel.idempotency.gate import Admission, IdempotencyGate
from mission_kernel.logging_utils import get_logger
from mission_kernel.models.ledger import (
    CreditOutcome,
    CreditResult,
    LedgerAudit,
    PointTransaction,
    TeamBalance,
)
from mission_kernel.storage.store import KernelStore

logger = get_logger("mission_kernel.ledger")


class PointLedger:
    def __init__(self, store: KernelStore, gate: Optional[IdempotencyGate] = None):
        self.store = store
        self.gate = gate or IdempotencyGate(store)

    def credit(
        self,
        team_id: str,
        payee_id: Optional[str],
        source_id: str,
        label: str,
        points: int,
    ) -> CreditResult:
        """
        Award points for a task. Joins the caller's unit of work when one is
        already open on this thread (e.g., the completion transition).
        """
        if not team_id or not source_id:
            raise ValidationError("team_id and source_id are required")
        if points < 0:
            raise ValidationError("Credited points must be non-negative; use adjust()")

        transaction = PointTransaction(
            id=f"ptx_{uuid4().hex[:12]}",
            team_id=team_id,
            payee_id=payee_id,
            source_id=source_id,
            label=label,
            points=points,
            created_at=datetime.utcnow(),
        )

        with self.store.unit_of_work() as tx:
            if self.gate.admit_credit(tx, transaction) == Admission.ALREADY_PROCESSED:
                logger.info(
                    f"Points already credited for {source_id} to {payee_id or 'team'}",
                    extra={"source_id": source_id, "payee_id": payee_id},
                )
                return CreditResult(
                    outcome=CreditOutcome.ALREADY_CREDITED,
                    transaction=tx.find_transaction(source_id, payee_id),
                    balance=tx.get_balance(team_id),
                )
            balance = tx.increment_balance(team_id, points)

        logger.info(
            f"Credited {points} points to {payee_id or 'team'} for {source_id}",
            extra={"team_id": team_id, "source_id": source_id, "points": points},
        )
        return CreditResult(
            outcome=CreditOutcome.APPLIED,
            transaction=transaction,
            balance=balance,
        )

    def adjust(self, team_id: str, label: str, points: int, payee_id: Optional[str] = None) -> CreditResult:
        """Human correction. May be negative; always a fresh transaction."""
        if not label:
            raise ValidationError("A correction needs a label")
        transaction = PointTransaction(
            id=f"ptx_{uuid4().hex[:12]}",
            team_id=team_id,
            payee_id=payee_id,
            source_id=f"correction:{uuid4().hex}",
            label=label,
            points=points,
            created_at=datetime.utcnow(),
        )
        with self.store.unit_of_work() as tx:
            tx.insert_transaction_if_absent(transaction)
            balance = tx.increment_balance(team_id, points)

        logger.warning(
            f"Manual correction of {points} points for team {team_id}: {label}",
            extra={"team_id": team_id, "points": points},
        )
        return CreditResult(outcome=CreditOutcome.APPLIED, transaction=transaction, balance=balance)

    def balance(self, team_id: str) -> TeamBalance:
        with self.store.unit_of_work() as tx:
            return tx.get_balance(team_id)

    def transactions(self, team_id: str) -> List[PointTransaction]:
        with self.store.unit_of_work() as tx:
            return tx.list_transactions(team_id)

    def audit(self, team_id: str) -> LedgerAudit:
        """Check that the stored balance equals the sum of transactions."""
        with self.store.unit_of_work() as tx:
            balance = tx.get_balance(team_id)
            total, count = tx.transaction_totals(team_id)
        result = LedgerAudit(
            team_id=team_id,
            total_points=balance.total_points,
            transaction_sum=total,
            transaction_count=count,
            consistent=balance.total_points == total,
        )
        if not result.consistent:
            logger.error(
                f"Ledger drift for team {team_id}: balance {balance.total_points} != sum {total}",
                extra={"team_id": team_id},
            )
        return result
