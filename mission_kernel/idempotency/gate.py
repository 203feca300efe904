"""
Idempotency Gate — first-seen vs. already-processed, decided atomically.

Two independent domains:
- event admission, keyed on external_id
- point crediting, keyed on (source_id, payee_id)

A task re-attributed to a different payee is a new credit, not a duplicate
event, so the domains must not share a key.

Both decisions are a single INSERT OR IGNORE against a uniqueness
constraint; of any number of concurrent callers exactly one sees FIRST_SEEN.
"""

from enum import Enum
from typing import Optional

from mission_kernel.models.ledger import PointTransaction
from mission_kernel.storage.store import KernelStore, StoreTransaction


class Admission(str, Enum):
    FIRST_SEEN = "first_seen"
    ALREADY_PROCESSED = "already_processed"


class IdempotencyGate:
    def __init__(self, store: KernelStore):
        self.store = store

    def admit(self, external_id: str, tx: Optional[StoreTransaction] = None) -> Admission:
        """Admit an event. Pass `tx` to make admission part of a larger unit of work."""
        if tx is not None:
            return self._admit(tx, external_id)
        with self.store.unit_of_work() as own:
            return self._admit(own, external_id)

    def admit_credit(self, tx: StoreTransaction, transaction: PointTransaction) -> Admission:
        """Claim the (source_id, payee_id) slot by inserting the transaction itself."""
        if tx.insert_transaction_if_absent(transaction):
            return Admission.FIRST_SEEN
        return Admission.ALREADY_PROCESSED

    @staticmethod
    def _admit(tx: StoreTransaction, external_id: str) -> Admission:
        if tx.insert_event_if_absent(external_id):
            return Admission.FIRST_SEEN
        return Admission.ALREADY_PROCESSED
