"""
Realtime Reconciler — merges pushed deltas into one client's snapshot.

Policy:
- A delta whose revision is not newer than the known revision of its entity
  is discarded.
- While an entity has a pending local edit stamped no earlier than the delta, the
  delta is applied to every field except the edited ones. Incoming values for
  those fields are parked on the edit and restored if the edit is cancelled.
- Once the edit commits or is cancelled, later deltas apply unconditionally.
- Connect / reconnect is a full resync: discard the backlog, fetch the
  authoritative snapshot. Missed deltas are never replayed.

Logical clock: Lamport-style. Observed delta revisions advance it; each local
edit ticks it and takes the new value as its timestamp.

Single-threaded and cooperative: handlers never block on I/O. Write-backs run
in a worker thread and are awaited.
"""

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from mission_kernel.errors import NotFoundError, ValidationError
from mission_kernel.logging_utils import get_logger
from mission_kernel.models.entity import EDITABLE_FIELDS
from mission_kernel.models.realtime import ClientSnapshot, EntityDelta, PendingEdit
from mission_kernel.realtime.broadcaster import Subscription

logger = get_logger("mission_kernel.realtime")


class DeltaOutcome(str, Enum):
    APPLIED = "applied"
    PARTIAL = "partial"        # edited fields held back
    STALE = "stale"            # revision not newer; discarded
    DELETED = "deleted"


class RealtimeReconciler:
    """
    Per-client reconciler.

    fetch_snapshot() -> list of entity dicts (each with "id" and "revision").
    write_back(entity_id, fields) -> optional entity dict as stored.
    """

    def __init__(
        self,
        fetch_snapshot: Callable[[], List[dict]],
        write_back: Callable[[str, Dict[str, Any]], Optional[dict]],
        poll_interval_seconds: float = 0.5,
    ):
        self._fetch = fetch_snapshot
        self._write_back = write_back
        self.poll_interval_seconds = poll_interval_seconds
        self.snapshot = ClientSnapshot()

    # --- Reading ---

    def view(self, entity_id: str) -> Optional[dict]:
        """Entity as the local user sees it: snapshot overlaid with pending edits."""
        entity = self.snapshot.entities.get(entity_id)
        if entity is None:
            return None
        merged = dict(entity)
        pending = self.snapshot.pending.get(entity_id)
        if pending:
            merged.update(pending.fields)
        return merged

    def pending_edit(self, entity_id: str) -> Optional[PendingEdit]:
        pending = self.snapshot.pending.get(entity_id)
        return pending.model_copy(deep=True) if pending else None

    # --- Resynchronisation ---

    def resync(self, subscription: Optional[Subscription] = None) -> int:
        """Discard any backlog and reload the authoritative snapshot."""
        if subscription is not None:
            self._discard_backlog(subscription)
        return self._load(self._fetch())

    def _discard_backlog(self, subscription: Subscription) -> None:
        dropped = subscription.drain()
        if dropped:
            logger.info(f"Resync discarded {len(dropped)} queued deltas")

    def _load(self, entities: List[dict]) -> int:
        self.snapshot.entities = {}
        self.snapshot.revisions = {}
        for pending in self.snapshot.pending.values():
            pending.deferred = {}

        for record in entities:
            entity_id = record["id"]
            revision = int(record.get("revision", 0))
            fields = {k: v for k, v in record.items() if k != "id"}
            self.snapshot.entities[entity_id] = {"id": entity_id}
            self._merge(entity_id, fields, revision)
            self.snapshot.revisions[entity_id] = revision
            self._observe(revision)

        # Edits on entities that no longer exist cannot commit.
        for entity_id in list(self.snapshot.pending):
            if entity_id not in self.snapshot.entities:
                del self.snapshot.pending[entity_id]

        logger.info(f"Resynchronised {len(entities)} entities")
        return len(entities)

    # --- Deltas ---

    def apply_delta(self, delta: EntityDelta) -> DeltaOutcome:
        known = self.snapshot.revisions.get(delta.entity_id, 0)
        if delta.revision <= known:
            return DeltaOutcome.STALE

        self._observe(delta.revision)
        self.snapshot.revisions[delta.entity_id] = delta.revision

        if delta.deleted:
            self.snapshot.entities.pop(delta.entity_id, None)
            if self.snapshot.pending.pop(delta.entity_id, None) is not None:
                logger.info(f"Entity {delta.entity_id} deleted remotely; local edit dropped")
            return DeltaOutcome.DELETED

        self.snapshot.entities.setdefault(delta.entity_id, {"id": delta.entity_id})
        held_back = self._merge(delta.entity_id, delta.changed_fields, delta.revision)
        return DeltaOutcome.PARTIAL if held_back else DeltaOutcome.APPLIED

    def _merge(self, entity_id: str, fields: Dict[str, Any], revision: int) -> bool:
        """Apply fields, parking those under a newer local edit. True if any were parked."""
        entity = self.snapshot.entities[entity_id]
        pending = self.snapshot.pending.get(entity_id)
        protected = set(pending.fields) if pending and pending.timestamp >= revision else set()

        held_back = False
        for name, value in fields.items():
            if name in protected:
                pending.deferred[name] = value
                held_back = True
            else:
                entity[name] = value
                if pending:
                    pending.deferred.pop(name, None)
        entity["revision"] = revision
        return held_back

    def _observe(self, revision: int) -> None:
        self.snapshot.clock = max(self.snapshot.clock, revision)

    # --- Local edits ---

    def begin_edit(self, entity_id: str, fields: Dict[str, Any]) -> PendingEdit:
        if entity_id not in self.snapshot.entities:
            raise NotFoundError(f"Entity {entity_id} is not in the local snapshot")
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")

        self.snapshot.clock += 1
        pending = self.snapshot.pending.get(entity_id)
        if pending is None:
            pending = PendingEdit(entity_id=entity_id, timestamp=self.snapshot.clock)
            self.snapshot.pending[entity_id] = pending
        pending.fields.update(fields)
        pending.timestamp = self.snapshot.clock
        return pending.model_copy(deep=True)

    def cancel_edit(self, entity_id: str) -> bool:
        pending = self.snapshot.pending.pop(entity_id, None)
        if pending is None:
            return False
        entity = self.snapshot.entities.get(entity_id)
        if entity is not None:
            entity.update(pending.deferred)
        return True

    async def commit_edit(self, entity_id: str) -> Optional[dict]:
        """
        Write the pending edit back to the authoritative store.

        The write runs off the event loop; deltas keep flowing meanwhile. On
        failure the edit stays pending and the error propagates.
        """
        pending = self.snapshot.pending.get(entity_id)
        if pending is None:
            raise NotFoundError(f"No pending edit for {entity_id}")
        values = dict(pending.fields)

        try:
            stored = await asyncio.to_thread(self._write_back, entity_id, values)
        except Exception:
            logger.warning(f"Write-back of {entity_id} failed; edit kept pending", exc_info=True)
            raise

        self._settle(entity_id, values)
        if stored and "revision" in stored and entity_id in self.snapshot.entities:
            revision = int(stored["revision"])
            if revision > self.snapshot.revisions.get(entity_id, 0):
                fields = {k: v for k, v in stored.items() if k != "id"}
                self._merge(entity_id, fields, revision)
                self.snapshot.revisions[entity_id] = revision
                self._observe(revision)
        return stored

    def _settle(self, entity_id: str, committed: Dict[str, Any]) -> None:
        """Fold committed values into the snapshot and retire them from the edit."""
        entity = self.snapshot.entities.get(entity_id)
        if entity is not None:
            entity.update(committed)

        pending = self.snapshot.pending.get(entity_id)
        if pending is None:
            return
        for name, value in committed.items():
            # Still being typed into since the write started: keep it pending.
            if pending.fields.get(name) == value:
                pending.fields.pop(name)
                pending.deferred.pop(name, None)
        if not pending.fields:
            del self.snapshot.pending[entity_id]

    # --- Feed consumption ---

    async def run(self, subscription: Subscription, stop_event: Optional[asyncio.Event] = None) -> None:
        """Resync, then apply deltas serially until stopped."""
        if stop_event is None:
            stop_event = asyncio.Event()

        self._discard_backlog(subscription)
        self._load(await asyncio.to_thread(self._fetch))

        while not stop_event.is_set():
            try:
                delta = await asyncio.wait_for(
                    subscription.get(), timeout=self.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                continue
            self.apply_delta(delta)
