"""
Ownership Coordinator — the per-entity lifecycle state machine.

States:
  UNASSIGNED → ASSIGNED(owner) → COMPLETED
  ASSIGNED(owner) → ASSIGNED(owner')            (reassign)
  UNASSIGNED | ASSIGNED → DELETED               (delete)
  COMPLETED → DELETED                           (destroy; privileged only)

Behavioral Contract:
- Every transition reads, decides and writes inside one unit of work; the
  Idempotency Gate's admission and the ledger credit join that unit.
- Placement reads the target zone's occupied positions in the same unit of
  work that writes the new position.
- After commit: broadcast the delta, then mirror to the tracker. A tracker
  failure becomes a warning on the result; it never undoes local state.
- Replays are successes with outcome ALREADY_PROCESSED, never errors.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from mission_kernel.errors import (
    ConflictError,
    ExternalNotifyFailure,
    NotFoundError,
    StorageError,
    ValidationError,
)
from mission_kernel.idempotency.gate import Admission, IdempotencyGate
from mission_kernel.ledger.ledger import PointLedger
from mission_kernel.logging_utils import get_logger, log_transition
from mission_kernel.models.engine import EngineConfig
from mission_kernel.models.entity import EDITABLE_FIELDS, Entity
from mission_kernel.models.events import (
    CompleteEvent,
    CreateEvent,
    DeleteEvent,
    ReassignEvent,
)
from mission_kernel.models.realtime import EntityDelta
from mission_kernel.models.transition import TransitionOutcome, TransitionResult
from mission_kernel.models.zone import Coordinate
from mission_kernel.placement.allocator import SpatialAllocator
from mission_kernel.realtime.broadcaster import DeltaBroadcaster
from mission_kernel.storage.store import KernelStore, StoreTransaction
from mission_kernel.tracker.notifier import (
    NullTrackerNotifier,
    TrackerAction,
    TrackerNotifier,
    TrackerUpdate,
)
from mission_kernel.zones.directory import ZoneDirectory, normalize_owner

logger = get_logger("mission_kernel.coordinator")


def parse_priority(raw: Optional[str]) -> str:
    """Map a free-form tracker priority onto critical/high/medium/low."""
    if not raw:
        return "medium"
    lower = raw.lower()
    for level in ("critical", "high", "low"):
        if level in lower:
            return level
    return "medium"


class OwnershipCoordinator:
    def __init__(
        self,
        store: KernelStore,
        directory: Optional[ZoneDirectory] = None,
        config: Optional[EngineConfig] = None,
        allocator: Optional[SpatialAllocator] = None,
        ledger: Optional[PointLedger] = None,
        notifier: Optional[TrackerNotifier] = None,
        broadcaster: Optional[DeltaBroadcaster] = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.directory = directory or ZoneDirectory()
        self.allocator = allocator or SpatialAllocator(self.directory, self.config.allocator)
        self.gate = IdempotencyGate(store)
        self.ledger = ledger or PointLedger(store, self.gate)
        self.notifier = notifier or NullTrackerNotifier()
        self.broadcaster = broadcaster or DeltaBroadcaster()

        self._handlers: Dict[type, Callable[[Any], TransitionResult]] = {
            CreateEvent: self.ingest,
            ReassignEvent: lambda e: self.reassign(e.entity_id, e.new_owner),
            CompleteEvent: lambda e: self.complete(e.entity_id),
            DeleteEvent: lambda e: self.delete(e.entity_id, privileged=e.privileged),
        }

    @property
    def team_id(self) -> str:
        return self.config.team_id

    def handle(self, event) -> TransitionResult:
        """Dispatch a parsed event to its transition."""
        handler = self._handlers.get(type(event))
        if handler is None:
            raise ValidationError(f"Unsupported event type: {type(event).__name__}")
        return handler(event)

    # --- Create ---

    def ingest(self, event: CreateEvent) -> TransitionResult:
        """
        Admit a tracker event. First sight creates and places the entity; a
        re-delivery is a no-op. A terminal tracker status then drives an
        idempotent completion.
        """
        owner = normalize_owner(event.owner_hint)
        now = datetime.utcnow()

        with self.store.unit_of_work() as tx:
            if self.gate.admit(event.external_id, tx) == Admission.ALREADY_PROCESSED:
                entity = tx.get_entity_by_external_id(event.external_id)
                created = False
            else:
                entity = Entity(
                    id=f"ent_{uuid4().hex[:12]}",
                    external_id=event.external_id,
                    team_id=self.team_id,
                    owner_id=owner,
                    name=event.name,
                    description=event.description,
                    kind=event.kind,
                    priority=event.priority,
                    points=event.points,
                    position=self._allocate(tx, owner),
                    created_at=now,
                    updated_at=now,
                )
                tx.insert_entity(entity)
                created = True

        if created:
            log_transition(logger, "create", entity.id, external_id=event.external_id, owner=owner)
            self._publish(entity)
            result = TransitionResult(
                outcome=TransitionOutcome.APPLIED,
                transition="create",
                entity_id=entity.id,
                entity=entity,
            )
        else:
            logger.info(
                f"Event {event.external_id} already processed",
                extra={"external_id": event.external_id},
            )
            result = TransitionResult(
                outcome=TransitionOutcome.ALREADY_PROCESSED,
                transition="create",
                entity_id=entity.id if entity else None,
                entity=entity,
            )

        if entity is not None and self._is_terminal(event.status):
            result = self._complete_from_tracker(entity, result)
        return result

    def _is_terminal(self, status: Optional[str]) -> bool:
        if not status:
            return False
        return status.strip().lower() in {s.lower() for s in self.config.terminal_statuses}

    def _complete_from_tracker(self, entity: Entity, result: TransitionResult) -> TransitionResult:
        if not entity.owner_id:
            logger.info(f"Tracker marked {entity.external_id} done but it has no owner; not completing")
            return result
        completion = self.complete(entity.id, notify_tracker=False)
        return result.model_copy(
            update={"entity": completion.entity, "credit": completion.credit}
        )

    # --- Reassign ---

    def reassign(self, entity_id: str, new_owner: str) -> TransitionResult:
        owner = normalize_owner(new_owner)
        if owner is None:
            raise ValidationError("new_owner is required")

        with self.store.unit_of_work() as tx:
            entity = self._require(tx, entity_id)
            if entity.completed:
                raise ConflictError(
                    f"Cannot reassign completed entity {entity_id}",
                    context={"entity_id": entity_id},
                )
            updated = self._next_revision(
                entity,
                owner_id=owner,
                position=self._allocate(tx, owner, exclude_id=entity.id),
                seen_by={},
            )
            self._write(tx, entity, updated)

        log_transition(
            logger, "reassign", entity_id, previous_owner=entity.owner_id, owner=owner
        )
        self._publish(updated, ("owner_id", "position", "seen_by"))
        warning = self._notify(TrackerUpdate(updated.external_id, TrackerAction.REASSIGN, owner))
        return TransitionResult(
            outcome=TransitionOutcome.APPLIED,
            transition="reassign",
            entity_id=entity_id,
            entity=updated,
            previous_owner=entity.owner_id,
            warning=warning,
        )

    # --- Complete ---

    def complete(self, entity_id: str, notify_tracker: bool = True) -> TransitionResult:
        """Complete an assigned entity and credit its owner, exactly once."""
        with self.store.unit_of_work() as tx:
            entity = self._require(tx, entity_id)
            if entity.completed:
                logger.info(f"Entity {entity_id} already completed")
                return TransitionResult(
                    outcome=TransitionOutcome.ALREADY_PROCESSED,
                    transition="complete",
                    entity_id=entity_id,
                    entity=entity,
                )
            if not entity.owner_id:
                raise ConflictError(
                    f"Cannot complete unassigned entity {entity_id}",
                    context={"entity_id": entity_id},
                )

            updated = self._next_revision(entity, completed=True)
            self._write(tx, entity, updated)
            credit = self.ledger.credit(
                team_id=entity.team_id,
                payee_id=entity.owner_id,
                source_id=entity.external_id,
                label=f"{self.config.completion_label_prefix}{entity.name}",
                points=self.points_for(entity),
            )

        log_transition(
            logger,
            "complete",
            entity_id,
            owner=entity.owner_id,
            credit=credit.outcome.value,
        )
        self._publish(updated, ("completed",))
        warning = None
        if notify_tracker:
            warning = self._notify(TrackerUpdate(updated.external_id, TrackerAction.COMPLETE))
        return TransitionResult(
            outcome=TransitionOutcome.APPLIED,
            transition="complete",
            entity_id=entity_id,
            entity=updated,
            credit=credit,
            warning=warning,
        )

    def points_for(self, entity: Entity) -> int:
        if entity.points:
            return entity.points
        if entity.priority:
            return self.config.priority_points.get(
                parse_priority(entity.priority), self.config.default_points
            )
        return self.config.default_points

    # --- Delete / Destroy ---

    def delete(self, entity_id: str, privileged: bool = False) -> TransitionResult:
        """
        Remove an entity. Completed entities need the privileged destroy.
        Never touches the ledger.
        """
        with self.store.unit_of_work() as tx:
            entity = self._require(tx, entity_id)
            if entity.completed and not privileged:
                raise ConflictError(
                    f"Completed entity {entity_id} can only be destroyed with the privileged action",
                    context={"entity_id": entity_id},
                )
            tx.delete_entity(entity_id)

        transition = "destroy" if privileged else "delete"
        log_transition(logger, transition, entity_id, external_id=entity.external_id)
        self.broadcaster.publish(
            EntityDelta(entity_id=entity_id, revision=entity.revision + 1, deleted=True)
        )
        warning = None
        if privileged:
            warning = self._notify(TrackerUpdate(entity.external_id, TrackerAction.DESTROY))
        return TransitionResult(
            outcome=TransitionOutcome.APPLIED,
            transition=transition,
            entity_id=entity_id,
            entity=entity,
            deleted=True,
            warning=warning,
        )

    # --- Field edits and visibility ---

    def update_fields(self, entity_id: str, changes: Dict[str, Any]) -> TransitionResult:
        if not changes:
            raise ValidationError("No fields to update")
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
        if "name" in changes and not str(changes["name"] or "").strip():
            raise ValidationError("name must be a non-empty string")

        with self.store.unit_of_work() as tx:
            entity = self._require(tx, entity_id)
            if entity.completed:
                raise ConflictError(
                    f"Completed entity {entity_id} is immutable",
                    context={"entity_id": entity_id},
                )
            try:
                updated = Entity.model_validate(
                    {
                        **entity.model_dump(),
                        **changes,
                        "revision": entity.revision + 1,
                        "updated_at": datetime.utcnow(),
                    }
                )
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid field values: {exc.error_count()} error(s)") from exc
            self._write(tx, entity, updated)

        log_transition(logger, "update", entity_id, fields=sorted(changes))
        self._publish(updated, tuple(changes))
        return TransitionResult(
            outcome=TransitionOutcome.APPLIED,
            transition="update",
            entity_id=entity_id,
            entity=updated,
        )

    def mark_seen(self, entity_id: str, viewer: str) -> TransitionResult:
        viewer = normalize_owner(viewer)
        if viewer is None:
            raise ValidationError("viewer is required")

        with self.store.unit_of_work() as tx:
            entity = self._require(tx, entity_id)
            if entity.seen_by.get(viewer):
                return TransitionResult(
                    outcome=TransitionOutcome.ALREADY_PROCESSED,
                    transition="seen",
                    entity_id=entity_id,
                    entity=entity,
                )
            if entity.completed:
                raise ConflictError(
                    f"Completed entity {entity_id} is immutable",
                    context={"entity_id": entity_id},
                )
            updated = self._next_revision(entity, seen_by={**entity.seen_by, viewer: True})
            self._write(tx, entity, updated)

        self._publish(updated, ("seen_by",))
        return TransitionResult(
            outcome=TransitionOutcome.APPLIED,
            transition="seen",
            entity_id=entity_id,
            entity=updated,
        )

    # --- Queries ---

    def get(self, entity_id: str) -> Entity:
        entity = self.store.get_entity(entity_id)
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} not found", context={"entity_id": entity_id})
        return entity

    def snapshot(self) -> List[Entity]:
        """Authoritative state for subscriber resync."""
        return self.store.list_entities(self.team_id)

    # --- Internals ---

    def _require(self, tx: StoreTransaction, entity_id: str) -> Entity:
        entity = tx.get_entity(entity_id)
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} not found", context={"entity_id": entity_id})
        return entity

    def _allocate(
        self, tx: StoreTransaction, owner: Optional[str], exclude_id: Optional[str] = None
    ) -> Coordinate:
        """Place in the owner's zone against that zone's current occupants."""
        if owner is not None and not self.directory.knows(owner):
            logger.info(f"Owner {owner} has no zone; placing around the fallback anchor")
        occupied = [
            Coordinate(x=x, y=y)
            for entity_id, occupant, x, y in tx.placements(self.team_id)
            if entity_id != exclude_id and self.directory.same_zone(occupant, owner)
        ]
        result = self.allocator.allocate_detailed(owner, occupied)
        if result.fallback:
            logger.warning(
                f"Zone of {owner or 'unassigned'} is full; placed on the fallback ring",
                extra={"owner": owner, "occupied": len(occupied), **result.to_dict()},
            )
        return result.position

    @staticmethod
    def _next_revision(entity: Entity, **changes) -> Entity:
        return entity.model_copy(
            update={**changes, "revision": entity.revision + 1, "updated_at": datetime.utcnow()}
        )

    @staticmethod
    def _write(tx: StoreTransaction, before: Entity, after: Entity) -> None:
        if not tx.update_entity(after, expected_revision=before.revision):
            raise StorageError(
                f"Entity {before.id} changed during the unit of work",
                context={"entity_id": before.id},
            )

    def _publish(self, entity: Entity, fields: Optional[tuple] = None) -> None:
        if fields is None:
            data = entity.model_dump(mode="json")
        else:
            public = entity.public_fields()
            data = {name: public[name] for name in fields}
        self.broadcaster.publish(
            EntityDelta(entity_id=entity.id, changed_fields=data, revision=entity.revision)
        )

    def _notify(self, update: TrackerUpdate) -> Optional[str]:
        try:
            self.notifier.notify(update)
        except ExternalNotifyFailure as exc:
            logger.warning(
                f"Tracker update failed for {update.external_id}: {exc.message}",
                extra={"external_id": update.external_id, "action": update.action.value},
            )
            return f"Local state committed but tracker update failed: {exc.message}"
        return None
