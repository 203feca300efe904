"""
End-to-end test: a task's life on the mission map.

Runs the full kernel (store, gate, allocator, ledger, broadcaster and a
client-side reconciler) through one story:

  1. Tracker delivers T1 "Fix bug" for alex, twice
  2. T1 lands in alex's zone; a second task lands beside it, separated
  3. T2 is reassigned to milya and placed against milya's entities only
  4. A viewer's reconciler follows every change, with a local edit in flight
  5. T1 is completed: one transaction (T1, alex), balance up by its points
  6. T1 is completed again: no new transaction, balance unchanged
  7. The ledger audit holds
"""

import asyncio

from mission_kernel.coordinator.ownership import OwnershipCoordinator
from mission_kernel.models.events import parse_event, parse_inbound
from mission_kernel.models.transition import TransitionOutcome
from mission_kernel.realtime.broadcaster import DeltaBroadcaster
from mission_kernel.realtime.reconciler import DeltaOutcome, RealtimeReconciler
from mission_kernel.storage.store import KernelStore
from mission_kernel.zones.directory import ZoneDirectory


class TestMissionScenarioE2E:
    """Full lifecycle of tracker tasks through the kernel."""

    def setup_method(self):
        self.store = KernelStore(":memory:")
        self.directory = ZoneDirectory()
        self.broadcaster = DeltaBroadcaster()
        self.coordinator = OwnershipCoordinator(
            store=self.store,
            directory=self.directory,
            broadcaster=self.broadcaster,
        )

    def _fetch(self):
        return [e.model_dump(mode="json") for e in self.coordinator.snapshot()]

    def _write_back(self, entity_id, fields):
        return self.coordinator.update_fields(entity_id, fields).entity.model_dump(mode="json")

    def test_full_scenario(self):
        async def scenario():
            subscription = self.broadcaster.subscribe()
            viewer = RealtimeReconciler(self._fetch, self._write_back)
            viewer.resync(subscription)

            async def pump():
                await asyncio.sleep(0)
                outcomes = []
                for delta in subscription.drain():
                    outcomes.append(viewer.apply_delta(delta))
                return outcomes

            # 1-2. Creation, redelivery and placement
            payload = {"externalId": "T1", "name": "Fix bug", "ownerHint": "alex", "priority": "High"}
            first = self.coordinator.ingest(parse_inbound(payload))
            again = self.coordinator.ingest(parse_inbound(payload))
            assert first.outcome == TransitionOutcome.APPLIED
            assert again.outcome == TransitionOutcome.ALREADY_PROCESSED
            assert self.store.count_entities("T1") == 1

            t1 = first.entity
            alex_base = self.directory.zone_of("alex")
            assert t1.owner_id == "alex"
            assert t1.position.distance_to(alex_base) >= 150

            t2 = self.coordinator.ingest(
                parse_inbound({"externalId": "T2", "name": "Write docs", "ownerHint": "alex"})
            ).entity
            assert t2.position.distance_to(t1.position) >= 150

            await pump()
            assert viewer.view(t1.id)["name"] == "Fix bug"

            # 3. Reassignment: milya already owns T3 next to milya's base
            t3 = self.coordinator.ingest(
                parse_inbound({"externalId": "T3", "name": "Triage", "ownerHint": "milya"})
            ).entity
            self.coordinator.mark_seen(t2.id, "alex")
            moved = self.coordinator.handle(
                parse_event({"type": "reassign", "entityId": t2.id, "newOwner": "milya"})
            ).entity
            milya_base = self.directory.zone_of("milya")
            assert moved.seen_by == {}
            assert moved.position.distance_to(milya_base) >= 150
            assert moved.position.distance_to(t3.position) >= 150
            # Only milya's entities are obstacles: it takes the slot after T3's.
            assert moved.position == self.coordinator.allocator.slot(milya_base, 1)

            await pump()
            assert viewer.view(t2.id)["owner_id"] == "milya"

            # 4. A local edit in flight while someone else renames the task
            viewer.begin_edit(t1.id, {"description": "Repro on staging"})
            self.coordinator.update_fields(t1.id, {"description": "Upstream text", "kind": "bug"})
            outcomes = await pump()
            assert outcomes == [DeltaOutcome.PARTIAL]
            assert viewer.view(t1.id)["description"] == "Repro on staging"
            assert viewer.view(t1.id)["kind"] == "bug"

            await viewer.commit_edit(t1.id)
            assert self.coordinator.get(t1.id).description == "Repro on staging"
            await pump()
            assert viewer.pending_edit(t1.id) is None

            # 5. Completion credits alex once
            done = self.coordinator.handle(parse_event({"type": "complete", "entityId": t1.id}))
            assert done.entity.completed
            transactions = self.coordinator.ledger.transactions("default")
            assert [(t.source_id, t.payee_id, t.points) for t in transactions] == [("T1", "alex", 80)]
            assert self.coordinator.ledger.balance("default").total_points == 80

            # 6. Re-completion is a no-op
            replay = self.coordinator.complete(t1.id)
            assert replay.outcome == TransitionOutcome.ALREADY_PROCESSED
            assert len(self.coordinator.ledger.transactions("default")) == 1
            assert self.coordinator.ledger.balance("default").total_points == 80

            await pump()
            assert viewer.view(t1.id)["completed"] is True

            # 7. Audit
            assert self.coordinator.ledger.audit("default").consistent
            self.broadcaster.unsubscribe(subscription)

        asyncio.run(scenario())
