"""
Tracker Notifier — best-effort mirror of local transitions to the tracker.

Behavioral Contract:
- Local state is authoritative; the tracker is a mirror. Callers commit
  first, notify second, and never roll back on a notify failure.
- One attempt per candidate shape, no retries. Shapes are tried in order
  until the tracker accepts one; only the final failure is raised.
- Shape builders are registered per action, so the tracker's field
  vocabulary stays out of the engine.
"""

from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional

import requests

from mission_kernel import config
from mission_kernel.errors import ExternalNotifyFailure
from mission_kernel.logging_utils import get_logger

logger = get_logger("mission_kernel.tracker")


class TrackerAction(str, Enum):
    COMPLETE = "complete"
    DESTROY = "destroy"
    REASSIGN = "reassign"


class TrackerUpdate:
    """An externally visible change to mirror onto one tracker item."""

    def __init__(self, external_id: str, action: TrackerAction, owner_id: Optional[str] = None):
        self.external_id = external_id
        self.action = action
        self.owner_id = owner_id

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "action": self.action.value,
            "owner_id": self.owner_id,
        }


class TrackerNotifier:
    """Interface. notify() returns normally or raises ExternalNotifyFailure."""

    def notify(self, update: TrackerUpdate) -> None:
        raise NotImplementedError


class NullTrackerNotifier(TrackerNotifier):
    """Used when no tracker credentials are configured."""

    def notify(self, update: TrackerUpdate) -> None:
        logger.debug(
            f"Tracker not configured; skipping {update.action.value} for {update.external_id}"
        )


class HttpTrackerNotifier(TrackerNotifier):
    """PATCHes tracker pages over HTTP with `requests`."""

    def __init__(
        self,
        base_url: str = config.TRACKER_BASE_URL,
        token: str = config.TRACKER_API_TOKEN,
        api_version: str = config.TRACKER_API_VERSION,
        timeout: float = config.TRACKER_TIMEOUT_SECONDS,
        owner_user_ids: Optional[Mapping[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.api_version = api_version
        self.timeout = timeout
        self.owner_user_ids = dict(
            config.TRACKER_OWNER_USER_IDS if owner_user_ids is None else owner_user_ids
        )
        self.session = session or requests.Session()
        self._shape_builders: Dict[TrackerAction, Callable[[TrackerUpdate], List[dict]]] = {}
        self._register_default_shapes()

    def _register_default_shapes(self) -> None:
        self._shape_builders[TrackerAction.COMPLETE] = self._complete_shapes
        self._shape_builders[TrackerAction.DESTROY] = self._destroy_shapes
        self._shape_builders[TrackerAction.REASSIGN] = self._reassign_shapes

    def register_shapes(
        self, action: TrackerAction, builder: Callable[[TrackerUpdate], List[dict]]
    ) -> None:
        """Override the candidate update bodies for an action."""
        self._shape_builders[action] = builder

    def candidate_shapes(self, update: TrackerUpdate) -> List[dict]:
        builder = self._shape_builders.get(update.action)
        return builder(update) if builder else []

    def notify(self, update: TrackerUpdate) -> None:
        shapes = self.candidate_shapes(update)
        if not shapes:
            logger.info(
                f"No tracker update shape for {update.action.value} on {update.external_id}; skipping"
            )
            return

        url = f"{self.base_url}/pages/{update.external_id}"
        last_error = ""
        for index, body in enumerate(shapes, start=1):
            try:
                response = self.session.patch(
                    url, json=body, headers=self._headers(), timeout=self.timeout
                )
            except requests.RequestException as exc:
                raise ExternalNotifyFailure(
                    f"Tracker unreachable: {exc}",
                    context=update.to_dict(),
                ) from exc

            if response.ok:
                logger.info(
                    f"Tracker accepted {update.action.value} for {update.external_id} "
                    f"(shape {index}/{len(shapes)})"
                )
                return

            last_error = f"HTTP {response.status_code}: {response.text[:500]}"
            logger.debug(
                f"Tracker rejected shape {index}/{len(shapes)} for {update.external_id}: {last_error}"
            )

        raise ExternalNotifyFailure(
            f"Tracker rejected every update shape: {last_error}",
            context=update.to_dict(),
        )

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Notion-Version": self.api_version,
        }

    # --- Default shapes ---

    def _complete_shapes(self, update: TrackerUpdate) -> List[dict]:
        return [
            {"properties": {"Status": {"select": {"name": "Archived"}}}},
            {"properties": {"Status": {"status": {"name": "Archived"}}}},
        ]

    def _destroy_shapes(self, update: TrackerUpdate) -> List[dict]:
        return [
            {"properties": {"Status": {"select": {"name": "Destroyed"}}}},
            {"archived": True},
        ]

    def _reassign_shapes(self, update: TrackerUpdate) -> List[dict]:
        user_id = self.owner_user_ids.get((update.owner_id or "").lower())
        if not user_id:
            return []
        return [{"properties": {"Attributed to": {"people": [{"id": user_id}]}}}]


def build_notifier() -> TrackerNotifier:
    """Notifier for the configured environment."""
    if config.TRACKER_API_TOKEN:
        return HttpTrackerNotifier()
    return NullTrackerNotifier()
