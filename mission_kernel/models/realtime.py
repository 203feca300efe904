"""Realtime feed records and the per-client snapshot."""

from typing import Any, Dict

from pydantic import BaseModel


class EntityDelta(BaseModel):
    """One change pushed on the realtime feed."""

    entity_id: str
    changed_fields: Dict[str, Any] = {}
    revision: int
    deleted: bool = False


class PendingEdit(BaseModel):
    """
    A local optimistic edit not yet written back.

    `deferred` holds incoming values for the edited fields that were held
    back while the edit was newer than the delta; they are restored if the
    edit is cancelled.
    """

    entity_id: str
    fields: Dict[str, Any] = {}
    timestamp: int
    deferred: Dict[str, Any] = {}


class ClientSnapshot(BaseModel):
    """Local cache held by one connected viewer."""

    entities: Dict[str, Dict[str, Any]] = {}
    revisions: Dict[str, int] = {}
    pending: Dict[str, PendingEdit] = {}
    clock: int = 0
