"""
Inbound events — the closed set of lifecycle events the engine accepts.

Raw payloads are parsed at the boundary into exactly one of
CreateEvent | ReassignEvent | CompleteEvent | DeleteEvent. Anything else
is a ValidationError.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from mission_kernel.errors import ValidationError


def _required_text(value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        raise ValueError("must be a non-empty string")
    return str(value).strip()


class _EventModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class CreateEvent(_EventModel):
    """A task first seen (or re-delivered) by the tracker."""

    type: Literal["create"] = "create"
    external_id: str
    name: str
    description: Optional[str] = None
    kind: Optional[str] = None
    priority: Optional[str] = None
    points: Optional[int] = Field(default=None, ge=0)
    owner_hint: Optional[str] = None
    status: Optional[str] = None

    check_required = field_validator("external_id", "name", mode="before")(
        _required_text
    )


class ReassignEvent(_EventModel):
    type: Literal["reassign"] = "reassign"
    entity_id: str
    new_owner: str

    check_required = field_validator("entity_id", "new_owner", mode="before")(
        _required_text
    )


class CompleteEvent(_EventModel):
    type: Literal["complete"] = "complete"
    entity_id: str

    check_required = field_validator("entity_id", mode="before")(_required_text)


class DeleteEvent(_EventModel):
    type: Literal["delete"] = "delete"
    entity_id: str
    privileged: bool = False

    check_required = field_validator("entity_id", mode="before")(_required_text)


KernelEvent = Annotated[
    Union[CreateEvent, ReassignEvent, CompleteEvent, DeleteEvent],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(KernelEvent)


class InboundEvent(BaseModel):
    """
    Tracker webhook body. Unknown tracker fields are ignored; the required
    ones are validated exactly like a CreateEvent.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    external_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    kind: Optional[str] = None
    priority: Optional[str] = None
    points: Optional[int] = None
    owner_hint: Optional[str] = None
    status: Optional[str] = None

    def to_create_event(self) -> CreateEvent:
        return parse_event({"type": "create", **self.model_dump(exclude_none=True)})


def _describe(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    )


def parse_event(payload) -> Union[CreateEvent, ReassignEvent, CompleteEvent, DeleteEvent]:
    """Parse a raw payload into a tagged event or raise ValidationError."""
    if not isinstance(payload, dict):
        raise ValidationError("Event payload must be a JSON object")
    try:
        return _event_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid event: {_describe(exc)}",
            context={"type": payload.get("type")},
        ) from exc


def parse_inbound(payload) -> CreateEvent:
    """Parse a tracker webhook body into a CreateEvent."""
    if not isinstance(payload, dict):
        raise ValidationError("Event payload must be a JSON object")
    try:
        inbound = InboundEvent.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid event: {_describe(exc)}") from exc
    return inbound.to_create_event()
