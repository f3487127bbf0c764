from __future__ import annotations
import json
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class WebhookValidationError(ValueError):
    """Inbound body rejected at the boundary; never reaches the pipeline."""


class _InboundBase(BaseModel):
    model_config = ConfigDict(extra="ignore")
    session_id: str = Field(min_length=1)
    turn_id: Optional[str] = None

class SessionStartEvent(_InboundBase):
    type: Literal["session.start"]

class SessionUpdateEvent(_InboundBase):
    type: Literal["session.update"]

class SessionEndEvent(_InboundBase):
    type: Literal["session.end"]

class MessageEvent(_InboundBase):
    type: Literal["message"]
    text: str = Field(min_length=1)

# Any other tag: handled explicitly by the dispatcher, never a fallthrough.
class UnrecognizedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: str
    session_id: str = ""
    turn_id: Optional[str] = None

KnownWebhookEvent = Annotated[
    Union[
        SessionStartEvent,
        SessionUpdateEvent,
        SessionEndEvent,
        MessageEvent,
    ],
    Field(discriminator="type"),
]

WebhookEvent = Union[
    SessionStartEvent,
    SessionUpdateEvent,
    SessionEndEvent,
    MessageEvent,
    UnrecognizedEvent,
]

RECOGNIZED_EVENT_TYPES = frozenset({"session.start", "session.update", "session.end", "message"})

_known_adapter = TypeAdapter(KnownWebhookEvent)


def _describe(err: ValidationError) -> str:
    parts: list[str] = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ()) if p not in RECOGNIZED_EVENT_TYPES)
        parts.append(f"{loc or 'body'}: {e.get('msg', 'invalid')}")
    return "; ".join(parts) or "invalid body"


def parse_webhook_json(raw_text: str | bytes) -> WebhookEvent:
    try:
        obj = json.loads(raw_text)
    except (TypeError, ValueError) as e:
        raise WebhookValidationError("Request body must be valid JSON.") from e
    return parse_webhook_obj(obj)


def parse_webhook_obj(obj: Any) -> WebhookEvent:
    if not isinstance(obj, dict):
        raise WebhookValidationError("Request body must be an object.")
    raw_type = obj.get("type")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise WebhookValidationError("type is required.")
    try:
        if raw_type in RECOGNIZED_EVENT_TYPES:
            return _known_adapter.validate_python(obj)
        return UnrecognizedEvent.model_validate(obj)
    except ValidationError as e:
        raise WebhookValidationError(_describe(e)) from e


class OutboundTTS(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["response.tts"] = "response.tts"
    content: str
    turn_id: Optional[str] = None

class OutboundData(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["response.data"] = "response.data"
    content: dict[str, Any]
    turn_id: Optional[str] = None

class OutboundEnd(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["response.end"] = "response.end"
    turn_id: Optional[str] = None

OutboundEvent = Annotated[
    Union[
        OutboundTTS,
        OutboundData,
        OutboundEnd,
    ],
    Field(discriminator="type"),
]

_outbound_adapter = TypeAdapter(OutboundEvent)


def parse_outbound_json(raw_text: str) -> OutboundEvent:
    return _outbound_adapter.validate_python(json.loads(raw_text))

def dumps_outbound(event: OutboundEvent) -> str:
    return json.dumps(event.model_dump(exclude_none=True), separators=(",", ":"), sort_keys=True)

def sse_frame(event: OutboundEvent) -> str:
    return f"data: {dumps_outbound(event)}\n\n"
