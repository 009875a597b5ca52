"""
Pydantic models for the room event channel.

Every frame on the WebSocket is a JSON object with a ``type`` field. Inbound
(client -> server) and outbound (server -> client) frames are closed unions
discriminated on that field.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class VideoState(BaseModel):
    """Shared playback state of a room."""
    url: str = ""
    is_playing: bool = False
    position_seconds: float = 0.0
    last_updated_at: int = 0  # epoch ms, server-assigned
    last_updated_by: str = ""


class VideoStatePatch(BaseModel):
    """Partial video state; unset fields keep their current value."""
    url: Optional[str] = None
    is_playing: Optional[bool] = None
    position_seconds: Optional[float] = Field(default=None, ge=0)
    last_updated_by: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Participant(BaseModel):
    participant_id: str
    display_name: str


class ChatMessage(BaseModel):
    id: str
    participant_id: str
    display_name: str
    text: str
    created_at: int  # epoch ms, server-assigned


class SignalPayload(BaseModel):
    type: Literal["offer", "answer", "ice-candidate"]
    data: Dict[str, Any] = Field(default_factory=dict)


# ============ INBOUND ============

class JoinEvent(BaseModel):
    type: Literal["join"]
    room_code: str
    participant_id: str = Field(min_length=1, max_length=64)
    display_name: str = ""


class LeaveEvent(BaseModel):
    type: Literal["leave"]
    room_code: str
    participant_id: str


class PostVideoStateEvent(BaseModel):
    type: Literal["post_video_state"]
    room_code: str
    video_state: VideoStatePatch


class PostMessageEvent(BaseModel):
    type: Literal["post_message"]
    room_code: str
    text: str


class SignalEvent(BaseModel):
    type: Literal["signal"]
    room_code: str
    to: str
    signal: SignalPayload


InboundEvent = Annotated[
    Union[JoinEvent, LeaveEvent, PostVideoStateEvent, PostMessageEvent, SignalEvent],
    Field(discriminator="type"),
]
inbound_event = TypeAdapter(InboundEvent)


# ============ OUTBOUND ============

class SnapshotEvent(BaseModel):
    type: Literal["snapshot"] = "snapshot"
    video_state: VideoState
    messages: List[ChatMessage]
    participants: List[Participant]


class ParticipantsEvent(BaseModel):
    type: Literal["participants"] = "participants"
    participants: List[Participant]


class VideoStateEvent(BaseModel):
    type: Literal["video_state"] = "video_state"
    video_state: VideoState


class MessageEvent(BaseModel):
    type: Literal["message"] = "message"
    message: ChatMessage


class ParticipantJoinedEvent(BaseModel):
    type: Literal["participant_joined"] = "participant_joined"
    participant_id: str


class ParticipantLeftEvent(BaseModel):
    type: Literal["participant_left"] = "participant_left"
    participant_id: str


class RelayedSignalEvent(BaseModel):
    type: Literal["signal"] = "signal"
    from_id: str
    signal_type: str
    data: Dict[str, Any] = Field(default_factory=dict)


OutboundEvent = Annotated[
    Union[
        SnapshotEvent,
        ParticipantsEvent,
        VideoStateEvent,
        MessageEvent,
        ParticipantJoinedEvent,
        ParticipantLeftEvent,
        RelayedSignalEvent,
    ],
    Field(discriminator="type"),
]
outbound_event = TypeAdapter(OutboundEvent)
