"""
Session client: one participant's handle on a watch room.

Sends room events over the transport and mirrors the room state pushed back
by the server. Consumers subscribe with ``session.on(<event>, handler)``.
"""
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, List, MutableMapping, Optional

import websockets
from pydantic import ValidationError
from pyee.asyncio import AsyncIOEventEmitter

from config import MAX_ROOM_MESSAGES, SIGNALING_URL
from room_models import (
    ChatMessage,
    MessageEvent,
    Participant,
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    ParticipantsEvent,
    RelayedSignalEvent,
    SnapshotEvent,
    VideoState,
    VideoStateEvent,
    VideoStatePatch,
    outbound_event,
)
from utils.code_generator import generate_participant_id

logger = logging.getLogger(__name__)

# Lives as long as the process, the way browser session storage lives as
# long as the tab.
SESSION_STORAGE: Dict[str, str] = {}
PARTICIPANT_ID_KEY = "watchPartyUserId"


def session_participant_id(storage: MutableMapping[str, str] = SESSION_STORAGE) -> str:
    """Participant id for this session, generated on first use."""
    participant_id = storage.get(PARTICIPANT_ID_KEY)
    if not participant_id:
        participant_id = generate_participant_id()
        storage[PARTICIPANT_ID_KEY] = participant_id
    return participant_id


class SessionClient(AsyncIOEventEmitter):
    """
    Room membership, chat and shared video state for one participant.

    Events: ``snapshot``, ``participants``, ``video_state``, ``message``,
    ``participant_joined``, ``participant_left``, ``signal``.
    """

    def __init__(self, transport, room_code: str, participant_id: str, display_name: str):
        super().__init__()
        self.transport = transport
        self.room_code = room_code.strip().upper()
        self.participant_id = participant_id
        self.display_name = display_name
        self.joined = False

        self.video_state: Optional[VideoState] = None
        self.messages: Deque[ChatMessage] = deque(maxlen=MAX_ROOM_MESSAGES)
        self.participants: List[Participant] = []

        self._handlers = {
            "snapshot": self._on_snapshot,
            "participants": self._on_participants,
            "video_state": self._on_video_state,
            "message": self._on_message,
            "participant_joined": self._on_participant_joined,
            "participant_left": self._on_participant_left,
            "signal": self._on_signal,
        }

    @property
    def participant_ids(self) -> List[str]:
        return [p.participant_id for p in self.participants]

    async def _send(self, payload: Dict[str, Any]):
        payload["room_code"] = self.room_code
        await self.transport.send(json.dumps(payload))

    async def join(self):
        await self._send({
            "type": "join",
            "participant_id": self.participant_id,
            "display_name": self.display_name,
        })
        self.joined = True

    async def leave(self):
        if not self.joined:
            return
        self.joined = False
        await self._send({"type": "leave", "participant_id": self.participant_id})

    async def send_message(self, text: str):
        text = (text or "").strip()
        if not text:
            return
        await self._send({"type": "post_message", "text": text})

    async def update_video_state(self, **changes):
        """Send a partial video state, stamped with this participant's id."""
        patch = VideoStatePatch(**changes, last_updated_by=self.participant_id)
        await self._send({"type": "post_video_state", "video_state": patch.changes()})

    async def send_signal(self, to: str, signal_type: str, data: Dict[str, Any]):
        await self._send({
            "type": "signal",
            "to": to,
            "signal": {"type": signal_type, "data": data},
        })

    async def listen(self):
        """Consume server events until the transport closes."""
        async for raw in self.transport:
            self.handle_raw(raw)

    def handle_raw(self, raw):
        try:
            event = outbound_event.validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed server event: {e.error_count()} errors")
            return
        self._handlers[event.type](event)

    async def close(self):
        await self.leave()
        await self.transport.close()

    # ============ SERVER EVENTS ============

    def _on_snapshot(self, event: SnapshotEvent):
        logger.debug(f"Received snapshot for room {self.room_code}")
        self.video_state = event.video_state
        self.messages.clear()
        self.messages.extend(event.messages)
        self.participants = event.participants
        self.emit("snapshot", event)

    def _on_participants(self, event: ParticipantsEvent):
        self.participants = event.participants
        self.emit("participants", event.participants)

    def _on_video_state(self, event: VideoStateEvent):
        self.video_state = event.video_state
        self.emit("video_state", event.video_state)

    def _on_message(self, event: MessageEvent):
        self.messages.append(event.message)
        self.emit("message", event.message)

    def _on_participant_joined(self, event: ParticipantJoinedEvent):
        logger.info(f"User connected: {event.participant_id}")
        self.emit("participant_joined", event.participant_id)

    def _on_participant_left(self, event: ParticipantLeftEvent):
        logger.info(f"User disconnected: {event.participant_id}")
        self.emit("participant_left", event.participant_id)

    def _on_signal(self, event: RelayedSignalEvent):
        self.emit("signal", event.from_id, event.signal_type, event.data)


async def connect_session(room_code: str, display_name: str, url: str = SIGNALING_URL,
                          participant_id: Optional[str] = None) -> SessionClient:
    """Open the room channel and join ``room_code``."""
    websocket = await websockets.connect(url)
    session = SessionClient(
        websocket,
        room_code,
        participant_id or session_participant_id(),
        display_name,
    )
    await session.join()
    return session
