"""
Room Manager - in-memory room registry and signaling relay.

Rooms are created lazily on the first join and dropped the moment their last
participant leaves. All mutations run synchronously on the event loop before
any outbound send is awaited, so each event is applied atomically and
concurrent video state patches resolve last-merge-wins.
"""
import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from fastapi import WebSocket

from config import MAX_ROOM_MESSAGES
from room_models import (
    ChatMessage,
    MessageEvent,
    Participant,
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    ParticipantsEvent,
    RelayedSignalEvent,
    SignalPayload,
    SnapshotEvent,
    VideoState,
    VideoStateEvent,
)

logger = logging.getLogger(__name__)


def epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Member:
    """A participant as the server sees it: identity plus its connection."""
    participant_id: str
    display_name: str
    websocket: WebSocket

    def public(self) -> Participant:
        return Participant(participant_id=self.participant_id, display_name=self.display_name)


@dataclass
class Room:
    """Represents a single watch room."""
    room_code: str
    users: Dict[str, Member] = field(default_factory=dict)
    video_state: VideoState = field(default_factory=VideoState)
    messages: Deque[ChatMessage] = field(default_factory=lambda: deque(maxlen=MAX_ROOM_MESSAGES))

    @property
    def user_count(self) -> int:
        return len(self.users)

    @property
    def is_empty(self) -> bool:
        return self.user_count == 0

    def participants(self) -> List[Participant]:
        return [member.public() for member in self.users.values()]


class ConnectionManager:
    """
    Owns every active room and routes room events between connections.

    None of the public operations raise for unknown rooms or participants;
    misses are logged and dropped.
    """

    def __init__(self, clock: Callable[[], int] = epoch_ms):
        self.rooms: Dict[str, Room] = {}
        # websocket -> {room_code: participant_id}, for implicit leave on teardown
        self.memberships: Dict[WebSocket, Dict[str, str]] = {}
        self._clock = clock

    def get_room(self, room_code: str) -> Optional[Room]:
        return self.rooms.get(room_code.upper())

    def participant_for(self, websocket: WebSocket, room_code: str) -> Optional[Member]:
        """Member record bound to this connection in the given room, if any."""
        room = self.get_room(room_code)
        participant_id = self.memberships.get(websocket, {}).get(room_code)
        if not room or participant_id is None:
            return None
        member = room.users.get(participant_id)
        if member is None or member.websocket is not websocket:
            return None
        return member

    def _delete_room(self, room_code: str):
        """Remove room and its state."""
        if room_code in self.rooms:
            del self.rooms[room_code]
            logger.info(f"Room {room_code} deleted (empty)")

    async def join(self, room_code: str, participant_id: str, display_name: str,
                   websocket: WebSocket) -> Room:
        """
        Add (or re-bind) a participant to a room, creating the room if needed.

        Sends the snapshot to the joining connection only, the participant
        list to the whole room and a join notice to everyone else.
        """
        room = self.rooms.get(room_code)
        if room is None:
            room = Room(room_code=room_code)
            self.rooms[room_code] = room
            logger.info(f"Room {room_code} created")

        previous = room.users.get(participant_id)
        if previous is not None and previous.websocket is not websocket:
            # Same participant re-joined over a new connection
            stale = self.memberships.get(previous.websocket, {})
            stale.pop(room_code, None)
            if not stale:
                self.memberships.pop(previous.websocket, None)

        # Same connection re-joined under a new id: the old entry goes
        replaced = self.memberships.get(websocket, {}).get(room_code)
        if replaced == participant_id:
            replaced = None
        if replaced is not None:
            member = room.users.get(replaced)
            if member is not None and member.websocket is websocket:
                del room.users[replaced]
                logger.info(f"User {member.display_name} ({replaced}) replaced by {participant_id} in room {room_code}")
            else:
                replaced = None

        room.users[participant_id] = Member(participant_id, display_name, websocket)
        self.memberships.setdefault(websocket, {})[room_code] = participant_id
        logger.info(f"User {display_name} ({participant_id}) joined room {room_code}")

        participants = room.participants()
        snapshot = SnapshotEvent(
            video_state=room.video_state,
            messages=list(room.messages),
            participants=participants,
        )
        others = [m.websocket for m in room.users.values() if m.participant_id != participant_id]

        await self._broadcast(room.users.values(), ParticipantsEvent(participants=participants))
        await self._send(websocket, snapshot)
        if replaced is not None:
            await self._send_many(others, ParticipantLeftEvent(participant_id=replaced))
        await self._send_many(others, ParticipantJoinedEvent(participant_id=participant_id))
        return room

    async def update_video_state(self, room_code: str, patch: Dict[str, Any]) -> Optional[VideoState]:
        """
        Merge a partial video state into the room and echo the full result to
        every member, sender included.
        """
        room = self.rooms.get(room_code)
        if not room:
            logger.debug(f"Video state for unknown room {room_code} dropped")
            return None

        merged = room.video_state.model_dump()
        merged.update(patch)
        merged["last_updated_at"] = max(self._clock(), room.video_state.last_updated_at)
        room.video_state = VideoState(**merged)

        await self._broadcast(room.users.values(), VideoStateEvent(video_state=room.video_state))
        return room.video_state

    async def post_message(self, room_code: str, participant_id: str, display_name: str,
                           text: str) -> Optional[ChatMessage]:
        """Append a chat message to the bounded log and broadcast it."""
        room = self.rooms.get(room_code)
        if not room:
            logger.debug(f"Chat message for unknown room {room_code} dropped")
            return None

        message = ChatMessage(
            id=uuid.uuid4().hex,
            participant_id=participant_id,
            display_name=display_name,
            text=text,
            created_at=self._clock(),
        )
        # deque(maxlen) evicts the oldest entry
        room.messages.append(message)

        await self._broadcast(room.users.values(), MessageEvent(message=message))
        return message

    async def relay_signal(self, room_code: str, from_id: str, to_id: str,
                           signal: SignalPayload) -> bool:
        """Forward a handshake message to a single participant of the room."""
        room = self.rooms.get(room_code)
        target = room.users.get(to_id) if room else None
        if target is None:
            logger.warning(f"Target user {to_id} not found in room {room_code}")
            return False

        await self._send(target.websocket, RelayedSignalEvent(
            from_id=from_id,
            signal_type=signal.type,
            data=signal.data,
        ))
        return True

    async def leave(self, room_code: str, participant_id: str,
                    websocket: Optional[WebSocket] = None) -> bool:
        """
        Remove a participant and notify the rest of the room.

        When ``websocket`` is given, the entry is only removed if it is still
        bound to that connection, so a stale connection cannot evict a
        participant that has re-joined elsewhere. Returns False when there was
        nothing to remove.
        """
        room = self.rooms.get(room_code)
        if not room:
            return False

        member = room.users.get(participant_id)
        if member is None:
            return False
        if websocket is not None and member.websocket is not websocket:
            return False

        del room.users[participant_id]
        joined = self.memberships.get(member.websocket)
        if joined is not None:
            joined.pop(room_code, None)
            if not joined:
                del self.memberships[member.websocket]
        logger.info(f"User {member.display_name} ({participant_id}) left room {room_code}")

        if room.is_empty:
            # Room empty - delete immediately
            self._delete_room(room_code)
            return True

        await self._broadcast(room.users.values(), ParticipantLeftEvent(participant_id=participant_id))
        await self._broadcast(room.users.values(), ParticipantsEvent(participants=room.participants()))
        return True

    async def disconnect(self, websocket: WebSocket):
        """Connection teardown: leave every room the connection had joined."""
        joined = self.memberships.pop(websocket, {})
        for room_code, participant_id in list(joined.items()):
            await self.leave(room_code, participant_id, websocket)

    async def _broadcast(self, members: Iterable[Member], event):
        await self._send_many([m.websocket for m in members], event)

    async def _send_many(self, websockets: List[WebSocket], event):
        """
        Fan out one event to many connections.
        Uses asyncio.gather for parallel send.
        """
        if not websockets:
            return

        data = event.model_dump_json()
        tasks = [self._safe_send(ws, data) for ws in websockets]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _send(self, websocket: WebSocket, event):
        await self._safe_send(websocket, event.model_dump_json())

    async def _safe_send(self, websocket: WebSocket, data: str):
        """Send with error handling."""
        try:
            await websocket.send_text(data)
        except Exception as e:
            # Connection may be closing; teardown handles the membership
            logger.debug(f"Send failed: {e}")

    def info(self, room: Room) -> Dict[str, Any]:
        return {
            "room_code": room.room_code,
            "user_count": room.user_count,
            "participants": [p.model_dump() for p in room.participants()],
            "message_count": len(room.messages),
        }


# Global connection manager instance
room_manager = ConnectionManager()
