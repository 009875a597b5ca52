"""Peer mesh manager: one WebRTC link per remote participant.

Every participant of a room holds a direct aiortc peer connection to every
other participant. Handshake messages (offer, answer, ICE candidates) travel
through the room server's signaling relay, addressed to a single peer.

Key responsibilities:
- Glare avoidance: of any two participants only the one with the
  lexicographically smaller id sends the offer
- At most one outstanding offer per remote peer
- Tolerating stale, duplicate and out-of-order handshake messages
- Health monitoring with deduplicated, delayed reconnects
- Recovery after the process returns from the background
- Muting local audio/video in place, without renegotiation
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pyee.asyncio import AsyncIOEventEmitter

import config
from watch_client.media import LocalMedia, MediaAcquisitionError

logger = logging.getLogger(__name__)


# Signal types carried by the relay
SIGNAL_OFFER = "offer"
SIGNAL_ANSWER = "answer"
SIGNAL_ICE_CANDIDATE = "ice-candidate"

UNHEALTHY_STATES = ("failed", "disconnected")


class LinkState(str, Enum):
    NEW = "new"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


# Transport connection states that move a link
TRANSPORT_STATES = {
    "connected": LinkState.CONNECTED,
    "disconnected": LinkState.DISCONNECTED,
    "failed": LinkState.FAILED,
    "closed": LinkState.CLOSED,
}


@dataclass
class PeerLink:
    remote_id: str
    connection: RTCPeerConnection
    state: LinkState = LinkState.NEW
    remote_tracks: List[Any] = field(default_factory=list)
    # Candidates that arrived before the remote description
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)
    applied_candidates: Set[str] = field(default_factory=set)

    @property
    def has_live_media(self) -> bool:
        return any(
            r.track is not None and r.track.readyState == "live"
            for r in self.connection.getReceivers()
        )


def ice_configuration(ice_servers: List[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


def default_peer_connection_factory() -> RTCPeerConnection:
    return RTCPeerConnection(configuration=ice_configuration(config.ICE_SERVERS))


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"sdp": description.sdp, "type": description.type}


def candidate_to_dict(candidate) -> Dict[str, Any]:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Dict[str, Any]):
    raw = data["candidate"]
    if raw.startswith("candidate:"):
        raw = raw.split(":", 1)[1]
    candidate = candidate_from_sdp(raw)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class PeerMeshManager(AsyncIOEventEmitter):
    """Maintains the local participant's links to every other participant.

    Listens to the session's ``participants``, ``participant_joined``,
    ``participant_left`` and ``signal`` events once started.

    Emits:
        link_state(remote_id, LinkState): a link changed state; DISCONNECTED
            and FAILED mean a reconnect is pending
        remote_track(remote_id, track): media arrived from a peer
        link_closed(remote_id): a link was torn down
        media_error(MediaAcquisitionError): local capture failed; the
            caller should block on ``permission_error`` and offer
            ``retry_media()``
    """

    def __init__(
        self,
        session,
        media: LocalMedia,
        peer_connection_factory: Callable[[], RTCPeerConnection] = default_peer_connection_factory,
        health_check_interval: float = config.HEALTH_CHECK_INTERVAL,
        reconnect_schedule_delay: float = config.RECONNECT_SCHEDULE_DELAY,
        reconnect_delay: float = config.RECONNECT_DELAY,
        call_start_delay: float = config.CALL_START_DELAY,
        joined_call_start_delay: float = config.JOINED_CALL_START_DELAY,
        foreground_settle_delay: float = config.FOREGROUND_SETTLE_DELAY,
    ):
        super().__init__()
        self.session = session
        self.local_id = session.participant_id
        self.media = media
        self.peer_connection_factory = peer_connection_factory

        self.health_check_interval = health_check_interval
        self.reconnect_schedule_delay = reconnect_schedule_delay
        self.reconnect_delay = reconnect_delay
        self.call_start_delay = call_start_delay
        self.joined_call_start_delay = joined_call_start_delay
        self.foreground_settle_delay = foreground_settle_delay

        self.links: Dict[str, PeerLink] = {}
        self.visible = True
        self.permission_error: Optional[MediaAcquisitionError] = None

        self._initiating: Set[str] = set()
        self._pending_calls: Dict[str, asyncio.Task] = {}
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}
        self._health_task: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False

        self._signal_handlers = {
            SIGNAL_OFFER: self._handle_offer,
            SIGNAL_ANSWER: self._handle_answer,
            SIGNAL_ICE_CANDIDATE: self._handle_ice_candidate,
        }
        self._session_listeners = {
            "participants": self.handle_participants,
            "participant_joined": self.handle_participant_joined,
            "participant_left": self.handle_participant_left,
            "signal": self.handle_signal,
        }

    # ============ LIFECYCLE ============

    async def start(self):
        """Subscribe to the session, open local media and start monitoring."""
        if not self._started:
            for event, handler in self._session_listeners.items():
                self.session.on(event, handler)
            self._started = True
        if self.acquire_media():
            self.handle_participants(self.session.participants)
        if self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop())

    async def close(self):
        """Leave the mesh: cancel every timer, close every link, stop capture."""
        self._closed = True
        if self._started:
            for event, handler in self._session_listeners.items():
                self.session.remove_listener(event, handler)
            self._started = False

        tasks = list(self._pending_calls.values()) + list(self._reconnect_tasks.values())
        if self._health_task is not None:
            tasks.append(self._health_task)
            self._health_task = None
        self._pending_calls.clear()
        self._reconnect_tasks.clear()

        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for remote_id in list(self.links):
            await self.close_link(remote_id)
        self.media.stop()
        logger.info("Peer mesh closed")

    def acquire_media(self) -> bool:
        try:
            self.media.acquire()
        except MediaAcquisitionError as exc:
            logger.error(f"Error accessing media: {exc}")
            self.permission_error = exc
            self.emit("media_error", exc)
            return False
        self.permission_error = None
        return True

    def retry_media(self) -> bool:
        """Manual retry after a permission error."""
        if not self.acquire_media():
            return False
        self.handle_participants(self.session.participants)
        return True

    def toggle_audio(self) -> bool:
        return self.media.toggle("audio")

    def toggle_video(self) -> bool:
        return self.media.toggle("video")

    # ============ CALL INITIATION ============

    def should_initiate(self, remote_id: str) -> bool:
        """Glare rule: the smaller id offers, the other side waits."""
        return self.local_id < remote_id

    def handle_participants(self, participants):
        present = {p.participant_id for p in participants}

        # Forget scheduled calls to participants who are gone
        for remote_id in list(self._initiating):
            if remote_id not in present and remote_id not in self.links:
                self._cancel_pending_call(remote_id)
                self._initiating.discard(remote_id)

        for remote_id in sorted(present):
            self._maybe_call(remote_id, self.call_start_delay)

    def handle_participant_joined(self, remote_id: str):
        self._maybe_call(remote_id, self.joined_call_start_delay)

    async def handle_participant_left(self, remote_id: str):
        logger.info(f"Cleaning up connection for disconnected user: {remote_id}")
        self._cancel_reconnect(remote_id)
        await self.close_link(remote_id)

    def _maybe_call(self, remote_id: str, delay: float):
        if self._closed or remote_id == self.local_id:
            return
        if not self.should_initiate(remote_id):
            logger.debug(f"Waiting for call from {remote_id} (I am {self.local_id})")
            return
        if remote_id in self._initiating or remote_id in self.links:
            return
        if not self.media.ready:
            logger.info("Waiting for local media before initiating calls")
            return

        logger.info(f"I should initiate call to {remote_id} (I am {self.local_id})")
        self._initiating.add(remote_id)
        self._pending_calls[remote_id] = asyncio.create_task(self._call_after(remote_id, delay))

    async def _call_after(self, remote_id: str, delay: float):
        try:
            await asyncio.sleep(delay)
            await self._send_offer(remote_id)
        finally:
            if self._pending_calls.get(remote_id) is asyncio.current_task():
                del self._pending_calls[remote_id]

    async def start_call(self, remote_id: str):
        if remote_id in self._initiating:
            logger.info(f"Call already initiated to {remote_id}, skipping")
            return
        if not self.media.ready:
            logger.warning("No local media available to start call")
            return
        self._initiating.add(remote_id)
        await self._send_offer(remote_id)

    async def _send_offer(self, remote_id: str):
        link = None
        try:
            link = await self._open_link(remote_id)
            pc = link.connection
            await pc.setLocalDescription(await pc.createOffer())
            if self.links.get(remote_id) is not link:
                return  # torn down while negotiating
            await self.session.send_signal(remote_id, SIGNAL_OFFER, description_to_dict(pc.localDescription))
            self._set_state(link, LinkState.OFFERING)
            logger.info(f"Offer sent to {remote_id}")
        except Exception as e:
            logger.error(f"Error starting call to {remote_id}: {e}")
            if link is not None and self.links.get(remote_id) is link:
                await self.close_link(remote_id)
            else:
                self._initiating.discard(remote_id)
            # Start over from a clean link
            self.schedule_reconnect(remote_id, self.reconnect_schedule_delay)

    # ============ LINKS ============

    async def _open_link(self, remote_id: str) -> PeerLink:
        stale = self.links.pop(remote_id, None)
        if stale is not None:
            logger.info(f"Cleaning up old connection for {remote_id}")
            await self._close_link(stale)

        pc = self.peer_connection_factory()
        link = PeerLink(remote_id=remote_id, connection=pc)
        for track in self.media.tracks:
            pc.addTrack(track)

        @pc.on("track")
        def on_track(track):
            if self.links.get(remote_id) is not link:
                return
            logger.info(f"Received {track.kind} track from {remote_id}")
            link.remote_tracks.append(track)
            self.emit("remote_track", remote_id, track)

        @pc.on("connectionstatechange")
        def on_connection_state_change():
            logger.info(f"Connection state for {remote_id}: {pc.connectionState}")
            state = TRANSPORT_STATES.get(pc.connectionState)
            if state is not None and self.links.get(remote_id) is link:
                self._set_state(link, state)

        # aiortc bundles its candidates into the SDP; trickling transports
        # announce them one by one.
        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate is not None and self.links.get(remote_id) is link:
                await self.session.send_signal(remote_id, SIGNAL_ICE_CANDIDATE, candidate_to_dict(candidate))

        self.links[remote_id] = link
        return link

    async def close_link(self, remote_id: str):
        """Tear a link down; later handshake messages for it miss the lookup."""
        self._initiating.discard(remote_id)
        self._cancel_pending_call(remote_id)
        link = self.links.pop(remote_id, None)
        if link is None:
            return
        await self._close_link(link)
        self.emit("link_closed", remote_id)

    async def _close_link(self, link: PeerLink):
        link.pending_candidates.clear()
        self._set_state(link, LinkState.CLOSED)
        await link.connection.close()

    def _set_state(self, link: PeerLink, state: LinkState):
        if link.state is state:
            return
        link.state = state
        self.emit("link_state", link.remote_id, state)

    def _cancel_pending_call(self, remote_id: str):
        task = self._pending_calls.pop(remote_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ============ SIGNALING ============

    async def handle_signal(self, from_id: str, signal_type: str, data: Dict[str, Any]):
        if from_id == self.local_id or self._closed:
            return
        handler = self._signal_handlers.get(signal_type)
        if handler is None:
            logger.warning(f"Unknown signal {signal_type} from {from_id}")
            return
        logger.debug(f"Received {signal_type} from {from_id}")
        try:
            await handler(from_id, data)
        except Exception as e:
            logger.error(f"Error handling signal {signal_type} from {from_id}: {e}")

    async def _handle_offer(self, from_id: str, data: Dict[str, Any]):
        # Remote side is rebuilding the link
        self._cancel_reconnect(from_id)
        self._initiating.discard(from_id)

        link = self.links.get(from_id)
        reusable = (
            link is not None
            and link.connection.signalingState == "stable"
            and link.connection.connectionState in ("connected", "connecting")
        )
        if not reusable:
            if link is not None:
                logger.info(f"Resetting peer connection for {from_id} "
                            f"(signaling state {link.connection.signalingState})")
            link = await self._open_link(from_id)
            self._set_state(link, LinkState.ANSWERING)

        pc = link.connection
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=data["sdp"], type=data["type"]))
            await self._flush_candidates(link)
            await pc.setLocalDescription(await pc.createAnswer())
            if self.links.get(from_id) is not link:
                return
            await self.session.send_signal(from_id, SIGNAL_ANSWER, description_to_dict(pc.localDescription))
        except Exception:
            # The next offer from this peer starts on a fresh link
            if self.links.get(from_id) is link:
                await self.close_link(from_id)
            raise
        logger.info(f"Sent answer to {from_id}")

    async def _handle_answer(self, from_id: str, data: Dict[str, Any]):
        link = self.links.get(from_id)
        if link is None:
            logger.warning(f"No peer connection found for answer from {from_id}")
            return
        pc = link.connection
        if pc.signalingState != "have-local-offer":
            logger.warning(f"Received answer from {from_id} in {pc.signalingState} state - ignoring")
            return
        await pc.setRemoteDescription(RTCSessionDescription(sdp=data["sdp"], type=data["type"]))
        await self._flush_candidates(link)

    async def _handle_ice_candidate(self, from_id: str, data: Dict[str, Any]):
        link = self.links.get(from_id)
        if link is None:
            logger.warning(f"No peer connection found for ICE candidate from {from_id}")
            return
        if link.connection.remoteDescription is None:
            link.pending_candidates.append(data)
            return
        await self._apply_candidate(link, data)

    async def _flush_candidates(self, link: PeerLink):
        pending, link.pending_candidates = link.pending_candidates, []
        for data in pending:
            await self._apply_candidate(link, data)

    async def _apply_candidate(self, link: PeerLink, data: Dict[str, Any]):
        raw = data.get("candidate") or ""
        if not raw:
            return  # end-of-candidates
        if raw in link.applied_candidates:
            logger.debug(f"Duplicate ICE candidate from {link.remote_id} ignored")
            return
        try:
            await link.connection.addIceCandidate(candidate_from_dict(data))
        except Exception as e:
            logger.warning(f"Error adding ICE candidate from {link.remote_id}: {e}")
            return
        link.applied_candidates.add(raw)

    # ============ HEALTH & RECONNECTION ============

    async def _health_loop(self):
        while True:
            await asyncio.sleep(self.health_check_interval)
            if self.visible:
                self.check_links()

    def check_links(self):
        """Schedule a reconnect for every failed or disconnected link."""
        for remote_id, link in list(self.links.items()):
            state = link.connection.connectionState
            if state in UNHEALTHY_STATES:
                if self.schedule_reconnect(remote_id, self.reconnect_schedule_delay):
                    logger.info(f"Connection {state} for peer {remote_id}, scheduling reconnect")

    def schedule_reconnect(self, remote_id: str, delay: float) -> bool:
        """One-shot reconnect after ``delay``; at most one pending per peer.

        A running reconnect that fails may schedule its own successor.
        """
        pending = self._reconnect_tasks.get(remote_id)
        if self._closed or (pending is not None and pending is not asyncio.current_task()):
            return False
        self._reconnect_tasks[remote_id] = asyncio.create_task(self._reconnect_after(remote_id, delay))
        return True

    def _cancel_reconnect(self, remote_id: str):
        """Cancel a pending reconnect, unless it is the caller itself."""
        task = self._reconnect_tasks.get(remote_id)
        if task is not None and task is not asyncio.current_task():
            del self._reconnect_tasks[remote_id]
            task.cancel()

    async def _reconnect_after(self, remote_id: str, delay: float):
        try:
            await asyncio.sleep(delay)
            await self.reconnect_peer(remote_id)
        finally:
            if self._reconnect_tasks.get(remote_id) is asyncio.current_task():
                del self._reconnect_tasks[remote_id]

    async def reconnect_peer(self, remote_id: str):
        """Rebuild a link: full teardown, short pause, glare rule again."""
        logger.info(f"Attempting to reconnect to peer: {remote_id}")
        self._cancel_reconnect(remote_id)
        await self.close_link(remote_id)

        await asyncio.sleep(self.reconnect_delay)
        if self._closed:
            return
        if remote_id not in self.session.participant_ids:
            logger.info(f"Peer {remote_id} left the room, not reconnecting")
            return
        if self.should_initiate(remote_id):
            logger.info(f"Reinitiating call to {remote_id}")
            await self.start_call(remote_id)

    # ============ FOREGROUND RECOVERY ============

    async def set_visibility(self, visible: bool):
        """Called when the process is backgrounded or returns to the foreground."""
        self.visible = visible
        if not visible:
            logger.info("Backgrounded")
            return

        logger.info("Foregrounded, checking connections...")
        await asyncio.sleep(self.foreground_settle_delay)
        if self._closed:
            return
        self.recover_local_media()

        for remote_id, link in list(self.links.items()):
            state = link.connection.connectionState
            if state in UNHEALTHY_STATES or state == "closed":
                self.schedule_reconnect(remote_id, 0)
            elif state == "connected" and not link.has_live_media:
                logger.info(f"No active tracks for peer {remote_id}, reconnecting...")
                self.schedule_reconnect(remote_id, 0)

    def recover_local_media(self):
        """Re-open ended capture tracks and swap them into every link."""
        if not self.media.has_ended_tracks:
            return
        logger.info("Local stream tracks ended, reinitializing media...")
        if not self.acquire_media():
            return

        for link in self.links.values():
            for sender in link.connection.getSenders():
                if sender.track is None:
                    continue
                track = self.media.track(sender.track.kind)
                if track is not None and track is not sender.track:
                    sender.replaceTrack(track)
