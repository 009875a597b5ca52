import asyncio
import json

import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from room_manager import ConnectionManager
from watch_client.media import LocalMedia
from watch_client.session import SessionClient


async def settle(rounds=20):
    """Let scheduled tasks run to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# Server side


class FakeWebSocket:
    """Stands in for a server-side starlette WebSocket."""

    def __init__(self, name=''):
        self.name = name
        self.sent = []

    async def send_text(self, data):
        self.sent.append(json.loads(data))

    def events(self, kind):
        return [e for e in self.sent if e['type'] == kind]

    def types(self):
        return [e['type'] for e in self.sent]

    def clear(self):
        self.sent.clear()

    def __repr__(self):
        return '<FakeWebSocket {}>'.format(self.name)


class Clock:

    def __init__(self, now=1_000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def manager(clock):
    return ConnectionManager(clock=clock)


# Client side


class FakeTransport:
    """Client transport: records what is sent, replays queued frames."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.incoming = asyncio.Queue()

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True
        await self.incoming.put(None)

    def feed(self, event):
        self.incoming.put_nowait(json.dumps(event))

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    def signals(self, signal_type=None):
        return [
            e for e in self.sent
            if e['type'] == 'signal'
            and (signal_type is None or e['signal']['type'] == signal_type)
        ]


def make_session(participant_id, room_code='ABC123', display_name=None):
    return SessionClient(FakeTransport(), room_code, participant_id,
                         display_name or participant_id.title())


def push(session, event):
    """Deliver a server event to a session."""
    session.handle_raw(json.dumps(event))


def participants_event(*ids):
    return {
        'type': 'participants',
        'participants': [
            {'participant_id': i, 'display_name': i.title()} for i in ids],
    }


class FakeSourceTrack(MediaStreamTrack):

    def __init__(self, kind):
        super().__init__()
        self.kind = kind

    async def recv(self):
        raise NotImplementedError


class FakeSender:

    def __init__(self, track):
        self.track = track

    def replaceTrack(self, track):
        self.track = track


class FakeReceiver:

    def __init__(self, track=None):
        self.track = track


class FakePeerConnection(AsyncIOEventEmitter):
    """Just enough of RTCPeerConnection's negotiation surface."""

    def __init__(self):
        super().__init__()
        self.signalingState = 'stable'
        self.connectionState = 'new'
        self.localDescription = None
        self.remoteDescription = None
        self.candidates = []
        self.senders = []
        self.receivers = []
        self.closed = False

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    def getReceivers(self):
        return list(self.receivers)

    async def createOffer(self):
        return RTCSessionDescription(sdp='v=0 offer', type='offer')

    async def createAnswer(self):
        return RTCSessionDescription(sdp='v=0 answer', type='answer')

    async def setLocalDescription(self, description):
        self.localDescription = description
        if description.type == 'offer':
            self.signalingState = 'have-local-offer'
        else:
            self.signalingState = 'stable'

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        if description.type == 'offer':
            self.signalingState = 'have-remote-offer'
        else:
            self.signalingState = 'stable'

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.signalingState = 'closed'
        self.connectionState = 'closed'

    def set_connection_state(self, state):
        self.connectionState = state
        self.emit('connectionstatechange')


class PeerConnectionFactory:

    def __init__(self):
        self.created = []

    def __call__(self):
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


def fake_devices():
    return FakeSourceTrack('audio'), FakeSourceTrack('video')


@pytest.fixture
def media():
    return LocalMedia(acquire=fake_devices)
