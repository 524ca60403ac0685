"""Shared fixtures: in-memory stand-ins for aiortc and signaling connections."""

import asyncio
import inspect
import json

import pytest
from aiortc import RTCSessionDescription


class FakeEmitter:
    """Minimal pyee-style emitter. ``fire`` awaits coroutine handlers."""

    def __init__(self):
        self._handlers = {}

    def on(self, event, f=None):
        def register(handler):
            self._handlers.setdefault(event, []).append(handler)
            return handler

        if f is None:
            return register
        return register(f)

    async def fire(self, event, *args):
        for handler in list(self._handlers.get(event, [])):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result


class FakeTrack:
    def __init__(self, kind="video"):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeReceiver:
    def __init__(self, track):
        self.track = track


class FakeDataChannel(FakeEmitter):
    def __init__(self, label):
        super().__init__()
        self.label = label
        self.readyState = "connecting"


class FakePeerConnection(FakeEmitter):
    """Records what the state machine does to its peer connection.

    Mirrors the RTCPeerConnection rules the machine relies on: an answer needs
    a pending local offer, and candidates need a remote description.
    """

    def __init__(self, ice_servers=None, name="pc"):
        super().__init__()
        self.ice_servers = ice_servers
        self.name = name
        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.added_candidates = []
        self.tracks = []
        self.receivers = []
        self.data_channels = []
        self.closed = False

    async def createOffer(self):
        return RTCSessionDescription(sdp=f"offer-from-{self.name}", type="offer")

    async def createAnswer(self):
        if self.remoteDescription is None or self.remoteDescription.type != "offer":
            raise RuntimeError("Cannot create answer without a remote offer")
        return RTCSessionDescription(sdp=f"answer-from-{self.name}", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        if description.type == "answer" and self.signalingState != "have-local-offer":
            raise RuntimeError("Cannot apply answer without a local offer")
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise RuntimeError("Candidate applied before remote description")
        self.added_candidates.append(candidate)

    def createDataChannel(self, label):
        channel = FakeDataChannel(label)
        self.data_channels.append(channel)
        return channel

    def addTrack(self, track):
        self.tracks.append(track)

    def getReceivers(self):
        return list(self.receivers)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"
        self.signalingState = "closed"

    async def set_connection_state(self, state):
        self.connectionState = state
        await self.fire("connectionstatechange")

    @property
    def candidate_ports(self):
        return [c.port for c in self.added_candidates]


class PeerConnectionFactory:
    """Callable passed as ``pc_factory``; keeps every connection it created."""

    def __init__(self, name="pc"):
        self.name = name
        self.created = []

    def __call__(self, ice_servers):
        pc = FakePeerConnection(ice_servers, name=self.name)
        self.created.append(pc)
        return pc

    @property
    def pc(self):
        return self.created[-1] if self.created else None


class FakeSignaling:
    """Records messages the state machine sends."""

    def __init__(self):
        self.sent = []

    async def send(self, msg_type, **fields):
        self.sent.append((msg_type, fields))

    def types(self):
        return [msg_type for msg_type, _ in self.sent]

    def last(self, msg_type):
        for sent_type, fields in reversed(self.sent):
            if sent_type == msg_type:
                return fields
        return None


class FakeMedia:
    def __init__(self):
        self.tracks = [FakeTrack("audio"), FakeTrack("video")]
        self.opened = False
        self.stopped = False

    def open(self):
        self.opened = True
        return self.tracks

    def stop(self):
        self.stopped = True


class FakeConnection:
    """Server-side connection stand-in that keeps every frame sent to it."""

    def __init__(self):
        self.frames = []
        self.queue = asyncio.Queue()

    async def send(self, message):
        self.frames.append(message)
        self.queue.put_nowait(message)

    @property
    def messages(self):
        return [json.loads(frame) for frame in self.frames]

    def of_type(self, msg_type):
        return [m for m in self.messages if m["type"] == msg_type]

    def last(self, msg_type):
        found = self.of_type(msg_type)
        return found[-1] if found else None


def make_candidate(port, ip="192.168.1.2", sdp_mid="0"):
    """Browser-style candidate payload; ``port`` identifies it in assertions."""
    return {
        "candidate": f"candidate:1 1 udp 2130706431 {ip} {port} typ host",
        "sdpMid": sdp_mid,
        "sdpMLineIndex": 0,
    }


async def wait_until(predicate, timeout=2.0):
    """Poll ``predicate`` on the event loop until it holds or time runs out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def signaling():
    return FakeSignaling()


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Run with an empty home directory, cwd and DUO_RTC_* environment."""
    home = tmp_path / "home"
    home.mkdir()
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    for name in (
        "DUO_RTC_ENV",
        "DUO_RTC_SIGNALING_WS",
        "DUO_RTC_HOST",
        "DUO_RTC_PORT",
        "DUO_RTC_ICE_SERVERS_URL",
        "DUO_RTC_NEGOTIATION_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)

    from duo_rtc import config

    monkeypatch.setattr(config, "_config", None)
    return work
