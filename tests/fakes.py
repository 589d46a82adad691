import asyncio
from types import SimpleNamespace

import numpy as np
from aiortc import RTCSessionDescription
from aiortc.mediastreams import MediaStreamError

from client.media import MediaPlayback


class FakePlayer(MediaPlayback):
    def __init__(self, position: float = 0.0, paused: bool = True):
        self._position = position
        self._paused = paused
        self.seeks = []
        self.plays = 0
        self.pauses = 0

    async def play(self):
        self._paused = False
        self.plays += 1

    async def pause(self):
        self._paused = True
        self.pauses += 1

    async def seek(self, seconds):
        self.seeks.append(seconds)
        self._position = seconds

    def position(self):
        return self._position

    def is_paused(self):
        return self._paused

    def move_to(self, seconds):
        self._position = seconds


class FakeTrack:
    """Silent capture track that produces no frames until stopped."""

    kind = "audio"

    def __init__(self):
        self.stopped = False
        self._ended = asyncio.Event()

    async def recv(self):
        await self._ended.wait()
        raise MediaStreamError

    def stop(self):
        self.stopped = True
        self._ended.set()


class FakeFrame:
    def __init__(self, amplitude: int, samples: int = 960):
        self.format = SimpleNamespace(name="s16")
        self.planes = []
        self._samples = np.full((1, samples), amplitude, dtype=np.int16)

    def to_ndarray(self):
        return self._samples


class LoudTrack(FakeTrack):
    """Capture track that keeps producing loud frames."""

    def __init__(self, amplitude: int = 8000):
        super().__init__()
        self.amplitude = amplitude

    async def recv(self):
        if self._ended.is_set():
            raise MediaStreamError
        await asyncio.sleep(0.005)
        return FakeFrame(self.amplitude)


class FakePeerConnection:
    """Enough of RTCPeerConnection for negotiation logic, without any networking."""

    instances = []

    def __init__(self):
        self.tracks = []
        self.handlers = {}
        self.localDescription = None
        self.remoteDescription = None
        self.signalingState = "stable"
        self.connectionState = "new"
        self.candidates = []
        self.closed = False
        FakePeerConnection.instances.append(self)

    def on(self, event, f=None):
        def register(fn):
            self.handlers[event] = fn
            return fn
        return register(f) if f is not None else register

    async def emit_state(self, state):
        self.connectionState = state
        await self.handlers["connectionstatechange"]()

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        return RTCSessionDescription(sdp=f"offer-{id(self)}", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=f"answer-{id(self)}", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class FakeSink:
    def __init__(self):
        self.tracks = []
        self.stopped = False

    def addTrack(self, track):
        self.tracks.append(track)

    async def start(self):
        pass

    async def stop(self):
        self.stopped = True


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
