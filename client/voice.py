"""
Peer-to-peer voice chat for a watch party.

Every pair of participants gets its own ``RTCPeerConnection`` (mesh, not a
star through the host). Negotiation messages travel through the
``SignalingRelay``; audio flows directly between the peers once connected.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp

import settings
from client.signaling import PeerMailbox, RelayEvent, SignalingRelay
from models import VoiceSignalRecord
from models_signaling import Answer, Candidate, Offer, SignalMessage
from utils.store import DocumentStore
from utils.stream import SnapshotStream

logger = logging.getLogger(__name__)


def audio_level(frame) -> float:
    """Mean absolute amplitude of an audio frame on a 0-255 scale."""
    samples = frame.to_ndarray().astype(np.float32)
    if samples.size == 0:
        return 0.0
    if frame.format.name.startswith("s16"):
        samples /= 32768.0
    elif frame.format.name.startswith("s32"):
        samples /= 2147483648.0
    return float(np.clip(np.abs(samples).mean() * 255.0, 0.0, 255.0))


class MicrophoneTrack(MediaStreamTrack):
    """Wraps the capture track: sends silence while muted and tracks input level."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.source = source
        self.muted = True
        self.level = 0.0

    async def recv(self):
        frame = await self.source.recv()
        if self.muted:
            self.level = 0.0
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        else:
            self.level = audio_level(frame)
        return frame

    def stop(self):
        super().stop()
        self.source.stop()


def default_microphone() -> MediaStreamTrack:
    player = MediaPlayer(settings.MIC_DEVICE, format=settings.MIC_FORMAT)
    return player.audio

def default_peer_connection() -> RTCPeerConnection:
    servers = [RTCIceServer(urls=settings.STUN_URLS)] if settings.STUN_URLS else []
    return RTCPeerConnection(RTCConfiguration(iceServers=servers))


class PeerAudioSession:
    """One point-to-point audio connection with a single remote participant."""

    def __init__(
        self,
        peer_id: str,
        pc: RTCPeerConnection,
        local_track: MediaStreamTrack,
        sink,
        initiator: bool,
        on_closed: Callable[[str], Any],
    ):
        self.peer_id = peer_id
        self.pc = pc
        self.sink = sink
        self.initiator = initiator
        self.connected = False
        self._early_candidates: List[Candidate] = []
        self._closed = False

        pc.addTrack(local_track)

        @pc.on("track")
        def on_track(track):
            if track.kind != "audio":
                return
            logger.info("Receiving audio from %s", peer_id)
            self.sink.addTrack(track)
            asyncio.ensure_future(self.sink.start())

        @pc.on("connectionstatechange")
        async def on_state():
            state = pc.connectionState
            logger.debug("Connection with %s is %s", peer_id, state)
            if state == "connected":
                self.connected = True
            elif state in ("failed", "closed") and not self._closed:
                await on_closed(peer_id)

    @property
    def awaiting_answer(self) -> bool:
        return self.pc.signalingState == "have-local-offer"

    async def make_offer(self) -> Offer:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return Offer(sdp=self.pc.localDescription.sdp)

    async def handle(self, message: SignalMessage) -> Optional[SignalMessage]:
        """Apply one negotiation message; returns the reply to send, if any."""
        if isinstance(message, Offer):
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=message.sdp, type="offer"))
            await self._flush_candidates()
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
            return Answer(sdp=self.pc.localDescription.sdp)

        if isinstance(message, Answer):
            if not self.awaiting_answer:
                logger.debug("Ignoring answer from %s in state %s", self.peer_id, self.pc.signalingState)
                return None
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=message.sdp, type="answer"))
            await self._flush_candidates()
            return None

        if self.pc.remoteDescription is None:
            self._early_candidates.append(message)
        else:
            await self._add_candidate(message)
        return None

    async def _flush_candidates(self) -> None:
        early, self._early_candidates = self._early_candidates, []
        for candidate in early:
            await self._add_candidate(candidate)

    async def _add_candidate(self, message: Candidate) -> None:
        candidate = candidate_from_sdp(message.candidate.removeprefix("candidate:"))
        candidate.sdpMid = message.sdp_mid
        candidate.sdpMLineIndex = message.sdp_mline_index
        await self.pc.addIceCandidate(candidate)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.sink.stop()
        finally:
            await self.pc.close()


class VoiceChatManager:
    def __init__(
        self,
        store: DocumentStore,
        party_code: str,
        user_id: str,
        display_name: str,
        *,
        microphone_factory: Callable[[], MediaStreamTrack] = default_microphone,
        peer_factory: Callable[[], RTCPeerConnection] = default_peer_connection,
        sink_factory: Callable[[], Any] = MediaBlackhole,
        speaking_threshold: float = settings.SPEAKING_THRESHOLD,
        speaking_interval: float = settings.SPEAKING_INTERVAL,
    ):
        self.relay = SignalingRelay(store, party_code, user_id, display_name)
        self.user_id = user_id
        self.microphone_factory = microphone_factory
        self.peer_factory = peer_factory
        self.sink_factory = sink_factory
        self.speaking_threshold = speaking_threshold
        self.speaking_interval = speaking_interval

        self.muted = True   # микрофон выключен по умолчанию
        self.speaking = False
        self.track: Optional[MicrophoneTrack] = None
        self._media_relay = MediaRelay()
        self.sessions: Dict[str, PeerAudioSession] = {}
        self.mailboxes: Dict[str, PeerMailbox] = {}
        self.participants: Dict[str, VoiceSignalRecord] = {}

        self._participants_callbacks: List[Callable] = []
        self._speaking_callbacks: List[Callable] = []
        self._stream: Optional[SnapshotStream] = None
        self._tasks: List[asyncio.Task] = []
        self._lock = asyncio.Lock()

    # ─── public API ────────────────────────────────────────────────────────────
    async def start(self) -> None:
        self.track = MicrophoneTrack(self.microphone_factory())
        self.track.muted = self.muted

        # подписываемся до публикации своей записи, чтобы не пропустить offer
        self._stream = SnapshotStream()
        self._stream.attach(self.relay.subscribe(self._stream.push))
        await asyncio.to_thread(self.relay.announce, isMuted=self.muted, isSpeaking=False)

        self._tasks = [
            asyncio.create_task(self._listen(), name=f"voice-listener-{self.user_id}"),
            asyncio.create_task(self._sample_speaking(), name=f"voice-speaking-{self.user_id}"),
            asyncio.create_task(self._meter(), name=f"voice-meter-{self.user_id}"),
        ]
        logger.info("Voice chat started for %s in party %s", self.user_id, self.relay.party_code)

    async def stop(self) -> None:
        logger.info("Cleaning up voice chat for %s", self.user_id)
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        for peer_id in list(self.sessions):
            await self._disconnect(peer_id)
        self.mailboxes.clear()
        self.participants.clear()

        if self.track is not None:
            self.track.stop()
            self.track = None
        try:
            await asyncio.to_thread(self.relay.withdraw)
        except Exception:
            logger.exception("Failed to remove voice record for %s", self.user_id)

    async def toggle_mute(self) -> bool:
        self.muted = not self.muted
        if self.track is not None:
            self.track.muted = self.muted
        await asyncio.to_thread(self.relay.announce, isMuted=self.muted)
        return self.muted

    def on_participants_change(self, callback: Callable[[List[VoiceSignalRecord]], Any]) -> None:
        self._participants_callbacks.append(callback)

    def on_speaking_change(self, callback: Callable[[str, bool], Any]) -> None:
        self._speaking_callbacks.append(callback)

    # ─── relay events ──────────────────────────────────────────────────────────
    async def _listen(self) -> None:
        async for event in self._stream:
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception("Failed to handle voice event from %s", event.peer_id)

    async def handle_event(self, event: RelayEvent) -> None:
        peer_id = event.peer_id
        if event.kind == "left":
            logger.info("Participant %s left voice chat", peer_id)
            await self._disconnect(peer_id)
            self.mailboxes.pop(peer_id, None)
            self.participants.pop(peer_id, None)
            await self._notify_participants()
            return

        self.participants[peer_id] = event.record
        await self._notify_participants()
        if event.record.is_speaking:
            await self._notify_speaking(peer_id, True)

        # новые участники (после нашего первого снимка) получают offer от нас
        if event.kind == "joined" and not event.initial and peer_id not in self.sessions:
            await self._connect(peer_id, initiator=True)

        if event.message is not None:
            await self.deliver(peer_id, event.message)

    async def deliver(self, peer_id: str, message: SignalMessage) -> None:
        mailbox = self.mailboxes.setdefault(peer_id, PeerMailbox(peer_id))
        if not mailbox.put(message):
            return
        session = self.sessions.get(peer_id)
        if session is None:
            if isinstance(message, Answer):
                # ответ на offer, которого у нас уже нет
                mailbox.discard(message)
                return
            await self._connect(peer_id, initiator=False)
            return
        for pending in mailbox.drain():
            await self._apply(peer_id, pending)

    # ─── pairs ─────────────────────────────────────────────────────────────────
    async def _connect(self, peer_id: str, initiator: bool) -> None:
        async with self._lock:
            if peer_id in self.sessions:
                return
            session = self._open(peer_id, initiator)
        mailbox = self.mailboxes.setdefault(peer_id, PeerMailbox(peer_id))
        backlog = mailbox.attach()
        logger.info("%s connection with %s", "Initiating" if initiator else "Accepting", peer_id)
        try:
            if initiator:
                offer = await session.make_offer()
                await asyncio.to_thread(self.relay.send, peer_id, offer)
        except Exception:
            logger.exception("Failed to offer to %s", peer_id)
            await self._disconnect(peer_id)
            return
        for message in backlog:
            await self._apply(peer_id, message)

    def _open(self, peer_id: str, initiator: bool) -> PeerAudioSession:
        session = PeerAudioSession(
            peer_id,
            self.peer_factory(),
            self._media_relay.subscribe(self.track),
            self.sink_factory(),
            initiator,
            on_closed=self._disconnect,
        )
        self.sessions[peer_id] = session
        return session

    async def _apply(self, peer_id: str, message: SignalMessage) -> None:
        session = self.sessions.get(peer_id)
        if session is None:
            return
        try:
            if isinstance(message, Offer) and session.awaiting_answer:
                # glare: оба отправили offer; меньший userId сохраняет свой
                if self.user_id < peer_id:
                    logger.info("Offer collision with %s, keeping ours", peer_id)
                    return
                logger.info("Offer collision with %s, answering theirs", peer_id)
                await self._disconnect(peer_id, keep_mailbox=True)
                async with self._lock:
                    session = self._open(peer_id, initiator=False)
            reply = await session.handle(message)
            if reply is not None:
                await asyncio.to_thread(self.relay.send, peer_id, reply)
        except Exception:
            logger.exception("Negotiation with %s failed", peer_id)
            await self._disconnect(peer_id)

    async def _disconnect(self, peer_id: str, keep_mailbox: bool = False) -> None:
        session = self.sessions.pop(peer_id, None)
        if not keep_mailbox and peer_id in self.mailboxes:
            # seen-ids остаются, иначе старый offer из записи применится повторно
            self.mailboxes[peer_id].clear()
        if session is None:
            return
        logger.info("Closing connection with %s", peer_id)
        try:
            await session.close()
        except Exception:
            logger.exception("Error while closing connection with %s", peer_id)

    # ─── speaking detection ────────────────────────────────────────────────────
    async def _meter(self) -> None:
        # собственный потребитель: уровень считается и без собеседников
        proxy = self._media_relay.subscribe(self.track, buffered=False)
        try:
            while True:
                await proxy.recv()
        except MediaStreamError:
            logger.debug("Microphone track for %s ended", self.user_id)
        finally:
            proxy.stop()

    async def _sample_speaking(self) -> None:
        while True:
            await asyncio.sleep(self.speaking_interval)
            level = self.track.level if self.track is not None else 0.0
            speaking = not self.muted and level > self.speaking_threshold
            if speaking == self.speaking:
                continue
            self.speaking = speaking
            await self._notify_speaking(self.user_id, speaking)
            try:
                await asyncio.to_thread(self.relay.announce, isSpeaking=speaking)
            except Exception:
                logger.exception("Failed to publish speaking state")

    async def _notify_participants(self) -> None:
        snapshot = list(self.participants.values())
        for cb in self._participants_callbacks:
            result = cb(snapshot)
            if inspect.isawaitable(result):
                await result

    async def _notify_speaking(self, user_id: str, speaking: bool) -> None:
        for cb in self._speaking_callbacks:
            result = cb(user_id, speaking)
            if inspect.isawaitable(result):
                await result
