"""
Playback synchronisation between the host and the other participants.

The host pushes ``(status, currentTime)`` on a fixed heartbeat; everyone else
reacts to party snapshots and hard-seeks when their local position drifts
past the tolerance band. There is a single writer for playback authority, so
no clock negotiation happens here.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

import settings
from client.media import MediaPlayback
from errors import NotHost
from models import Participant, Party, PartyStatus
from services.parties import PartyService, is_host_stale
from utils.stream import SnapshotStream

logger = logging.getLogger(__name__)


async def _notify(callback: Optional[Callable[..., Any]], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class PlaybackSyncController:
    def __init__(
        self,
        parties: PartyService,
        player: MediaPlayback,
        user_id: str,
        *,
        heartbeat_interval: float = settings.HEARTBEAT_INTERVAL,
        drift_tolerance: float = settings.DRIFT_TOLERANCE,
        stale_heartbeats: int = settings.STALE_HEARTBEATS,
        on_enter_content: Optional[Callable[[str], Any]] = None,
        on_party_end: Optional[Callable[[Optional[Party]], Any]] = None,
        on_participant_joined: Optional[Callable[[Participant], Any]] = None,
        on_host_stalled: Optional[Callable[[Party], Any]] = None,
    ):
        self.parties = parties
        self.player = player
        self.user_id = user_id
        self.heartbeat_interval = heartbeat_interval
        self.drift_tolerance = drift_tolerance
        self.stale_heartbeats = stale_heartbeats
        self.on_enter_content = on_enter_content
        self.on_party_end = on_party_end
        self.on_participant_joined = on_participant_joined
        self.on_host_stalled = on_host_stalled

        self.party: Optional[Party] = None
        self.lobby_visible = True
        self.ended = False
        self._stream: Optional[SnapshotStream] = None
        self._listener: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._watchdog: Optional[asyncio.Task] = None
        self._stall_reported = False

    @property
    def is_host(self) -> bool:
        return self.party is not None and self.party.host_user_id == self.user_id

    # ─── lifecycle ─────────────────────────────────────────────────────────────
    async def start(self, party: Party) -> None:
        """Begin following ``party``; call ``stop`` (or ``leave``) when the view goes away."""
        if self._stream is not None:
            raise RuntimeError("Controller already started")
        self.party = party
        self.lobby_visible = True
        self.ended = False

        self._stream = SnapshotStream()
        self._stream.attach(self.parties.subscribe(party.code, self._stream.push))
        self._listener = asyncio.create_task(self._listen(self._stream), name=f"party-listener-{party.code}")
        if not self.is_host:
            self._watchdog = asyncio.create_task(self._watch_host(), name=f"party-watchdog-{party.code}")
        elif party.status not in (PartyStatus.waiting, PartyStatus.ended):
            self._ensure_heartbeat()

    async def stop(self) -> None:
        current = asyncio.current_task()
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        tasks = [t for t in (self._heartbeat, self._watchdog, self._listener) if t is not None]
        self._heartbeat = self._watchdog = self._listener = None
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task is not current:
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def leave(self) -> None:
        party = self.party
        await self.stop()
        if party is not None:
            await asyncio.to_thread(self.parties.leave_party, party.code, self.user_id)

    # ─── host ──────────────────────────────────────────────────────────────────
    async def start_party(self) -> None:
        """Host only: leave the lobby and move the party to ``playing``."""
        if not self.is_host:
            raise NotHost("Only the host can start the party")
        party = self.party
        await asyncio.to_thread(
            self.parties.update_playback_state,
            party.code, PartyStatus.playing, self.player.position(), self.user_id,
        )
        party.status = PartyStatus.playing.value
        if self.lobby_visible:
            self.lobby_visible = False
            await _notify(self.on_enter_content, party.video_url)
        await self.player.play()
        self._ensure_heartbeat()

    def _ensure_heartbeat(self) -> None:
        if self._heartbeat is None or self._heartbeat.done():
            self._heartbeat = asyncio.create_task(self._heartbeat_loop(), name="party-heartbeat")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.heartbeat_once()

    async def heartbeat_once(self) -> None:
        """Push the host's local playback state; failures are logged and retried next tick."""
        party = self.party
        if party is None or party.status in (PartyStatus.waiting, PartyStatus.ended):
            return
        status = PartyStatus.paused if self.player.is_paused() else PartyStatus.playing
        position = self.player.position()
        try:
            await asyncio.to_thread(
                self.parties.update_playback_state, party.code, status, position, self.user_id,
            )
        except Exception:
            logger.exception("Heartbeat for party %s failed", party.code)

    # ─── participants ──────────────────────────────────────────────────────────
    async def _listen(self, stream: SnapshotStream) -> None:
        async for snapshot in stream:
            try:
                await self.apply(snapshot)
            except Exception:
                logger.exception("Failed to apply party snapshot")
            if self.ended:
                break

    async def apply(self, party: Optional[Party]) -> None:
        """React to one snapshot of the shared party state."""
        if party is None or party.status == PartyStatus.ended:
            await self._finish(party)
            return

        previous, self.party = self.party, party
        self._stall_reported = False
        if previous is not None and len(party.participants) > len(previous.participants):
            await _notify(self.on_participant_joined, party.participants[-1])

        if self.is_host:
            if party.status != PartyStatus.waiting:
                self._ensure_heartbeat()
            return

        try:
            await self._reconcile(party)
        except Exception:
            logger.exception("Playback sync for party %s failed", party.code)

    async def _reconcile(self, party: Party) -> None:
        player = self.player

        # старт вечеринки: срабатывает один раз, пока открыто лобби
        if party.status == PartyStatus.playing and self.lobby_visible:
            self.lobby_visible = False
            logger.info("Party %s started, entering content", party.code)
            await _notify(self.on_enter_content, party.video_url)
            await player.wait_ready()
            if abs(player.position() - party.current_time) > self.drift_tolerance:
                await player.seek(party.current_time)
            await player.play()
            return

        if party.status == PartyStatus.waiting:
            if not player.is_paused():
                await player.pause()
            self.lobby_visible = True
            return

        if party.status == PartyStatus.playing and player.is_paused():
            await player.play()
        elif party.status == PartyStatus.paused and not player.is_paused():
            await player.pause()

        drift = abs(player.position() - party.current_time)
        if drift > self.drift_tolerance:
            logger.debug("Drift %.2fs in party %s, seeking to %.2f", drift, party.code, party.current_time)
            await player.seek(party.current_time)

    async def _watch_host(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            party = self.party
            if party is None or self._stall_reported:
                continue
            if is_host_stale(party, interval=self.heartbeat_interval, missed=self.stale_heartbeats):
                self._stall_reported = True
                logger.warning("Host of party %s stopped sending heartbeats", party.code)
                try:
                    await _notify(self.on_host_stalled, party)
                except Exception:
                    logger.exception("on_host_stalled callback failed")

    async def _finish(self, party: Optional[Party]) -> None:
        if self.ended:
            return
        self.ended = True
        if party is not None:
            self.party = party
        logger.info("Party %s is over", self.party.code if self.party else "?")
        await self.stop()
        try:
            if not self.player.is_paused():
                await self.player.pause()
        except Exception:
            logger.exception("Failed to pause player after party end")
        await _notify(self.on_party_end, party)
