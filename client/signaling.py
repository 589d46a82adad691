"""
Signaling relay over per-participant voice-signal records.

Each client owns ``watchParties/{code}/voiceSignals/{userId}`` and writes the
message meant for peer X under ``signals.X``. A newer message to the same peer
replaces the older one, and record updates carry no ordering guarantee, so
receivers dedupe by message id and buffer messages in a ``PeerMailbox`` until
the matching connection exists.
"""
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Literal, Optional, Set

from google.cloud import firestore
from pydantic import ValidationError

from models import VoiceSignalRecord
from models_signaling import SignalMessage, decode_signal, encode_signal
from services.parties import party_path
from utils.store import DocumentChange, DocumentStore, Subscription

logger = logging.getLogger(__name__)

def signals_path(code: str) -> str:
    return f"{party_path(code)}/voiceSignals"


@dataclass
class RelayEvent:
    kind:     Literal["joined", "updated", "left"]
    peer_id:  str
    record:   Optional[VoiceSignalRecord] = None
    message:  Optional[SignalMessage]     = None
    initial:  bool                        = False


class PeerMailbox:
    """Inbox for one remote peer.

    Messages are accepted once per id. Until ``attach`` is called they are
    held in arrival order; ``attach`` hands back the backlog for replay.
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.attached = False
        self._pending: Deque[SignalMessage] = deque()
        self._seen: Set[str] = set()

    def put(self, message: SignalMessage) -> bool:
        """Returns False for a message id that was already delivered."""
        if message.id in self._seen:
            return False
        self._seen.add(message.id)
        self._pending.append(message)
        return True

    def attach(self) -> List[SignalMessage]:
        self.attached = True
        return self.drain()

    def drain(self) -> List[SignalMessage]:
        if not self.attached:
            return []
        out = list(self._pending)
        self._pending.clear()
        return out

    def discard(self, message: SignalMessage) -> None:
        """Drop a buffered message; its id stays seen."""
        try:
            self._pending.remove(message)
        except ValueError:
            pass

    @property
    def pending(self) -> int:
        return len(self._pending)

    def clear(self) -> None:
        self.attached = False
        self._pending.clear()


class SignalingRelay:
    def __init__(self, store: DocumentStore, party_code: str, user_id: str, display_name: str):
        self.store = store
        self.party_code = party_code
        self.user_id = user_id
        self.display_name = display_name

    @property
    def record_path(self) -> str:
        return f"{signals_path(self.party_code)}/{self.user_id}"

    def announce(self, **fields) -> None:
        """Merge-write this client's own record (mute / speaking state etc.)."""
        record = {
            "userId":      self.user_id,
            "displayName": self.display_name,
            "peerId":      self.user_id,
            "timestamp":   firestore.SERVER_TIMESTAMP,
        }
        record.update(fields)
        self.store.set(self.record_path, record, merge=True)

    def send(self, target_id: str, message: SignalMessage) -> None:
        logger.debug("Signal %s -> %s (%s)", self.user_id, target_id, message.kind)
        self.store.set(self.record_path, {
            "signals":   {target_id: encode_signal(message)},
            "timestamp": firestore.SERVER_TIMESTAMP,
        }, merge=True)

    def withdraw(self) -> None:
        self.store.delete(self.record_path)

    def subscribe(self, handler: Callable[[RelayEvent], None]) -> Subscription:
        def on_changes(changes: List[DocumentChange], initial: bool):
            for change in changes:
                if change.id == self.user_id:
                    continue
                event = self._to_event(change, initial)
                if event is not None:
                    handler(event)

        return self.store.watch_collection(signals_path(self.party_code), on_changes)

    def _to_event(self, change: DocumentChange, initial: bool) -> Optional[RelayEvent]:
        if change.type == "removed":
            return RelayEvent("left", change.id)
        try:
            record = VoiceSignalRecord.model_validate({"userId": change.id, **(change.data or {})})
        except ValidationError:
            logger.warning("Ignoring malformed voice record from %s", change.id)
            return None

        message = None
        raw = record.signals.get(self.user_id)
        if raw:
            try:
                message = decode_signal(raw)
            except ValidationError:
                logger.warning("Ignoring malformed signal from %s", change.id)

        kind = "joined" if change.type == "added" else "updated"
        return RelayEvent(kind, change.id, record=record, message=message, initial=initial)
