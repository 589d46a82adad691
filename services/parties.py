"""
Party State Store and Membership Manager.

A party lives at ``watchParties/{code}``. Membership changes run as
transactions that only ever write ``participants`` (or ``status``/``endedAt``
when a leave ends the party); playback writes only touch ``status``,
``currentTime`` and ``lastSync``. The document is never deleted.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from google.cloud import firestore

import settings
from errors import BackendUnavailable, InvalidTransition, NotFound, NotHost, PartyEnded, PartyFull
from models import Content, Participant, Party, PartyStatus, Platform, can_transition, now_utc
from utils.join_code import generate_join_code, is_valid_code, normalize_code
from utils.store import DocumentStore, Subscription

logger = logging.getLogger(__name__)

PARTIES = "watchParties"

def party_path(code: str) -> str:
    code = normalize_code(code)
    # произвольный ввод не должен попасть в путь документа
    if not is_valid_code(code):
        raise NotFound(f"Party {code} not found")
    return f"{PARTIES}/{code}"


def is_host_stale(
    party: Party,
    now: Optional[datetime] = None,
    interval: float = settings.HEARTBEAT_INTERVAL,
    missed: int = settings.STALE_HEARTBEATS,
) -> bool:
    """True when a running party has gone ``missed`` heartbeats without a host write."""
    if party.status in (PartyStatus.waiting, PartyStatus.ended):
        return False
    now = now or now_utc()
    return now - party.last_sync > timedelta(seconds=interval * missed)


class PartyService:
    def __init__(
        self,
        store: DocumentStore,
        max_participants: int = settings.MAX_PARTICIPANTS,
        code_attempts: int = settings.JOIN_CODE_ATTEMPTS,
        code_factory: Callable[[], str] = generate_join_code,
    ):
        self.store = store
        self.max_participants = max_participants
        self.code_attempts = code_attempts
        self.code_factory = code_factory

    # ─── чтение ────────────────────────────────────────────────────────────────
    def get_party(self, code: str) -> Party:
        data = self.store.get(party_path(code))
        if data is None:
            raise NotFound(f"Party {normalize_code(code)} not found")
        return Party.model_validate(data)

    # ─── CreateParty ───────────────────────────────────────────────────────────
    def create_party(
        self,
        user_id: str,
        display_name: str,
        platform: Platform,
        content: Content,
    ) -> Party:
        host = Participant(user_id=user_id, display_name=display_name, platform=platform)

        # генератор не гарантирует уникальность, проверяем через create-if-absent
        for attempt in range(1, self.code_attempts + 1):
            code = self.code_factory()
            party = Party(
                code=code,
                host_user_id=user_id,
                content_id=content.content_id,
                content_title=content.content_title,
                video_url=content.video_url,
                participants=[host],
                max_participants=self.max_participants,
            )
            if self.store.create(party_path(code), party.to_doc()):
                logger.info("Party %s created by %s for content %s", code, user_id, content.content_id)
                return party
            logger.warning("Join code collision on %s (attempt %d)", code, attempt)

        raise BackendUnavailable("Could not allocate a unique join code")

    # ─── JoinParty ─────────────────────────────────────────────────────────────
    def join_party(self, code: str, user_id: str, display_name: str, platform: Platform) -> Party:
        code = normalize_code(code)
        newcomer = Participant(user_id=user_id, display_name=display_name, platform=platform)

        def mutate(data):
            if data is None:
                raise NotFound(f"Party {code} not found")
            party = Party.model_validate(data)
            if party.has_participant(user_id):
                return None, party
            if party.status == PartyStatus.ended:
                raise PartyEnded(f"Party {code} has ended")
            if party.is_full:
                raise PartyFull(f"Party {code} is full")
            party.participants.append(newcomer)
            return {"participants": [p.to_doc() for p in party.participants]}, party

        party = self.store.transaction(party_path(code), mutate)
        logger.info("User %s in party %s (%d/%d)", user_id, code, len(party.participants), party.max_participants)
        return party

    # ─── UpdatePlaybackState ───────────────────────────────────────────────────
    def update_playback_state(
        self,
        code: str,
        status: PartyStatus,
        current_time: float,
        user_id: Optional[str] = None,
    ) -> None:
        code = normalize_code(code)
        status = PartyStatus(status)

        def mutate(data):
            if data is None:
                raise NotFound(f"Party {code} not found")
            party = Party.model_validate(data)
            if user_id is not None and user_id != party.host_user_id:
                raise NotHost("Only the host can control playback")
            if not can_transition(party.status, status):
                raise InvalidTransition(f"Cannot move party {code} from {party.status} to {status.value}")
            updates = {
                "status":      status.value,
                "currentTime": float(current_time),
                "lastSync":    firestore.SERVER_TIMESTAMP,
            }
            if status == PartyStatus.ended:
                updates["endedAt"] = now_utc()
            return updates, None

        self.store.transaction(party_path(code), mutate)
        logger.debug("Party %s -> %s @ %.2fs", code, status.value, current_time)

    # ─── LeaveParty / EndParty ─────────────────────────────────────────────────
    def leave_party(self, code: str, user_id: str) -> Optional[Party]:
        """Remove ``user_id``; a host leave (or an emptied list) ends the party.

        Leaving an unknown party is a no-op and returns None.
        """
        code = normalize_code(code)
        if not is_valid_code(code):
            return None

        def mutate(data):
            if data is None:
                return None, None
            party = Party.model_validate(data)
            if party.status == PartyStatus.ended or not party.has_participant(user_id):
                return None, party
            remaining = [p for p in party.participants if p.user_id != user_id]
            if party.host_user_id == user_id or not remaining:
                ended_at = now_utc()
                party.status, party.ended_at = PartyStatus.ended.value, ended_at
                return {"status": PartyStatus.ended.value, "endedAt": ended_at}, party
            party.participants = remaining
            return {"participants": [p.to_doc() for p in remaining]}, party

        party = self.store.transaction(party_path(code), mutate)
        if party is not None:
            logger.info("User %s left party %s (status=%s)", user_id, code, party.status)
        return party

    def end_party(self, code: str, user_id: str) -> Party:
        code = normalize_code(code)

        def mutate(data):
            if data is None:
                raise NotFound(f"Party {code} not found")
            party = Party.model_validate(data)
            if party.host_user_id != user_id:
                raise NotHost("Only the host can end the party")
            if party.status == PartyStatus.ended:
                return None, party
            ended_at = now_utc()
            party.status, party.ended_at = PartyStatus.ended.value, ended_at
            return {"status": PartyStatus.ended.value, "endedAt": ended_at}, party

        party = self.store.transaction(party_path(code), mutate)
        logger.info("Party %s ended by host", code)
        return party

    # ─── Subscribe ─────────────────────────────────────────────────────────────
    def subscribe(self, code: str, callback: Callable[[Optional[Party]], None]) -> Subscription:
        """Deliver every snapshot; ``None`` means the party is gone or unreadable."""
        code = normalize_code(code)

        def on_change(data):
            if data is None:
                callback(None)
                return
            try:
                party = Party.model_validate(data)
            except ValueError:
                logger.exception("Unreadable party document %s", code)
                callback(None)
                return
            callback(party)

        return self.store.watch_document(party_path(code), on_change)
