import asyncio

import pytest

from client.sync import PlaybackSyncController
from errors import NotHost
from models import PartyStatus
from fakes import FakePlayer, wait_until


def snapshot(party, **changes):
    return party.model_copy(update=changes)

def make_controller(parties, player, user_id, **kwargs):
    kwargs.setdefault("heartbeat_interval", 60)
    return PlaybackSyncController(parties, player, user_id, **kwargs)


async def test_no_seek_inside_tolerance_band(party, parties):
    player = FakePlayer(position=10.0, paused=False)
    ctl = make_controller(parties, player, "guest")
    ctl.lobby_visible = False
    await ctl.apply(snapshot(party, status="playing", current_time=12.9))
    assert player.seeks == []

async def test_seek_when_drift_exceeds_tolerance(party, parties):
    player = FakePlayer(position=10.0, paused=False)
    ctl = make_controller(parties, player, "guest")
    ctl.lobby_visible = False
    await ctl.apply(snapshot(party, status="playing", current_time=13.1))
    assert player.seeks == [13.1]

async def test_paused_status_pauses_and_corrects_position(party, parties):
    player = FakePlayer(position=50.0, paused=False)
    ctl = make_controller(parties, player, "guest")
    ctl.lobby_visible = False
    await ctl.apply(snapshot(party, status="paused", current_time=40.0))
    assert player.is_paused()
    assert player.seeks == [40.0]

async def test_lobby_to_content_triggers_once(party, parties):
    entered = []
    player = FakePlayer()
    ctl = make_controller(parties, player, "guest", on_enter_content=entered.append)

    await ctl.apply(snapshot(party, status="waiting"))
    assert ctl.lobby_visible
    for t in (0.0, 5.0, 10.0, 15.0):
        await ctl.apply(snapshot(party, status="playing", current_time=t))

    assert entered == ["https://x/demo.mp4"]
    assert not ctl.lobby_visible
    assert not player.is_paused()

async def test_waiting_keeps_guest_paused_in_lobby(party, parties):
    player = FakePlayer(paused=False)
    ctl = make_controller(parties, player, "guest")
    await ctl.apply(snapshot(party, status="waiting"))
    assert player.is_paused()
    assert ctl.lobby_visible

async def test_host_does_not_reconcile_against_itself(party, parties):
    player = FakePlayer(position=100.0, paused=False)
    ctl = make_controller(parties, player, "host")
    await ctl.apply(snapshot(party, status="playing", current_time=0.0))
    await ctl.stop()
    assert player.seeks == []

async def test_participant_cannot_start_party(party, parties):
    parties.join_party(party.code, "guest", "Guest", "web")
    ctl = make_controller(parties, FakePlayer(), "guest")
    await ctl.start(parties.get_party(party.code))
    with pytest.raises(NotHost):
        await ctl.start_party()
    await ctl.stop()

async def test_heartbeat_errors_are_swallowed(party, parties, monkeypatch):
    player = FakePlayer(position=5.0, paused=False)
    ctl = make_controller(parties, player, "host")
    ctl.party = snapshot(party, status="playing")

    def broken(*args):
        raise RuntimeError("network down")

    monkeypatch.setattr(parties, "update_playback_state", broken)
    await ctl.heartbeat_once()

async def test_heartbeat_loop_pushes_state_and_stops(party, parties):
    player = FakePlayer(position=0.0)
    ctl = make_controller(parties, player, "host", heartbeat_interval=0.02)
    await ctl.start(party)
    await ctl.start_party()

    player.move_to(12.0)
    await wait_until(lambda: parties.get_party(party.code).current_time == 12.0)

    await ctl.stop()
    player.move_to(20.0)
    await asyncio.sleep(0.1)
    assert parties.get_party(party.code).current_time == 12.0

async def test_heartbeat_reports_local_pause(party, parties):
    player = FakePlayer(position=0.0)
    ctl = make_controller(parties, player, "host", heartbeat_interval=0.02)
    await ctl.start(party)
    await ctl.start_party()
    await player.pause()
    await wait_until(lambda: parties.get_party(party.code).status == PartyStatus.paused)
    await ctl.stop()

async def test_party_end_stops_controller(party, parties):
    parties.join_party(party.code, "guest", "Guest", "web")
    ended = []
    ctl = make_controller(parties, FakePlayer(), "guest", on_party_end=ended.append)
    await ctl.start(parties.get_party(party.code))

    parties.leave_party(party.code, "host")
    await wait_until(lambda: ctl.ended)
    assert ended[0].status == PartyStatus.ended
    await ctl.stop()

async def test_host_notified_when_guest_joins(party, parties):
    joined = []
    ctl = make_controller(parties, FakePlayer(), "host", on_participant_joined=joined.append)
    await ctl.start(party)
    await asyncio.to_thread(parties.join_party, party.code, "guest", "Guest", "web")
    await wait_until(lambda: len(joined) == 1)
    assert joined[0].user_id == "guest"
    await ctl.stop()

async def test_stalled_host_is_reported(party, parties):
    parties.join_party(party.code, "guest", "Guest", "web")
    parties.update_playback_state(party.code, PartyStatus.playing, 1.0)
    stalled = []
    ctl = make_controller(parties, FakePlayer(), "guest", heartbeat_interval=0.02, stale_heartbeats=2,
                          on_host_stalled=stalled.append)
    await ctl.start(parties.get_party(party.code))
    await wait_until(lambda: len(stalled) == 1)
    await asyncio.sleep(0.1)
    assert len(stalled) == 1
    await ctl.stop()

async def test_end_to_end_watch_party(parties, content):
    # A creates, B joins
    party = await asyncio.to_thread(parties.create_party, "A", "Alice", "web", content)
    assert len(party.code) == 6
    assert party.status == PartyStatus.waiting

    joined = await asyncio.to_thread(parties.join_party, party.code, "B", "Bob", "mobile")
    assert len(joined.participants) == 2
    assert joined.status == PartyStatus.waiting

    host_player = FakePlayer(position=0.0)
    guest_player = FakePlayer(position=0.0)
    entered = []
    host = make_controller(parties, host_player, "A")
    guest = make_controller(parties, guest_player, "B", on_enter_content=entered.append)
    await host.start(joined)
    await guest.start(joined)

    # A starts playback at 0
    await host.start_party()
    await wait_until(lambda: entered == ["https://x/demo.mp4"])
    await wait_until(lambda: not guest_player.is_paused())

    # next heartbeat: host at 47.2, guest lagging at 43.0
    guest_player.move_to(43.0)
    host_player.move_to(47.2)
    await host.heartbeat_once()
    await wait_until(lambda: guest_player.seeks == [47.2])
    assert entered == ["https://x/demo.mp4"]

    await guest.stop()
    await host.stop()

async def test_controller_can_be_restarted_after_stop(party, parties):
    parties.join_party(party.code, "guest", "Guest", "web")
    player = FakePlayer(position=0.0)
    ctl = make_controller(parties, player, "guest")
    await ctl.start(parties.get_party(party.code))
    await ctl.stop()
    await ctl.stop()

    await ctl.start(parties.get_party(party.code))
    await asyncio.to_thread(parties.update_playback_state, party.code, PartyStatus.playing, 20.0)
    await wait_until(lambda: player.seeks == [20.0])
    assert not ctl.lobby_visible
    await ctl.stop()
