import asyncio

import pytest

from client.chat_poller import ChatPoller
from errors import EmptyMessage, MessageTooLong, NotFound
from fakes import wait_until


def test_message_over_200_chars_is_rejected(party, chat):
    with pytest.raises(MessageTooLong):
        chat.send(party.code, "host", "Host", "web", "x" * 201)
    assert chat.fetch(party.code) == []

def test_message_of_exactly_200_chars_is_accepted(party, chat):
    text = "y" * 200
    sent = chat.send(party.code, "host", "Host", "web", text)
    assert sent.message == text
    assert [m.message for m in chat.fetch(party.code)] == [text]

def test_fetch_returns_submission_order(party, chat):
    for i in range(5):
        chat.send(party.code, "host", "Host", "web", f"msg {i}")
    assert [m.message for m in chat.fetch(party.code)] == [f"msg {i}" for i in range(5)]

def test_fetch_limit_keeps_most_recent(party, chat):
    for i in range(5):
        chat.send(party.code, "host", "Host", "web", f"msg {i}")
    assert [m.message for m in chat.fetch(party.code, limit=2)] == ["msg 3", "msg 4"]

def test_blank_message_is_rejected(party, chat):
    with pytest.raises(EmptyMessage):
        chat.send(party.code, "host", "Host", "web", "   ")

def test_send_to_unknown_party_fails(chat):
    with pytest.raises(NotFound):
        chat.send("ZZZZZZ", "host", "Host", "web", "hello")

def test_messages_are_scoped_per_party(parties, chat, content, party):
    other = parties.create_party("other", "Other", "web", content)
    chat.send(party.code, "host", "Host", "web", "here")
    chat.send(other.code, "other", "Other", "web", "there")
    assert [m.message for m in chat.fetch(party.code)] == ["here"]
    assert chat.fetch(party.code)[0].party_id == party.code

async def test_poller_reports_only_new_messages(party, chat):
    batches = []
    poller = ChatPoller(chat, party.code, batches.append, interval=0.01)
    chat.send(party.code, "host", "Host", "web", "first")
    poller.start()
    await wait_until(lambda: len(batches) == 1)

    chat.send(party.code, "host", "Host", "web", "second")
    await wait_until(lambda: len(batches) == 2)
    await asyncio.sleep(0.05)
    await poller.stop()

    assert [[m.message for m in b] for b in batches] == [["first"], ["second"]]

async def test_poller_survives_fetch_errors(party, chat, monkeypatch):
    calls = []

    def broken(*args):
        calls.append(args)
        raise RuntimeError("backend down")

    monkeypatch.setattr(chat, "fetch", broken)
    poller = ChatPoller(chat, party.code, lambda msgs: None, interval=0.01)
    poller.start()
    await wait_until(lambda: len(calls) >= 3)
    await poller.stop()
    await poller.stop()

def test_malformed_party_code_is_not_found(chat):
    with pytest.raises(NotFound):
        chat.send("../x", "host", "Host", "web", "hello")
    with pytest.raises(NotFound):
        chat.fetch("ab/cd")
