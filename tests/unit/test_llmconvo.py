from __future__ import annotations
import asyncio

import pytest

from conftest import FakeBackend, wire
from llmrepl.commands.llmconvo import parse_args, split_personas
from llmrepl.core.errors import CommandError, UnknownBackend
from llmrepl.core.history import RecordKind


class Scripted(FakeBackend):
    def __init__(self, name, reply, **kw):
        super().__init__(name, **kw)
        self.reply = reply
        self.prompts = []

    async def query_stream(self, model, prompt, options=None):
        self.prompts.append(prompt)
        self.parts = [self.reply]
        return await super().query_stream(model, prompt, options)


def test_parse_args():
    first, second, turns, topic = parse_args("a:m1 b:m2 3 the weather today")
    assert first == ("a", "m1") and second == ("b", "m2")
    assert turns == 3 and topic == "the weather today"


@pytest.mark.parametrize("args", ["", "a:m b:m 2", "a b:m 2 topic", "a:m b:m zero topic", "a:m b:m 0 topic"])
def test_parse_args_rejects_bad_input(args):
    with pytest.raises(CommandError):
        parse_args(args)


@pytest.mark.asyncio
async def test_conversation_alternates_and_builds_transcript():
    alice = Scripted("alice", "hi from alice")
    bob = Scripted("bob", "hi from bob")
    svc = wire(alice, bob)

    out = await svc.command("/llmconvo alice:m1 bob:m2 3 cats")

    assert len(alice.prompts) == 2 and len(bob.prompts) == 1
    # each prompt carries the transcript so far and ends with the speaker
    assert "user: cats" in bob.prompts[0]
    assert "LLM_1: hi from alice" in bob.prompts[0]
    assert bob.prompts[0].endswith("LLM_2:")
    assert "LLM_2: hi from bob" in alice.prompts[1]
    assert out.count("hi from alice") == 2 and out.count("hi from bob") == 1
    assert "finished after 3 turns" in out

    (record,) = svc.history()
    assert record.kind is RecordKind.COMMAND and record.output == out


@pytest.mark.asyncio
async def test_conversation_stops_at_first_failing_turn():
    good = Scripted("good", "fine")
    bad = FakeBackend("bad", parts=["half"], fail_after=0)
    svc = wire(good, bad)
    with pytest.raises(CommandError) as ei:
        await svc.command("/llmconvo good:m bad:m 4 topic")
    assert "turn 2" in str(ei.value)
    assert len(good.prompts) == 1
    assert svc.history()[-1].kind is RecordKind.ERROR


@pytest.mark.asyncio
async def test_conversation_requires_ready_backends():
    svc = wire(FakeBackend("a"), FakeBackend("locked", ready=False))
    with pytest.raises(CommandError):
        await svc.command("/llmconvo a:m locked:m 2 topic")
    with pytest.raises(UnknownBackend):
        await svc.command("/llmconvo a:m ghost:m 2 topic")


def test_split_personas():
    personas, rest = split_personas('persona1="a grumpy pirate" persona2=chef a:m1 b:m2 2 rum')
    assert personas == {"persona1": "a grumpy pirate", "persona2": "chef"}
    assert rest == "a:m1 b:m2 2 rum"
    assert split_personas("a:m1 b:m2 2 persona1=late") == ({}, "a:m1 b:m2 2 persona1=late")


@pytest.mark.parametrize("args", ['persona1="" a:m b:m 2 t', "persona1=x persona1=y a:m b:m 2 t"])
def test_split_personas_rejects_bad_input(args):
    with pytest.raises(CommandError):
        split_personas(args)


@pytest.mark.asyncio
async def test_personas_seed_the_system_turn():
    alice = Scripted("alice", "arr")
    bob = Scripted("bob", "bonjour")
    svc = wire(alice, bob)

    out = await svc.command("/llmconvo persona1='a pirate' persona2=chef alice:m1 bob:m2 2 dinner")

    for prompt in alice.prompts + bob.prompts:
        assert "LLM_1 persona: a pirate" in prompt
        assert "LLM_2 persona: chef" in prompt
    assert "LLM_1: alice:m1 (a pirate)" in out
    assert "Topic: dinner" in out


@pytest.mark.asyncio
async def test_cancelled_conversation_keeps_partial_transcript():
    svc = wire(FakeBackend(delay=0.02))
    task = asyncio.create_task(svc.command("/llmconvo fake:m1 fake:m1 5 hello"))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    (record,) = svc.history()
    assert record.kind is RecordKind.ERROR and record.status == "cancelled"
    assert record.input.startswith("/llmconvo fake:m1")
    assert "Topic: hello" in record.output
    assert "[ Conversation interrupted after" in record.output
