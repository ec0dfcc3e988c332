from __future__ import annotations
import asyncio
import logging
import re
from typing import Dict, List, Tuple

from llmrepl.core.context import ContextPolicy, ContextWindowManager, Turn, render_transcript
from llmrepl.core.errors import CommandError, ReplError, UnknownBackend
from llmrepl.core.ports import Backend, FragmentKind
from llmrepl.log_utils import log_event
from .router import CommandContext

logger = logging.getLogger(__name__)

USAGE = (
    "Usage: /llmconvo [persona1=<text>] [persona2=<text>] "
    "<backend:model> <backend:model> <turns> <topic...>"
)

# persona1=pirate | persona1="a grumpy pirate" | persona1='a chef'
_PERSONA = re.compile(r"""(persona[12])=(?:"([^"]*)"|'([^']*)'|(\S+))\s*""")

SYSTEM_PROMPT = (
    "Two language models are holding a conversation. Each message is prefixed with its "
    "speaker. Continue as the speaker named at the end, replying with your next message only."
)


def _parse_speaker(token: str) -> Tuple[str, str]:
    backend, sep, model = token.partition(":")
    if not sep or not backend or not model:
        raise CommandError(f"Expected <backend:model>, got '{token}'. {USAGE}")
    return backend.lower(), model


def parse_args(args: str) -> Tuple[Tuple[str, str], Tuple[str, str], int, str]:
    parts = args.split(maxsplit=3)
    if len(parts) < 4:
        raise CommandError(USAGE)
    first, second = _parse_speaker(parts[0]), _parse_speaker(parts[1])
    try:
        turns = int(parts[2])
    except ValueError:
        raise CommandError(f"Turns must be a positive number, got '{parts[2]}'. {USAGE}")
    if turns <= 0:
        raise CommandError(f"Turns must be a positive number, got '{parts[2]}'. {USAGE}")
    return first, second, turns, parts[3].strip()


def split_personas(args: str) -> Tuple[Dict[str, str], str]:
    """Peel leading persona1=/persona2= options off the argument string."""
    personas: Dict[str, str] = {}
    rest = args.strip()
    while True:
        match = _PERSONA.match(rest)
        if match is None:
            return personas, rest
        key = match.group(1)
        if key in personas:
            raise CommandError(f"{key} given twice. {USAGE}")
        value = next(g for g in match.groups()[1:] if g is not None).strip()
        if not value:
            raise CommandError(f"{key} is empty. {USAGE}")
        personas[key] = value
        rest = rest[match.end():]


def system_turn(personas: Dict[str, str]) -> str:
    lines = [SYSTEM_PROMPT]
    for key, role in (("persona1", "LLM_1"), ("persona2", "LLM_2")):
        if key in personas:
            lines.append(f"{role} persona: {personas[key]}")
    return "\n".join(lines)


async def _speak(backend: Backend, model: str, prompt: str) -> str:
    """One turn: stream when possible, otherwise a single query."""
    stream = await backend.query_stream(model, prompt)
    if stream is None:
        return await backend.query(model, prompt)
    parts: List[str] = []
    try:
        async for fragment in stream:
            if fragment.kind is FragmentKind.TEXT:
                parts.append(fragment.text)
            elif fragment.kind is FragmentKind.ERROR:
                raise fragment.error  # type: ignore[misc]
            else:
                break
    finally:
        await stream.aclose()
    return "".join(parts)


async def llmconvo(ctx: CommandContext, args: str) -> str:
    personas, rest = split_personas(args)
    (b1, m1), (b2, m2), max_turns, topic = parse_args(rest)

    speakers = []
    for role, (name, model) in (("LLM_1", (b1, m1)), ("LLM_2", (b2, m2))):
        backend = ctx.registry.get(name)
        if backend is None:
            raise UnknownBackend(name)
        try:
            await backend.check_readiness()
        except ReplError as e:
            raise CommandError(f"Provider '{name}' is not ready: {e}") from e
        speakers.append((role, backend, model))

    window = ctx.context_window or ContextWindowManager(ContextPolicy())
    turns: List[Turn] = [
        {"role": "system", "content": system_turn(personas)},
        {"role": "user", "content": topic},
    ]
    lines = [
        f"LLM_1: {b1}:{m1}" + (f" ({personas['persona1']})" if "persona1" in personas else ""),
        f"LLM_2: {b2}:{m2}" + (f" ({personas['persona2']})" if "persona2" in personas else ""),
        f"Topic: {topic}",
        "",
    ]

    done = 0
    try:
        for turn in range(max_turns):
            role, backend, model = speakers[turn % 2]
            prompt = render_transcript(window.apply(turns)) + f"\n\n{role}:"
            log_event(logger, "llmconvo.turn", turn=turn + 1, speaker=role, backend=backend.identify(), model=model)
            try:
                reply = (await _speak(backend, model, prompt)).strip()
            except ReplError as e:
                raise CommandError(f"Conversation ended with error on turn {turn + 1} ({role}): {e}") from e
            turns.append({"role": role, "content": reply})
            lines.append(f"[{turn + 1}] {role} ({backend.identify()}:{model}):\n{reply}\n")
            done = turn + 1
    except asyncio.CancelledError as e:
        # the router records this transcript with the cancelled command
        lines.append(f"[ Conversation interrupted after {done} turns ]")
        e.partial_output = "\n".join(lines)  # type: ignore[attr-defined]
        log_event(logger, "llmconvo.interrupted", turns=done)
        raise

    lines.append(f"[ Conversation finished after {max_turns} turns ]")
    return "\n".join(lines)
