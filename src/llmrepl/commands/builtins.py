from __future__ import annotations
from typing import List, Optional

from llmrepl.core.context import ContextPolicy, ContextWindowManager
from llmrepl.core.errors import BackendError, CommandError, UnknownBackend, UnknownModel
from llmrepl.core.pipeline import StreamingPipeline
from llmrepl.core.state import RenderMode, SessionState, Theme
from llmrepl.providers.registry import BackendRegistry
from .llmconvo import llmconvo
from .router import CommandContext, CommandDescriptor, CommandRouter


def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {i}" for i in items)


async def help_cmd(ctx: CommandContext, args: str) -> str:
    snap = ctx.state.snapshot()
    lines = ["Available commands:"]
    for d in ctx.router.descriptors() if ctx.router else ():
        alias = f" (alias: {', '.join('/' + a for a in d.aliases)})" if d.aliases else ""
        lines.append(f"  /{d.name:<14} {d.help}{alias}")
    lines += [
        "",
        "  !<cmd>          run a shell command",
        "  /exit, /quit    leave the REPL",
        "",
        f"Markdown mode: {snap.render_mode.value}    Theme: {snap.theme.value}",
    ]
    return "\n".join(lines)


async def providers_cmd(ctx: CommandContext, args: str) -> str:
    current, _ = ctx.state.selection()
    rows = [f"{'*' if n == current else ' '} {n}" for n in ctx.registry.list_names()]
    return "Registered providers (* = current):\n" + "\n".join(rows)


async def _catalog(ctx: CommandContext, name: str) -> List[str]:
    backend = ctx.registry.get(name)
    if backend is None:
        raise UnknownBackend(name)
    await backend.check_readiness()
    return await backend.enumerate_models()


async def provider_cmd(ctx: CommandContext, args: str) -> str:
    parts = args.split()
    if not parts:
        return await providers_cmd(ctx, "")
    name = parts[0].lower()
    if ctx.registry.get(name) is None:
        raise UnknownBackend(name)
    if len(parts) > 1:
        ctx.registry.set_current(name, parts[1])
        return f"Provider set to: {name} (model: {parts[1]})"
    try:
        models = await _catalog(ctx, name)
    except BackendError as e:
        ctx.registry.set_current(name)
        _, model = ctx.state.selection()
        return f"Provider set to: {name}. Could not list models ({e.message}); keeping model '{model}'."
    if not models:
        ctx.registry.set_current(name)
        _, model = ctx.state.selection()
        return f"Provider set to: {name}. No models reported; keeping model '{model}'."
    ctx.registry.set_current(name, models[0])
    return f"Provider set to: {name} (model: {models[0]})"


async def models_cmd(ctx: CommandContext, args: str) -> str:
    name = args.split()[0].lower() if args.split() else ctx.state.selection()[0]
    models = await _catalog(ctx, name)
    if not models:
        return f"No models available for {name}."
    return f"Available models for {name}:\n{_bullets(models)}"


async def model_cmd(ctx: CommandContext, args: str) -> str:
    wanted = args.strip()
    if not wanted:
        return await models_cmd(ctx, "")
    backend, _ = ctx.state.selection()
    try:
        models = await _catalog(ctx, backend)
    except BackendError as e:
        raise CommandError(f"Could not list models for provider '{backend}': {e.message}") from e
    if wanted not in models:
        raise UnknownModel(backend, wanted)
    ctx.state.select(backend, wanted)
    return f"Model set to: {wanted}"


async def status_cmd(ctx: CommandContext, args: str) -> str:
    snap = ctx.state.snapshot()
    return "\n".join([
        f"Provider:      {snap.backend}",
        f"Model:         {snap.model}",
        f"Markdown mode: {snap.render_mode.value}",
        f"Theme:         {snap.theme.value}",
        f"History:       {snap.history_len} entries",
    ])


def _set_mode(mode: RenderMode, message: str):
    async def handler(ctx: CommandContext, args: str) -> str:
        ctx.state.set_render_mode(mode)
        return message
    return handler


async def md_status_cmd(ctx: CommandContext, args: str) -> str:
    return f"Current Markdown mode: {ctx.state.snapshot().render_mode.value}"


async def theme_cmd(ctx: CommandContext, args: str) -> str:
    wanted = args.strip().lower()
    allowed = [t.value for t in Theme]
    if not wanted:
        return f"Available themes: {', '.join(allowed)}"
    if wanted not in allowed:
        raise CommandError(f"Unknown theme '{wanted}'. Available: {', '.join(allowed)}")
    ctx.state.set_theme(Theme(wanted))
    return f"Theme set to: {wanted}"


async def theme_status_cmd(ctx: CommandContext, args: str) -> str:
    return f"Current Markdown theme: {ctx.state.snapshot().theme.value}"


async def reader_cmd(ctx: CommandContext, args: str) -> str:
    records = ctx.state.history()
    if not records:
        return "History is empty."
    blocks = []
    for i, r in enumerate(records, start=1):
        flag = "" if r.complete else f" [{r.status}]"
        head = f"--- [{i}] {r.kind.value} ({r.backend}:{r.model}) {r.timestamp:%H:%M:%S}{flag} ---"
        body = [f"> {r.input}"]
        if r.output:
            body.append(r.output.rstrip())
        if r.error:
            body.append(f"error: {r.error}")
        blocks.append("\n".join([head, *body]))
    return "\n\n".join(blocks)


BUILTINS: List[CommandDescriptor] = [
    CommandDescriptor("help", help_cmd, "show this help"),
    CommandDescriptor("providers", providers_cmd, "list registered providers"),
    CommandDescriptor("provider", provider_cmd, "switch provider: /provider <name> [model]"),
    CommandDescriptor("models", models_cmd, "list models of the current or given provider"),
    CommandDescriptor("model", model_cmd, "switch model: /model <name>"),
    CommandDescriptor("status", status_cmd, "show provider, model, render mode and theme"),
    CommandDescriptor("md", _set_mode(RenderMode.APPEND, "Markdown mode: append (raw stream, formatted copy after)"), "render markdown after streaming"),
    CommandDescriptor("md_streaming", _set_mode(RenderMode.LIVE, "Markdown mode: live (re-rendered while streaming)"), "render markdown live while streaming"),
    CommandDescriptor("md_off", _set_mode(RenderMode.OFF, "Markdown mode: off (raw text)"), "disable markdown rendering"),
    CommandDescriptor("md_status", md_status_cmd, "show the markdown mode"),
    CommandDescriptor("theme", theme_cmd, "set the markdown theme: /theme <name>"),
    CommandDescriptor("theme_status", theme_status_cmd, "show the markdown theme"),
    CommandDescriptor("reader", reader_cmd, "show the session history", aliases=("history",)),
    CommandDescriptor("llmconvo", llmconvo, "two models talk: /llmconvo [persona1=..] [persona2=..] <b:m> <b:m> <turns> <topic>"),
]


def build_router(
    registry: BackendRegistry,
    state: SessionState,
    pipeline: StreamingPipeline,
    context_window: Optional[ContextWindowManager] = None,
) -> CommandRouter:
    ctx = CommandContext(
        registry=registry,
        state=state,
        pipeline=pipeline,
        context_window=context_window or ContextWindowManager(ContextPolicy()),
    )
    return CommandRouter(BUILTINS, ctx)
