"""Command-line interface for oi."""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from pathlib import Path
from typing import Any

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.constrain import Constrain
from rich.live import Live
from rich.markdown import Markdown
from rich.markup import escape
from rich.status import Status
from rich.table import Table

from oi.config import Config, load_config, settings_path
from oi.core.orchestrator import Orchestrator
from oi.core.setup import resolve_model
from oi.errors import OiError, SetupError
from oi.events.bus import WILDCARD, EventBus
from oi.llm.ollama import OllamaClient
from oi.store import (
    ConversationCache,
    ConversationDB,
    format_conversation,
    resolve_cache_details,
)
from oi.tools import BUILTIN_TOOLS, build_registry
from oi.types import EventType, TurnEvent

console = Console()
err_console = Console(stderr=True)

_logger = logging.getLogger(__name__)

_QUIT_WORDS = frozenset({"q", "quit", "exit", "/quit", "/exit"})
_DURATION_RE = re.compile(r"(\d+)\s*([smhdw])")
_DURATION_FULL_RE = re.compile(r"(?:\d+\s*[smhdw]\s*)+")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


class StreamingDisplay:
    """Renders turn events to the terminal as they arrive.

    Raw mode writes chunks straight to stdout; otherwise the reply is
    re-rendered as markdown in a live region.  A spinner runs until the
    first output of a turn.
    """

    def __init__(
        self,
        con: Console,
        *,
        raw: bool = False,
        quiet: bool = False,
        status_text: str = "Generating",
        word_wrap: int = 80,
    ) -> None:
        self.con = con
        self.raw = raw
        self.quiet = quiet
        self.status_text = status_text
        self.word_wrap = word_wrap
        self._text = ""
        self._live: Live | None = None
        self._status: Status | None = None

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(WILDCARD, self.handle)

    def write(self, text: str) -> None:
        """Append text to the current reply."""
        if not text:
            return
        self._stop_status()
        self._text += text
        if self.raw:
            self.con.print(text, end="", markup=False, highlight=False, soft_wrap=True)
            return
        renderable = Constrain(Markdown(self._text), width=self.word_wrap)
        if self._live is None:
            self._live = Live(
                renderable,
                console=self.con,
                refresh_per_second=10,
                vertical_overflow="visible",
            )
            self._live.start()
        else:
            self._live.update(renderable)

    def handle(self, event: TurnEvent) -> None:
        if event.type is EventType.TURN_STARTED:
            if not self._text:
                self._start_status()

        elif event.type is EventType.TURN_CHUNK:
            self.write(event.data.get("content", ""))

        elif event.type in (EventType.TOOL_EXECUTED, EventType.TOOL_ERROR):
            self.write(event.data.get("text", ""))

        elif event.type is EventType.TURN_RETRY:
            if self._status is not None:
                self._status.update(
                    f"{self.status_text} [dim](retry {event.data.get('attempt')})[/dim]"
                )

        elif event.type in (EventType.TURN_DONE, EventType.TURN_ERROR):
            self.finish()

    def finish(self) -> None:
        self._stop_status()
        if self._live is not None:
            self._live.stop()
            self._live = None
        elif self.raw and self._text and not self._text.endswith("\n"):
            self.con.print()
        self._text = ""

    def _start_status(self) -> None:
        if self.quiet or self._status is not None or not self.con.is_terminal:
            return
        self._status = self.con.status(self.status_text)
        self._status.start()

    def _stop_status(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def print_error(error: OiError | Exception) -> None:
    reason = getattr(error, "reason", "") or type(error).__name__
    detail = str(error)
    err_console.print(f"\n  [bold white on red] ERROR [/]  {escape(reason)}")
    if detail and detail != reason:
        err_console.print(f"\n  [dim]{escape(detail)}[/dim]")
    err_console.print()


def parse_duration(text: str) -> float:
    """Parse durations such as ``30d``, ``12h`` or ``1w2d`` into seconds."""
    text = text.strip().lower()
    if not _DURATION_FULL_RE.fullmatch(text):
        raise SetupError(
            f"invalid duration {text!r}; use forms like 30d, 12h or 1w2d",
            reason="Could not parse the duration.",
        )
    return float(sum(int(n) * _DURATION_UNITS[unit] for n, unit in _DURATION_RE.findall(text)))


def apply_overrides(config: Config, **flags: Any) -> Config:
    """Return *config* with every flag that was given on the command line."""
    updates = {k: v for k, v in flags.items() if v is not None and v is not False and v != ()}
    if "stop" in updates:
        updates["stop"] = list(updates["stop"])
    return config.model_copy(update=updates) if updates else config


def read_stdin() -> str:
    if sys.stdin is None or sys.stdin.isatty():
        return ""
    try:
        return sys.stdin.read()
    except OSError as e:
        raise SetupError(str(e), reason="Unable to read stdin.") from e


def _list_conversations(db: ConversationDB) -> None:
    conversations = db.list()
    if not conversations:
        console.print("[dim]No conversations found.[/dim]")
        return
    if not console.is_terminal:
        for c in conversations:
            click.echo(f"{c.id[:8]}\t{c.title}")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", width=8)
    table.add_column("Title")
    table.add_column("Model", style="dim")
    for c in conversations:
        table.add_row(c.id[:8], c.title, c.model or "")
    console.print(table)


def _show_conversation(cache: ConversationCache, read_id: str, raw: bool) -> None:
    text = format_conversation(cache.read(read_id))
    if raw or not console.is_terminal:
        click.echo(text, nl=False)
    else:
        console.print(Markdown(text))


async def _list_models(base_url: str, timeout: float, proxy: str) -> list[str]:
    client = OllamaClient(base_url, timeout=timeout, proxy=proxy)
    try:
        return await client.list_models()
    finally:
        await client.close()


async def _run_session(
    orchestrator: Orchestrator,
    client: OllamaClient,
    content: str,
    *,
    first_turn: bool,
    chat: bool,
    history_path: Path,
) -> None:
    try:
        if first_turn:
            await orchestrator.run(content)
        if chat:
            session: PromptSession[str] = PromptSession(history=FileHistory(str(history_path)))
            while True:
                try:
                    user_input = (await session.prompt_async("❯ ")).strip()
                except (EOFError, KeyboardInterrupt):
                    break
                if not user_input:
                    continue
                if user_input.lower() in _QUIT_WORDS:
                    break
                await orchestrator.run(user_input)
    finally:
        orchestrator.shutdown()
        await client.close()


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------

@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("prefix", nargs=-1)
@click.option("--config", "config_path", default=None, help="Path to the settings file.")
@click.option("--model", "-m", default=None, help="Model to use (name or alias).")
@click.option("--api", "api_name", default=None, help="API to use.")
@click.option("--format", "-f", "fmt", is_flag=True, help="Ask for the response in a given format.")
@click.option("--format-as", default=None, help="Format for --format (markdown, json).")
@click.option("--role", "-R", default=None, help="Role preamble to use.")
@click.option("--list-roles", is_flag=True, help="List the configured roles.")
@click.option("--raw", "-r", is_flag=True, help="Print raw text without markdown rendering.")
@click.option("--quiet", "-q", is_flag=True, help="Only print the response.")
@click.option("--max-retries", type=int, default=None, help="Maximum retries of a failed turn.")
@click.option("--no-limit", is_flag=True, help="Do not truncate the input.")
@click.option("--max-tokens", type=int, default=None, help="Maximum tokens to generate.")
@click.option("--temp", type=float, default=None, help="Sampling temperature (negative = unset).")
@click.option("--topp", type=float, default=None, help="Top-p sampling (negative = unset).")
@click.option("--topk", type=int, default=None, help="Top-k sampling (negative = unset).")
@click.option("--stop", multiple=True, help="Stop sequence (repeatable).")
@click.option("--no-cache", is_flag=True, help="Do not read or save conversations.")
@click.option("--continue", "-c", "continue_id", default=None, help="Continue a conversation by id or title.")
@click.option("--continue-last", "-C", is_flag=True, help="Continue the last conversation.")
@click.option("--title", "-t", default=None, help="Title to save the conversation under.")
@click.option("--list", "-l", "list_convos", is_flag=True, help="List saved conversations.")
@click.option("--delete", "-d", "delete_ids", multiple=True, help="Delete a saved conversation.")
@click.option("--delete-older-than", default=None, help="Delete conversations older than e.g. 30d.")
@click.option("--show", "-s", default=None, help="Show a saved conversation.")
@click.option("--show-last", "-S", is_flag=True, help="Show the last saved conversation.")
@click.option("--prompt", "-P", "include_prompt", type=int, default=None,
              help="Echo the first N lines of the piped input.")
@click.option("--prompt-args", "-p", "include_prompt_args", is_flag=True,
              help="Echo the prompt arguments.")
@click.option("--chat", is_flag=True, help="Keep chatting after the first reply.")
@click.option("--dirs", is_flag=True, help="Print the settings and cache locations.")
@click.option("--list-models", is_flag=True, help="List models installed on the server.")
@click.option("--list-tools", is_flag=True, help="List the built-in tools.")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging.")
def main(
    prefix: tuple[str, ...],
    config_path: str | None,
    model: str | None,
    api_name: str | None,
    fmt: bool,
    format_as: str | None,
    role: str | None,
    list_roles: bool,
    raw: bool,
    quiet: bool,
    max_retries: int | None,
    no_limit: bool,
    max_tokens: int | None,
    temp: float | None,
    topp: float | None,
    topk: int | None,
    stop: tuple[str, ...],
    no_cache: bool,
    continue_id: str | None,
    continue_last: bool,
    title: str | None,
    list_convos: bool,
    delete_ids: tuple[str, ...],
    delete_older_than: str | None,
    show: str | None,
    show_last: bool,
    include_prompt: int | None,
    include_prompt_args: bool,
    chat: bool,
    dirs: bool,
    list_models: bool,
    list_tools: bool,
    verbose: bool,
) -> None:
    """oi - chat with a local model from the terminal."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config, config_file = load_config(config_path)
        config = apply_overrides(
            config,
            format=fmt,
            format_as=format_as,
            role=role,
            raw=raw,
            quiet=quiet,
            max_retries=max_retries,
            no_limit=no_limit,
            max_tokens=max_tokens,
            temp=temp,
            topp=topp,
            topk=topk,
            stop=stop,
            no_cache=no_cache,
            include_prompt=include_prompt,
            include_prompt_args=include_prompt_args,
        )
        _logger.debug("Loaded settings from %s", config_file)

        if dirs:
            click.echo(f"Configuration: {settings_path() if config_path is None else config_file}")
            click.echo(f"Cache: {config.cache_path}")
            return
        if list_roles:
            for name in sorted(config.roles):
                marker = " (active)" if name == config.role else ""
                click.echo(f"{name}{marker}")
            return
        if list_tools:
            for tool in build_registry(sorted(BUILTIN_TOOLS)).list_tools():
                click.echo(tool.to_compact_description())
            return

        api_spec = config.apis.get(api_name or config.default_api)
        if list_models:
            if api_spec is None:
                raise SetupError(
                    f"API {api_name or config.default_api!r} is not configured",
                    reason="Could not list models.",
                )
            for name in asyncio.run(
                _list_models(api_spec.base_url, config.request_timeout, config.http_proxy)
            ):
                click.echo(name)
            return

        db = ConversationDB(Path(config.cache_path).expanduser() / "oi.db")
        cache = ConversationCache(config.conversations_dir, db)
        try:
            if list_convos:
                _list_conversations(db)
                return
            if delete_ids or delete_older_than:
                targets = [db.find(key) for key in delete_ids]
                if delete_older_than:
                    targets.extend(db.older_than(parse_duration(delete_older_than)))
                for convo in targets:
                    cache.delete(convo.id)
                    if not quiet:
                        err_console.print(f"[dim]Conversation deleted:[/dim] {convo.id[:8]} {escape(convo.title)}")
                return

            details = resolve_cache_details(
                db,
                continue_id=continue_id or "",
                continue_last=continue_last,
                title=title or "",
                show=show or "",
                show_last=show_last,
                api=api_name or "",
                model=model or "",
            )
            if show or show_last:
                _show_conversation(cache, details.read_id, config.raw)
                return

            stdin_text = read_stdin()
            prompt_args = " ".join(prefix)
            if not stdin_text and not prompt_args and not chat:
                raise SetupError(
                    "Pass a prompt as arguments or pipe content on stdin.",
                    reason="You haven't provided any prompt input.",
                )

            resolved = resolve_model(config, model or details.model, api_name or details.api)
            registry = build_registry(config.tools) if config.tools else None
            client = OllamaClient(
                resolved.base_url,
                timeout=config.request_timeout,
                proxy=config.http_proxy,
            )

            raw_output = config.raw or not console.is_terminal
            display = StreamingDisplay(
                console,
                raw=raw_output,
                quiet=config.quiet,
                status_text=config.status_text,
                word_wrap=config.word_wrap,
            )
            if config.include_prompt_args and prompt_args:
                display.write(prompt_args + "\n\n")
            if config.include_prompt > 0 and stdin_text:
                display.write("\n".join(stdin_text.splitlines()[: config.include_prompt]) + "\n\n")

            bus = EventBus()
            display.attach(bus)
            orchestrator = Orchestrator(
                client,
                config,
                resolved,
                registry=registry,
                event_bus=bus,
                cache=None if config.no_cache else cache,
                read_id=details.read_id,
                write_id=details.write_id,
                title=details.title,
                prefix=prompt_args,
            )
            try:
                asyncio.run(_run_session(
                    orchestrator,
                    client,
                    stdin_text,
                    first_turn=bool(stdin_text.strip() or prompt_args) or not chat,
                    chat=chat,
                    history_path=Path(config.cache_path).expanduser() / "history",
                ))
            finally:
                display.finish()

            if not config.quiet and not config.no_cache and details.write_id:
                err_console.print(
                    f"\n[dim]Conversation saved:[/dim] {details.write_id[:8]} "
                    f"{escape(details.title or '')}"
                )
        finally:
            db.close()

    except OiError as e:
        print_error(e)
        sys.exit(1)
    except KeyboardInterrupt:
        err_console.print("\n[dim]Interrupted.[/dim]")
        sys.exit(130)


if __name__ == "__main__":
    main()
