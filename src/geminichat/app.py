"""Terminal front-end and bootstrap helpers for the geminichat client."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Awaitable, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import ClientSettings, GeminiClient, ProviderAdapter
from .ai.models import BotModel
from .engine.chat_engine import SUGGESTIONS, ChatEngine
from .engine.events import ActiveSessionChanged, TurnCanceled, TurnCompleted, TurnFailed, TurnStreamChunk
from .engine.session_store import SessionRepository
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}

_HELP_TEXT = """\
Commands:
  /new                     start a new chat
  /sessions                list chats (most recent first)
  /switch <id>             switch to another chat
  /delete <id>             delete a chat
  /rename <id> <title>     rename a chat
  /regen                   regenerate the last reply
  /edit <index>            rewind to a prompt and stage it for editing
  /image <prompt>          generate an image
  /attach <path>           stage an image attachment
  /file <path>             stage a text file attachment
  /model [id]              show or change the model
  /clear                   clear the current chat
  /cancel                  cancel the reply in progress
  /suggest [n]             list starter prompts, or send prompt n
  /quit                    exit
Anything else is sent as a message."""


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file logging; console output would interleave with the REPL."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=False, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_adapter(settings: Settings, *, debug_logging: bool = False) -> GeminiClient:
    client_settings = ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        image_model=settings.image_model,
        organization=settings.organization,
        request_timeout=settings.request_timeout,
        default_headers=settings.default_headers,
        debug_logging=debug_logging or settings.debug_logging,
    )
    return GeminiClient(client_settings)


def build_engine(settings: Settings, adapter: ProviderAdapter, *, sessions_path: Path | None = None) -> ChatEngine:
    path = sessions_path
    if path is None and settings.sessions_path:
        path = Path(settings.sessions_path).expanduser()
    return ChatEngine(settings, adapter, repository=SessionRepository(path))


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `geminichat` console script."""

    args = _parse_cli_args(argv)

    debug = _env_flag("GEMINICHAT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("GEMINICHAT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    overrides_mapping: Dict[str, Any] | None = cli_overrides or None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
        debug = True

    if not settings.api_key:
        print("No API key configured; set GEMINICHAT_API_KEY or use --set api_key=...", file=sys.stderr)

    sessions_path = Path(args.sessions_path).expanduser() if args.sessions_path else None
    engine = build_engine(settings, build_adapter(settings, debug_logging=debug), sessions_path=sessions_path)
    try:
        asyncio.run(ChatRepl(engine).run())
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


class ChatRepl:
    """Line-oriented chat loop printing streamed replies as they arrive."""

    def __init__(self, engine: ChatEngine, *, stream: TextIO | None = None) -> None:
        self._engine = engine
        self._out = stream or sys.stdout
        self._pending: set[asyncio.Task[Any]] = set()
        engine.subscribe(TurnStreamChunk, self._on_chunk)
        engine.subscribe(TurnCompleted, self._on_completed)
        engine.subscribe(TurnFailed, self._on_failed)
        engine.subscribe(TurnCanceled, self._on_canceled)
        engine.subscribe(ActiveSessionChanged, self._on_active_changed)

    async def run(self) -> None:
        self._engine.load()
        self._write(f"Gemini Chat ({self._engine.model}). Type /help for commands.\n")
        try:
            while True:
                try:
                    line = await asyncio.to_thread(input, "> ")
                except EOFError:
                    break
                if not await self.handle_line(line):
                    break
        finally:
            await self.shutdown()

    async def handle_line(self, line: str) -> bool:
        """Process one input line; returns ``False`` when the loop should stop."""

        stripped = line.strip()
        if not stripped.startswith("/"):
            composer = self._engine.composer
            if stripped:
                composer.set_text(stripped)
            if not composer.is_empty:
                self._dispatch(self._engine.send())
            return True

        command, _, rest = stripped.partition(" ")
        rest = rest.strip()
        engine = self._engine

        if command in {"/quit", "/exit"}:
            return False
        if command == "/help":
            self._write(_HELP_TEXT + "\n")
        elif command == "/new":
            self._write(f"Started chat {engine.create_session()}\n")
        elif command == "/sessions":
            self._print_sessions()
        elif command == "/switch":
            if not engine.switch_to(rest):
                self._write(f"Unknown chat: {rest}\n")
        elif command == "/delete":
            if not engine.remove(rest):
                self._write(f"Unknown chat: {rest}\n")
        elif command == "/rename":
            session_id, _, title = rest.partition(" ")
            if not engine.rename(session_id, title):
                self._write("Usage: /rename <id> <title>\n")
        elif command == "/regen":
            self._dispatch(engine.regenerate())
        elif command == "/edit":
            self._edit(rest)
        elif command == "/image":
            self._dispatch(engine.generate_image(rest))
        elif command == "/attach":
            if engine.composer.attach_image(rest):
                self._write(f"Image staged: {rest}\n")
            else:
                self._write(f"Could not attach image: {rest}\n")
        elif command == "/file":
            if engine.composer.attach_file(rest):
                self._write(f"File staged: {rest}\n")
            else:
                self._write(f"Could not read file: {rest}\n")
        elif command == "/model":
            self._model(rest)
        elif command == "/clear":
            if not engine.clear_messages():
                self._write("Cannot clear while a reply is in progress.\n")
        elif command == "/cancel":
            if not engine.cancel():
                self._write("Nothing to cancel.\n")
        elif command == "/suggest":
            self._suggest(rest)
        else:
            self._write(f"Unknown command: {command}\n")
        return True

    async def shutdown(self) -> None:
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        with contextlib.suppress(RuntimeError):
            await self._engine.aclose()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _dispatch(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _edit(self, raw_index: str) -> None:
        try:
            index = int(raw_index)
        except ValueError:
            self._write("Usage: /edit <index>\n")
            return
        staged = self._engine.edit_message(index)
        if staged is None:
            self._write("That message cannot be edited.\n")
            return
        self._write(f"Staged for editing (press Enter to resend unchanged):\n{staged}\n")

    def _model(self, raw_model: str) -> None:
        if not raw_model:
            for model in BotModel:
                marker = "*" if model.value == self._engine.model else " "
                self._write(f" {marker} {model.value:<24} {model.label} - {model.description}\n")
            return
        if not self._engine.set_model(raw_model):
            self._write(f"Unknown model: {raw_model}\n")
            return
        self._write(f"Model set to {self._engine.model}\n")

    def _suggest(self, raw_index: str) -> None:
        if not raw_index:
            for position, label in enumerate(SUGGESTIONS, start=1):
                self._write(f"  {position}. {label}\n")
            return
        try:
            label = SUGGESTIONS[int(raw_index) - 1]
        except (ValueError, IndexError):
            self._write(f"Unknown suggestion: {raw_index}\n")
            return
        self._dispatch(self._engine.use_suggestion(label))

    def _print_sessions(self) -> None:
        active = self._engine.active_session_id
        for session in self._engine.list_sessions():
            marker = "*" if session.id == active else " "
            stamp = session.updated_at.astimezone().strftime("%Y-%m-%d %H:%M")
            self._write(f" {marker} {session.id}  {stamp}  {session.title} ({len(session.messages)})\n")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_chunk(self, event: TurnStreamChunk) -> None:
        if event.session_id == self._engine.active_session_id:
            self._write(event.content)

    def _on_completed(self, event: TurnCompleted) -> None:
        if event.session_id != self._engine.active_session_id:
            return
        message = self._engine.messages.get(event.message_id)
        if message is not None and message.image is not None:
            self._write(f"{event.response_text}\n[image: {message.image.mime_type}]")
        self._write("\n")

    def _on_failed(self, event: TurnFailed) -> None:
        if event.session_id == self._engine.active_session_id:
            self._write(f"\n[error] {event.error}\n")

    def _on_canceled(self, event: TurnCanceled) -> None:
        if event.session_id == self._engine.active_session_id:
            self._write("\n[canceled]\n")

    def _on_active_changed(self, event: ActiveSessionChanged) -> None:
        session = self._engine.sessions.get(event.session_id)
        title = session.title if session is not None else event.session_id
        self._write(f"-- {title} --\n")
        for index, message in enumerate(self._engine.history()):
            speaker = "you" if message.is_user else "gemini"
            self._write(f"[{index}] {speaker}: {message.display}\n")

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="geminichat",
        add_help=True,
        description="Chat with Gemini models from the terminal or inspect the configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.geminichat/settings.json path.",
    )
    parser.add_argument(
        "--sessions-path",
        metavar="PATH",
        help="Override the default ~/.geminichat/sessions.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is type(None) or normalized.lower() in {"none", "null"}:
        return None
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    api_key = payload.get("api_key", "")
    if isinstance(api_key, str):
        payload["api_key"] = redact_secret(api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("GEMINICHAT_"))


if __name__ == "__main__":  # pragma: no cover
    main()
