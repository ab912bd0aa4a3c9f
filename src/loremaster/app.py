"""Command-line entry point for the Loremaster assistant."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO

from .ai.client import AIClient, ModelClient
from .ai.orchestration import ChatEventLogger, ConversationOrchestrator, ConversationTurn, ToolContext, TurnConfig
from .ai.orchestration.tools import ToolResult
from .ai.tools import StaticSchemaCatalog, ToolBackends, backends_from_integrations, build_registry, build_system_prompt
from .editor.documents import DocumentStore
from .services.settings import Settings, SettingsStore, parse_override
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the command-line process."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
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


def load_schema_catalog(path: Path) -> StaticSchemaCatalog:
    """Read a ``{"tables": [...]}`` JSON export into a catalog.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If the file is not a JSON object.
    """

    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"schema file {path} must contain a JSON object")
    return StaticSchemaCatalog.from_mapping(payload)


def build_orchestrator(
    settings: Settings,
    *,
    client: ModelClient | None = None,
    backends: ToolBackends | None = None,
) -> tuple[ConversationOrchestrator, ToolBackends]:
    """Wire client, tools, and prompt from ``settings``."""

    if client is None:
        client = AIClient(settings.to_client_settings())
    if backends is None:
        backends = backends_from_integrations(settings.integrations, timeout=settings.tool_timeout)
    registry = build_registry(backends)
    system_prompt = build_system_prompt(backends.schema_catalog, registry.list_tools())
    config = TurnConfig.from_settings(settings, system_prompt=system_prompt)
    orchestrator = ConversationOrchestrator(
        client,
        registry,
        config=config,
        event_logger=ChatEventLogger(enabled=settings.debug_event_logging),
    )
    return orchestrator, backends


class _TextPrinter:
    """Writes the growth of the cumulative turn text to ``stream``."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._written = 0

    @property
    def written(self) -> int:
        return self._written

    def __call__(self, text: str) -> None:
        if len(text) <= self._written:
            return
        self._stream.write(text[self._written :])
        self._stream.flush()
        self._written = len(text)


def _report_tool(result: ToolResult, stream: TextIO) -> None:
    status = f"failed: {result.error}" if result.error else "ok"
    stream.write(f"[{result.tool_name}] {status}\n")


async def ask(
    settings: Settings,
    question: str,
    *,
    schema_catalog: StaticSchemaCatalog | None = None,
    client: ModelClient | None = None,
    out: TextIO | None = None,
    err: TextIO | None = None,
) -> ConversationTurn:
    """Run a single question through the orchestrator, streaming text to ``out``."""

    out = out or sys.stdout
    err = err or sys.stderr
    backends = backends_from_integrations(
        settings.integrations,
        schema_catalog=schema_catalog,
        timeout=settings.tool_timeout,
    )
    orchestrator, backends = build_orchestrator(settings, client=client, backends=backends)
    printer = _TextPrinter(out)
    context = ToolContext(documents=DocumentStore())
    try:
        turn = await orchestrator.run(
            question,
            tool_context=context,
            on_text_delta=printer,
            on_tool_result=lambda result: _report_tool(result, err),
        )
    finally:
        await backends.aclose()
        close = getattr(orchestrator.client, "aclose", None)
        if close is not None:
            await close()

    if printer.written < len(turn.text):
        printer(turn.text)
    if turn.text:
        out.write("\n")
    for document in context.documents.list_documents() if context.documents is not None else ():
        err.write(f"[document] {document.document_id}: {document.title} ({len(document.html)} chars)\n")
    if turn.truncated:
        err.write("[truncated] the answer was still cut off after the continuation limit\n")
    if turn.metadata.get("max_iterations_reached"):
        err.write("[stopped] the tool iteration limit was reached\n")
    if turn.error:
        err.write(f"Error: {turn.error}\n")
    return turn


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `loremaster` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)

    debug = _env_flag("LOREMASTER_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("LOREMASTER_SETTINGS_PATH")
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

    if args.command != "ask":
        parser.print_help(sys.stderr)
        raise SystemExit(2)

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    question = " ".join(args.question).strip()
    if not question:
        print("A question is required.", file=sys.stderr)
        raise SystemExit(2)

    catalog = None
    if args.schema:
        try:
            catalog = load_schema_catalog(Path(args.schema).expanduser())
        except (OSError, ValueError) as exc:
            print(f"Unable to load schema: {exc}", file=sys.stderr)
            raise SystemExit(2) from exc

    try:
        turn = asyncio.run(ask(settings, question, schema_catalog=catalog))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Interrupted by user.")
        raise SystemExit(130)
    if turn.error:
        raise SystemExit(1)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loremaster",
        add_help=True,
        description="Ask the game data assistant a question or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.loremaster/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    subparsers = parser.add_subparsers(dest="command")
    ask_parser = subparsers.add_parser("ask", help="Ask one question and print the answer.")
    ask_parser.add_argument("question", nargs="+", help="The question to ask.")
    ask_parser.add_argument(
        "--schema",
        metavar="PATH",
        help='JSON file with {"tables": [...]} used for schema lookups and the system prompt.',
    )
    return parser


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for entry in items:
        key, value = parse_override(entry)
        current = overrides.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            current.update(value)
        else:
            overrides[key] = value
    return overrides


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": settings.redacted(), "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("LOREMASTER_"))
