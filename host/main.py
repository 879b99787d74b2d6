"""
Command line entry point for the layered context engine.

    layered-context apply --platform telegram --chat-id 42 --messages history.json
    layered-context inspect --platform telegram --chat-id 42
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from host.config import load_settings, LayeredContextSettings

logger = logging.getLogger(__name__)


def configure_logging(log_level: str = "INFO", log_format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                      log_to_file: bool = False, log_file_path: str = "logs/layered_context.log",
                      max_lines_per_file: int = 5000, max_log_files: int = 10):
    """
    Configure logging with the specified level, format, and optional rolling file logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log message format string
        log_to_file: Whether to enable file logging
        log_file_path: Path to log file (directory will be created if needed)
        max_lines_per_file: Maximum lines per log file before rotation
        max_log_files: Maximum number of log files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    # Clear existing handlers and reconfigure
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(log_format)

    # Console output goes to stderr so command output on stdout stays parseable
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        try:
            import os
            from logging.handlers import RotatingFileHandler

            log_dir = os.path.dirname(log_file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            # Estimate ~100 characters per log line on average
            max_bytes = max_lines_per_file * 100

            file_handler = RotatingFileHandler(
                filename=log_file_path,
                maxBytes=max_bytes,
                backupCount=max_log_files - 1,  # -1 because current file + backups = total
                encoding='utf-8'
            )
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        except OSError as file_error:
            logger.warning(f"Failed to setup file logging, continuing with console logging only: {file_error}")

    root_logger.setLevel(numeric_level)


def configure_from_settings(settings: LayeredContextSettings) -> None:
    configure_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_to_file=settings.log_to_file,
        log_file_path=settings.log_file_path,
        max_lines_per_file=settings.log_max_lines_per_file,
        max_log_files=settings.log_max_files,
    )
    if settings.tracing_enabled:
        from host.observability import setup_tracing
        setup_tracing(service_name=settings.tracing_service_name, endpoint=settings.tracing_endpoint)


def _load_messages(path: str) -> List[Dict[str, Any]]:
    if path == "-":
        data = json.load(sys.stdin)
    else:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        raise ValueError("Messages file must hold a JSON list or an object with a 'messages' list")
    return data


async def _run_apply(args: argparse.Namespace, settings: LayeredContextSettings) -> int:
    from layered_context.factory import build_session_key, create_layered_context_manager

    messages = _load_messages(args.messages)
    manager = await create_layered_context_manager(settings)
    session_key = args.session_key or build_session_key(args.platform, args.chat_id)
    try:
        result = await manager.apply(
            session_key=session_key,
            platform=args.platform,
            chat_id=args.chat_id,
            query=args.query or "",
            messages=messages,
        )
    finally:
        await manager.storage.shutdown()

    output = {
        "session_key": session_key,
        "applied": result.applied,
        "archived_message_count": result.archived_message_count,
        "fallback_events": result.fallback_events,
        "retrieval": result.retrieval.to_dict() if result.retrieval else None,
        "updated_messages": result.updated_messages if args.show_messages else len(result.updated_messages),
        "metrics": manager.get_metrics_snapshot(),
    }
    print(json.dumps(output, indent=2, ensure_ascii=False, default=str))
    return 0


async def _run_inspect(args: argparse.Namespace, settings: LayeredContextSettings) -> int:
    from layered_context.factory import build_session_key
    from storage.storage_factory import StorageFactory

    storage = StorageFactory.create_from_settings(settings)
    if not await storage.initialize():
        logger.error("Storage initialization failed")
        return 1
    session_key = args.session_key or build_session_key(args.platform, args.chat_id)
    try:
        document = await storage.read_index(session_key)
    finally:
        await storage.shutdown()

    if document is None:
        logger.error(f"No index stored for session {session_key}")
        return 1
    print(json.dumps(document.to_dict(), indent=2, ensure_ascii=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="layered-context", description="Layered conversation context engine")
    parser.add_argument("--env-file", default=".env", help="Settings file (default: .env)")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_session_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--platform", default="cli", help="Messaging platform name")
        sub.add_argument("--chat-id", default=None, help="Chat identifier")
        sub.add_argument("--session-key", default=None, help="Explicit session key (overrides platform/chat id)")

    apply_parser = subparsers.add_parser("apply", help="Archive and layer a message history")
    add_session_args(apply_parser)
    apply_parser.add_argument("--messages", required=True, help="JSON file with the message list ('-' for stdin)")
    apply_parser.add_argument("--query", default=None, help="Query text (defaults to the latest user turn)")
    apply_parser.add_argument("--show-messages", action="store_true", help="Print the rewritten message list")

    inspect_parser = subparsers.add_parser("inspect", help="Print a session's index document")
    add_session_args(inspect_parser)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(env_file=args.env_file)
    if args.log_level:
        settings.log_level = args.log_level
    configure_from_settings(settings)

    runners = {"apply": _run_apply, "inspect": _run_inspect}
    try:
        return asyncio.run(runners[args.command](args, settings))
    except (OSError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
