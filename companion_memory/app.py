from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Sequence

from .characters import MemoryAccessDenied
from .config import Settings
from .memory.factory import MemoryRuntime, build_memory_runtime

logger = logging.getLogger("companion_memory")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.client").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="companion_memory",
        description="Per-user, per-character conversational memory for companion chat.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Run one user/character exchange through the memory pipeline.")
    ingest.add_argument("--user", required=True, help="User id.")
    ingest.add_argument("--character", required=True, help="Character id.")
    ingest.add_argument("--message", required=True, help="User message.")
    ingest.add_argument("--reply", default="", help="Character reply, if any.")
    ingest.add_argument("--emotion", default=None, help="Emotion tag of the user turn.")
    ingest.add_argument("--reply-emotion", default=None, help="Emotion tag of the character reply.")

    context = sub.add_parser("context", help="Print the memory context block for the next model call.")
    context.add_argument("--user", required=True)
    context.add_argument("--character", required=True)
    context.add_argument("--query", default="", help="Text used for episodic retrieval.")
    context.add_argument("--persona", default="", help="Persona text placed first in the context.")

    show = sub.add_parser("show", help="Dump the stored memory record as JSON.")
    show.add_argument("--user", required=True)
    show.add_argument("--character", required=True)

    sub.add_parser("maintenance", help="Decay stale facts and prune old episodic memories.")
    return parser


async def _dispatch(runtime: MemoryRuntime, args: argparse.Namespace) -> Any:
    pipeline = runtime.pipeline
    if args.command == "ingest":
        report = await pipeline.process_exchange(
            args.user,
            args.character,
            args.message,
            args.reply,
            emotion=args.emotion,
            reply_emotion=args.reply_emotion,
        )
        return {
            "turns_saved": report.turns_saved,
            "facts_written": report.facts_written,
            "episodes_written": report.episodes_written,
            "summary_refreshed": report.summary_refreshed,
            "importance": report.importance,
            "errors": report.errors,
        }
    if args.command == "context":
        return await pipeline.build_prompt_context(args.user, args.character, args.persona, args.query)
    if args.command == "show":
        memory = await pipeline.get_memory(args.user, args.character)
        return memory.to_dict()
    if args.command == "maintenance":
        return await pipeline.run_maintenance()
    raise ValueError(f"Unknown command: {args.command}")


async def run_command(settings: Settings, args: argparse.Namespace) -> Any:
    runtime = build_memory_runtime(settings)
    await runtime.start()
    try:
        return await _dispatch(runtime, args)
    finally:
        await runtime.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    settings.validate()
    configure_logging(settings.log_level)
    try:
        result = asyncio.run(run_command(settings, args))
    except MemoryAccessDenied as exc:
        logger.error("Access denied: %s", exc)
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")
        return 130
    if isinstance(result, str):
        print(result)
    else:
        print(json.dumps(result, ensure_ascii=False, indent=2))
    return 0
