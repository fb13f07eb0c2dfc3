"""
Command-line entry point for operating a retrieval database.

Subcommands:
- stats: Row counts and embedding backlog
- backfill: Embed rows that were stored while the provider was unavailable
- knowledge-search: Search a guild's knowledge base
- memories: List a user's memories in one scope

SETUP:
1. Copy .env.example to .env and set OPENROUTER_API_KEY (or OPENAI_API_KEY)
2. Optionally copy config.yaml.example to config.yaml and tune it
3. pip install -e .
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from .config import config
from .errors import ProviderError, ProviderUnavailable
from .retrieval.base import DirectMessageScope, GlobalScope, GuildScope, Scope
from .retrieval.engine import RetrievalEngine, create_retrieval_engine

logger = logging.getLogger("recall.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recall",
        description="Semantic retrieval store for conversational bots",
    )
    parser.add_argument("--db", help="Database path (overrides config and RECALL_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("stats", help="Show row counts and embedding backlog")

    backfill_parser = subparsers.add_parser("backfill", help="Embed rows stored without an embedding")
    backfill_parser.add_argument("--batch-size", type=int, default=50, help="Texts per provider request")

    search_parser = subparsers.add_parser("knowledge-search", help="Search a guild's knowledge base")
    search_parser.add_argument("query", help="Search text")
    search_parser.add_argument("--guild", required=True, help="Guild id")
    search_parser.add_argument("--tag", help="Only entries with this tag")
    search_parser.add_argument("--limit", type=int, default=10, help="Maximum results")

    memories_parser = subparsers.add_parser("memories", help="List a user's memories")
    memories_parser.add_argument("--user", type=int, required=True, help="Internal user id")
    scope_group = memories_parser.add_mutually_exclusive_group(required=True)
    scope_group.add_argument("--guild", help="Guild scope")
    scope_group.add_argument("--dm", action="store_true", help="Direct-message scope")
    scope_group.add_argument("--global", dest="global_scope", action="store_true", help="Global scope")

    return parser


def scope_from_args(args: argparse.Namespace) -> Scope:
    if args.guild:
        return GuildScope(args.guild)
    if args.dm:
        return DirectMessageScope()
    return GlobalScope()


async def show_stats(engine: RetrievalEngine, args: argparse.Namespace) -> bool:
    stats = await engine.stats()
    print(f"Messages:               {stats.messages}")
    print(f"Unembedded messages:    {stats.unembedded_messages}")
    print(f"Unembedded memories:    {stats.unembedded_memories}")
    print(f"Unembedded knowledge:   {stats.unembedded_knowledge}")
    print(f"Embeddings ready:       {'yes' if stats.embeddings_ready else 'no'}")
    return True


async def run_backfill(engine: RetrievalEngine, args: argparse.Namespace) -> bool:
    if args.batch_size < 1:
        print("--batch-size must be at least 1", file=sys.stderr)
        return False

    try:
        report = await engine.backfill_embeddings(batch_size=args.batch_size)
    except ProviderUnavailable as e:
        print(f"Cannot backfill: {e}", file=sys.stderr)
        return False
    except ProviderError as e:
        logger.error(f"Backfill stopped: {e}")
        return False

    print(
        f"Embedded {report.messages} messages, {report.memories} memories, "
        f"{report.knowledge} knowledge entries ({report.merged_memories} memories merged)"
    )
    return True


async def search_knowledge(engine: RetrievalEngine, args: argparse.Namespace) -> bool:
    results = await engine.knowledge.search(args.guild, args.query, limit=args.limit, tag=args.tag)
    if not results:
        print("No matching knowledge entries.")
        return True

    for result in results:
        entry = result.entry
        tags = f" [{', '.join(entry.tags)}]" if entry.tags else ""
        print(f"#{entry.id} ({result.score:.3f}){tags}: {entry.content}")
    return True


async def list_memories(engine: RetrievalEngine, args: argparse.Namespace) -> bool:
    scope = scope_from_args(args)
    memories = await engine.memories.get_memories(args.user, scope)
    if not memories:
        print("No memories.")
        return True

    count = await engine.memories.get_memory_count(args.user, scope)
    print(f"{count.total} memories ({count.explicit} explicit, {count.inferred} inferred)")
    for memory in memories:
        marker = "" if memory.embedding is not None else " (no embedding)"
        print(f"#{memory.id} {memory.type}/{memory.source}{marker}: {memory.content}")
    return True


COMMANDS = {
    "stats": show_stats,
    "backfill": run_backfill,
    "knowledge-search": search_knowledge,
    "memories": list_memories,
}


async def run(args: argparse.Namespace) -> bool:
    """
    Run one CLI command against the configured database.

    Returns:
        True if the command succeeded.
    """
    config.setup_logging()

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return False

    engine = create_retrieval_engine(config, db_path=args.db)
    try:
        return await COMMANDS[args.command](engine, args)
    finally:
        await engine.close()


def main(argv: Optional[Sequence[str]] = None):
    """Entry point for the application."""
    args = build_parser().parse_args(argv)

    try:
        success = asyncio.run(run(args))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nFatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
