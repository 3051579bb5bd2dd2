"""
Operator commands for the relay tables.

    python -m scripts.relay_admin stats
    python -m scripts.relay_admin replay-dead [--id 42 --id 43]
    python -m scripts.relay_admin replay-failed [--id 7]
    python -m scripts.relay_admin prune-claims [--days 30]

Replays put rows back to NEW with a fresh attempt budget; the running
workers pick them up on their next tick.
"""
import argparse
import asyncio
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from venue_relay.config import settings
from venue_relay.database import async_session, engine, utcnow
from venue_relay.services.idempotency import IdempotencyStore
from venue_relay.services.inbound_queue import InboundUpdateQueue
from venue_relay.services.outbox import OutboxStore


async def stats(factory: async_sessionmaker[AsyncSession]) -> dict:
    async with factory() as session:
        return {
            "inbound": await InboundUpdateQueue().count_by_status(session),
            "outbox": await OutboxStore().count_by_status(session),
        }


async def replay_dead(factory: async_sessionmaker[AsyncSession], ids: list[int] | None) -> int:
    async with factory() as session:
        count = await InboundUpdateQueue().requeue_dead(session, ids)
        await session.commit()
    return count


async def replay_failed(factory: async_sessionmaker[AsyncSession], ids: list[int] | None) -> int:
    async with factory() as session:
        count = await OutboxStore().requeue_failed(session, ids)
        await session.commit()
    return count


async def prune_claims(factory: async_sessionmaker[AsyncSession], days: int) -> int:
    async with factory() as session:
        count = await IdempotencyStore().prune(session, utcnow() - timedelta(days=days))
        await session.commit()
    return count


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Venue relay maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="row counts per status")

    dead = sub.add_parser("replay-dead", help="DEAD inbound updates → NEW")
    dead.add_argument("--id", dest="ids", type=int, action="append", help="update_id (repeatable)")

    failed = sub.add_parser("replay-failed", help="FAILED outbox rows → NEW")
    failed.add_argument("--id", dest="ids", type=int, action="append", help="outbox id (repeatable)")

    prune = sub.add_parser("prune-claims", help="delete old idempotency claims")
    prune.add_argument("--days", type=int, default=settings.IDEMPOTENCY_RETENTION_DAYS)
    return parser


async def run(args: argparse.Namespace) -> None:
    try:
        if args.command == "stats":
            result = await stats(async_session)
            for queue, counts in result.items():
                line = ", ".join(f"{status}={n}" for status, n in sorted(counts.items()))
                print(f"{queue}: {line or 'empty'}")
        elif args.command == "replay-dead":
            print(f"Requeued {await replay_dead(async_session, args.ids)} inbound updates")
        elif args.command == "replay-failed":
            print(f"Requeued {await replay_failed(async_session, args.ids)} outbox messages")
        elif args.command == "prune-claims":
            if args.days < 1:
                raise SystemExit("--days must be at least 1")
            print(f"Deleted {await prune_claims(async_session, args.days)} claims")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(run(build_parser().parse_args()))
