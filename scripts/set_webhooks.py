"""
Register (or remove) the Telegram webhook of the relay bot.
Run once after deploying with TG_MODE=webhook:

    python -m scripts.set_webhooks
    python -m scripts.set_webhooks --delete     # back to long polling
"""
import argparse
import asyncio

from telegram import Bot

from venue_relay.config import settings


async def set_webhook(drop_pending: bool) -> int:
    base_url = settings.WEBHOOK_BASE_URL.rstrip("/")
    if not base_url:
        print("ERROR: WEBHOOK_BASE_URL is not set")
        return 1
    if not settings.TG_WEBHOOK_SECRET:
        print("ERROR: TG_WEBHOOK_SECRET is not set")
        return 1

    webhook_url = f"{base_url}{settings.TG_WEBHOOK_PATH}"
    async with Bot(token=settings.TG_TOKEN) as bot:
        result = await bot.set_webhook(
            url=webhook_url,
            secret_token=settings.TG_WEBHOOK_SECRET,
            drop_pending_updates=drop_pending,
        )
        info = await bot.get_webhook_info()
    print(f"  URL: {webhook_url}")
    print(f"  Result: {result}")
    print(f"  Pending updates: {info.pending_update_count}")
    return 0


async def delete_webhook() -> int:
    async with Bot(token=settings.TG_TOKEN) as bot:
        result = await bot.delete_webhook()
    print(f"  Webhook deleted: {result}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Manage the relay bot webhook")
    parser.add_argument("--delete", action="store_true", help="remove the webhook")
    parser.add_argument(
        "--drop-pending",
        action="store_true",
        help="drop updates Telegram has queued (they are lost, not relayed)",
    )
    args = parser.parse_args()
    if args.delete:
        return asyncio.run(delete_webhook())
    return asyncio.run(set_webhook(args.drop_pending))


if __name__ == "__main__":
    raise SystemExit(main())
