"""
expense-sync entry point.
Starts the resilient API client and keeps it running so queued offline
writes are synced when connectivity returns.
"""

import asyncio

from loguru import logger

from expense_sync.resources import ExpenseResource
from expense_sync.services import ApiClient, Err, SyncCompleted
from expense_sync.settings import global_settings


def on_sync_complete(event: SyncCompleted) -> None:
    logger.info(
        f"Offline changes synced: {event.processed} processed, {event.failed} failed"
    )


async def main() -> None:
    """Main function."""
    logger.info("Starting expense-sync...")

    client = ApiClient(global_settings)
    try:
        await client.start()
        client.queue.subscribe(on_sync_complete)
        client.credentials.on_logout(lambda: logger.warning("Please log in again"))

        # Warm the cache with the first page of expenses
        result = await client.send("GET", ExpenseResource.PATH, params={"page": 1})
        if isinstance(result, Err):
            logger.warning(f"Initial fetch failed ({result.kind.value}): {result.message}")

        logger.info("expense-sync is running. Press Ctrl+C to stop.")
        while True:
            await asyncio.sleep(60)
            logger.debug(f"Health: {client.get_health_status()}")

    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Received interrupt signal, shutting down...")
    finally:
        await client.close()
        logger.info("expense-sync stopped")


if __name__ == "__main__":
    asyncio.run(main())
