import asyncio
import logging

from config import CFG
from logging_setup import configure_logging

configure_logging("shopbook")

from api_server import create_api_app, start_api_server, stop_api_server
from bookings import build_booking_core
from database import Store


logger = logging.getLogger(__name__)


async def main():
    """Application entry point."""
    store = Store(CFG.db_path)
    await store.init()

    core = build_booking_core(store)
    api_app = create_api_app(core)
    api_runner = await start_api_server(api_app)

    try:
        # Serve until cancelled (Ctrl+C / SIGTERM).
        await asyncio.Event().wait()
    finally:
        await stop_api_server(api_runner)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    run()
