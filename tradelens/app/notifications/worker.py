import asyncio
import logging

from tradelens.app.common.db import get_db_session
from tradelens.app.notifications.email_queue import process_email_queue

logger = logging.getLogger(__name__)


class EmailWorker:
    """Periodically drains the email queue from the app's event loop."""

    def __init__(self, interval_sec: float):
        self.interval_sec = interval_sec
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(f"Email worker started (every {self.interval_sec}s)")

        while self._running:
            try:
                result = await asyncio.to_thread(self._run_once)
                if result["processed"]:
                    logger.info(f"Email worker run: {result}")
            except Exception as e:
                logger.error(f"Email worker run failed: {e}")

            await asyncio.sleep(self.interval_sec)

    async def stop(self) -> None:
        self._running = False
        logger.info("Email worker stopped")

    def _run_once(self) -> dict:
        with get_db_session() as db:
            return process_email_queue(db)
