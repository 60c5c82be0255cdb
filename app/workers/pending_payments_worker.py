"""Executable worker that reconciles stale pending payments."""

from __future__ import annotations

import asyncio
import logging
import os

from app.core.config import get_settings
from app.core.database import build_engine, build_session_factory
from app.modules.payments.gateway import StripeCheckoutGateway
from app.modules.payments.reconciler import Reconciler
from app.modules.payments.retry import ReconcileRetryDriver
from app.modules.payments.store import LedgerStore
from app.modules.payments.sweeper import PendingTransactionSweeper

logger = logging.getLogger(__name__)


async def main() -> None:
    """Run once or keep polling according to worker mode."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    mode = os.getenv("PENDING_SWEEP_MODE", "once").strip().lower()
    poll_seconds = int(os.getenv("PENDING_SWEEP_POLL_SECONDS", "60"))

    engine = build_engine(settings)
    store = LedgerStore.from_settings(build_session_factory(engine), settings)
    sweeper = PendingTransactionSweeper.from_settings(
        store,
        ReconcileRetryDriver.from_settings(Reconciler(store), settings),
        StripeCheckoutGateway.from_settings(settings),
        settings,
    )

    try:
        if mode == "once":
            stats = await sweeper.run_once()
            logger.info("Pending payments sweep stats: %s", stats)
            return

        while True:
            try:
                stats = await sweeper.run_once()
                logger.info("Pending payments sweep stats: %s", stats)
            except Exception:
                logger.exception("Pending payments sweep cycle failed")
            await asyncio.sleep(poll_seconds)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
