"""Escrow settlement worker entry point.

Loads settings, connects the store and lock backend, wires the reconcilers
into one scheduler and runs until SIGINT or SIGTERM.
"""
import asyncio
import contextlib
import signal
import logging
from typing import Any, Dict, Optional

import uvicorn

from config import get_settings
from database import init_db, ping as db_ping, close as db_close
from deals.store import DealStore
from ledger import create_ledger
from locks import DistributedLock, connect as connect_redis
from notifications import LogNotifier, TelegramNotifier
from publisher import TelegramBotAPI, TelegramPublisher
from reconcilers import (
    PaymentReconciler, PostReconciler, VerificationReconciler,
    EscrowSettlement, AutoReleaseReconciler, RefundReconciler, ExpiryReconciler
)
from scheduler import Scheduler
from api import create_app

logger = logging.getLogger(__name__)

class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the worker"""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield

def build_scheduler(settings: Dict[str, Any], store, locks, ledger, publisher, notifier) -> Scheduler:
    """Construct every reconciler and register it with its cadence."""
    common = {'batch_size': settings['batch_size']}
    settlement_ttl = settings['settlement_lock_ttl_ms']
    settlement = EscrowSettlement(store, ledger)

    scheduler = Scheduler(primary=settings['primary_worker'])
    scheduler.add(
        'payments',
        PaymentReconciler(store, locks, ledger, notifier, lock_ttl_ms=settings['lock_ttl_ms'], **common),
        settings['payment_check_interval']
    )
    if publisher is not None:
        scheduler.add(
            'posts',
            PostReconciler(store, locks, publisher, notifier, lock_ttl_ms=settings['lock_ttl_ms'], **common),
            settings['post_publish_interval']
        )
        scheduler.add(
            'verification',
            VerificationReconciler(
                store, locks, publisher, settlement, notifier,
                threshold=settings['content_difference_threshold'],
                lock_ttl_ms=settlement_ttl, **common
            ),
            settings['verification_interval']
        )
    scheduler.add(
        'auto_release',
        AutoReleaseReconciler(
            store, locks, settlement, notifier,
            auto_release_hours=settings['auto_release_hours'],
            lock_ttl_ms=settlement_ttl, **common
        ),
        settings['auto_release_interval']
    )
    # Offset refunds by half a cycle so they do not start together with releases
    scheduler.add(
        'refunds',
        RefundReconciler(store, locks, settlement, notifier, lock_ttl_ms=settlement_ttl, **common),
        settings['refund_interval'],
        initial_delay=settings['refund_interval'] / 2
    )
    scheduler.add(
        'expiry',
        ExpiryReconciler(store, locks, ledger, notifier, lock_ttl_ms=settings['lock_ttl_ms'], **common),
        settings['expiry_interval']
    )
    return scheduler

async def main(settings_path: Optional[str] = None):
    """Main application entry point."""
    settings = get_settings(settings_path)
    logging.getLogger().setLevel(settings['log_level'])

    logger.info("Initializing database...")
    pool = await init_db(settings['db_url'])
    store = DealStore(pool)

    redis = connect_redis(settings['redis_url'])
    locks = DistributedLock(redis, default_ttl_ms=settings['lock_ttl_ms'])

    ledger = create_ledger(settings)
    if settings['telegram_bot_token']:
        bot = TelegramBotAPI(settings['telegram_bot_token'])
        verification_chat = settings['verification_chat_id']
        publisher = TelegramPublisher(bot, int(verification_chat) if verification_chat else None)
        notifier = TelegramNotifier(bot, store)
    else:
        logger.warning("telegram_bot_token not set, post publication and verification are disabled")
        publisher = None
        notifier = LogNotifier()

    scheduler = build_scheduler(settings, store, locks, ledger, publisher, notifier)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_shutdown():
        """Handle shutdown signals gracefully."""
        logger.info("Shutdown signal received. Cleaning up...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_shutdown)

    server_task = None
    if settings['health_port']:
        app = create_app(scheduler, db_ping=db_ping, lock_ping=locks.ping)
        server = HealthServer(uvicorn.Config(
            app, host="0.0.0.0", port=settings['health_port'], log_level="warning"
        ))
        server_task = asyncio.create_task(server.serve())
        logger.info(f"Health API listening on port {settings['health_port']}")

    try:
        scheduler.start()
        await stop_event.wait()
    finally:
        await scheduler.stop()
        if server_task is not None:
            server.should_exit = True
            await server_task
        await redis.aclose()
        await db_close()

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
