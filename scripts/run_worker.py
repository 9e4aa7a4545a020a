#!/usr/bin/env python3
"""
Dispatcher Worker — Run the notification dispatcher as its own process.

Several workers may run against the same SQL database; each claims its own
batches. SIGINT / SIGTERM trigger a graceful stop: no new batch is claimed
and the cycle in progress is allowed to finish.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --config config/settings.yaml --worker-name mail-1
    python scripts/run_worker.py --once          # one cycle, then exit
"""
import asyncio
import os
import signal
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

import structlog

logger = structlog.get_logger()


async def run_worker(config_path: str = None, worker_name: str = "", once: bool = False) -> int:
    from config.logging import configure_logging, bind_worker
    from config.settings import load_settings
    from database.session import init_db
    from database.store_factory import create_store
    from job_queue.dispatcher import Dispatcher
    from transport.factory import create_transport

    settings = load_settings(config_path)
    if worker_name:
        settings.dispatch.worker_name = worker_name
    configure_logging(settings.logging.level, json=settings.logging.json)

    store = create_store({
        "store_backend": settings.database.store_backend,
        "store_file_dir": settings.database.store_file_dir,
        "url": settings.database.url,
    })
    transport = create_transport(settings.transport)
    dispatcher = Dispatcher.from_settings(settings, store, transport)
    bind_worker(dispatcher.worker_name)

    try:
        if settings.database.store_backend == "sql" and settings.database.create_tables:
            await init_db(store.engine)
        await transport.initialize()

        if once:
            await dispatcher.recover_stale()
            stats = await dispatcher.run_cycle()
            logger.info("worker_single_cycle", **stats)
            return 0 if stats["errors"] == 0 else 1

        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_requested.set)
            except NotImplementedError:  # Windows
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_requested.set))

        dispatcher.start()
        await stop_requested.wait()
        logger.info("worker_stop_requested")
        await dispatcher.stop()
        return 0
    finally:
        await transport.close()
        await store.close()


def main():
    parser = argparse.ArgumentParser(description="Notification dispatcher worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml (default: $NOTIFY_CONFIG)")
    parser.add_argument("--worker-name", default="", help="Name stamped on claimed records")
    parser.add_argument("--once", action="store_true", help="Run a single dispatch cycle and exit")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_worker(args.config, args.worker_name, args.once)))


if __name__ == "__main__":
    main()
