#!/usr/bin/env python3
"""
Enrichment Staleness Sweeper

A dedicated process that periodically fails stuck market-intelligence and
seller-pull jobs and returns abandoned extraction claims to the queue. The
API applies the same rules when records are read; this covers records that
nobody is polling.

Usage:
    python worker.py [--interval=S] [--once]
"""

import argparse
import asyncio
import logging
import os
import signal
from typing import Optional

from enrichment.config import get_settings
from enrichment.jobs.sweeper import sweep_once
from enrichment.jobs.utils import utc_now
from enrichment.supabase_client import get_supabase

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("enrichment.worker")


class StalenessSweeper:
    """
    Runs sweep_once on a fixed interval until signalled to stop.
    """

    def __init__(self, interval: Optional[float] = None, worker_id: Optional[str] = None):
        self.settings = get_settings()
        self.interval = interval or self.settings.sweeper_interval_seconds
        self.worker_id = worker_id or f"sweeper-{os.getpid()}-{utc_now().strftime('%H%M%S')}"
        self.supabase = get_supabase()

        self._running = False
        self._shutdown_event = asyncio.Event()

        logger.info(f"Sweeper {self.worker_id} initialized with interval={self.interval}s")

    async def start(self):
        """Start the sweeper and run until a shutdown signal."""
        self._running = True
        logger.info(f"Sweeper {self.worker_id} starting...")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

        try:
            await self._sweep_loop()
        except asyncio.CancelledError:
            logger.info("Sweeper cancelled")

        logger.info("Sweeper stopped")

    def _handle_shutdown(self):
        logger.info(f"Sweeper {self.worker_id} received shutdown signal")
        self._running = False
        self._shutdown_event.set()

    def run_once(self):
        try:
            return sweep_once(self.settings, supabase=self.supabase)
        except Exception as e:
            logger.error(f"Error in sweep: {e}")
            return None

    async def _sweep_loop(self):
        while self._running:
            self.run_once()

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.interval
                )
                break
            except asyncio.TimeoutError:
                pass


def main():
    """Main entry point for the sweeper."""
    parser = argparse.ArgumentParser(description="Enrichment staleness sweeper")
    parser.add_argument(
        "--interval", "-i",
        type=float,
        default=None,
        help="Seconds between sweeps (default: ENRICHMENT_SWEEPER_INTERVAL_SECONDS or 60)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit"
    )
    parser.add_argument(
        "--worker-id",
        type=str,
        default=os.environ.get("WORKER_ID"),
        help="Unique worker identifier (default: auto-generated)"
    )

    args = parser.parse_args()

    if args.once:
        counts = StalenessSweeper(worker_id=args.worker_id).run_once()
        logger.info(f"Sweep complete: {counts}")
        return

    sweeper = StalenessSweeper(interval=args.interval, worker_id=args.worker_id)
    try:
        asyncio.run(sweeper.start())
    except KeyboardInterrupt:
        logger.info("Sweeper interrupted")


if __name__ == "__main__":
    main()
