"""
Maintenance Worker

Runs beside the API and sweeps outbound messages stuck in `queued`
(the API process died between the insert and the provider answer).
Exposes Prometheus metrics and a Redis heartbeat.
"""

import asyncio
import os
import signal
import socket
import sys
import uuid

import redis.asyncio as redis
import sentry_sdk
import structlog
from prometheus_client import Counter, start_http_server

from config import get_settings
from database import AsyncSessionLocal, engine
from logger_config import configure_logger
from services.maintenance import MaintenanceService

settings = get_settings()
logger = structlog.get_logger("worker")

SWEPT = Counter("wa_stale_sends_failed_total", "Queued sends marked failed by the sweep")
SWEEP_RUNS = Counter("wa_sweep_runs_total", "Sweep runs", ["status"])

HEARTBEAT_TTL = 30
MAX_CONSECUTIVE_ERRORS = 10


class MaintenanceWorker:
    """Single-purpose loop: tick, sweep when due, heartbeat."""

    def __init__(self, session_factory=AsyncSessionLocal, tick_seconds: float = 1.0):
        self.worker_id = f"w_{os.getpid()}_{str(uuid.uuid4())[:4]}"
        self.hostname = socket.gethostname()
        self.running = True
        self.tick_seconds = tick_seconds

        self.redis = None
        self.maintenance = MaintenanceService(session_factory, settings)
        self.consecutive_errors = 0

    async def start(self):
        logger.info("Maintenance worker starting", worker_id=self.worker_id, hostname=self.hostname)

        try:
            await self._initialize_services()
            await self._run_main_loop()
        except Exception as e:
            logger.critical("Fatal error", error=str(e))
            sys.exit(1)
        finally:
            await self.shutdown()

    async def _initialize_services(self):
        if settings.SENTRY_DSN:
            sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.APP_ENV)
            logger.info("Sentry initialized")

        try:
            start_http_server(settings.WORKER_METRICS_PORT)
            logger.info("Prometheus metrics exposed", port=settings.WORKER_METRICS_PORT)
        except OSError:
            logger.warning("Prometheus port already in use", port=settings.WORKER_METRICS_PORT)

        try:
            self.redis = redis.from_url(settings.REDIS_URL, decode_responses=True)
            await self.redis.ping()
            logger.info("Redis connected")
        except Exception as e:
            # Heartbeat only; the sweep itself needs just the database
            logger.warning("Redis unavailable, running without heartbeat", error=str(e))
            self.redis = None

        logger.info(
            "Worker ready",
            timeout_seconds=settings.QUEUED_MESSAGE_TIMEOUT_SECONDS,
            interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
        )

    async def _heartbeat(self):
        if not self.redis:
            return
        try:
            await self.redis.setex(f"worker:heartbeat:{self.worker_id}", HEARTBEAT_TTL, "alive")
        except Exception as e:
            logger.warning("Heartbeat failed", error=str(e))

    async def tick(self):
        """One loop iteration. Raises when the sweep fails."""
        await self._heartbeat()

        try:
            count = await self.maintenance.run_if_due()
        except Exception as e:
            SWEEP_RUNS.labels(status="error").inc()
            sentry_sdk.capture_exception(e)
            raise

        if count is not None:
            SWEEP_RUNS.labels(status="success").inc()
            if count:
                SWEPT.inc(count)
        return count

    async def _run_main_loop(self):
        while self.running:
            try:
                await self.tick()
                self.consecutive_errors = 0
                await asyncio.sleep(self.tick_seconds)

            except Exception as e:
                self.consecutive_errors += 1
                logger.error("Loop error", error=str(e), count=self.consecutive_errors)

                if self.consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    logger.critical("Too many consecutive errors, exiting")
                    sys.exit(1)

                await asyncio.sleep(self.tick_seconds)

    async def shutdown(self):
        logger.info("Shutting down")
        self.running = False

        if self.redis:
            await self.redis.aclose()
        await engine.dispose()

        logger.info("Shutdown complete")


async def main():
    configure_logger()
    worker = MaintenanceWorker()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: setattr(worker, "running", False))

    await worker.start()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
