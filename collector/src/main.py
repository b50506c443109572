"""
Collector daemon main loop for the Shelly-to-InfluxDB telemetry pipeline.

Wires the pipeline together and runs it until SIGTERM/SIGINT:

1. **Poll loops** (one per device, owned by the PollScheduler): probe the
   device, update registry health, normalize and enqueue points.
2. **Flush loop**: the WriteBuffer drains points to InfluxDB on interval or
   size trigger, retrying transient failures.
3. **Health loop**: periodically writes the health JSON file and logs a
   summary of degraded/unreachable devices.
4. **Discovery loop** (optional): refreshes the candidate address set.

Every loop is resilient: an exception in one iteration is logged and does
not crash the loop or affect the others.  On shutdown the poll loops are
stopped, the buffer performs a final flush, and any points that still could
not be delivered are saved to the SQLite spool to be restored on next start.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-17: Cancel background loops before stopping poll loops
- 2026-10-12: Add discovery refresh loop
- 2026-10-11: Spool unflushed points on shutdown, restore on start
- 2026-10-06: Replace single poll/upload loops with scheduler + buffer (STORY-109)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from collector.src.discovery import apply_discovery, discover_devices
from collector.src.errors import DiscoveryError
from collector.src.models import DeviceHealth

if TYPE_CHECKING:
    from collector.src.buffer import WriteBuffer
    from collector.src.config import CollectorSettings
    from collector.src.health import HealthWriter
    from collector.src.registry import DeviceRegistry
    from collector.src.scheduler import PollScheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the collector daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    # httpx logs every request at INFO; with many devices that drowns the log.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: CollectorSettings) -> None:
    """Log a config summary at startup, excluding secrets."""
    logger.info(
        "Collector starting with config: "
        "addresses=%s, discover=%s, discovery_network=%s, "
        "influx_url=%s, influx_database=%s, measurement=%s, "
        "poll_interval_s=%s, probe_timeout_s=%s, failure_threshold=%s, "
        "backoff_ceiling_s=%s, buffer_capacity=%s, flush_interval_s=%s, "
        "flush_size=%s, batch_size=%s, write_max_retries=%s, "
        "spool_path=%s, influx_token_masked=%s",
        settings.address_list,
        settings.discover,
        settings.discovery_network,
        settings.influx_url,
        settings.influx_database,
        settings.measurement,
        settings.poll_interval_s,
        settings.probe_timeout_s,
        settings.failure_threshold,
        settings.backoff_ceiling_s,
        settings.buffer_capacity,
        settings.flush_interval_s,
        settings.flush_size,
        settings.batch_size,
        settings.write_max_retries,
        settings.spool_path or "disabled",
        _masked_token(settings.influx_token),
    )


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


def _write_health_once(
    *,
    health: HealthWriter,
    registry: DeviceRegistry,
    buffer: WriteBuffer,
    scheduler: PollScheduler,
) -> None:
    """Refresh the health file and log devices that are not healthy.

    Catches all exceptions so that the caller's loop is never broken.
    """
    try:
        snapshot = registry.snapshot()
        if scheduler.last_poll_at is not None:
            health.record_poll(scheduler.last_poll_at)
        health.update(snapshot, buffer.stats, len(buffer))
    except Exception:
        logger.warning("Failed to write health file", exc_info=True)
        return

    unhealthy = [
        f"{d.device_id}={d.health}"
        for d in snapshot
        if d.health in (DeviceHealth.DEGRADED, DeviceHealth.UNREACHABLE)
    ]
    if unhealthy:
        logger.warning("Unhealthy devices: %s", ", ".join(unhealthy))


async def _discover_once(
    *,
    settings: CollectorSettings,
    registry: DeviceRegistry,
    scheduler: PollScheduler,
) -> bool:
    """Run discovery and apply the result.

    Returns:
        True if discovery succeeded, False otherwise.
    """
    try:
        hosts = await discover_devices(settings)
    except DiscoveryError as exc:
        logger.error("Discovery failed: %s", exc)
        return False
    except Exception:
        logger.error("Discovery cycle error", exc_info=True)
        return False

    if not hosts:
        logger.warning("No Shelly devices found!")
    added, removed = await apply_discovery(
        registry, scheduler, hosts, prune=settings.discovery_prune
    )
    if added or removed:
        logger.info(
            "Discovery applied: added=%s removed=%s (tracking %d devices)",
            added,
            removed,
            len(registry),
        )
    return True


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _health_loop(
    *,
    health: HealthWriter,
    registry: DeviceRegistry,
    buffer: WriteBuffer,
    scheduler: PollScheduler,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Write the health file every *interval_s* until shutdown."""
    while not shutdown_event.is_set():
        _write_health_once(
            health=health, registry=registry, buffer=buffer, scheduler=scheduler
        )
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)


async def _discovery_loop(
    *,
    settings: CollectorSettings,
    registry: DeviceRegistry,
    scheduler: PollScheduler,
    shutdown_event: asyncio.Event,
) -> None:
    """Refresh discovery every ``discovery_interval_s`` until shutdown."""
    interval_s = settings.discovery_interval_s
    logger.info("Discovery loop started (interval=%ss)", interval_s)
    while not shutdown_event.is_set():
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
        if shutdown_event.is_set():
            break
        await _discover_once(settings=settings, registry=registry, scheduler=scheduler)
    logger.info("Discovery loop stopped")


# ---------------------------------------------------------------------------
# Concurrent runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_pipeline(
    *,
    settings: CollectorSettings,
    registry: DeviceRegistry,
    scheduler: PollScheduler,
    buffer: WriteBuffer,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Discover devices and run every loop until shutdown.

    When *shutdown_event* is set, the health and discovery loops are cancelled,
    then the poll loops are stopped so no new points arrive, then the flush
    loop performs its final flush.
    """
    await _discover_once(settings=settings, registry=registry, scheduler=scheduler)

    background: list[asyncio.Task[None]] = []
    if health is not None:
        background.append(
            asyncio.create_task(
                _health_loop(
                    health=health,
                    registry=registry,
                    buffer=buffer,
                    scheduler=scheduler,
                    interval_s=settings.health_interval_s,
                    shutdown_event=shutdown_event,
                )
            )
        )
    if settings.discover and settings.discovery_interval_s > 0:
        background.append(
            asyncio.create_task(
                _discovery_loop(
                    settings=settings,
                    registry=registry,
                    scheduler=scheduler,
                    shutdown_event=shutdown_event,
                )
            )
        )

    buffer_stop = asyncio.Event()
    flush_task = asyncio.create_task(buffer.run(buffer_stop))

    await shutdown_event.wait()
    # Discovery must be finished before close(): a refresh can start loops.
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    logger.info("Stopping poll loops")
    await scheduler.close(timeout_s=settings.probe_timeout_s * 2)

    logger.info("Attempting final flush before exit")
    buffer_stop.set()
    await flush_task

    if health is not None:
        _write_health_once(
            health=health, registry=registry, buffer=buffer, scheduler=scheduler
        )
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run the pipeline.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from collector.src.buffer import WriteBuffer
    from collector.src.config import CollectorSettings
    from collector.src.health import HealthWriter
    from collector.src.probe import DeviceProbe
    from collector.src.registry import DeviceRegistry
    from collector.src.scheduler import PollScheduler
    from collector.src.sink import InfluxSink
    from collector.src.spool import Spool, restore_points, save_points

    settings = CollectorSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    registry = DeviceRegistry(failure_threshold=settings.failure_threshold)
    probe = DeviceProbe(timeout_s=settings.probe_timeout_s)
    sink = InfluxSink(
        url=settings.influx_url,
        database=settings.influx_database,
        token=settings.influx_token,
        timeout_s=settings.write_timeout_s,
    )
    buffer = WriteBuffer(
        sink,
        capacity=settings.buffer_capacity,
        flush_size=settings.flush_size,
        batch_size=settings.batch_size,
        flush_interval_s=settings.flush_interval_s,
        max_retries=settings.write_max_retries,
        retry_backoff_s=settings.write_retry_backoff_s,
        retry_backoff_max_s=settings.write_retry_backoff_max_s,
    )
    scheduler = PollScheduler(
        registry=registry,
        probe=probe,
        buffer=buffer,
        base_interval_s=settings.poll_interval_s,
        backoff_ceiling_s=settings.backoff_ceiling_s,
        jitter_ratio=settings.poll_jitter_ratio,
        measurement=settings.measurement,
    )
    health = HealthWriter(settings.health_path) if settings.health_path else None

    spool = Spool(settings.spool_path) if settings.spool_path else None
    try:
        if spool is not None:
            await spool.open()
            await restore_points(spool, buffer)

        await run_pipeline(
            settings=settings,
            registry=registry,
            scheduler=scheduler,
            buffer=buffer,
            shutdown_event=shutdown_event,
            health=health,
        )

        leftover = buffer.drain_all()
        if leftover:
            if spool is not None:
                await save_points(spool, leftover)
            else:
                logger.error(
                    "Discarding %d unflushed points (spool disabled)", len(leftover)
                )
    finally:
        if spool is not None:
            await spool.close()
        await sink.close()
        await probe.close()


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the collector daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
