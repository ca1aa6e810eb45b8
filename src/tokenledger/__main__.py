import asyncio
import json
import signal
import sys

import structlog
from prometheus_client import start_http_server

from tokenledger.cache import StatisticsCache
from tokenledger.cli import Options, parse_args
from tokenledger.errors import StatisticsUnavailableError, StorageError
from tokenledger.logging import setup_logging
from tokenledger.metrics import MetricsUpdater
from tokenledger.orchestrator import SyncOrchestrator, SyncStatus
from tokenledger.service import StatisticsService
from tokenledger.storage import UsageStore

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build(
    options: "Options", metrics: "MetricsUpdater"
) -> "tuple[SyncOrchestrator, StatisticsService]":
    config = options.config
    store = UsageStore(config.database_path)
    cache = StatisticsCache(
        ttl_seconds=config.cache_ttl,
        near_expiry_seconds=config.cache_near_expiry,
    )
    service = StatisticsService(store, cache, metrics)
    orchestrator = SyncOrchestrator(
        config.log_path,
        store,
        metrics,
        service=service,
        batch_size=config.batch_size,
        tz=config.tz,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
        sync_interval=config.sync_interval,
    )
    return orchestrator, service


async def run_once(options: "Options", metrics: "MetricsUpdater") -> "int":
    """
    runs a single sync and prints the run, the cache status and the
    statistics as JSON. Returns the process exit code.
    """
    orchestrator, service = build(options, metrics)
    if options.full:
        run = await orchestrator.perform_full_sync()
    else:
        run = await orchestrator.perform_incremental_sync()

    output: "dict[str, object]" = {"sync": run.to_dict()}
    try:
        statistics, status = await asyncio.to_thread(
            service.get_statistics, options.date_range, options.project
        )
    except StatisticsUnavailableError as exc:
        output["error"] = str(exc)
        print(json.dumps(output, indent=2))
        return 1

    output["cache_status"] = status.value
    output["statistics"] = statistics.to_dict()
    code = 0 if run.status is SyncStatus.COMPLETED else 1

    try:
        if options.sessions is not None:
            sessions = await asyncio.to_thread(
                service.get_session_statistics,
                options.date_range,
                options.sessions,
                options.project,
            )
            output["sessions"] = [s.to_dict() for s in sessions]
        if options.check:
            report = await asyncio.to_thread(service.validate_integrity)
            output["integrity"] = report.to_dict()
            if not report.is_valid:
                code = 1
        stats = await asyncio.to_thread(service.store_stats)
        output["database"] = stats.to_dict()
    except (StatisticsUnavailableError, StorageError) as exc:
        output["error"] = str(exc)
        code = 1

    print(json.dumps(output, indent=2))
    return code


def main(argv: "list[str] | None" = None) -> "None":
    options = parse_args(argv)
    config = options.config
    setup_logging(config.log_level, config.log_json)

    metrics = MetricsUpdater()

    if options.once:
        sys.exit(asyncio.run(run_once(options, metrics)))

    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    async def _run() -> "None":
        orchestrator, _ = build(options, metrics)
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the sync loop
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, orchestrator.stop)

        logger.info(
            "sync_loop_started",
            log_dir=str(config.log_path),
            db_path=str(config.database_path),
            interval=config.sync_interval,
        )
        try:
            await orchestrator.run()
        finally:
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
