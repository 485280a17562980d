"""
Node Planner 入口。

启动: python -m node_planner  (或 node-planner)
单次: python -m node_planner --once
需要: 数据库 (默认 SQLite) + 算力市场 API (或 PROVIDER_BACKEND=simulated)
"""
from __future__ import annotations
import argparse
import asyncio
import signal
import sys

import structlog

from node_planner.common.database import create_engine, create_session_factory, init_schema
from node_planner.common.exceptions import StoreCloseError
from node_planner.common.logging import configure_logging
from node_planner.executor.plan_executor import PlanExecutor
from node_planner.importer.batch_source import FileBatchSource
from node_planner.importer.plan_importer import PlanImporter
from node_planner.provisioning.base import ComputeProvider
from node_planner.provisioning.http_provider import HttpComputeProvider
from node_planner.provisioning.simulated import SimulatedComputeProvider
from node_planner.scheduler.monitor import DueJobMonitor
from node_planner.scheduler.registry import ActiveNodeRegistry
from node_planner.scheduler.runner import PeriodicRunner
from node_planner.settings import Settings
from node_planner.store.plan_store import PlanStore

logger = structlog.get_logger()


def build_provider(settings: Settings) -> ComputeProvider:
    if settings.provider_backend == "simulated":
        return SimulatedComputeProvider()
    if settings.provider_backend == "http":
        return HttpComputeProvider(
            base_url=settings.provider_url,
            api_key=settings.provider_api_key,
            payment_network=settings.payment_network,
            runtime_name=settings.runtime_name,
            image_tag=settings.image_tag,
            max_start_price=settings.max_start_price,
            max_cpu_per_hour_price=settings.max_cpu_per_hour_price,
            max_env_per_hour_price=settings.max_env_per_hour_price,
            timeout=settings.provider_timeout_seconds,
        )
    raise ValueError(f"Unknown provider backend: {settings.provider_backend}")


async def run(settings: Settings, once: bool = False, init_db: bool = False) -> int:
    configure_logging(settings.app_env, settings.log_level)
    log = structlog.get_logger()
    log.info("startup_begin", env=settings.app_env, backend=settings.provider_backend)

    # ─── 1. Database ───
    engine = create_engine(settings.database_url, echo=settings.sql_echo)
    if init_db:
        await init_schema(engine)
        log.info("schema_initialized")
    store = PlanStore(create_session_factory(engine))

    # ─── 2. Components ───
    shutdown = asyncio.Event()
    provider = build_provider(settings)
    registry = ActiveNodeRegistry()
    executor = PlanExecutor(
        store, provider,
        time_lag=settings.time_lag,
        shutdown=shutdown,
        run_timeout_factor=settings.run_timeout_factor,
    )
    monitor = DueJobMonitor(
        store, executor, registry,
        time_lag=settings.time_lag,
        minimum_duration=settings.minimum_duration,
    )
    importer = PlanImporter(
        store,
        FileBatchSource(settings.incoming_dir, settings.imported_dir, settings.failed_dir),
        minimum_duration=settings.minimum_duration,
        maximum_duration=settings.maximum_duration,
    )
    runner = PeriodicRunner(
        monitor, importer,
        monitor_interval=settings.monitor_interval,
        import_interval=settings.import_interval,
    )

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def _on_signal(sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        stop_requested.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig)

    exit_code = 0
    try:
        await store.complete_finished_plans()
        await provider.connect()
        if once:
            await runner.run_once()
            waiter = asyncio.create_task(registry.wait_all())
            stopper = asyncio.create_task(stop_requested.wait())
            await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            stopper.cancel()
        else:
            await runner.start()
            log.info("startup_complete")
            await stop_requested.wait()
    finally:
        # ─── Shutdown ───
        log.info("shutdown_begin")
        await runner.stop()
        shutdown.set()
        await registry.cancel_all()
        await provider.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        try:
            await engine.dispose()
        except Exception as e:
            err = StoreCloseError(f"Database close failed: {e}")
            log.error("shutdown_failed", **err.to_dict())
            exit_code = 1
    log.info("shutdown_complete", exit_code=exit_code)
    return exit_code


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="node-planner",
        description="Import allocation windows and run due compute rental jobs.",
    )
    parser.add_argument("--once", action="store_true",
                        help="Import and poll once, wait for started plans, then exit.")
    parser.add_argument("--init-db", action="store_true",
                        help="Create tables before starting (development only).")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = Settings()
    sys.exit(asyncio.run(run(settings, once=args.once, init_db=args.init_db)))


if __name__ == "__main__":
    main()
