from __future__ import annotations

import argparse
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from .config import AppConfig, load_config
from .routes import create_router
from .sensor_source import SimulatedStepCounter
from .service import PedometerService

LOGGER = logging.getLogger(__name__)

SHUTDOWN_DRAIN_TIMEOUT_S = 5.0


@dataclass(slots=True)
class RuntimeState:
    config: AppConfig
    service: PedometerService
    simulator: SimulatedStepCounter | None = None


def create_app(config_path: Path | None = None) -> FastAPI:
    config = load_config(config_path)
    service = PedometerService.from_config(config)
    simulator = service.source if isinstance(service.source, SimulatedStepCounter) else None
    runtime = RuntimeState(config=config, service=service, simulator=simulator)

    async def start_runtime() -> None:
        result = await asyncio.to_thread(service.initialize)
        if result.is_failure:
            LOGGER.error("Pedometer initialization failed: %s", result.error)
        if runtime.simulator is not None and config.sensor.walk:
            runtime.simulator.start_walking(
                steps_per_second=config.sensor.steps_per_second,
                tick_s=config.sensor.tick_seconds,
            )

    async def stop_runtime() -> None:
        if runtime.simulator is not None:
            try:
                await asyncio.to_thread(runtime.simulator.stop_walking)
            except Exception:
                LOGGER.warning("Error stopping simulated walk", exc_info=True)
        try:
            await asyncio.to_thread(service.close, SHUTDOWN_DRAIN_TIMEOUT_S)
        except Exception:
            LOGGER.warning("Error closing pedometer service", exc_info=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await start_runtime()
        try:
            yield
        finally:
            await stop_runtime()

    app = FastAPI(title="Pedometer", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(create_router(runtime))
    return app


app: FastAPI | None = (
    create_app()
    if __name__ != "__main__" and os.getenv("PEDOMETER_DISABLE_AUTO_APP", "0") != "1"
    else None
)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the pedometer step server")
    parser.add_argument("--config", type=Path, default=None, help="Path to config YAML")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    runtime_app = create_app(config_path=args.config)
    runtime: RuntimeState = runtime_app.state.runtime
    server = runtime.config.server
    try:
        uvicorn.run(
            runtime_app,
            host=server.host,
            port=server.port,
            log_level=server.log_level,
        )
    except OSError:
        LOGGER.error("Failed to bind to %s:%d", server.host, server.port, exc_info=True)
        raise


if __name__ == "__main__":
    main()
