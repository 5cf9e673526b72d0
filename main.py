#!/usr/bin/env python3
"""
MarketPulse - Main Entry Point

main.py owns the lifecycle: load config, start the engine, serve the API,
stop everything on SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal as sig
import sys
from pathlib import Path


def preflight_checks(log_dir: str) -> None:
    """Create runtime directories and warn about missing local files."""
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    if not Path("config/config.yaml").exists():
        print("[WARN] config/config.yaml not found, using defaults")
    if not Path(".env").exists():
        print("[WARN] No .env file; API keys fall back to the public endpoints")


async def run_engine() -> None:
    """Start the engine and the API server, then wait for a shutdown signal."""
    import uvicorn

    from marketpulse.api.server import create_app
    from marketpulse.core.config import get_config
    from marketpulse.core.engine import TradingEngine
    from marketpulse.core.logger import get_logger
    from marketpulse.core.runtime_safety import install_asyncio_exception_handler

    logger = get_logger("main")
    config = get_config()
    engine = TradingEngine(config)
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    install_asyncio_exception_handler(loop, logger)
    for s in (sig.SIGINT, sig.SIGTERM):
        try:
            loop.add_signal_handler(s, shutdown_event.set)
        except NotImplementedError:
            sig.signal(s, lambda *_: loop.call_soon_threadsafe(shutdown_event.set))

    await engine.start()

    server = None
    server_task = None
    if config.api.enabled:
        server = uvicorn.Server(
            uvicorn.Config(
                app=create_app(engine),
                host=config.api.host,
                port=config.api.port,
                log_level="warning",
                access_log=False,
            )
        )
        # Signals are handled above; uvicorn must not install its own.
        server.install_signal_handlers = lambda: None
        server_task = asyncio.create_task(server.serve(), name="api_server")
        logger.info("API server listening", host=config.api.host, port=config.api.port)

    await shutdown_event.wait()

    logger.info("Shutdown signal received, cleaning up...")
    await engine.stop()
    if server is not None:
        server.should_exit = True
        try:
            await asyncio.wait_for(server_task, timeout=5)
        except asyncio.TimeoutError:
            logger.warning("API server did not exit within 5s")


def main() -> None:
    """Main entry point."""
    from marketpulse import __version__
    from marketpulse.core.config import get_config
    from marketpulse.core.logger import get_logger, setup_logging
    from marketpulse.core.runtime_safety import install_global_exception_handlers

    config = get_config()
    preflight_checks(config.app.log_dir)

    # Logging must be configured before any engine module logs.
    setup_logging(
        log_level=config.app.log_level,
        log_dir=config.app.log_dir,
        json_output=config.app.json_logs,
        app_name=config.app.name,
    )
    logger = get_logger("main")
    install_global_exception_handlers(logger, log_dir=config.app.log_dir)
    logger.info(
        "Starting MarketPulse",
        version=__version__,
        python=sys.version.split()[0],
        pair=config.trading.default_pair,
    )

    try:
        asyncio.run(run_engine())
    except KeyboardInterrupt:
        logger.info("Shutdown requested via keyboard interrupt")


if __name__ == "__main__":
    main()
