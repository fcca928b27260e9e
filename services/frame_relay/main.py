# services/frame_relay/main.py
from __future__ import annotations
import asyncio, os, signal

from common.bus import EventBus
from common.logging import get_logger, set_level
from services.frame_relay.config import DEFAULT_CONFIG_PATH, load_config
from services.frame_relay.lifecycle import PipelineController

log = get_logger("frame_relay")


def _install_stop_handlers(stop: asyncio.Event):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # e.g. Windows event loops; Ctrl+C then surfaces as KeyboardInterrupt
            pass


async def run(config_path: str, stop: asyncio.Event):
    pipeline_cfg, runtime_cfg = load_config(config_path)
    set_level(log, runtime_cfg.log_level)

    bus = EventBus(runtime_cfg.redis_url, stream=runtime_cfg.stream_events)
    if runtime_cfg.redis_url:
        try:
            await bus.connect()
        except Exception as e:
            log.warning(f"Event bus unavailable, events will only be logged: {e}")

    controller = PipelineController(bus=bus)
    try:
        await controller.start(pipeline_cfg)
        log.info(f"Relaying {pipeline_cfg.source_url} → POST {pipeline_cfg.endpoint}")
        await stop.wait()
        log.info("Shutdown requested, draining…")
        report = await controller.stop()
        log.info(
            f"frame_relay stopped: uploaded={report.uploaded} remaining={report.remaining} "
            f"passes={report.passes} completed={report.completed}"
        )
    finally:
        await bus.close()


async def main(config_path: str | None = None):
    log.info("frame_relay starting…")
    config_path = config_path or os.getenv("RELAY_CONFIG", DEFAULT_CONFIG_PATH)
    stop = asyncio.Event()
    _install_stop_handlers(stop)
    await run(config_path, stop)

def cli():
    asyncio.run(main())

if __name__ == "__main__":
    cli()
