"""Entry point to run the campaign launch worker.

Pops launch jobs from Redis one at a time and drives them to a terminal
state. Stops cleanly on SIGINT/SIGTERM after the current job finishes.
"""

import asyncio
import logging
import signal

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_worker() -> None:
    from adpilot.config import get_settings
    from adpilot.database import engine
    from adpilot.meta.client import build_graph_client
    from adpilot.redis_client import create_redis
    from adpilot.services.launch_queue import LaunchQueue
    from adpilot.services.launch_worker import LaunchProcessor, LaunchWorker

    settings = get_settings()
    redis_client = create_redis(settings.redis_url)
    client = build_graph_client(redis_client, settings)
    queue = LaunchQueue(redis_client, ttl_seconds=settings.launch_job_ttl_seconds)
    worker = LaunchWorker(queue, LaunchProcessor(client))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    if settings.meta_sandbox_mode:
        logger.warning("Launch worker running against the sandbox transport")

    try:
        await worker.run()
    finally:
        await client.aclose()
        await redis_client.aclose()
        await engine.dispose()


def main() -> None:
    asyncio.run(_run_worker())


if __name__ == "__main__":
    main()
