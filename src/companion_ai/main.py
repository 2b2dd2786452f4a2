"""Main entry point for Companion AI."""

import asyncio
import signal

import openai

from companion_ai.api.server import CompanionAPIServer
from companion_ai.chat.cache import ResponseCache
from companion_ai.chat.processor import ChatProcessor
from companion_ai.chat.service import ChatService, create_chat_queue
from companion_ai.config import get_settings
from companion_ai.logging import get_logger, setup_logging
from companion_ai.queue.monitor import QueueMonitor


async def _wait_for_shutdown_signal() -> None:
    """Block until SIGINT or SIGTERM is received."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    await stop_event.wait()


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    log = get_logger("companion_ai.main")

    settings = get_settings()
    log.info("starting_companion_ai", environment=settings.environment)

    if settings.openai_api_key is None:
        log.error("OPENAI_API_KEY is required")
        raise SystemExit(1)

    client = openai.AsyncOpenAI(api_key=settings.openai_api_key.get_secret_value())
    cache = ResponseCache(
        max_size=settings.cache_max_size,
        ttl_seconds=settings.cache_ttl_seconds,
    )
    processor = ChatProcessor(
        client,
        model=settings.openai_model,
        cache=cache,
        assistant_prompts=settings.assistant_prompts,
        request_timeout=settings.openai_request_timeout,
    )
    chat_queue = create_chat_queue(processor, settings)
    chat_service = ChatService(
        chat_queue,
        assistant_ids=processor.assistant_ids,
        default_assistant_id=settings.default_assistant_id,
    )

    monitor: QueueMonitor | None = None
    server = CompanionAPIServer(
        chat_service,
        response_cache=cache,
        admin_secret=(
            settings.admin_jwt_secret.get_secret_value() if settings.admin_jwt_secret else None
        ),
        admin_username=settings.admin_username,
        admin_password=(
            settings.admin_password.get_secret_value() if settings.admin_password else None
        ),
        secure_cookies=not settings.is_development,
        host=settings.api_host,
        port=settings.api_port,
        rate_limit=settings.api_rate_limit,
        rate_limit_window_seconds=settings.api_rate_limit_window_seconds,
    )

    try:
        if settings.queue_monitor_enabled:
            monitor = QueueMonitor(
                [chat_queue], interval_seconds=settings.queue_monitor_interval_seconds
            )
            await monitor.start()
        await server.start()

        await _wait_for_shutdown_signal()
        log.info("shutdown_requested")
    finally:
        await server.stop()
        if monitor is not None:
            await monitor.stop()
        await chat_queue.stop(drain_timeout=settings.queue_drain_timeout_seconds)
        await client.close()
        log.info("companion_ai_stopped")


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
