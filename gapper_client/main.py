"""
Gapper Client Dev Console

Line-oriented console around one ChatOrchestrator session: each stdin line
is a composer submission, replies and streamed events are printed.

    python -m gapper_client.main
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _print_message(message) -> None:
    prefix = "!" if message.status == "error" else ">"
    channel = f"[{message.channel_key}] " if message.channel_key else ""
    print(f"{prefix} {channel}{message.content}", flush=True)
    if message.card is not None and message.card.summary:
        print(f"    {message.card.summary}", flush=True)


async def _read_lines(queue: asyncio.Queue) -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    while True:
        line = await reader.readline()
        if not line:
            await queue.put(None)
            return
        await queue.put(line.decode("utf-8", errors="replace").strip())


async def main() -> None:
    """
    Run an interactive session.

    1. Loads settings and opens the backend client
    2. Prints the bootstrap greeting and starts the user stream
    3. Submits every stdin line and prints the reply
    4. Shuts down on EOF, SIGINT or SIGTERM
    """
    from gapper_client.api import ApiClient
    from gapper_client.config import load_settings
    from gapper_client.models import ChatMessage
    from gapper_client.orchestrator import ChatOrchestrator

    settings = load_settings()
    logger.info("Starting gapper console", extra={"base_url": settings.api.base_url})

    async with ApiClient(settings.api) as api:
        session = ChatOrchestrator(api, settings)

        async def handle_message(message: ChatMessage) -> None:
            _print_message(message)

        session.on_message(handle_message)

        for message in await session.bootstrap():
            _print_message(message)
        await session.start_stream()

        shutdown_event = asyncio.Event()

        def signal_handler() -> None:
            logger.info("Shutdown signal received")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        lines: asyncio.Queue = asyncio.Queue()
        reader_task = asyncio.create_task(_read_lines(lines))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        try:
            while not shutdown_event.is_set():
                next_line = asyncio.create_task(lines.get())
                done, _ = await asyncio.wait(
                    {next_line, shutdown_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_line not in done:
                    next_line.cancel()
                    break

                text = next_line.result()
                if text is None:
                    break
                if not text:
                    continue

                reply = await session.submit(text)
                for message in reply.messages:
                    _print_message(message)
        finally:
            logger.info("Shutting down...")
            reader_task.cancel()
            shutdown_task.cancel()

            stats = session.get_stats()
            await session.close()

            logger.info(
                "Final stats",
                extra={
                    "submissions": stats["submissions"],
                    "card_failures": stats["card_failures"],
                    "action_failures": stats["action_failures"],
                    "transport": stats["transport"],
                },
            )


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
