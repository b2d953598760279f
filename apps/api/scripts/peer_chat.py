"""Join a room as a data-only peer and chat from the terminal.

Usage: python scripts/peer_chat.py 4821 [--url ws://localhost:8000/api/signaling]
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from signalroom.core.config import settings
from signalroom.core.logging import configure_logging
from signalroom.services.negotiation import CallStatus, NegotiationEngine
from signalroom.services.peer import CallMode
from signalroom.services.rtc import transport_factory
from signalroom.services.signaling_client import WebSocketSignalingChannel


async def _read_lines(queue: asyncio.Queue[str | None]) -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            await queue.put(None)
            return
        text = line.rstrip("\n")
        await queue.put(text)
        if text == "/quit":
            return


async def main(room_id: str, url: str) -> None:
    configure_logging(settings.log_level)

    engine = NegotiationEngine(
        transport_factory=transport_factory(),
        signaling_factory=lambda: WebSocketSignalingChannel(url),
    )
    engine.add_status_listener(lambda status: print(f"* status: {status.value}"))

    async with engine:
        await engine.start(room_id, CallMode.DATA)
        if engine.status is CallStatus.ERROR:
            print("* could not join the room", file=sys.stderr)
            return

        lines: asyncio.Queue[str | None] = asyncio.Queue()
        reader = asyncio.create_task(_read_lines(lines))
        shown = 0
        try:
            while True:
                try:
                    line = await asyncio.wait_for(lines.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    line = ""
                if line is None or line == "/quit":
                    break
                if line:
                    delivered = engine.send(line)
                    if not delivered:
                        print("* not connected yet; kept locally")

                messages = engine.messages
                for entry in messages[shown:]:
                    if entry.direction.value == "received":
                        print(f"< {entry.text}")
                shown = len(messages)
        finally:
            reader.cancel()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("room_id")
    parser.add_argument("--url", default=settings.signaling_url)
    args = parser.parse_args()
    asyncio.run(main(args.room_id, args.url))
