"""Reconnecting relay client.

Connects to the relay's /ws endpoint, binds the user on every (re)connect and
dispatches inbound frames to handlers registered per frame type. A close with
code 1000 ends the session; any other close schedules a reconnect after
min(1s * attempt, 10s), and the attempt counter resets on a successful connect.
"""
import argparse
import asyncio
import json
from typing import Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from constants import ABNORMAL_CLOSURE, NORMAL_CLOSURE
from logging_config import get_logger, setup_logging

logger = get_logger(__name__)

FrameHandler = Callable[[dict], Awaitable[None]]


class ReconnectPolicy:
    def __init__(self, base_delay: float = 1.0, max_delay: float = 10.0):
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * attempt, self.max_delay)

    @staticmethod
    def should_reconnect(close_code: Optional[int]) -> bool:
        return close_code != NORMAL_CLOSURE


class RelayClient:
    def __init__(self, url: str, user_id: str, room: Optional[str] = None,
                 policy: Optional[ReconnectPolicy] = None,
                 connect=websockets.connect, sleep=asyncio.sleep):
        self.url = url
        self.user_id = user_id
        self.room = room
        self.policy = policy or ReconnectPolicy()
        self.reconnect_attempts = 0
        self.reconnect_delays: List[float] = []
        self.handlers: Dict[str, FrameHandler] = {}
        self._connect = connect
        self._sleep = sleep
        self._ws = None
        self._closing = False

    def on(self, frame_type: str, handler: FrameHandler):
        self.handlers[frame_type] = handler

    async def send(self, frame: dict):
        if self._ws is None:
            raise ConnectionError("Not connected to the relay")
        await self._ws.send(json.dumps(frame))

    async def join(self, room: Optional[str] = None):
        self.room = room
        frame = {"type": "join", "name": self.user_id}
        if room:
            frame["room"] = room
        await self.send(frame)

    async def send_message(self, text: str, room: Optional[str] = None, message_id: Optional[str] = None):
        frame = {"type": "message", "room": room or self.room, "text": text}
        if message_id:
            frame["id"] = message_id
        await self.send(frame)

    async def run(self):
        """Connect and keep reconnecting until a normal closure or close()."""
        while not self._closing:
            close_code = await self._run_once()
            logger.info(f"Disconnected from relay (code {close_code})")
            if self._closing or not self.policy.should_reconnect(close_code):
                break
            self.reconnect_attempts += 1
            delay = self.policy.delay(self.reconnect_attempts)
            self.reconnect_delays.append(delay)
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {self.reconnect_attempts})")
            await self._sleep(delay)

    async def close(self):
        self._closing = True
        if self._ws is not None:
            await self._ws.close(code=NORMAL_CLOSURE)

    async def _run_once(self) -> int:
        try:
            async with self._connect(self.url) as ws:
                self._ws = ws
                self.reconnect_attempts = 0
                logger.info(f"Connected to {self.url}")
                await self.join(self.room)
                await self.send({"type": "status", "user": self.user_id, "online": True})
                async for raw in ws:
                    await self._dispatch(raw)
                return ws.close_code if ws.close_code is not None else ABNORMAL_CLOSURE
        except ConnectionClosed as e:
            return e.rcvd.code if e.rcvd is not None else ABNORMAL_CLOSURE
        except (OSError, InvalidHandshake, asyncio.TimeoutError) as e:
            logger.warning(f"Could not connect to {self.url}: {e}")
            return ABNORMAL_CLOSURE
        finally:
            self._ws = None

    async def _dispatch(self, raw):
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unparseable frame from relay: {raw!r}")
            return
        if not isinstance(frame, dict):
            logger.warning(f"Ignoring non-object frame from relay: {raw!r}")
            return
        handler = self.handlers.get(frame.get("type"))
        if handler is None:
            logger.debug(f"No handler for frame type {frame.get('type')!r}")
            return
        try:
            await handler(frame)
        except Exception as e:
            logger.error(f"Handler for {frame.get('type')!r} frame failed: {e}", exc_info=True)


async def _print_frame(frame: dict):
    print(json.dumps(frame))


async def _main(args):
    client = RelayClient(args.url, args.user, room=args.room)
    for frame_type in ("message", "history", "status", "typing", "ack", "error", "active_users"):
        client.on(frame_type, _print_frame)
    await client.run()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Connect to the chat relay and print frames")
    parser.add_argument("--url", default="ws://localhost:8000/ws")
    parser.add_argument("--user", required=True)
    parser.add_argument("--room", default=None)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    setup_logging(args.log_level)
    asyncio.run(_main(args))
