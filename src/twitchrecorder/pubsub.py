"""
PubSub module for Twitch Recorder.
Listens on Twitch's PubSub websocket for stream-up and stream-down
notifications, reconnecting automatically.
"""

import asyncio
import json
import secrets
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

import aiohttp

from .logger import get_logger


PUBSUB_URL = "wss://pubsub-edge.twitch.tv/v1"

STREAM_UP = 'stream-up'
STREAM_DOWN = 'stream-down'


@dataclass
class PubSubMessage:
    """One decoded PubSub frame."""
    type: str                       # PONG, RESPONSE, RECONNECT, MESSAGE
    topic: Optional[str] = None
    event: Optional[str] = None     # inner message type for MESSAGE frames
    error: Optional[str] = None
    data: dict = field(default_factory=dict)


def playback_topic(channel_id: str) -> str:
    return f"video-playback-by-id.{channel_id}"


def parse_message(raw: str) -> Optional[PubSubMessage]:
    """
    Decode a PubSub text frame.

    MESSAGE frames carry a JSON-encoded string in data.message, whose type
    is the notification kind (stream-up, stream-down, viewcount...).

    Returns:
        PubSubMessage, or None if the frame isn't valid JSON.
    """
    try:
        frame = json.loads(raw)
    except ValueError:
        return None

    if not isinstance(frame, dict) or 'type' not in frame:
        return None

    message = PubSubMessage(type=frame['type'], error=frame.get('error') or None)

    if message.type == 'MESSAGE':
        data = frame.get('data') or {}
        message.topic = data.get('topic')
        try:
            inner = json.loads(data.get('message') or '{}')
        except ValueError:
            inner = {}
        if isinstance(inner, dict):
            message.event = inner.get('type')
            message.data = inner

    return message


class PubSubListener:
    """
    Twitch PubSub client.

    Yields stream-up / stream-down events for the subscribed topics.
    The connection is re-established with a growing delay whenever it
    drops, misses a PONG or the server asks for a reconnect.
    """

    def __init__(
        self,
        topics: List[str],
        auth: Optional[str] = None,
        ping_interval: float = 240.0,
        pong_timeout: float = 10.0,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 120.0,
        session: Optional[aiohttp.ClientSession] = None,
        url: str = PUBSUB_URL,
        logger=None
    ):
        self.topics = topics
        self.auth = auth
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.url = url

        self._session = session
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._logger = logger or get_logger('pubsub')
        self._running = False
        self._connections = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def stop(self) -> None:
        """Stop listening and close the socket."""
        self._running = False
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    def _listen_frame(self) -> str:
        payload = {
            'type': 'LISTEN',
            'nonce': secrets.token_hex(8),
            'data': {'topics': self.topics},
        }
        if self.auth:
            payload['data']['auth_token'] = self.auth
        return json.dumps(payload)

    async def _receive(self, ws: aiohttp.ClientWebSocketResponse) -> AsyncIterator[str]:
        """Yield notification kinds until the connection should be replaced."""
        awaiting_pong = False

        while self._running:
            timeout = self.pong_timeout if awaiting_pong else self.ping_interval
            try:
                msg = await ws.receive(timeout=timeout)
            except asyncio.TimeoutError:
                if awaiting_pong:
                    self._logger.warning("No PONG from Twitch PubSub, reconnecting")
                    return
                await ws.send_str(json.dumps({'type': 'PING'}))
                awaiting_pong = True
                continue

            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                self._logger.info("Twitch PubSub connection closed")
                return
            if msg.type == aiohttp.WSMsgType.ERROR:
                self._logger.error(f"Twitch PubSub error: {ws.exception()}")
                return
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue

            message = parse_message(msg.data)
            if message is None:
                self._logger.debug(f"Ignoring malformed PubSub frame: {msg.data[:200]}")
                continue

            if message.type == 'PONG':
                awaiting_pong = False
            elif message.type == 'RECONNECT':
                self._logger.info("Twitch PubSub requested reconnect")
                return
            elif message.type == 'RESPONSE':
                if message.error:
                    self._logger.error(f"Twitch PubSub LISTEN failed: {message.error}")
            elif message.type == 'MESSAGE' and message.event in (STREAM_UP, STREAM_DOWN):
                self._logger.debug(f"PubSub {message.event} on {message.topic}")
                yield message.event

    async def listen(self) -> AsyncIterator[str]:
        """
        Listen until stop() is called.

        Yields:
            'stream-up' or 'stream-down'.
        """
        own_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        self._running = True
        delay = self.reconnect_delay

        try:
            while self._running:
                try:
                    async with session.ws_connect(self.url, timeout=aiohttp.ClientWSTimeout(ws_close=10)) as ws:
                        self._ws = ws
                        self._connections += 1
                        if self._connections == 1:
                            self._logger.info("Connected to Twitch PubSub")
                        else:
                            self._logger.info("Reconnected to Twitch PubSub")

                        await ws.send_str(self._listen_frame())
                        delay = self.reconnect_delay

                        async for event in self._receive(ws):
                            yield event

                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    self._logger.error(f"Twitch PubSub connection failed: {e}")
                finally:
                    self._ws = None

                if not self._running:
                    break

                self._logger.debug(f"Reconnecting to Twitch PubSub in {delay:.0f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_reconnect_delay)
        finally:
            self._running = False
            if own_session:
                await session.close()
