"""
Tests for PubSub message handling.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from twitchrecorder.pubsub import (
    STREAM_DOWN,
    STREAM_UP,
    PubSubListener,
    parse_message,
    playback_topic,
)


def message_frame(kind: str, topic: str = 'video-playback-by-id.123') -> str:
    return json.dumps({
        'type': 'MESSAGE',
        'data': {
            'topic': topic,
            'message': json.dumps({'type': kind, 'server_time': 1709323200.1, 'play_delay': 0}),
        },
    })


def text(data: str):
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data)


class TestParseMessage:
    """Test decoding PubSub frames."""

    def test_stream_up(self):
        message = parse_message(message_frame('stream-up'))

        assert message.type == 'MESSAGE'
        assert message.topic == 'video-playback-by-id.123'
        assert message.event == STREAM_UP

    def test_viewcount_is_not_an_edge(self):
        message = parse_message(message_frame('viewcount'))
        assert message.event == 'viewcount'

    def test_pong(self):
        assert parse_message('{"type": "PONG"}').type == 'PONG'

    def test_listen_error(self):
        message = parse_message('{"type": "RESPONSE", "error": "ERR_BADTOPIC", "nonce": "x"}')
        assert message.error == 'ERR_BADTOPIC'

    def test_malformed(self):
        assert parse_message('not json') is None
        assert parse_message('[1, 2]') is None

    def test_topic(self):
        assert playback_topic('123') == 'video-playback-by-id.123'


class TestPubSubListener:
    """Test the receive loop of one connection."""

    def test_listen_frame(self):
        listener = PubSubListener(['video-playback-by-id.1'], auth='token')
        frame = json.loads(listener._listen_frame())

        assert frame['type'] == 'LISTEN'
        assert frame['data'] == {'topics': ['video-playback-by-id.1'], 'auth_token': 'token'}

    @pytest.mark.asyncio
    async def test_yields_edges_until_reconnect(self):
        """Test only stream-up/down are yielded and RECONNECT ends the connection."""
        ws = MagicMock()
        ws.receive = AsyncMock(side_effect=[
            text(message_frame('viewcount')),
            text(message_frame('stream-up')),
            text('{"type": "PONG"}'),
            text(message_frame('stream-down')),
            text('{"type": "RECONNECT"}'),
            text(message_frame('stream-up')),
        ])
        listener = PubSubListener(['video-playback-by-id.123'])
        listener._running = True

        events = [event async for event in listener._receive(ws)]

        assert events == [STREAM_UP, STREAM_DOWN]
        assert ws.receive.await_count == 5

    @pytest.mark.asyncio
    async def test_pings_when_quiet(self):
        """Test a PING is sent on receive timeout and a missing PONG ends the connection."""
        ws = MagicMock()
        ws.receive = AsyncMock(side_effect=[asyncio.TimeoutError(), asyncio.TimeoutError()])
        ws.send_str = AsyncMock()
        listener = PubSubListener(['t'])
        listener._running = True

        events = [event async for event in listener._receive(ws)]

        assert events == []
        ws.send_str.assert_awaited_once_with('{"type": "PING"}')

    @pytest.mark.asyncio
    async def test_closed_connection(self):
        ws = MagicMock()
        ws.receive = AsyncMock(return_value=SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None))
        listener = PubSubListener(['t'])
        listener._running = True

        assert [event async for event in listener._receive(ws)] == []
