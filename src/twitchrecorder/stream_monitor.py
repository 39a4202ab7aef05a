"""
Stream monitor for Twitch Recorder.
Tracks whether a channel is live and resolves its stream (or latest VOD)
to a playable media playlist.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, List, Optional, Tuple

from .logger import get_channel_logger
from .playlist import Rendition, parse_master_playlist, select_rendition
from .pubsub import STREAM_DOWN, STREAM_UP, PubSubListener, playback_topic
from .twitch_api import NoStreamError, NoVodError, ResolutionError, TwitchAPI


# Poll interval used when PubSub can't be set up and none is configured
FALLBACK_POLL_INTERVAL = 60


class ChannelState(Enum):
    """Channel liveness."""
    UNKNOWN = "unknown"
    OFFLINE = "offline"
    LIVE = "live"


class ChannelEvent(Enum):
    """Events emitted by monitor."""
    WENT_LIVE = "went_live"
    WENT_OFFLINE = "went_offline"
    ERROR = "error"


@dataclass
class Channel:
    """Monitored channel."""
    name: str
    id: Optional[str] = None
    live: bool = False
    last_vod_id: Optional[str] = None


@dataclass
class StreamSelection:
    """
    Result of resolving a stream.

    url is None when nothing could be resolved; the cause has been
    emitted as an ERROR event.
    """
    url: Optional[str] = None
    date: Optional[datetime] = None
    rendition: Optional[Rendition] = None


@dataclass
class MonitorEvent:
    """Event from stream monitor."""
    event: ChannelEvent
    channel: str
    error: Optional[ResolutionError] = None


class ChannelResolver:
    """
    Monitors one Twitch channel.

    Liveness comes from a check at startup, PubSub stream-up/stream-down
    notifications and, optionally, periodic polling. Only actual state
    changes are emitted as events.
    """

    def __init__(
        self,
        api: TwitchAPI,
        vod: bool = False,
        poll_interval: int = 0,
        use_pubsub: bool = True,
        pubsub: Optional[PubSubListener] = None,
        logger=None
    ):
        """
        Initialize channel resolver.

        Args:
            api: Twitch API client for the channel.
            vod: Resolve the latest VOD instead of the live stream.
            poll_interval: Seconds between manual live checks, 0 to rely on PubSub.
            use_pubsub: Subscribe to PubSub notifications.
            pubsub: PubSub listener to use instead of building one.
            logger: Logger to use.
        """
        self.api = api
        self.vod = vod
        self.poll_interval = poll_interval
        self.use_pubsub = use_pubsub

        self.channel = Channel(name=api.channel)
        self.state = ChannelState.UNKNOWN

        self._pubsub = pubsub
        self._logger = logger or get_channel_logger(api.channel, 'monitor')
        self._events: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._running = False

    async def _load_renditions(self) -> Tuple[List[Rendition], Optional[datetime]]:
        """
        Fetch a fresh token and the master playlist, VOD or live per config.

        Raises:
            NoVodError: In VOD mode, if the channel has no VOD.
            SubscriptionRequiredError: If the VOD is subscriber-only.
        """
        date = None

        if self.vod:
            vod = await self.api.get_last_vod()
            if vod is None:
                raise NoVodError()

            self.channel.last_vod_id = vod.vod_id
            date = vod.published_at
            token = await self.api.get_vod_token(vod.vod_id)
        else:
            token = await self.api.get_stream_token()

        text = await self.api.get_master_playlist(token)

        try:
            renditions = parse_master_playlist(text)
        except ValueError as e:
            self._logger.warning(f"Failed to parse master playlist: {e}")
            renditions = []

        return renditions, date

    async def is_live(self) -> bool:
        """Whether the channel (or its latest VOD) currently has any rendition."""
        try:
            renditions, _ = await self._load_renditions()
        except ResolutionError as e:
            self._logger.debug(f"Not available: {e}")
            return False
        except Exception as e:
            self._logger.error(f"Live check failed: {e}")
            return False
        return len(renditions) > 0

    async def get_stream(self, quality: str) -> StreamSelection:
        """
        Resolve the stream to the media playlist URL for quality.

        Never raises: failures return an empty selection and emit an ERROR event.

        Args:
            quality: Configured quality (source, best, audio or a tag fragment).

        Returns:
            StreamSelection with the rendition URL and, for VODs, its publish date.
        """
        try:
            renditions, date = await self._load_renditions()
        except ResolutionError as e:
            self._emit_error(e)
            return StreamSelection()
        except Exception as e:
            self._emit_error(ResolutionError(f"Stream resolution failed: {e}"))
            return StreamSelection()

        if not renditions and not self.vod:
            self._set_live(False)

        rendition = select_rendition(renditions, quality)
        if rendition is None:
            self._emit_error(NoStreamError(quality))
            return StreamSelection()

        self._logger.debug(
            f"Selected quality: {rendition.label} "
            f"(available: {', '.join(r.label for r in renditions)})"
        )
        return StreamSelection(url=rendition.uri, date=date, rendition=rendition)

    def _emit_error(self, error: ResolutionError) -> None:
        self._logger.error(str(error))
        self._events.put_nowait(MonitorEvent(ChannelEvent.ERROR, self.channel.name, error))

    def _set_live(self, live: bool) -> None:
        """Record liveness, emitting an event only on a state change."""
        new_state = ChannelState.LIVE if live else ChannelState.OFFLINE
        if new_state == self.state:
            return

        self.state = new_state
        self.channel.live = live
        event = ChannelEvent.WENT_LIVE if live else ChannelEvent.WENT_OFFLINE
        self._events.put_nowait(MonitorEvent(event, self.channel.name))

    def mark_offline(self) -> None:
        """Treat the channel as offline until the next live edge."""
        self._set_live(False)

    async def check(self) -> bool:
        """Run a live check and update state."""
        live = await self.is_live()
        self._set_live(live)
        return live

    async def _follow_pubsub(self, listener: PubSubListener) -> None:
        async for kind in listener.listen():
            if kind == STREAM_UP:
                self._set_live(True)
            elif kind == STREAM_DOWN:
                self._set_live(False)

    async def _poll(self, interval: int) -> None:
        while self._running:
            await asyncio.sleep(interval)
            await self.check()

    async def start(self) -> None:
        """Look up the channel, run the startup check and start watchers."""
        self._running = True

        self.channel.id = await self.api.get_channel_id()
        poll_interval = self.poll_interval

        if self.use_pubsub:
            listener = self._pubsub
            if listener is None and self.channel.id:
                listener = PubSubListener(
                    [playback_topic(self.channel.id)], auth=self.api.auth, session=self.api.session
                )
            if listener is not None:
                self._pubsub = listener
                self._tasks.append(asyncio.create_task(self._follow_pubsub(listener)))
            else:
                self._logger.warning("Channel id unavailable, falling back to polling")
                poll_interval = poll_interval or FALLBACK_POLL_INTERVAL

        await self.check()

        if poll_interval:
            self._tasks.append(asyncio.create_task(self._poll(poll_interval)))

    async def stop(self) -> None:
        """Stop watchers."""
        self._running = False
        if self._pubsub is not None:
            await self._pubsub.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def events(self) -> AsyncIterator[MonitorEvent]:
        """
        Start monitoring and yield events.

        Yields:
            MonitorEvent for each state change or resolution error.
        """
        if not self._running:
            await self.start()

        while self._running:
            event = await self._events.get()
            yield event
