"""
HLS playlist module for Twitch Recorder.
Parses master and media playlists and follows a live media playlist,
yielding each new segment exactly once.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Tuple
from urllib.parse import urljoin

import aiohttp
import m3u8

from .logger import get_logger


PREFETCH_TAG = '#EXT-X-TWITCH-PREFETCH:'
AD_TITLE_PREFIX = 'Amazon'
AD_DATERANGE_CLASS = 'twitch-stitched-ad'
AD_DATERANGE_ID_PREFIX = 'stitched-ad'

# Configured quality -> substring of the rendition tag
QUALITY_MAPPINGS = {
    'source': 'chunked',
    'best': '',
    'audio': 'audio_only',
}


@dataclass
class Rendition:
    """One variant stream of a master playlist."""
    tag: str                        # VIDEO group id, e.g. "chunked", "720p60"
    uri: str
    bandwidth: int = 0
    resolution: Optional[Tuple[int, int]] = None
    frame_rate: Optional[float] = None

    @property
    def label(self) -> str:
        if self.tag == 'chunked':
            return 'source'
        return self.tag or 'unknown'


@dataclass
class Segment:
    """Media segment, identified by its media sequence number."""
    sequence: int
    uri: str
    duration: float = 0.0
    ad: bool = False
    prefetch: bool = False


@dataclass
class MediaPlaylist:
    """Parsed snapshot of a media playlist."""
    segments: List[Segment]
    ended: bool = False
    target_duration: Optional[float] = None


def parse_master_playlist(text: str, uri: Optional[str] = None) -> List[Rendition]:
    """
    Parse master playlist text into renditions, best first.

    Args:
        text: Master playlist body.
        uri: Playlist URL, used to resolve relative variant URIs.

    Returns:
        Renditions in playlist order. Empty for empty or non-master text.
    """
    if not text or not text.strip():
        return []

    playlist = m3u8.loads(text)
    renditions = []

    for variant in playlist.playlists:
        info = variant.stream_info
        renditions.append(Rendition(
            tag=info.video or '',
            uri=urljoin(uri, variant.uri) if uri else variant.uri,
            bandwidth=info.bandwidth or 0,
            resolution=info.resolution,
            frame_rate=info.frame_rate,
        ))

    return renditions


def select_rendition(renditions: List[Rendition], quality: str) -> Optional[Rendition]:
    """
    Pick the first rendition matching quality.

    'source' matches the chunked rendition, 'best' the first one listed,
    'audio' the audio-only one. Anything else (e.g. '720', '480p30') is
    matched as a substring of the rendition tag.
    """
    wanted = QUALITY_MAPPINGS.get(quality.lower(), quality.lower())

    for rendition in renditions:
        if wanted in rendition.tag.lower():
            return rendition
    return None


def is_ad_segment(segment: m3u8.Segment) -> bool:
    """Detect a stitched-in ad by its title or date range markers."""
    if segment.title and segment.title.startswith(AD_TITLE_PREFIX):
        return True

    for daterange in getattr(segment, 'dateranges', None) or []:
        if getattr(daterange, 'class_', None) == AD_DATERANGE_CLASS:
            return True
        if (daterange.id or '').startswith(AD_DATERANGE_ID_PREFIX):
            return True

    return False


def parse_media_playlist(text: str, uri: Optional[str] = None) -> MediaPlaylist:
    """
    Parse media playlist text.

    Regular segments are numbered from EXT-X-MEDIA-SEQUENCE. Twitch prefetch
    hints follow on with the next sequence numbers and are flagged prefetch.
    """
    playlist = m3u8.loads(text)
    start = playlist.media_sequence or 0

    segments = []
    for index, item in enumerate(playlist.segments):
        segments.append(Segment(
            sequence=start + index,
            uri=urljoin(uri, item.uri) if uri else item.uri,
            duration=item.duration or 0.0,
            ad=is_ad_segment(item),
        ))

    sequence = start + len(segments)
    for line in text.splitlines():
        line = line.strip()
        if line.startswith(PREFETCH_TAG):
            prefetch_uri = line[len(PREFETCH_TAG):]
            segments.append(Segment(
                sequence=sequence,
                uri=urljoin(uri, prefetch_uri) if uri else prefetch_uri,
                prefetch=True,
            ))
            sequence += 1

    return MediaPlaylist(
        segments=segments,
        ended=bool(playlist.is_endlist),
        target_duration=playlist.target_duration,
    )


class PlaylistReader:
    """
    Follows a live or VOD playlist and yields new segments in order.

    Accepts either a master playlist (the configured quality is selected
    from it) or a media playlist URL. Stops when the playlist carries
    ENDLIST, after max_failures consecutive failed refreshes or after
    max_stale consecutive refreshes without new segments.
    """

    def __init__(
        self,
        url: str,
        quality: str = 'best',
        session: Optional[aiohttp.ClientSession] = None,
        low_latency: bool = False,
        refresh_interval: Optional[float] = None,
        max_failures: int = 5,
        max_stale: int = 60,
        timeout: float = 15.0,
        on_quality: Optional[Callable[[Rendition], None]] = None,
        logger=None
    ):
        """
        Initialize playlist reader.

        Args:
            url: Master or media playlist URL.
            quality: Quality to select when url is a master playlist.
            session: Shared HTTP session, a private one is used if omitted.
            low_latency: Yield prefetch segments as soon as they are announced.
            refresh_interval: Seconds between refreshes, half the target
                duration if None.
            max_failures: Consecutive failed refreshes before giving up.
            max_stale: Consecutive refreshes without new segments before giving up.
            timeout: Total timeout per request in seconds.
            on_quality: Called with the selected rendition.
            logger: Logger to use.
        """
        self.url = url
        self.quality = quality
        self.low_latency = low_latency
        self.refresh_interval = refresh_interval
        self.max_failures = max_failures
        self.max_stale = max_stale
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.on_quality = on_quality

        self._session = session
        self._logger = logger or get_logger('playlist')
        self._last_sequence = -1
        self._running = False

        self.segment_count = 0

    def stop(self) -> None:
        """Stop after the current refresh."""
        self._running = False

    async def _fetch(self, session: aiohttp.ClientSession, url: str) -> Optional[str]:
        """Fetch playlist text, None on failure."""
        try:
            async with session.get(url, timeout=self.timeout) as resp:
                if resp.status != 200:
                    self._logger.debug(f"Playlist refresh returned {resp.status}")
                    return None
                return await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.warning(f"Playlist refresh failed: {e}")
            return None

    @property
    def _retry_delay(self) -> float:
        return 2.0 if self.refresh_interval is None else self.refresh_interval

    async def _resolve_media_url(self, session: aiohttp.ClientSession) -> Tuple[Optional[str], Optional[str]]:
        """
        Turn a master playlist URL into the selected rendition's URL.

        Returns:
            (media url, media playlist text if self.url already was one).
            The url is None if nothing could be resolved.
        """
        failures = 0
        text = None
        while self._running:
            text = await self._fetch(session, self.url)
            if text is not None:
                break
            failures += 1
            if failures >= self.max_failures:
                self._logger.warning(f"Playlist unavailable after {failures} attempts, stopping")
                return None, None
            await asyncio.sleep(self._retry_delay)

        if text is None:
            return None, None

        renditions = parse_master_playlist(text, self.url)
        if not renditions:
            return self.url, text

        rendition = select_rendition(renditions, self.quality)
        if rendition is None:
            self._logger.error(f"No stream of '{self.quality}' quality found")
            return None, None

        self._logger.debug(f"Selected quality: {rendition.label}")
        if self.on_quality:
            self.on_quality(rendition)
        return rendition.uri, None

    def _new_segments(self, playlist: MediaPlaylist) -> List[Segment]:
        """Segments not yielded yet, in sequence order."""
        fresh = []
        for segment in playlist.segments:
            if segment.sequence <= self._last_sequence:
                continue
            if segment.prefetch and not self.low_latency:
                # Picked up once it turns into a regular segment
                break
            fresh.append(segment)
            self._last_sequence = segment.sequence
        return fresh

    async def segments(self) -> AsyncIterator[Segment]:
        """
        Yield each new segment once, until the playlist ends.

        Yields:
            Segment objects in increasing sequence order.
        """
        own_session = self._session is None
        session = self._session or aiohttp.ClientSession(timeout=self.timeout)
        self._running = True

        try:
            media_url, text = await self._resolve_media_url(session)
            if media_url is None:
                return

            failures = 0
            stale = 0
            while self._running:
                if text is None:
                    text = await self._fetch(session, media_url)
                playlist = None
                if text is not None:
                    try:
                        playlist = parse_media_playlist(text, media_url)
                    except (ValueError, AttributeError) as e:
                        self._logger.warning(f"Failed to parse playlist: {e}")
                text = None

                if playlist is None:
                    failures += 1
                    if failures >= self.max_failures:
                        self._logger.warning(f"Playlist unavailable after {failures} attempts, stopping")
                        break
                    await asyncio.sleep(self._retry_delay)
                    continue

                failures = 0
                fresh = self._new_segments(playlist)
                stale = 0 if fresh else stale + 1
                for segment in fresh:
                    self.segment_count += 1
                    yield segment

                if playlist.ended:
                    self._logger.debug("Playlist ended")
                    break
                if stale >= self.max_stale:
                    self._logger.warning(f"No new segments after {stale} refreshes, stopping")
                    break

                interval = self.refresh_interval
                if interval is None:
                    interval = (playlist.target_duration or 2.0) / 2
                await asyncio.sleep(interval)
        finally:
            self._running = False
            self._logger.debug(f"Finished reading playlist, {self.segment_count} segments")
            if own_session:
                await session.close()
