"""
Twitch GraphQL and playlist API client for Twitch Recorder.
Handles channel lookups, playback access tokens and master playlist fetching.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import aiohttp

from .logger import get_logger


class ResolutionError(Exception):
    """A stream or VOD could not be resolved to a playable playlist."""


class NoStreamError(ResolutionError):
    """No rendition matches the requested quality."""

    def __init__(self, quality: str):
        super().__init__(f"No stream of '{quality}' quality found")
        self.quality = quality


class NoVodError(ResolutionError):
    """The channel has no VOD to record."""

    def __init__(self):
        super().__init__("No VOD found")


class SubscriptionRequiredError(ResolutionError):
    """The VOD is restricted to subscribers."""

    def __init__(self):
        super().__init__("Subscription required")


@dataclass
class AccessToken:
    """Signed playback token, valid for a single playlist request."""
    value: str
    signature: str
    vod_id: Optional[str] = None

    @property
    def is_vod(self) -> bool:
        return self.vod_id is not None


@dataclass
class VodInfo:
    """Latest archived broadcast of a channel."""
    vod_id: str
    published_at: Optional[datetime] = None


class TwitchAPI:
    """
    Twitch GraphQL client.

    Every playlist request gets its own freshly fetched access token.
    All methods return None or an empty result on failure and log the cause.
    """

    GQL_URL = "https://gql.twitch.tv/gql"
    USHER_LIVE_URL = "https://usher.ttvnw.net/api/channel/hls/{channel}.m3u8"
    USHER_VOD_URL = "https://usher.ttvnw.net/vod/{vod_id}.m3u8"
    CLIENT_ID = "kimne78kx3ncx6brgo4mv6wki5h1ko"

    def __init__(
        self,
        channel: str,
        auth: Optional[str] = None,
        low_latency: bool = False,
        timeout: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
        logger=None
    ):
        """
        Initialize Twitch API client.

        Args:
            channel: Twitch username (login).
            auth: Optional user OAuth token.
            low_latency: Request low latency playlists.
            timeout: Total timeout per request in seconds.
            session: Shared HTTP session, created on connect() if omitted.
            logger: Logger to use.
        """
        self.channel = channel.lower()
        self.auth = auth
        self.low_latency = low_latency
        self.timeout = aiohttp.ClientTimeout(total=timeout)

        self._session = session
        self._owns_session = session is None
        self._logger = logger or get_logger('twitch_api')

    @property
    def session(self) -> Optional[aiohttp.ClientSession]:
        return self._session

    async def connect(self) -> None:
        """Open the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True

    async def disconnect(self) -> None:
        """Close session."""
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    def _headers(self) -> dict:
        """Get request headers."""
        headers = {'Client-ID': self.CLIENT_ID}
        if self.auth:
            headers['Authorization'] = f'OAuth {self.auth}'
        return headers

    async def _gql(self, query: str) -> Optional[dict]:
        """Run one GraphQL query and return its data object."""
        if self._session is None:
            await self.connect()

        try:
            async with self._session.post(
                self.GQL_URL,
                headers=self._headers(),
                json={'query': query},
                timeout=self.timeout
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    self._logger.error(f"GraphQL error: {resp.status} - {text[:200]}")
                    return None

                payload = await resp.json(content_type=None)
                if not isinstance(payload, dict):
                    self._logger.error(f"GraphQL error: unexpected response {str(payload)[:200]}")
                    return None
                if payload.get('errors'):
                    self._logger.error(f"GraphQL error: {payload['errors']}")
                return payload.get('data')

        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._logger.error(f"GraphQL request failed: {e}")
            return None

    async def get_channel_id(self) -> Optional[str]:
        """
        Look up the numeric channel id.

        Returns:
            Channel id, or None if the channel doesn't exist or the request failed.
        """
        data = await self._gql(f'query {{ user(login: "{self.channel}") {{ id }} }}')

        try:
            return data['user']['id']
        except (KeyError, TypeError):
            self._logger.error(f"Failed to get channel id for {self.channel}")
            return None

    async def get_stream_token(self) -> Optional[AccessToken]:
        """Fetch a live stream playback token."""
        data = await self._gql(
            f'query {{ streamPlaybackAccessToken(channelName: "{self.channel}", params: {{'
            f' platform: "web", playerBackend: "mediaplayer", playerType: "site" }})'
            f' {{ value signature }} }}'
        )

        try:
            token = data['streamPlaybackAccessToken']
            return AccessToken(value=token['value'], signature=token['signature'])
        except (KeyError, TypeError):
            self._logger.error("Failed to get stream access token")
            return None

    async def get_vod_token(self, vod_id: str) -> Optional[AccessToken]:
        """Fetch a playback token for one VOD."""
        data = await self._gql(
            f'query {{ videoPlaybackAccessToken(id: "{vod_id}", params: {{'
            f' platform: "web", playerBackend: "mediaplayer", playerType: "site" }})'
            f' {{ value signature }} }}'
        )

        try:
            token = data['videoPlaybackAccessToken']
            return AccessToken(value=token['value'], signature=token['signature'], vod_id=vod_id)
        except (KeyError, TypeError):
            self._logger.error(f"Failed to get VOD access token for {vod_id}")
            return None

    async def get_last_vod(self) -> Optional[VodInfo]:
        """
        Find the channel's most recent archived broadcast.

        Returns:
            VodInfo, or None if there is no VOD or the request failed.
        """
        data = await self._gql(
            f'query {{ user(login: "{self.channel}") {{'
            f' videos(first: 1, type: ARCHIVE, sort: TIME) {{ edges {{ node {{ id publishedAt }} }} }} }} }}'
        )

        try:
            edges = data['user']['videos']['edges']
            if not edges:
                return None

            node = edges[0]['node']
            published_at = None
            if node.get('publishedAt'):
                published_at = datetime.fromisoformat(node['publishedAt'].replace('Z', '+00:00'))

            return VodInfo(vod_id=node['id'], published_at=published_at)
        except (KeyError, TypeError, IndexError, AttributeError, ValueError):
            self._logger.error(f"Failed to get VODs for {self.channel}")
            return None

    def playlist_params(self, token: AccessToken) -> dict:
        """Query parameters for a master playlist request."""
        return {
            'allow_source': 'true',
            'allow_audio_only': 'true',
            'fast_bread': 'true' if self.low_latency else 'false',
            'player_backend': 'mediaplayer',
            'playlist_include_framerate': 'true',
            'reassignments_supported': 'true',
            'supported_codecs': 'vp09,avc1',
            'cdm': 'wv',
            'sig': token.signature,
            'token': token.value,
            'p': str(random.randint(100000, 999999)),
            'type': 'any',
        }

    async def get_master_playlist(self, token: Optional[AccessToken]) -> str:
        """
        Fetch the master playlist text signed by token.

        Args:
            token: Access token for the live stream or a VOD.

        Returns:
            Playlist text, empty if the stream is offline or the request failed.

        Raises:
            SubscriptionRequiredError: If a VOD playlist is subscriber-only.
        """
        if token is None:
            return ''

        if self._session is None:
            await self.connect()

        if token.is_vod:
            url = self.USHER_VOD_URL.format(vod_id=token.vod_id)
        else:
            url = self.USHER_LIVE_URL.format(channel=self.channel)

        try:
            async with self._session.get(
                url,
                headers={'Client-ID': self.CLIENT_ID},
                params=self.playlist_params(token),
                timeout=self.timeout
            ) as resp:
                if resp.status == 403 and token.is_vod:
                    raise SubscriptionRequiredError()
                if resp.status != 200:
                    # 404 means the channel is offline
                    self._logger.debug(f"Playlist request returned {resp.status}")
                    return ''
                return await resp.text()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.error(f"Failed to get master playlist: {e}")
            return ''
