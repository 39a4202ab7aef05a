"""Shared fixtures for Twitch Recorder tests."""

import pytest

from twitchrecorder.config import Config


MASTER_PLAYLIST = """#EXTM3U
#EXT-X-TWITCH-INFO:NODE="video-edge-c2a1b4.fra02",MANIFEST-NODE-TYPE="weaver_cluster"
#EXT-X-MEDIA:TYPE=VIDEO,GROUP-ID="chunked",NAME="1080p60 (source)",AUTOSELECT=YES,DEFAULT=YES
#EXT-X-STREAM-INF:BANDWIDTH=8534030,RESOLUTION=1920x1080,CODECS="avc1.64002A,mp4a.40.2",VIDEO="chunked",FRAME-RATE=60.000
https://video-weaver.fra02.hls.ttvnw.net/v1/playlist/chunked.m3u8
#EXT-X-MEDIA:TYPE=VIDEO,GROUP-ID="720p60",NAME="720p60",AUTOSELECT=YES,DEFAULT=YES
#EXT-X-STREAM-INF:BANDWIDTH=3422999,RESOLUTION=1280x720,CODECS="avc1.4D401F,mp4a.40.2",VIDEO="720p60",FRAME-RATE=60.000
https://video-weaver.fra02.hls.ttvnw.net/v1/playlist/720p60.m3u8
#EXT-X-MEDIA:TYPE=VIDEO,GROUP-ID="480p30",NAME="480p",AUTOSELECT=YES,DEFAULT=YES
#EXT-X-STREAM-INF:BANDWIDTH=1427999,RESOLUTION=852x480,CODECS="avc1.4D401F,mp4a.40.2",VIDEO="480p30",FRAME-RATE=30.000
https://video-weaver.fra02.hls.ttvnw.net/v1/playlist/480p30.m3u8
#EXT-X-MEDIA:TYPE=VIDEO,GROUP-ID="audio_only",NAME="audio_only",AUTOSELECT=NO,DEFAULT=NO
#EXT-X-STREAM-INF:BANDWIDTH=160000,CODECS="mp4a.40.2",VIDEO="audio_only"
https://video-weaver.fra02.hls.ttvnw.net/v1/playlist/audio_only.m3u8
"""

MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:6
#EXT-X-MEDIA-SEQUENCE:100
#EXT-X-PROGRAM-DATE-TIME:2024-03-01T20:00:00.000Z
#EXTINF:2.000,live
https://video-edge.example/seg100.ts
#EXT-X-DATERANGE:ID="stitched-ad-1709323202-30",CLASS="twitch-stitched-ad",START-DATE="2024-03-01T20:00:02.000Z",DURATION=2.000
#EXT-X-PROGRAM-DATE-TIME:2024-03-01T20:00:02.000Z
#EXTINF:2.000,Amazon|8573489
https://video-edge.example/ad101.ts
#EXT-X-PROGRAM-DATE-TIME:2024-03-01T20:00:04.000Z
#EXTINF:2.000,live
https://video-edge.example/seg102.ts
#EXT-X-TWITCH-PREFETCH:https://video-edge.example/seg103.ts
#EXT-X-TWITCH-PREFETCH:https://video-edge.example/seg104.ts
"""

VOD_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:10
#EXT-X-PLAYLIST-TYPE:EVENT
#EXT-X-MEDIA-SEQUENCE:0
#EXTINF:10.000,
0.ts
#EXTINF:10.000,
1.ts
#EXTINF:4.500,
2.ts
#EXT-X-ENDLIST
"""


def media_playlist(sequence: int, count: int, ended: bool = False) -> str:
    """Build a simple live media playlist."""
    lines = ['#EXTM3U', '#EXT-X-TARGETDURATION:2', f'#EXT-X-MEDIA-SEQUENCE:{sequence}']
    for number in range(sequence, sequence + count):
        lines += ['#EXTINF:2.000,live', f'https://video-edge.example/seg{number}.ts']
    if ended:
        lines.append('#EXT-X-ENDLIST')
    return '\n'.join(lines) + '\n'


@pytest.fixture
def config(tmp_path) -> Config:
    config = Config(channel='SomeStreamer')
    config.recorder.output_dir = str(tmp_path / 'recordings')
    config.recorder.template = ':channel'
    config.time.timezone = 'UTC'
    return config
