"""
Tests for recording jobs.
"""

import asyncio
import logging
from unittest.mock import patch

import pytest

from twitchrecorder.downloader import SegmentPipeline
from twitchrecorder.logger import strip_ansi
from twitchrecorder.playlist import Segment
from twitchrecorder.recorder import JobStatus, StreamRecorder
from twitchrecorder.stream_monitor import StreamSelection


SELECTION = StreamSelection(url='https://video-weaver.example/v1/playlist/chunked.m3u8')


def make_reader(segments, hold: asyncio.Event = None):
    """PlaylistReader replacement yielding segments, optionally waiting before it ends."""

    class FakeReader:
        def __init__(self, url, **kwargs):
            self.url = url

        def stop(self):
            pass

        async def segments(self):
            for item in segments:
                yield item
            if hold is not None:
                await hold.wait()

    return FakeReader


async def fake_fetch(self, uri, dest):
    if 'broken' in uri:
        raise ConnectionError('reset by peer')
    dest.write_bytes(uri.encode())


def status_lines(caplog) -> list:
    return [strip_ansi(r.getMessage()) for r in caplog.records if '•' in r.getMessage()]


def segments(*names):
    return [Segment(sequence=n, uri=f'https://edge.example/{name}.ts') for n, name in enumerate(names)]


@pytest.fixture(autouse=True)
def capture(caplog):
    caplog.set_level(logging.DEBUG, logger='twitch_recorder')


class TestStreamRecorder:
    """Test the recording lifecycle."""

    @pytest.mark.asyncio
    async def test_records_to_file(self, config, tmp_path, caplog):
        recorder = StreamRecorder(config)

        with patch('twitchrecorder.recorder.PlaylistReader', make_reader(segments('a', 'b'))), \
                patch.object(SegmentPipeline, '_http_fetch', fake_fetch):
            job = await recorder.record(SELECTION)

        assert job.status is JobStatus.FINISHED
        assert job.output_path == tmp_path / 'recordings' / 'SomeStreamer.ts'
        assert job.output_path.read_bytes() == b'https://edge.example/a.tshttps://edge.example/b.ts'

        lines = status_lines(caplog)
        assert lines[0].startswith('• Recording live stream to file')
        assert lines[1].startswith('• Recording live stream completed')
        assert len(lines) == 2

    @pytest.mark.asyncio
    async def test_second_recording_gets_part_two(self, config, tmp_path):
        recorder = StreamRecorder(config)

        with patch('twitchrecorder.recorder.PlaylistReader', make_reader(segments('a'))), \
                patch.object(SegmentPipeline, '_http_fetch', fake_fetch):
            await recorder.record(SELECTION)
            job = await recorder.record(SELECTION)

        assert job.output_path.name == 'SomeStreamer (part 2).ts'
        assert (tmp_path / 'recordings' / 'SomeStreamer (part 1).ts').exists()

    @pytest.mark.asyncio
    async def test_segment_error_reported_once(self, config, caplog):
        """Test segment failures give one partial-recording line and the job completes."""
        recorder = StreamRecorder(config)

        with patch('twitchrecorder.recorder.PlaylistReader', make_reader(segments('a', 'broken', 'broken2', 'd'))), \
                patch.object(SegmentPipeline, '_http_fetch', fake_fetch):
            job = await recorder.record(SELECTION)

        assert job.status is JobStatus.FINISHED
        assert job.failed_segments == 2
        assert job.output_path.read_bytes() == b'https://edge.example/a.tshttps://edge.example/d.ts'

        lines = status_lines(caplog)
        assert sum('partial recording has been saved' in line for line in lines) == 1
        assert '2 segment(s) missing' in lines[-1]

    @pytest.mark.asyncio
    async def test_no_url_does_nothing(self, config):
        assert await StreamRecorder(config).record(StreamSelection()) is None

    @pytest.mark.asyncio
    async def test_abort_active_job(self, config, caplog):
        """Test aborting mid-recording keeps what was written."""
        hold = asyncio.Event()
        recorder = StreamRecorder(config)

        with patch('twitchrecorder.recorder.PlaylistReader', make_reader(segments('a'), hold)), \
                patch.object(SegmentPipeline, '_http_fetch', fake_fetch):
            task = asyncio.create_task(recorder.record(SELECTION))
            while not (recorder.job and recorder.job.output_path and recorder.job.output_path.exists()):
                await asyncio.sleep(0.01)

            assert recorder.active
            assert await recorder.record(SELECTION) is None

            assert recorder.abort() is True
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert recorder.job.status is JobStatus.ABORTED
        assert recorder.job.output_path.read_bytes() == b'https://edge.example/a.ts'
        assert status_lines(caplog)[-1] == (
            '• Recording of live stream aborted; a partial recording has been saved'
        )
        assert recorder.abort() is False

    @pytest.mark.asyncio
    async def test_unwritable_output_fails_job(self, config, tmp_path, caplog):
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')
        config.recorder.output_dir = str(blocker)
        recorder = StreamRecorder(config)

        job = await recorder.record(SELECTION)

        assert job.status is JobStatus.FAILED
        assert status_lines(caplog)[-1].startswith('• Recording of stream failed')
        assert not recorder.active

    @pytest.mark.asyncio
    async def test_empty_stream_status_line(self, config, caplog):
        recorder = StreamRecorder(config)

        with patch('twitchrecorder.recorder.PlaylistReader', make_reader([])):
            job = await recorder.record(SELECTION)

        assert job.status is JobStatus.FINISHED
        assert status_lines(caplog) == ['• Stream ended before anything was recorded']

    @pytest.mark.asyncio
    async def test_idle_error_logged_once(self, config, caplog):
        """Test a playlist failure before recording starts is not a missing segment."""

        class BrokenReader:
            def __init__(self, url, **kwargs):
                pass

            def stop(self):
                pass

            async def segments(self):
                raise ConnectionError('playlist gone')
                yield

        recorder = StreamRecorder(config)

        with patch('twitchrecorder.recorder.PlaylistReader', BrokenReader):
            job = await recorder.record(SELECTION)

        errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert len(errors) == 1
        assert 'playlist gone' in errors[0].getMessage()
        assert job.failed_segments == 0
        assert not any('partial recording' in line for line in status_lines(caplog))
