"""
Stream recorder module for Twitch Recorder.
Records a resolved stream into a single .ts file and reports each change
of recording state as one status line.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

import aiohttp

from .config import Config
from .downloader import RetryPolicy, SegmentError, SegmentPipeline
from .filenames import TemplateContext, resolve_output_path
from .logger import Colors, get_channel_logger, status_line
from .playlist import PlaylistReader, Rendition
from .stream_monitor import StreamSelection


class JobStatus(Enum):
    """Recording job status."""
    PENDING = "pending"
    ACTIVE = "active"
    FINISHED = "finished"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class RecordingJob:
    """One recording of one stream into one file."""
    channel: str
    quality: str
    output_path: Optional[Path] = None
    vod_date: Optional[datetime] = None
    rendition: Optional[Rendition] = None
    status: JobStatus = JobStatus.PENDING
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None
    failed_segments: int = 0
    partial: bool = False
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        end = self.ended_at or datetime.now()
        return (end - self.started_at).total_seconds()

    @property
    def duration_formatted(self) -> str:
        """Get human-readable duration."""
        seconds = self.duration_seconds
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours:02d}:{minutes:02d}:{int(seconds % 60):02d}"

    @property
    def file_size_bytes(self) -> int:
        if self.output_path and self.output_path.exists():
            return self.output_path.stat().st_size
        return 0


class StreamRecorder:
    """
    Records Twitch streams segment by segment.

    At most one job is active at a time.
    """

    def __init__(self, config: Config, session: Optional[aiohttp.ClientSession] = None, logger=None):
        """
        Initialize stream recorder.

        Args:
            config: Application configuration.
            session: Shared HTTP session for playlist and segment requests.
            logger: Logger to use.
        """
        self.config = config
        self.session = session

        self._logger = logger or get_channel_logger(config.channel, 'recorder')
        self._job: Optional[RecordingJob] = None
        self._reader: Optional[PlaylistReader] = None
        self._pipeline: Optional[SegmentPipeline] = None

    @property
    def job(self) -> Optional[RecordingJob]:
        return self._job

    @property
    def active(self) -> bool:
        """A job is pending or recording."""
        return self._job is not None and self._job.status in (JobStatus.PENDING, JobStatus.ACTIVE)

    def _output_path(self, job: RecordingJob) -> Path:
        recorder = self.config.recorder
        context = TemplateContext(
            channel=self.config.channel,
            timezone=self.config.time.timezone,
            time_format=self.config.time.format,
            timestamp=job.vod_date or datetime.now(timezone.utc),
        )
        return resolve_output_path(recorder.output_dir, recorder.template, context)

    async def record(self, selection: StreamSelection) -> Optional[RecordingJob]:
        """
        Record selection until its playlist ends.

        Args:
            selection: Resolved stream, its url must be set.

        Returns:
            The finished job, or None if nothing was started.
        """
        if not selection.url:
            return None

        if self.active:
            self._logger.warning("Already recording, ignoring new stream")
            return None

        options = self.config.recorder.download_options
        job = RecordingJob(
            channel=self.config.channel,
            quality=self.config.recorder.quality,
            vod_date=selection.date,
            rendition=selection.rendition,
        )
        self._job = job

        try:
            job.output_path = self._output_path(job)
        except OSError as e:
            self._fail(job, e)
            return job

        self._reader = PlaylistReader(
            selection.url,
            quality=job.quality,
            session=self.session,
            low_latency=self.config.recorder.low_latency,
        )
        self._pipeline = SegmentPipeline(
            job.output_path,
            keep_segments=options.keep_segments,
            keep_ads=options.keep_ads,
            retry=RetryPolicy(retries=options.retries, delay=options.retry_delay),
            session=self.session,
            logger=self._logger,
        )
        self._pipeline.set_on_start(self._on_start)
        self._pipeline.set_on_finish(self._on_finish)
        self._pipeline.set_on_error(self._on_error)

        try:
            await self._pipeline.start(self._reader)
        except OSError as e:
            self._fail(job, e)
        except Exception as e:
            self._logger.exception(f"Unexpected recording error: {e}")
            self._fail(job, e)
        finally:
            self._reader = None
            self._pipeline = None

        if job.status is JobStatus.PENDING:
            # Playlist ended before any segment was admitted
            job.status = JobStatus.FINISHED
            job.ended_at = datetime.now()
            status_line(self._logger, Colors.GRAY, "Stream ended before anything was recorded")

        return job

    def _on_start(self) -> None:
        job = self._job
        job.status = JobStatus.ACTIVE
        job.started_at = datetime.now()
        status_line(self._logger, Colors.CYAN, f"Recording live stream to file: {job.output_path}")

    def _on_finish(self) -> None:
        job = self._job
        if job is None or job.status is not JobStatus.ACTIVE:
            return

        job.status = JobStatus.FINISHED
        job.ended_at = datetime.now()
        message = f"Recording live stream completed ({job.duration_formatted})"
        if job.failed_segments:
            message += f", {job.failed_segments} segment(s) missing"
        status_line(self._logger, Colors.GREEN, message)

    def _on_error(self, error: SegmentError) -> None:
        job = self._job
        if job is None:
            return

        if error.segment is not None:
            job.failed_segments += 1
        if not error.active or job.status is not JobStatus.ACTIVE:
            self._logger.debug(f"Error while not recording: {error}")
            return

        if not job.partial:
            job.partial = True
            status_line(self._logger, Colors.RED, "Error recording live stream; a partial recording has been saved")

    def _fail(self, job: RecordingJob, error: Exception) -> None:
        job.status = JobStatus.FAILED
        job.error = str(error)
        job.ended_at = datetime.now()
        status_line(self._logger, Colors.RED, f"Recording of stream failed: {error}")

    def abort(self) -> bool:
        """
        Mark the active job aborted, e.g. on shutdown.

        Returns:
            True if a job was active.
        """
        job = self._job
        if job is None or not self.active:
            return False

        if self._reader:
            self._reader.stop()

        was_recording = job.status is JobStatus.ACTIVE
        job.status = JobStatus.ABORTED
        job.ended_at = datetime.now()

        if was_recording:
            status_line(
                self._logger, Colors.YELLOW,
                "Recording of live stream aborted; a partial recording has been saved"
            )
        return True


async def main():
    """Record a channel's current stream once."""
    import sys

    from .config import load_config
    from .logger import setup_logging
    from .stream_monitor import ChannelResolver
    from .twitch_api import TwitchAPI

    config = load_config(sys.argv[1:])
    setup_logging(debug=config.developer.debug)

    api = TwitchAPI(config.channel, auth=config.recorder.auth, low_latency=config.recorder.low_latency)
    await api.connect()
    try:
        resolver = ChannelResolver(api, vod=config.recorder.vod, use_pubsub=False)
        selection = await resolver.get_stream(config.recorder.quality)
        if not selection.url:
            print(f"{config.channel} has no stream to record")
            return

        recorder = StreamRecorder(config, session=api.session)
        job = await recorder.record(selection)
        print(f"Status: {job.status.value}  Duration: {job.duration_formatted}  Path: {job.output_path}")
    finally:
        await api.disconnect()


if __name__ == '__main__':
    asyncio.run(main())
