"""
Segment download pipeline for Twitch Recorder.
Downloads playlist segments one at a time and appends them, in order,
to the output file.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, Protocol

import aiofiles
import aiohttp

from .logger import get_logger
from .playlist import Segment


CHUNK_SIZE = 64 * 1024


class SegmentSource(Protocol):
    def segments(self) -> AsyncIterator[Segment]:
        ...


class SegmentError(Exception):
    """A segment failed to download or append."""

    def __init__(self, segment: Optional[Segment], stage: str, cause: BaseException, active: bool):
        """
        Args:
            segment: Failed segment, None if the playlist itself failed.
            stage: 'download', 'append' or 'playlist'.
            cause: Underlying exception.
            active: Whether a recording had started when the error happened.
        """
        sequence = segment.sequence if segment else '-'
        super().__init__(f"Segment {sequence} {stage} failed: {cause}")
        self.segment = segment
        self.stage = stage
        self.cause = cause
        self.active = active


@dataclass
class RetryPolicy:
    """How often a failed segment download is retried."""
    retries: int = 0      # 0 = a failed segment is left as a gap
    delay: float = 1.0

    async def run(self, func: Callable[..., Awaitable[Any]], *args, logger=None) -> Any:
        """Await func(*args), retrying on failure. Re-raises the last error."""
        attempt = 0
        while True:
            try:
                return await func(*args)
            except Exception as e:
                if attempt >= self.retries:
                    raise
                attempt += 1
                if logger:
                    logger.warning(f"Attempt {attempt}/{self.retries} failed: {e}, retrying in {self.delay}s")
                await asyncio.sleep(self.delay)


class SerialQueue:
    """
    FIFO task queue that runs one task at a time.

    on_completed runs before the queue checks whether it has gone idle, so
    work handed to another queue from it is visible before on_idle fires.
    """

    def __init__(
        self,
        name: str,
        on_completed: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        on_busy: Optional[Callable[[], None]] = None,
        on_idle: Optional[Callable[[], None]] = None
    ):
        self.name = name
        self.on_completed = on_completed
        self.on_error = on_error
        self.on_busy = on_busy
        self.on_idle = on_idle

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._pending = 0

    @property
    def idle(self) -> bool:
        return self._pending == 0

    @property
    def pending(self) -> int:
        return self._pending

    def add(self, factory: Callable[[], Awaitable[Any]]) -> None:
        """Queue a coroutine factory, run after every task added before it."""
        if self._pending == 0 and self.on_busy:
            self.on_busy()
        self._pending += 1
        self._queue.put_nowait(factory)

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work(), name=f"{self.name}-queue")

    async def _work(self) -> None:
        while True:
            factory = await self._queue.get()
            try:
                result = await factory()
            except Exception as e:
                if self.on_error:
                    self.on_error(e)
            else:
                if self.on_completed:
                    self.on_completed(result)
            finally:
                self._pending -= 1
                self._queue.task_done()

            if self._pending == 0 and self.on_idle:
                self.on_idle()

    async def join(self) -> None:
        """Wait until every queued task has run."""
        await self._queue.join()

    def close(self) -> None:
        """Cancel the worker, dropping queued tasks."""
        if self._worker and not self._worker.done():
            self._worker.cancel()


class CompletionBarrier:
    """Fires on_complete once, the first time every condition holds."""

    def __init__(self, conditions: Iterable[str], on_complete: Callable[[], None], satisfied: Iterable[str] = ()):
        satisfied = set(satisfied)
        self._state = {name: name in satisfied for name in conditions}
        self._on_complete = on_complete
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def outstanding(self) -> int:
        return sum(1 for value in self._state.values() if not value)

    def set(self, name: str, value: bool = True) -> None:
        if name not in self._state:
            raise KeyError(name)
        self._state[name] = value

        if value and not self._fired and self.outstanding == 0:
            self._fired = True
            self._on_complete()


class SegmentPipeline:
    """
    Records one playlist into one output file.

    Each admitted segment is downloaded to segments_dir, then appended to
    output_path. Both stages run strictly one segment at a time in playlist
    order, so the output is the concatenation of every successfully
    downloaded segment. A failed segment is reported and skipped.
    """

    PARSED = 'parsed'
    DOWNLOADS_IDLE = 'downloads_idle'
    APPENDS_IDLE = 'appends_idle'

    def __init__(
        self,
        output_path: Path,
        segments_dir: Optional[Path] = None,
        keep_segments: bool = False,
        keep_ads: bool = False,
        retry: Optional[RetryPolicy] = None,
        session: Optional[aiohttp.ClientSession] = None,
        fetch: Optional[Callable[[str, Path], Awaitable[Any]]] = None,
        timeout: float = 30.0,
        logger=None
    ):
        """
        Initialize segment pipeline.

        Args:
            output_path: File the recording is appended to.
            segments_dir: Where segments are downloaded, output_path's
                directory / 'segments' if None.
            keep_segments: Don't delete segment files after appending.
            keep_ads: Record ad segments instead of skipping them.
            retry: Retry policy for segment downloads.
            session: Shared HTTP session, a private one is used if omitted.
            fetch: Replacement for the HTTP download, called as fetch(uri, dest).
            timeout: Total timeout per segment download in seconds.
            logger: Logger to use.
        """
        self.output_path = Path(output_path)
        self.segments_dir = Path(segments_dir) if segments_dir else self.output_path.parent / 'segments'
        self.keep_segments = keep_segments
        self.keep_ads = keep_ads
        self.retry = retry or RetryPolicy()
        self.timeout = aiohttp.ClientTimeout(total=timeout)

        self._session = session
        self._owns_session = False
        self._fetch = fetch or self._http_fetch
        self._logger = logger or get_logger('downloader')

        self._on_start: Optional[Callable[[], None]] = None
        self._on_finish: Optional[Callable[[], None]] = None
        self._on_error: Optional[Callable[[SegmentError], None]] = None

        self._started = False
        self.finished = asyncio.Event()

        self.downloaded = 0
        self.appended = 0
        self.skipped_ads = 0
        self.failed = 0

        self._barrier = CompletionBarrier(
            (self.PARSED, self.DOWNLOADS_IDLE, self.APPENDS_IDLE),
            self._finish,
            satisfied=(self.DOWNLOADS_IDLE, self.APPENDS_IDLE),
        )
        self._downloads = SerialQueue(
            'download',
            on_completed=self._on_downloaded,
            on_error=self._on_download_error,
            on_busy=lambda: self._barrier.set(self.DOWNLOADS_IDLE, False),
            on_idle=lambda: self._barrier.set(self.DOWNLOADS_IDLE),
        )
        self._appends = SerialQueue(
            'append',
            on_completed=self._on_appended,
            on_error=self._on_append_error,
            on_busy=lambda: self._barrier.set(self.APPENDS_IDLE, False),
            on_idle=lambda: self._barrier.set(self.APPENDS_IDLE),
        )

    def set_on_start(self, callback: Callable[[], None]) -> None:
        """Set callback for the first admitted segment."""
        self._on_start = callback

    def set_on_finish(self, callback: Callable[[], None]) -> None:
        """Set callback for when every admitted segment has been handled."""
        self._on_finish = callback

    def set_on_error(self, callback: Callable[[SegmentError], None]) -> None:
        """Set callback for segment failures."""
        self._on_error = callback

    @property
    def started(self) -> bool:
        return self._started

    @property
    def active(self) -> bool:
        """Recording has started and not finished yet."""
        return self._started and not self.finished.is_set()

    def segment_path(self, segment: Segment) -> Path:
        return self.segments_dir / f"{self.output_path.stem}_{segment.sequence}.ts"

    async def start(self, source: SegmentSource) -> None:
        """
        Consume source until it ends and wait for every segment to be written.

        Raises:
            OSError: If the segments directory can't be created.
        """
        self.segments_dir.mkdir(parents=True, exist_ok=True)

        if self._session is None and self._fetch == self._http_fetch:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True

        try:
            try:
                async for segment in source.segments():
                    self.admit(segment)
            except Exception as e:
                self._report(SegmentError(None, 'playlist', e, self.active))
            finally:
                self._barrier.set(self.PARSED)

            await self.finished.wait()
        finally:
            self._downloads.close()
            self._appends.close()
            if self._owns_session and self._session:
                await self._session.close()
                self._session = None

    def admit(self, segment: Segment) -> bool:
        """Queue a segment for download. Returns False if it was skipped."""
        if segment.ad and not self.keep_ads:
            self.skipped_ads += 1
            self._logger.debug(f"Skipping ad segment {segment.sequence}")
            return False

        if not self._started:
            self._started = True
            if self._on_start:
                self._on_start()

        dest = self.segment_path(segment)
        self._downloads.add(lambda: self._download(segment, dest))
        return True

    async def _http_fetch(self, uri: str, dest: Path) -> None:
        async with self._session.get(uri, timeout=self.timeout) as resp:
            resp.raise_for_status()
            async with aiofiles.open(dest, 'wb') as f:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    await f.write(chunk)

    async def _download(self, segment: Segment, dest: Path):
        try:
            await self.retry.run(self._fetch, segment.uri, dest, logger=self._logger)
        except Exception as e:
            raise SegmentError(segment, 'download', e, self.active) from e

        self._logger.debug(f"Downloaded segment {segment.sequence}")
        return segment, dest

    def _on_downloaded(self, result) -> None:
        segment, dest = result
        self.downloaded += 1
        self._appends.add(lambda: self._append(segment, dest))

    async def _append(self, segment: Segment, source: Path) -> Segment:
        try:
            async with aiofiles.open(source, 'rb') as src, aiofiles.open(self.output_path, 'ab') as dst:
                while True:
                    chunk = await src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    await dst.write(chunk)
        except OSError as e:
            raise SegmentError(segment, 'append', e, self.active) from e

        if not self.keep_segments:
            try:
                source.unlink()
            except OSError as e:
                self._logger.warning(f"Failed to delete segment {source}: {e}")

        return segment

    def _on_appended(self, segment: Segment) -> None:
        self.appended += 1
        self._logger.debug(f"Appended segment {segment.sequence}")

    def _on_download_error(self, error: Exception) -> None:
        self._report(self._wrap(error, 'download'))

    def _on_append_error(self, error: Exception) -> None:
        self._report(self._wrap(error, 'append'))

    def _wrap(self, error: Exception, stage: str) -> SegmentError:
        if isinstance(error, SegmentError):
            return error
        return SegmentError(None, stage, error, self.active)

    def _report(self, error: SegmentError) -> None:
        self.failed += 1
        self._logger.error(str(error))
        if self._on_error:
            self._on_error(error)

    def _finish(self) -> None:
        self.finished.set()
        self._logger.debug(
            f"Pipeline finished: {self.appended} appended, {self.failed} failed, "
            f"{self.skipped_ads} ads skipped"
        )
        if self._on_finish:
            self._on_finish()
