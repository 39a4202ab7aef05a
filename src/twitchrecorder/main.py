"""
Twitch Recorder - Main Orchestrator.

Coordinates the modules for the recording workflow:
1. Watch a Twitch channel for going live (PubSub + optional polling)
2. Resolve the live stream or latest VOD to a playlist
3. Record its segments into a single .ts file
"""

import asyncio
import signal
import sys
from typing import List, Optional

from .config import Config, load_config
from .filenames import TemplateContext, TemplateError, render_template
from .logger import Colors, get_channel_logger, get_logger, setup_logging, status_line
from .recorder import JobStatus, StreamRecorder
from .stream_monitor import ChannelEvent, ChannelResolver, MonitorEvent
from .twitch_api import TwitchAPI


# Signal name -> exit code
EXIT_SIGNALS = {
    'SIGINT': 0,
    'SIGHUP': 0,
    'SIGTERM': 1,
}


class TwitchRecorderApp:
    """
    Main application.

    Handles:
    - Channel monitoring
    - Recording lifecycle (one recording at a time)
    - Shutdown on signals or fatal errors
    """

    def __init__(self, config: Config):
        """Initialize application with configuration."""
        self.config = config
        self._logger = get_channel_logger(config.channel, 'app')

        self.api = TwitchAPI(
            config.channel,
            auth=config.recorder.auth,
            low_latency=config.recorder.low_latency
        )
        self.resolver = ChannelResolver(
            self.api,
            vod=config.recorder.vod,
            poll_interval=config.recorder.poll_interval
        )
        self.recorder: Optional[StreamRecorder] = None

        self._recording_task: Optional[asyncio.Task] = None
        self._recorded_vod: Optional[str] = None
        self._stop_event = asyncio.Event()
        self.exit_code = 0

    def stop(self, exit_code: int = 0) -> None:
        """Request shutdown."""
        self.exit_code = max(self.exit_code, exit_code)
        self._stop_event.set()

    @property
    def recording(self) -> bool:
        return self._recording_task is not None and not self._recording_task.done()

    async def start(self) -> int:
        """
        Run until a shutdown signal or a fatal error.

        Returns:
            Process exit code.
        """
        self._logger.info("Starting Twitch Recorder...")
        mode = "VOD" if self.config.recorder.vod else "live"
        self._logger.info(f"Monitoring {self.config.channel} ({mode}, quality: {self.config.recorder.quality})")

        await self.api.connect()
        self.recorder = StreamRecorder(self.config, session=self.api.session)

        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)

        for name in EXIT_SIGNALS:
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, self._handle_signal, name)
            except NotImplementedError:
                # Windows event loops: KeyboardInterrupt still ends asyncio.run()
                pass

        monitor_task = asyncio.create_task(self._run_monitor())

        try:
            await self._stop_event.wait()
        finally:
            monitor_task.cancel()
            try:
                await monitor_task
            except asyncio.CancelledError:
                pass

            await self._cleanup()

        return self.exit_code

    def _handle_signal(self, name: str) -> None:
        self._logger.info(f"{name} received, shutting down...")
        self.stop(EXIT_SIGNALS[name])

    def _handle_loop_exception(self, loop, context: dict) -> None:
        error = context.get('exception')
        self._logger.error(f"Uncaught error: {error or context.get('message')}", exc_info=error)
        self.stop(1)

    async def _run_monitor(self) -> None:
        """Run monitor loop."""
        try:
            async for event in self.resolver.events():
                await self._handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.exception(f"Monitor failed: {e}")
            self.stop(1)

    async def _handle_event(self, event: MonitorEvent) -> None:
        """Handle monitor event."""
        if event.event == ChannelEvent.WENT_LIVE:
            await self._handle_went_live()

        elif event.event == ChannelEvent.WENT_OFFLINE:
            # A VOD keeps recording after the broadcast ends
            if self.config.recorder.vod and self.recording:
                return
            status_line(self._logger, Colors.GRAY, f"{self.config.channel} is offline")

        elif event.event == ChannelEvent.ERROR:
            status_line(self._logger, Colors.RED, f"Recording of stream failed: {event.error}")

    async def _handle_went_live(self) -> None:
        """Resolve the stream and start recording it."""
        status_line(self._logger, Colors.MAGENTA, f"{self.config.channel} is live")

        if self.recording:
            self._logger.debug("Already recording, ignoring")
            return

        selection = await self.resolver.get_stream(self.config.recorder.quality)
        if not selection.url:
            return

        if self.config.recorder.vod and self.resolver.channel.last_vod_id == self._recorded_vod:
            self._logger.info(f"VOD {self._recorded_vod} already recorded, waiting for the next broadcast")
            return

        self._recording_task = asyncio.create_task(self._record(selection))

    async def _record(self, selection) -> None:
        """Record selection, then again for as long as the channel stays live."""
        while selection.url:
            job = await self.recorder.record(selection)
            if job is None:
                return
            if job.output_path:
                self._logger.info(f"Recording saved: {job.output_path} ({job.status.value})")
            if job.status is not JobStatus.FINISHED or self._stop_event.is_set():
                return

            if self.config.recorder.vod:
                # Re-armed for the next broadcast
                self._recorded_vod = self.resolver.channel.last_vod_id
                self.resolver.mark_offline()
                return

            # The playlist ended, which may only have been a dropped connection
            if not await self.resolver.check():
                return

            self._logger.info("Channel still live, recording again")
            selection = await self.resolver.get_stream(self.config.recorder.quality)

    async def _cleanup(self) -> None:
        """Cleanup resources."""
        self._logger.debug("Cleaning up...")

        if self.recorder is not None:
            self.recorder.abort()

        if self._recording_task is not None and not self._recording_task.done():
            self._recording_task.cancel()
            try:
                await self._recording_task
            except asyncio.CancelledError:
                pass

        try:
            await asyncio.wait_for(self.resolver.stop(), timeout=5.0)
        except (asyncio.TimeoutError, OSError) as e:
            self._logger.warning(f"Error stopping monitor: {e}")

        await self.api.disconnect()
        self._logger.debug("Cleanup complete")


def log_directory(config: Config) -> Optional[str]:
    """Render the configured log directory, which may contain :channel."""
    if not config.developer.logs:
        return None

    context = TemplateContext(channel=config.channel, timezone=config.time.timezone, time_format=config.time.format)
    try:
        return render_template(config.developer.logs, context, extension=None)
    except TemplateError:
        return 'logs'


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    try:
        config = load_config(argv)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(debug=config.developer.debug, log_dir=log_directory(config))
    get_logger().debug(f"Using config: {config.to_dict()}")

    app = TwitchRecorderApp(config)

    try:
        return asyncio.run(app.start())
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        get_logger('app').exception(f"Fatal error: {e}")
        return 1


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == '__main__':
    run()
