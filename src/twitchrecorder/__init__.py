"""Twitch Recorder: records Twitch live streams and VODs segment by segment."""

__version__ = "1.0.0"
