"""
Configuration module for Twitch Recorder.
Loads settings from a YAML file, merges command-line overrides and provides
typed configuration.
"""

import argparse
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


DEFAULT_CONFIG_PATH = "config.yaml"


@dataclass
class DownloadOptions:
    """Segment download behaviour."""
    keep_segments: bool = False   # Don't delete segments after appending
    keep_ads: bool = False        # Record ad segments too
    retries: int = 0              # Extra attempts per failed segment, 0 = treat as gap
    retry_delay: float = 1.0      # Seconds between attempts


@dataclass
class RecorderConfig:
    """Recording settings."""
    auth: Optional[str] = None    # User OAuth token, may avoid ads on subscribed channels
    quality: str = "best"         # source, best, audio or a height such as 720
    low_latency: bool = False
    vod: bool = False             # Record the latest VOD instead of waiting for live
    template: str = ":shortYear.:month.:day :period -- :channel"
    output_dir: str = "./recordings"
    poll_interval: int = 0        # Seconds between manual live checks, 0 = startup only
    download_options: DownloadOptions = field(default_factory=DownloadOptions)


@dataclass
class TimeConfig:
    """Time zone used when dating saved streams."""
    timezone: str = "Europe/London"
    format: str = "en-GB"         # en-GB or en-US


@dataclass
class DeveloperConfig:
    """Developer settings."""
    logs: str = "logs"
    debug: bool = False


@dataclass
class Config:
    """Main configuration container."""
    channel: str = "TwitchUser"
    recorder: RecorderConfig = field(default_factory=RecorderConfig)
    time: TimeConfig = field(default_factory=TimeConfig)
    developer: DeveloperConfig = field(default_factory=DeveloperConfig)

    def to_dict(self) -> dict:
        """Configuration as a plain dict with the auth token redacted."""
        data = asdict(self)
        if data['recorder']['auth']:
            data['recorder']['auth'] = '***'
        return data


def as_bool(value: Any, default: bool) -> bool:
    """Parse bool from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "y", "on"):
            return True
        if text in ("0", "false", "no", "n", "off"):
            return False
    return default


def as_float(value: Any, default: float) -> float:
    """Parse float from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return default
    return default


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(float(text.replace(",", ".")))
        except ValueError:
            return default
    return default


def merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge override into a copy of base, skipping None values."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = value
    return result


def read_config_file(config_path: str = DEFAULT_CONFIG_PATH, required: bool = False) -> Dict[str, Any]:
    """
    Read raw settings from a YAML file.

    Args:
        config_path: Path to YAML configuration file.
        required: Raise if the file is missing instead of returning {}.

    Returns:
        Parsed mapping, empty if the file is absent or empty.

    Raises:
        FileNotFoundError: If required and the file doesn't exist.
        ValueError: If the file does not contain a mapping.
    """
    path = Path(config_path)

    if not path.exists():
        if required:
            raise FileNotFoundError(f"Configuration file not found: {path}")
        return {}

    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    if not data:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return data


def build_config(data: Dict[str, Any]) -> Config:
    """Build typed configuration from a raw settings mapping."""
    defaults = Config()

    recorder_data = data.get('recorder', {}) or {}
    options_data = recorder_data.get('download_options', {}) or {}
    download_options = DownloadOptions(
        keep_segments=as_bool(options_data.get('keep_segments'), False),
        keep_ads=as_bool(options_data.get('keep_ads'), False),
        retries=max(0, as_int(options_data.get('retries'), 0)),
        retry_delay=max(0.0, as_float(options_data.get('retry_delay'), 1.0)),
    )

    recorder = RecorderConfig(
        auth=recorder_data.get('auth') or None,
        quality=str(recorder_data.get('quality', defaults.recorder.quality)),
        low_latency=as_bool(recorder_data.get('low_latency'), False),
        vod=as_bool(recorder_data.get('vod'), False),
        template=str(recorder_data.get('template', defaults.recorder.template)),
        output_dir=str(recorder_data.get('output_dir', defaults.recorder.output_dir)),
        poll_interval=max(0, as_int(recorder_data.get('poll_interval'), 0)),
        download_options=download_options,
    )

    time_data = data.get('time', {}) or {}
    time_format = str(time_data.get('format', 'en-GB'))
    if time_format not in ('en-GB', 'en-US'):
        time_format = 'en-GB'
    time = TimeConfig(
        timezone=str(time_data.get('timezone', defaults.time.timezone)),
        format=time_format,
    )

    developer_data = data.get('developer', {}) or {}
    developer = DeveloperConfig(
        logs=str(developer_data.get('logs', defaults.developer.logs)),
        debug=as_bool(developer_data.get('debug'), False),
    )

    return Config(
        channel=str(data.get('channel', defaults.channel)),
        recorder=recorder,
        time=time,
        developer=developer,
    )


def build_parser() -> argparse.ArgumentParser:
    """Command-line options, named as in the configuration docs."""
    parser = argparse.ArgumentParser(
        prog='twitch-recorder',
        description='Monitor a Twitch streamer and record the live stream automatically.'
    )
    parser.add_argument('--channel', help='Twitch streamer to monitor')
    parser.add_argument('--auth', help='User auth token used when getting the stream')
    parser.add_argument('--quality', help='Recording quality: source, best, audio or a height (e.g. 720)')
    parser.add_argument('--lowLatency', action='store_true', default=None, help='Use low latency mode')
    parser.add_argument('--vod', action='store_true', default=None, help='Record the latest VOD')
    parser.add_argument('--keepSegments', action='store_true', default=None,
                        help="Don't delete downloaded segments after merging")
    parser.add_argument('--keepAds', action='store_true', default=None, help="Don't skip ad segments")
    parser.add_argument('--retries', type=int, help='Extra download attempts per failed segment')
    parser.add_argument('--pollInterval', type=int, help='Seconds between manual live checks')
    parser.add_argument('--outputDir', help='Output directory for recorded streams (accepts tokens)')
    parser.add_argument('--template', help='Filename template for recorded streams (accepts tokens)')
    parser.add_argument('--tz', help='Timezone used when dating saved streams')
    parser.add_argument('--tzFormat', choices=['en-GB', 'en-US'], help='Time format for file names')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help='Path to config file')
    parser.add_argument('--logs', help='Directory for log files (accepts :channel)')
    parser.add_argument('--debug', action='store_true', default=None, help='Show debug info in console')
    return parser


def args_to_dict(args: argparse.Namespace) -> Dict[str, Any]:
    """Map parsed arguments onto the configuration layout."""
    return {
        'channel': args.channel,
        'recorder': {
            'auth': args.auth,
            'quality': args.quality,
            'low_latency': args.lowLatency,
            'vod': args.vod,
            'template': args.template,
            'output_dir': args.outputDir,
            'poll_interval': args.pollInterval,
            'download_options': {
                'keep_segments': args.keepSegments,
                'keep_ads': args.keepAds,
                'retries': args.retries,
            },
        },
        'time': {
            'timezone': args.tz,
            'format': args.tzFormat,
        },
        'developer': {
            'logs': args.logs,
            'debug': args.debug,
        },
    }


def load_config(argv: Optional[List[str]] = None) -> Config:
    """
    Load configuration: defaults < config file < command-line arguments.

    Args:
        argv: Command-line arguments, defaults to sys.argv[1:].

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If --config names a file that doesn't exist.
        ValueError: If the config file is malformed.
    """
    args = build_parser().parse_args(argv)
    explicit = args.config != DEFAULT_CONFIG_PATH

    file_data = read_config_file(args.config, required=explicit)
    return build_config(merge(file_data, args_to_dict(args)))
