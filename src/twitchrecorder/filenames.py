"""
Output path resolution for Twitch Recorder.
Renders filename templates and reserves collision-free output paths.
"""

import os
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .logger import get_logger


FILE_EXTENSION = 'ts'
DEFAULT_FILENAME = f'stream.{FILE_EXTENSION}'

# Characters replaced in the substituted channel name
CHANNEL_ILLEGAL = re.compile(r'[/\\?%*:|"<>]')
# Characters replaced in every rendered path, regardless of target
COMMON_ILLEGAL = re.compile(r'[?%*:|"<>]')
WINDOWS_ILLEGAL = COMMON_ILLEGAL
POSIX_ILLEGAL = re.compile(r'[!?%*:;|"\'<>`\0]')
WINDOWS_DRIVE = re.compile(r'^([A-Za-z])-\\')

TIME_FORMATS = ('en-GB', 'en-US')


class TargetOS(Enum):
    """Filename rules to sanitize for."""
    WINDOWS = "windows"
    POSIX = "posix"

    @classmethod
    def current(cls) -> 'TargetOS':
        return cls.WINDOWS if sys.platform == 'win32' else cls.POSIX


class TemplateError(ValueError):
    """Raised when a template cannot be rendered."""


@dataclass
class TemplateContext:
    """Values substituted into an output template."""
    channel: str
    timezone: str = 'Europe/London'
    time_format: str = 'en-GB'
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def sanitize_channel(channel: str) -> str:
    """Make a channel name safe to use as a single path segment."""
    return CHANNEL_ILLEGAL.sub('_', channel)


def sanitize_path(path: str, target_os: Optional[TargetOS] = None) -> str:
    """
    Normalize separators and replace characters illegal on the target OS.

    Args:
        path: Rendered path.
        target_os: Filename rules to apply, defaults to the running OS.

    Returns:
        Sanitized path string.
    """
    target_os = target_os or TargetOS.current()

    path = COMMON_ILLEGAL.sub('-', path)

    if target_os is TargetOS.WINDOWS:
        path = path.replace('/', '\\')
        path = WINDOWS_ILLEGAL.sub('-', path)
        # Restore the drive letter colon eaten above
        path = WINDOWS_DRIVE.sub(r'\1:\\', path)
    else:
        path = path.replace('\\', '/')
        path = POSIX_ILLEGAL.sub('-', path)

    return path


def _tokens(context: TemplateContext) -> dict:
    """Build token values for a context."""
    if context.time_format not in TIME_FORMATS:
        raise TemplateError(f"Unsupported time format: {context.time_format}")

    try:
        tz = ZoneInfo(context.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise TemplateError(f"Unknown timezone: {context.timezone}") from e

    stamp = context.timestamp
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    local = stamp.astimezone(tz)

    if context.time_format == 'en-US':
        hour = local.hour % 12 or 12
        time_str = f"{hour}-{local.minute:02d}-{local.second:02d}"
    else:
        time_str = local.strftime('%H-%M-%S')

    return {
        'channel': sanitize_channel(context.channel),
        'date': local.strftime('%d.%m.%Y'),
        'time': time_str,
        'day': local.strftime('%d'),
        'month': local.strftime('%m'),
        'year': local.strftime('%Y'),
        'shortYear': local.strftime('%y'),
        'period': 'AM' if local.hour < 12 else 'PM',
    }


def render_template(
    template: str,
    context: TemplateContext,
    target_os: Optional[TargetOS] = None,
    extension: Optional[str] = FILE_EXTENSION
) -> str:
    """
    Expand template tokens into a sanitized path.

    Recognized tokens (case-insensitive): :channel, :date, :time, :day,
    :month, :year, :shortYear, :period.

    Args:
        template: Path template, may contain directories.
        context: Channel, timezone and timestamp to render with.
        target_os: Filename rules to apply, defaults to the running OS.
        extension: Extension appended to the result, None for none.

    Returns:
        Rendered path string.

    Raises:
        TemplateError: If the timezone or time format is invalid.
    """
    rendered = f"{template}.{extension}" if extension else template

    for token, value in _tokens(context).items():
        rendered = re.sub(f':{token}', lambda _: value, rendered, flags=re.IGNORECASE)

    return sanitize_path(rendered, target_os)


def part_path(path: Union[str, Path], part: int) -> Path:
    """Insert ' (part N)' before the extension of path."""
    path = Path(path)
    return path.with_name(f"{path.stem} (part {part}){path.suffix}")


def reserve_file(path: Union[str, Path], rename_existing: bool = True) -> Path:
    """
    Find an output path that does not collide with an existing file.

    If path is free (and no '(part 1)' sibling exists) it is returned as is.
    Otherwise the first free '(part N)' path is returned, N >= 2. When the
    base file exists without a '(part 1)' sibling, it is renamed to
    '(part 1)' first so the parts of one broadcast sort together.

    Args:
        path: Desired output path.
        rename_existing: Rename an existing base file to '(part 1)'.

    Returns:
        Path that does not exist yet.
    """
    logger = get_logger('filenames')
    base = Path(path)
    first_part = part_path(base, 1)

    if not first_part.exists():
        if not base.exists():
            return base
        if rename_existing:
            try:
                base.rename(first_part)
                logger.debug(f"Renamed {base} -> {first_part}")
            except OSError as e:
                logger.warning(f"Failed to rename {base}: {e}")

    part = 2
    while part_path(base, part).exists():
        part += 1
    return part_path(base, part)


def resolve_output_path(
    output_dir: str,
    template: str,
    context: TemplateContext,
    target_os: Optional[TargetOS] = None
) -> Path:
    """
    Render output_dir/template, create its directory and reserve the file.

    Falls back to DEFAULT_FILENAME inside the current directory if the
    template cannot be rendered.
    """
    logger = get_logger('filenames')

    try:
        rendered = render_template(os.path.join(output_dir, template), context, target_os)
        output_path = Path(rendered)
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except TemplateError as e:
        logger.error(f"Failed to render template '{template}': {e}")
        output_path = Path(DEFAULT_FILENAME)

    output_path = reserve_file(output_path)
    logger.debug(f"Saving stream to file: {output_path}")
    return output_path
