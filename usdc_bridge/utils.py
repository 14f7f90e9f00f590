"""Logging setup, timestamp and URL helpers."""

import calendar
import datetime
import logging
import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import coloredlogs

logger = logging.getLogger(__name__)


def to_unix_timestamp(dt: datetime.datetime) -> int:
    """Naive UTC datetime to whole seconds since epoch.

    Checkpoint files store ``created_at`` and ``updated_at`` this way.
    """
    return calendar.timegm(dt.utctimetuple())


def from_unix_timestamp(timestamp: float) -> datetime.datetime:
    """Seconds since epoch to a naive UTC datetime, the inverse of :py:func:`to_unix_timestamp`."""
    assert type(timestamp) in (int, float), f"Got {type(timestamp)}: {timestamp}"
    return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc).replace(tzinfo=None)


def get_url_domain(url: str) -> str:
    """Host of a JSON-RPC URL, for printing.

    RPC providers often put the API key in the path, so the path is never shown.

    .. code-block:: python

        assert get_url_domain("https://base-sepolia.g.alchemy.com/v2/secret") == "base-sepolia.g.alchemy.com"
    """
    parsed = urlparse(url)
    if parsed.port in (80, 443, None):
        return parsed.hostname
    else:
        return f"{parsed.hostname}:{parsed.port}"


def setup_console_logging(
    default_log_level="warning",
    simplified_logging=False,
    log_file: Path | None = None,
    std_out_log_level: Optional[int] = None,
    clear_log_file=True,
) -> logging.Logger:
    """Set up coloured log output.

    - Helper function to have nicer logging output in bridge scripts.
    - Tune down some noisy dependency library logging

    :param default_log_level:
        Used when ``LOG_LEVEL`` environment variable is not set.

    :param log_file:
        Output both console and this log file.
        The file always gets at least ``INFO``.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    if not std_out_log_level:
        std_out_log_level = numeric_level

    if simplified_logging:
        fmt = "%(message)s"
        date_fmt = "%H:%M:%S"
    else:
        fmt = "%(asctime)s %(name)-44s %(message)s"
        date_fmt = "%Y-%m-%d %H:%M:%S"

    coloredlogs.install(level=std_out_log_level, fmt=fmt, datefmt=date_fmt)

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"

        log_file.parent.mkdir(parents=True, exist_ok=True)

        # File is always logged with INFO level and
        # env var controls only terminal output
        min_level = min(logging.INFO, numeric_level)
        mode = "w" if clear_log_file else "a"

        # File handler always uses plain formatter (no ANSI codes)
        file_handler = logging.FileHandler(log_file, mode=mode, encoding="utf-8")
        file_handler.setLevel(min_level)
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))

        root = logging.getLogger()
        root.setLevel(min_level)
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("filelock").setLevel(logging.WARNING)
    return logging.getLogger()
