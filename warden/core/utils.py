"""Shared utility functions for warden core modules."""

import os
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path


class Clock:
    """Wall and monotonic time source.

    Components take a Clock instead of calling the time functions directly
    so tests can drive time explicitly.
    """

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


def atomic_write_text(path: Path, text: str, prefix: str = ".tmp_") -> None:
    """Write ``text`` to ``path`` via temp file + replace.

    The temp file lives in the target directory so the replace never crosses
    filesystems. Raises OSError on failure; the temp file is removed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=prefix, suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, str(path))
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def format_duration(seconds: float) -> str:
    """Render a duration rounded to minutes (``1h5m``, ``20m``, ``45s``)."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes = round(seconds / 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes}m"
    return f"{minutes}m"
