"""Human-readable formatting for sizes and durations used in log lines."""

from typing import Optional


def format_bytes(num_bytes: Optional[float]) -> str:
    """
    Format a byte count using binary units.

    Examples: 512 B, 1.5 KB, 12.34 MB
    """
    if num_bytes is None:
        return '-'
    value = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(value) < 1024 or unit == 'TB':
            if unit == 'B':
                return f"{int(value)} B"
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} TB"


def friendly_duration(seconds: Optional[float]) -> str:
    """
    Format a duration like 45s, 3m12s or 2h5m.

    Unknown or non-positive durations are shown as '-'.
    """
    if seconds is None or seconds <= 0:
        return '-'

    total = int(round(seconds))
    if total >= 3600:
        hours, rest = divmod(total, 3600)
        minutes = rest // 60
        return f"{hours}h" if minutes == 0 else f"{hours}h{minutes}m"
    if total >= 60:
        minutes, secs = divmod(total, 60)
        return f"{minutes}m" if secs == 0 else f"{minutes}m{secs}s"
    return f"{total}s"
