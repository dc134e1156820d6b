"""Human readable formatting helpers used in log messages and reports."""


def format_size(size: int, precision: int = 2) -> str:
    """
    Format a byte count with a binary unit.

    Args:
        size: Size in bytes
        precision: Number of decimals

    Returns:
        String such as '1.50 MB'
    """
    value = float(size)
    unit = 'B'
    for next_unit in ('KB', 'MB', 'GB', 'TB'):
        if value < 1024:
            break
        value /= 1024
        unit = next_unit

    return f"{value:.{precision}f} {unit}"


def format_duration(seconds: float) -> str:
    """Format a duration in seconds as HH:MM:SS."""
    total = max(int(seconds), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
