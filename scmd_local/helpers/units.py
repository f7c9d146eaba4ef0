from __future__ import annotations


def format_bytes(n: int) -> str:
    """Human-readable binary size, e.g. ``2.5 GB``."""
    unit = 1024
    if n < unit:
        return f"{n} B"
    div, exp = unit, 0
    m = n // unit
    while m >= unit:
        div *= unit
        exp += 1
        m //= unit
    return f"{n / div:.1f} {'KMGTPE'[exp]}B"
