"""Backoff helper shared by the fetch tiers and the media transfer engine."""


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay to sleep after a failed ``attempt`` (1-based).

    ``base_delay * 2**attempt`` capped at ``max_delay``: 2s, 4s, 8s... with the
    default 1s base.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return min(base_delay * (2 ** attempt), max_delay)
