"""
Channel identifier normalization

The normalized id is the only key shared by the playlist catalog and the
program guide, so every lookup on either side goes through normalize_id().
"""
import re


_STRIP_PATTERN = re.compile(r"[^\w.]", re.ASCII)


def normalize_id(value: str | None, suffix: str | None = None, remove_suffix: bool = False) -> str:
    """
    Canonicalize a channel identifier.

    Args:
        value: Raw identifier (tvg-id, channel name, XMLTV channel attribute)
        suffix: Optional configured id suffix (without leading dot)
        remove_suffix: Strip a trailing ".{suffix}" after normalizing

    Returns:
        Lowercase identifier made only of word characters and dots, or "" for
        missing input
    """
    if not value:
        return ""

    normalized = _STRIP_PATTERN.sub("", value.lower()).strip()

    if remove_suffix and suffix:
        tail = f".{suffix.lower()}"
        if normalized.endswith(tail):
            normalized = normalized[: -len(tail)]

    return normalized


def add_suffix(value: str | None, suffix: str | None) -> str | None:
    """Append ".{suffix}" to an id unless it already carries it."""
    if not value or not suffix:
        return value
    tail = f".{suffix}"
    return value if value.endswith(tail) else f"{value}{tail}"
