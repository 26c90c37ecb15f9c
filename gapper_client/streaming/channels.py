"""
Push Channel Definitions

Well-known channel slugs sent by the backend on the user stream, and the
helpers that canonicalize and label them.

Channel naming scheme:
  live_gappers   reserved ad-hoc feed, rendered standalone
  all_gappers    every gapper entry
  small_cap / mid_cap / large_cap
  popular / momentum
Anything else is kept exactly as received.
"""
from __future__ import annotations

from typing import Optional

# ── Well-known channel names ──────────────────────────────────────────────────

LIVE_GAPPERS = "live_gappers"
ALL_GAPPERS = "all_gappers"
SMALL_CAP = "small_cap"
MID_CAP = "mid_cap"
LARGE_CAP = "large_cap"
POPULAR = "popular"
MOMENTUM = "momentum"

KNOWN_CHANNEL_SLUGS: tuple[str, ...] = (
    LIVE_GAPPERS,
    ALL_GAPPERS,
    SMALL_CAP,
    MID_CAP,
    LARGE_CAP,
    POPULAR,
    MOMENTUM,
)

CHANNEL_DISPLAY_NAMES: dict[str, str] = {
    LIVE_GAPPERS: "Live Gappers",
    ALL_GAPPERS: "All Gappers",
    SMALL_CAP: "Small Cap",
    MID_CAP: "Mid Cap",
    LARGE_CAP: "Large Cap",
    POPULAR: "Popular",
    MOMENTUM: "Momentum",
}

UNKNOWN_CHANNEL_SORT_ORDER = 1000


# ── Name helpers ──────────────────────────────────────────────────────────────

def canonicalize_known_channel(raw: str) -> Optional[str]:
    """Return the well-known slug for ``raw`` ("Live-Gappers" -> "live_gappers"), or None."""
    normalized = raw.strip().lower().replace("-", "_")
    return normalized if normalized in KNOWN_CHANNEL_SLUGS else None


def is_known_channel(raw: str) -> bool:
    return canonicalize_known_channel(raw) is not None


def normalize_channel_name(raw: str) -> str:
    trimmed = raw.strip()
    if not trimmed:
        return ""
    return canonicalize_known_channel(trimmed) or trimmed


def default_sort_order(raw: str) -> int:
    canonical = canonicalize_known_channel(raw)
    if canonical is None:
        return UNKNOWN_CHANNEL_SORT_ORDER
    return (KNOWN_CHANNEL_SLUGS.index(canonical) + 1) * 10


def channel_display_name(channel_name: str, backend_display_name: Optional[str] = None) -> str:
    """Backend-provided name first, then the well-known label, then title case."""
    backend_name = (backend_display_name or "").strip()
    if backend_name:
        return backend_name

    canonical = canonicalize_known_channel(channel_name)
    if canonical:
        return CHANNEL_DISPLAY_NAMES[canonical]

    words = channel_name.replace("-", " ").replace("_", " ").split()
    return " ".join(word[:1].upper() + word[1:] for word in words)
