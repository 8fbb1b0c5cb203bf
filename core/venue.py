"""
copytrader Core: Venue Resolver

Maps the free-text DEX labels attached to a feed trade onto the venue tag
the execution service understands.
"""

import re
from typing import Iterable, Optional, Sequence, Tuple

SYSTEM_DECIDES = "none"
FALLBACK_VENUE = "jupiter"
UNRESOLVED: Optional[str] = None

ALLOWED_OVERRIDES = ("none", "auto", "pumpfun", "meteora", "raydium", "moonshot", "jupiter")

# Checked in order; first family with a matching hint wins.
VENUE_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("pumpfun", ("pump.fun",)),
    ("jupiter", ("fluxbeam", "orca whirlpool", "raydium launchpad")),
    ("meteora", ("meteora",)),
    ("raydium", ("raydium ammv4", "raydium cpmm", "raydium clmm")),
)

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def _sanitize(hint: str) -> str:
    return _NON_ALNUM.sub("", hint).lower()


def resolve_venue(hints: Optional[Sequence[str]], override: str = SYSTEM_DECIDES) -> Optional[str]:
    """
    Resolve a venue tag from feed hints.

    Args:
        hints: Venue labels from the feed event (may be empty or noisy)
        override: Operator preference; anything but "none" wins outright

    Returns:
        Venue tag, or UNRESOLVED when there is nothing to go on
    """
    override = (override or SYSTEM_DECIDES).strip().lower()
    if override != SYSTEM_DECIDES:
        return override

    labels = [h for h in (hints or []) if isinstance(h, str)]
    if not labels:
        return UNRESOLVED

    lowered = [h.lower() for h in labels]
    for tag, needles in VENUE_RULES:
        if _matches(lowered, needles):
            return tag

    return _sanitize(labels[0]) or UNRESOLVED


def _matches(lowered: Iterable[str], needles: Tuple[str, ...]) -> bool:
    return any(needle in hint for hint in lowered for needle in needles)


class VenueResolver:
    """Venue resolution bound to the operator's configured override."""

    def __init__(self, override: str = SYSTEM_DECIDES, fallback: str = FALLBACK_VENUE):
        self.override = override
        self.fallback = fallback

    def resolve(self, hints: Optional[Sequence[str]]) -> Optional[str]:
        return resolve_venue(hints, self.override)

    def resolve_or_fallback(self, hints: Optional[Sequence[str]]) -> Tuple[str, bool]:
        """Return (venue, used_fallback)."""
        venue = self.resolve(hints)
        if venue is UNRESOLVED:
            return self.fallback, True
        return venue, False
