"""Choose one payment requirement out of the offered set."""

from __future__ import annotations

import time
from typing import Optional, Sequence

from .constants import EXACT_SCHEME
from .models import PaymentRequirement

__all__ = ["is_expired", "select_requirement"]


def is_expired(requirement: PaymentRequirement, now: float) -> bool:
    return requirement.expiry is not None and now > requirement.expiry


def select_requirement(
    requirements: Sequence[PaymentRequirement],
    preferred_network: Optional[str] = None,
    *,
    now: Optional[float] = None,
) -> Optional[PaymentRequirement]:
    """Return the requirement to pay, or ``None`` when nothing is acceptable.

    Expired entries are dropped, ``exact`` entries win over other schemes, a
    candidate on ``preferred_network`` wins over the rest, and otherwise the
    first remaining candidate in offer order is returned.
    """
    now = time.time() if now is None else now
    candidates = [req for req in requirements if not is_expired(req, now)]
    if not candidates:
        return None

    exact = [req for req in candidates if req.scheme == EXACT_SCHEME]
    if exact:
        candidates = exact

    if preferred_network:
        for req in candidates:
            if req.network == preferred_network:
                return req
    return candidates[0]
