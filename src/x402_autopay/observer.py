"""Opt-in progress hooks for :class:`~x402_autopay.engine.ProtocolEngine`."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .errors import X402Error
    from .models import (
        PaymentRecord,
        PaymentRequiredResponse,
        PaymentRequirement,
        ResourceRequest,
        ResourceResponse,
        ServiceAccess,
    )

logger = logging.getLogger(__name__)


class FetchObserver:
    """Subclass and override the hooks you care about. Every hook is a no-op."""

    def request_started(self, request: "ResourceRequest") -> None:
        pass

    def payment_required(self, request: "ResourceRequest", terms: "PaymentRequiredResponse") -> None:
        pass

    def requirement_selected(self, requirement: "PaymentRequirement") -> None:
        pass

    def payment_submitted(self, record: "PaymentRecord") -> None:
        pass

    def payment_confirmed(self, record: "PaymentRecord") -> None:
        pass

    def access_granted(self, access: "ServiceAccess") -> None:
        pass

    def request_completed(self, request: "ResourceRequest", response: "ResourceResponse") -> None:
        pass

    def request_failed(self, request: "ResourceRequest", error: "X402Error") -> None:
        pass


def notify(observer: Optional[FetchObserver], hook: str, *args: Any) -> None:
    """Call ``observer.<hook>(*args)``; failures are logged and dropped."""
    if observer is None:
        return
    try:
        getattr(observer, hook)(*args)
    except Exception:
        logger.exception("Observer hook %s raised", hook)
