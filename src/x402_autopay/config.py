"""Engine configuration loaded from the environment and ``.env`` files."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, TypeVar, Union

from dotenv import dotenv_values

from .backoff import BackoffPolicy
from .constants import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_CONFIRMATIONS
from .errors import ConfigError
from .limits import SpendingLimits

__all__ = ["ENV_PREFIX", "EngineConfig", "load_engine_config"]

ENV_PREFIX = "X402_"

T = TypeVar("T")


@dataclass(frozen=True)
class EngineConfig:
    preferred_network: Optional[str] = None
    default_network: Optional[str] = None
    spending_limits: SpendingLimits = field(default_factory=SpendingLimits)
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    confirmations: int = DEFAULT_CONFIRMATIONS
    request_timeout: Optional[float] = 30.0
    wallet_timeout: Optional[float] = 30.0
    retry: BackoffPolicy = field(default_factory=BackoffPolicy)
    facilitator_url: Optional[str] = None
    facilitator_api_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.confirmation_timeout <= 0:
            raise ConfigError("confirmation_timeout must be positive")
        if self.confirmations < 1:
            raise ConfigError("confirmations must be at least 1")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "EngineConfig":
        """Build a config from ``X402_*`` keys; unknown keys are ignored."""

        def get(name: str) -> Optional[str]:
            value = values.get(ENV_PREFIX + name)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        defaults = cls()
        default_retry = defaults.retry
        default_limits = defaults.spending_limits

        limits = SpendingLimits(
            max_per_request=_parse(get("MAX_PER_REQUEST"), _decimal, "MAX_PER_REQUEST", None),
            max_window_total=_parse(get("MAX_WINDOW_TOTAL"), _decimal, "MAX_WINDOW_TOTAL", None),
            window_seconds=_parse(get("WINDOW_SECONDS"), float, "WINDOW_SECONDS", default_limits.window_seconds),
        )
        retry = BackoffPolicy(
            max_attempts=_parse(get("RETRY_MAX_ATTEMPTS"), int, "RETRY_MAX_ATTEMPTS", default_retry.max_attempts),
            base_delay=_parse(get("RETRY_BASE_DELAY"), float, "RETRY_BASE_DELAY", default_retry.base_delay),
            multiplier=_parse(get("RETRY_MULTIPLIER"), float, "RETRY_MULTIPLIER", default_retry.multiplier),
            max_delay=_parse(get("RETRY_MAX_DELAY"), float, "RETRY_MAX_DELAY", default_retry.max_delay),
            jitter=_parse(get("RETRY_JITTER"), float, "RETRY_JITTER", default_retry.jitter),
        )
        return cls(
            preferred_network=get("PREFERRED_NETWORK"),
            default_network=get("DEFAULT_NETWORK"),
            spending_limits=limits,
            confirmation_timeout=_parse(
                get("CONFIRMATION_TIMEOUT"), float, "CONFIRMATION_TIMEOUT", defaults.confirmation_timeout
            ),
            confirmations=_parse(get("CONFIRMATIONS"), int, "CONFIRMATIONS", defaults.confirmations),
            request_timeout=_parse(get("REQUEST_TIMEOUT"), float, "REQUEST_TIMEOUT", defaults.request_timeout),
            wallet_timeout=_parse(get("WALLET_TIMEOUT"), float, "WALLET_TIMEOUT", defaults.wallet_timeout),
            retry=retry,
            facilitator_url=get("FACILITATOR_URL"),
            facilitator_api_key=get("FACILITATOR_API_KEY"),
        )


def _decimal(raw: str) -> Decimal:
    value = Decimal(raw)
    if not value.is_finite():
        raise ValueError("not finite")
    return value


def _parse(raw: Optional[str], convert: Callable[[str], T], name: str, default: T) -> T:
    if raw is None:
        return default
    try:
        return convert(raw)
    except (ValueError, InvalidOperation) as exc:
        raise ConfigError(
            f"invalid value for {ENV_PREFIX}{name}: {raw!r}",
            details={"key": ENV_PREFIX + name},
        ) from exc


def load_engine_config(
    env_file: Union[str, Path, None] = ".env",
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    base: Optional[Mapping[str, Any]] = None,
) -> EngineConfig:
    """Load configuration from ``base`` (default ``os.environ``), then ``env_file``, then ``overrides``.

    Keys already present in ``base`` win over the ``.env`` file; ``overrides``
    win over both.
    """
    values = dict(os.environ if base is None else base)
    if env_file is not None and Path(env_file).exists():
        for key, value in dotenv_values(env_file).items():
            if value is not None and not values.get(key):
                values[key] = value
    if overrides:
        values.update(overrides)
    return EngineConfig.from_mapping(values)
