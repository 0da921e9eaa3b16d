"""Engine configuration.

Configuration is an explicit immutable value passed to each component.
Derive variants with :py:func:`dataclasses.replace`.

Example:

.. code-block:: python

    from keypass_tx.config import EngineConfig

    config = EngineConfig.for_evm()
    config = dataclasses.replace(config, max_retries=5)

"""

import dataclasses
import datetime
import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Tunables for the submission engine."""

    #: Gas limit / weight used when the node cannot estimate
    default_compute_limit: int = 300_000

    #: Price fields used when the node cannot estimate.
    #:
    #: Chain specific, e.g. ``{"gasPrice": 1_000_000_000}`` on EVM or ``{"tip": 0}`` on substrate.
    fallback_price_fields: Mapping[str, int] = field(default_factory=lambda: {"gasPrice": 1_000_000_000})

    #: Estimates are padded by this factor
    fee_multiplier: float = 1.2

    #: How many times a retryable submission failure is retried.
    #:
    #: Total attempts is ``max_retries + 1``.
    max_retries: int = 3

    #: Delay before the first retry
    base_retry_delay: datetime.timedelta = datetime.timedelta(seconds=2)

    #: Backoff never sleeps longer than this
    max_retry_delay: datetime.timedelta = datetime.timedelta(seconds=30)

    #: Exponential backoff base
    backoff_factor: float = 2.0

    #: Wall clock budget for a transaction to reach finality
    confirmation_timeout: datetime.timedelta = datetime.timedelta(seconds=30)

    #: On chains without finality, how many blocks including the inclusion block
    required_confirmations: int = 3

    #: How often the confirmation poller wakes up
    poll_interval: datetime.timedelta = datetime.timedelta(seconds=1)

    #: How many blocks the fallback search walks backwards from head
    search_window: int = 10

    #: Lowercase message fragments to treat as retryable, in addition to the built-in ones
    extra_retryable_patterns: Tuple[str, ...] = ()

    #: Lowercase message fragments to treat as terminal, in addition to the built-in ones
    extra_terminal_patterns: Tuple[str, ...] = ()

    def __post_init__(self):
        assert self.max_retries >= 0, f"max_retries must be non-negative, got {self.max_retries}"
        assert self.fee_multiplier >= 1.0, f"fee_multiplier must be at least 1.0, got {self.fee_multiplier}"
        assert self.search_window > 0, f"search_window must be positive, got {self.search_window}"
        assert self.required_confirmations > 0, f"required_confirmations must be positive, got {self.required_confirmations}"

    def get_retry_delay(self, attempt: int) -> float:
        """Seconds to sleep before retrying after a failed attempt.

        :param attempt:
            Zero-based index of the attempt that just failed.
        """
        delay = self.base_retry_delay.total_seconds() * (self.backoff_factor**attempt)
        return min(delay, self.max_retry_delay.total_seconds())

    @classmethod
    def for_substrate(cls, **kwargs) -> "EngineConfig":
        """Defaults for KILT style parachains."""
        params = dict(
            fallback_price_fields={"tip": 0},
            default_compute_limit=0,
            confirmation_timeout=datetime.timedelta(seconds=30),
        )
        params.update(kwargs)
        return cls(**params)

    @classmethod
    def for_evm(cls, **kwargs) -> "EngineConfig":
        """Defaults for Moonbeam style EVM chains."""
        params = dict(
            fallback_price_fields={"gasPrice": 1_000_000_000},
            default_compute_limit=300_000,
            confirmation_timeout=datetime.timedelta(minutes=5),
            required_confirmations=3,
        )
        params.update(kwargs)
        return cls(**params)

    @classmethod
    def from_env(cls, base: Optional["EngineConfig"] = None, prefix="KEYPASS_TX_", environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Apply environment variable overrides.

        Durations are given in seconds.

        :param base:
            Config to override. Library defaults if not given.

        :param prefix:
            Environment variable prefix, e.g. ``KEYPASS_TX_MAX_RETRIES``.

        :param environ:
            Use this mapping instead of :py:data:`os.environ`.
        """
        if base is None:
            base = cls()

        if environ is None:
            environ = os.environ

        overrides = {}
        for f in dataclasses.fields(cls):
            value = environ.get(f"{prefix}{f.name.upper()}")
            if value is None:
                continue

            current = getattr(base, f.name)
            if isinstance(current, datetime.timedelta):
                overrides[f.name] = datetime.timedelta(seconds=float(value))
            elif isinstance(current, bool):
                overrides[f.name] = value.lower() in ("1", "true", "yes")
            elif isinstance(current, int):
                overrides[f.name] = int(value)
            elif isinstance(current, float):
                overrides[f.name] = float(value)
            elif isinstance(current, tuple):
                overrides[f.name] = tuple(p.strip().lower() for p in value.split(",") if p.strip())
            else:
                logger.warning("Cannot override %s from the environment, skipping", f.name)

        if overrides:
            logger.info("Configuration overrides from environment: %s", sorted(overrides))

        return dataclasses.replace(base, **overrides)
