"""Configuration management for the dunning engine.

Provides owner-specific configuration with defaults taken from the process
settings and environment-based overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from backend.core.config import settings

MAX_DISPATCH_LIMIT = 1000


@dataclass
class DunningConfig:
    """Configuration for one dunning run scope.

    Supports owner-specific overrides via environment variables with
    pattern: DUNNING_<OWNER_ID>_<SETTING>
    """

    # Owner scope (None = all owners)
    owner_id: str | None = None

    # Batch processing
    chunk_size: int = 100
    max_workers: int = 4
    timezone: str = "UTC"

    # Dispatch
    dispatch_limit: int = 0  # 0 = unlimited
    delivery_timeout_ms: int = 3000

    # Content
    company_name: str = "0Admin"
    payment_link: str = ""
    reply_to: str = ""
    default_tone_modifier: int = 3

    @classmethod
    def from_settings(cls, owner_id: str | None = None) -> "DunningConfig":
        """Build the base configuration from the process settings."""
        return cls(
            owner_id=owner_id,
            chunk_size=settings.DUNNING_CHUNK_SIZE,
            max_workers=settings.DUNNING_MAX_WORKERS,
            timezone=settings.DUNNING_TIMEZONE,
            dispatch_limit=settings.DUNNING_DISPATCH_LIMIT,
            delivery_timeout_ms=settings.DUNNING_DELIVERY_TIMEOUT_MS,
            company_name=settings.DUNNING_COMPANY_NAME,
            payment_link=settings.DUNNING_PAYMENT_LINK,
            reply_to=settings.DUNNING_REPLY_TO,
        )

    @classmethod
    def from_owner(cls, owner_id: str | None) -> "DunningConfig":
        """Create configuration for a specific owner.

        Args:
            owner_id: Owner identifier, or None for an all-owner run

        Returns:
            Configured instance with owner-specific overrides
        """
        config = cls.from_settings(owner_id)
        if owner_id is None:
            config.validate()
            return config

        prefix = f"DUNNING_{owner_id.upper().replace('-', '_')}"

        config.chunk_size = int(os.getenv(f"{prefix}_CHUNK_SIZE", config.chunk_size))
        config.max_workers = int(os.getenv(f"{prefix}_MAX_WORKERS", config.max_workers))
        config.timezone = os.getenv(f"{prefix}_TIMEZONE", config.timezone)
        config.dispatch_limit = int(os.getenv(f"{prefix}_DISPATCH_LIMIT", config.dispatch_limit))
        config.delivery_timeout_ms = int(
            os.getenv(f"{prefix}_DELIVERY_TIMEOUT_MS", config.delivery_timeout_ms)
        )
        config.company_name = os.getenv(f"{prefix}_COMPANY_NAME", config.company_name)
        config.payment_link = os.getenv(f"{prefix}_PAYMENT_LINK", config.payment_link)
        config.reply_to = os.getenv(f"{prefix}_REPLY_TO", config.reply_to)
        config.default_tone_modifier = int(
            os.getenv(f"{prefix}_TONE_MODIFIER", config.default_tone_modifier)
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: If a setting is out of range
        """
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if not 0 <= self.dispatch_limit <= MAX_DISPATCH_LIMIT:
            raise ValueError(
                f"dispatch_limit must be between 0 and {MAX_DISPATCH_LIMIT}, "
                f"got {self.dispatch_limit}"
            )
        if self.delivery_timeout_ms < 1:
            raise ValueError(
                f"delivery_timeout_ms must be >= 1, got {self.delivery_timeout_ms}"
            )
        if not 1 <= self.default_tone_modifier <= 5:
            raise ValueError(
                f"default_tone_modifier must be between 1 and 5, got {self.default_tone_modifier}"
            )

    @property
    def effective_dispatch_limit(self) -> int | None:
        return self.dispatch_limit or None
