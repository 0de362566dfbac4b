"""
Presale configuration schema.

Frozen dataclasses parsed from YAML by ``presale_config.loader``.  A
``PresaleConfig`` is built once at startup and passed explicitly into
service, queue and worker constructors; nothing reads configuration from
module-level state.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from presale_kernel.domain.delivery import BackoffPolicy


@dataclass(frozen=True)
class StageConfig:
    """A presale stage and its per-token price."""

    name: str
    price_usd: Decimal
    active: bool = True


@dataclass(frozen=True)
class InvoiceConfig:
    """Invoice pricing and lifecycle parameters."""

    stages: tuple[StageConfig, ...]
    usd_idr_rate: Decimal
    payment_methods: tuple[str, ...]
    unpaid_ttl_hours: int = 24
    invoice_prefix: str = "INV"
    app_url: str = ""

    def stage(self, name: str) -> StageConfig | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


@dataclass(frozen=True)
class DeliveryConfig:
    """Notification queue and worker pool parameters."""

    max_attempts: int = 3
    base_delay_seconds: float = 30.0
    multiplier: float = 2.0
    max_delay_seconds: float = 3600.0
    lease_seconds: int = 300
    poll_interval_seconds: float = 5.0
    worker_count: int = 4
    sender: str = "recording"
    email_from: str = ""
    resend_api_url: str = "https://api.resend.com/emails"
    resend_api_key_env: str = "RESEND_API_KEY"
    request_timeout_seconds: float = 10.0

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay_seconds=self.base_delay_seconds,
            multiplier=self.multiplier,
            max_delay_seconds=self.max_delay_seconds,
        )


@dataclass(frozen=True)
class PresaleConfig:
    """Complete runtime configuration."""

    config_id: str
    version: int
    invoice: InvoiceConfig
    delivery: DeliveryConfig
    database_url: str | None = None
    log_level: str = "INFO"
    checksum: str = ""
