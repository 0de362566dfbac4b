"""
Configuration Loader (``presale_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the frozen dataclasses of
``presale_config.schema``, validating as it goes.  Runtime callers use
``presale_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing or invalid values  -> ``ConfigurationError`` naming the field.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from presale_config.schema import (
    DeliveryConfig,
    InvoiceConfig,
    PresaleConfig,
    StageConfig,
)
from presale_kernel.exceptions import ConfigurationError

_SENDERS = ("recording", "resend")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 of the raw configuration."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _require(data: dict[str, Any], key: str, section: str) -> Any:
    if key not in data or data[key] is None:
        raise ConfigurationError(f"{section}.{key}", "is required")
    return data[key]


def _decimal(value: Any, field: str) -> Decimal:
    try:
        # str() first so YAML floats keep their written precision
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ConfigurationError(field, f"{value!r} is not a number") from None
    if not result.is_finite() or result <= 0:
        raise ConfigurationError(field, "must be a positive number")
    return result


def _positive(value: Any, field: str, kind: type = float) -> Any:
    try:
        result = kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(field, f"{value!r} is not a number") from None
    if result <= 0:
        raise ConfigurationError(field, "must be positive")
    return result


def parse_stage(data: dict[str, Any]) -> StageConfig:
    """Parse a StageConfig from a dict."""
    name = _require(data, "name", "invoice.stages")
    return StageConfig(
        name=str(name),
        price_usd=_decimal(_require(data, "price_usd", f"invoice.stages.{name}"),
                           f"invoice.stages.{name}.price_usd"),
        active=bool(data.get("active", True)),
    )


def parse_invoice_config(data: dict[str, Any]) -> InvoiceConfig:
    """Parse the ``invoice`` section."""
    stages = tuple(parse_stage(s) for s in _require(data, "stages", "invoice"))
    if not stages:
        raise ConfigurationError("invoice.stages", "at least one stage is required")
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        raise ConfigurationError("invoice.stages", "stage names must be unique")

    methods = tuple(str(m) for m in _require(data, "payment_methods", "invoice"))
    if not methods:
        raise ConfigurationError("invoice.payment_methods", "at least one method is required")

    return InvoiceConfig(
        stages=stages,
        usd_idr_rate=_decimal(_require(data, "usd_idr_rate", "invoice"), "invoice.usd_idr_rate"),
        payment_methods=methods,
        unpaid_ttl_hours=_positive(data.get("unpaid_ttl_hours", 24), "invoice.unpaid_ttl_hours", int),
        invoice_prefix=str(data.get("invoice_prefix", "INV")),
        app_url=str(data.get("app_url", "")).rstrip("/"),
    )


def parse_delivery_config(data: dict[str, Any]) -> DeliveryConfig:
    """Parse the ``delivery`` section."""
    defaults = DeliveryConfig()
    config = DeliveryConfig(
        max_attempts=_positive(data.get("max_attempts", defaults.max_attempts),
                               "delivery.max_attempts", int),
        base_delay_seconds=_positive(data.get("base_delay_seconds", defaults.base_delay_seconds),
                                     "delivery.base_delay_seconds"),
        multiplier=_positive(data.get("multiplier", defaults.multiplier), "delivery.multiplier"),
        max_delay_seconds=_positive(data.get("max_delay_seconds", defaults.max_delay_seconds),
                                    "delivery.max_delay_seconds"),
        lease_seconds=_positive(data.get("lease_seconds", defaults.lease_seconds),
                                "delivery.lease_seconds", int),
        poll_interval_seconds=_positive(
            data.get("poll_interval_seconds", defaults.poll_interval_seconds),
            "delivery.poll_interval_seconds",
        ),
        worker_count=_positive(data.get("worker_count", defaults.worker_count),
                               "delivery.worker_count", int),
        sender=str(data.get("sender", defaults.sender)),
        email_from=str(data.get("email_from", defaults.email_from)),
        resend_api_url=str(data.get("resend_api_url", defaults.resend_api_url)),
        resend_api_key_env=str(data.get("resend_api_key_env", defaults.resend_api_key_env)),
        request_timeout_seconds=_positive(
            data.get("request_timeout_seconds", defaults.request_timeout_seconds),
            "delivery.request_timeout_seconds",
        ),
    )

    if config.multiplier < 1:
        raise ConfigurationError("delivery.multiplier", "must be >= 1")
    if config.max_delay_seconds < config.base_delay_seconds:
        raise ConfigurationError(
            "delivery.max_delay_seconds", "must be >= base_delay_seconds"
        )
    if config.sender not in _SENDERS:
        raise ConfigurationError("delivery.sender", f"must be one of {_SENDERS}")
    if config.sender == "resend" and not config.email_from:
        raise ConfigurationError("delivery.email_from", "is required for the resend sender")
    return config


def parse_config(data: dict[str, Any]) -> PresaleConfig:
    """Parse a complete PresaleConfig from a dict."""
    return PresaleConfig(
        config_id=str(_require(data, "config_id", "root")),
        version=int(data.get("version", 1)),
        invoice=parse_invoice_config(_require(data, "invoice", "root")),
        delivery=parse_delivery_config(data.get("delivery") or {}),
        database_url=data.get("database_url"),
        log_level=str(data.get("log_level", "INFO")).upper(),
        checksum=compute_checksum(data),
    )


def load_config(path: Path) -> PresaleConfig:
    """Load and parse a configuration file."""
    return parse_config(load_yaml_file(path))
