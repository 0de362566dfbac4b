"""
presale_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain a ``PresaleConfig``.
    The returned value is passed explicitly to every constructor that needs
    it; there is no module-level settings object.

Resolution order for the file:
    1. the ``path`` argument,
    2. the ``PRESALE_CONFIG`` environment variable,
    3. the packaged ``defaults.yaml``.

``DATABASE_URL``, when set, overrides ``database_url`` from the file.

Failure modes:
    - ``FileNotFoundError`` -- the configured file does not exist.
    - ``ConfigurationError`` -- a field is missing or invalid.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

from presale_config.loader import load_config
from presale_config.schema import (
    DeliveryConfig,
    InvoiceConfig,
    PresaleConfig,
    StageConfig,
)

_logger = logging.getLogger("presale_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> PresaleConfig:
    """Load, validate and return the active configuration."""
    resolved = Path(path or os.environ.get("PRESALE_CONFIG") or DEFAULT_CONFIG_PATH)
    config = load_config(resolved)

    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        config = dataclasses.replace(config, database_url=database_url)

    _logger.info(
        "presale_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(resolved),
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DeliveryConfig",
    "InvoiceConfig",
    "PresaleConfig",
    "StageConfig",
    "get_active_config",
]
