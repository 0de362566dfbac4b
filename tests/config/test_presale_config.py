"""
Tests for presale configuration loading.

Covers:
- Packaged defaults load into frozen dataclasses
- Resolution order (argument, PRESALE_CONFIG, packaged file)
- DATABASE_URL override
- Validation failures raise ConfigurationError naming the field
- Sender construction from the delivery section
"""

from __future__ import annotations

import copy
import dataclasses
from decimal import Decimal

import pytest
import yaml

from presale_config import DEFAULT_CONFIG_PATH, get_active_config
from presale_config.loader import compute_checksum, load_yaml_file, parse_config
from presale_config.schema import DeliveryConfig
from presale_kernel.exceptions import ConfigurationError
from presale_kernel.services.senders import RecordingSender, ResendEmailSender, build_sender


@pytest.fixture
def raw_defaults() -> dict:
    return load_yaml_file(DEFAULT_CONFIG_PATH)


class TestDefaults:

    def test_packaged_defaults(self, monkeypatch):
        monkeypatch.delenv("PRESALE_CONFIG", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)
        config = get_active_config()

        assert config.config_id == "presale-default"
        assert config.invoice.stage("stage1").price_usd == Decimal("0.001")
        assert config.invoice.usd_idr_rate == Decimal("16000")
        assert config.invoice.payment_methods == ("BANK_TRANSFER", "USDC", "SOL")
        assert config.delivery.max_attempts == 3
        assert config.delivery.lease_seconds == 300
        assert config.delivery.sender == "recording"
        assert len(config.checksum) == 64

    def test_config_is_frozen(self):
        config = get_active_config(DEFAULT_CONFIG_PATH)
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.delivery.max_attempts = 10  # type: ignore[misc]

    def test_backoff_policy_from_delivery(self):
        policy = DeliveryConfig(base_delay_seconds=10, multiplier=3, max_delay_seconds=90).backoff
        assert (policy.base_delay_seconds, policy.multiplier, policy.max_delay_seconds) == (10, 3, 90)

    def test_unknown_stage_lookup(self):
        assert get_active_config(DEFAULT_CONFIG_PATH).invoice.stage("stage9") is None


class TestResolution:

    def test_env_path_and_database_url(self, tmp_path, monkeypatch, raw_defaults):
        data = copy.deepcopy(raw_defaults)
        data["config_id"] = "from-env"
        path = tmp_path / "presale.yaml"
        path.write_text(yaml.safe_dump(data))

        monkeypatch.setenv("PRESALE_CONFIG", str(path))
        monkeypatch.setenv("DATABASE_URL", "postgresql://presale@db/presale")
        config = get_active_config()

        assert config.config_id == "from-env"
        assert config.database_url == "postgresql://presale@db/presale"

    def test_argument_wins_over_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PRESALE_CONFIG", str(tmp_path / "missing.yaml"))
        assert get_active_config(DEFAULT_CONFIG_PATH).config_id == "presale-default"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")

    def test_checksum_is_deterministic(self, raw_defaults):
        assert compute_checksum(raw_defaults) == compute_checksum(copy.deepcopy(raw_defaults))


class TestValidation:

    @pytest.mark.parametrize(
        "mutate,field",
        [
            (lambda d: d.pop("config_id"), "root.config_id"),
            (lambda d: d["invoice"].update(stages=[]), "invoice.stages"),
            (lambda d: d["invoice"].update(usd_idr_rate="abc"), "invoice.usd_idr_rate"),
            (lambda d: d["invoice"].update(usd_idr_rate=0), "invoice.usd_idr_rate"),
            (lambda d: d["invoice"].update(payment_methods=[]), "invoice.payment_methods"),
            (lambda d: d["delivery"].update(max_attempts=0), "delivery.max_attempts"),
            (lambda d: d["delivery"].update(multiplier=0.5), "delivery.multiplier"),
            (lambda d: d["delivery"].update(max_delay_seconds=10), "delivery.max_delay_seconds"),
            (lambda d: d["delivery"].update(sender="pigeon"), "delivery.sender"),
            (lambda d: d["delivery"].update(sender="resend", email_from=""), "delivery.email_from"),
        ],
    )
    def test_invalid_field(self, raw_defaults, mutate, field):
        data = copy.deepcopy(raw_defaults)
        mutate(data)
        with pytest.raises(ConfigurationError) as exc_info:
            parse_config(data)
        assert exc_info.value.field == field
        assert exc_info.value.code == "CONFIGURATION_ERROR"

    def test_duplicate_stage_names(self, raw_defaults):
        data = copy.deepcopy(raw_defaults)
        data["invoice"]["stages"].append({"name": "stage1", "price_usd": "0.5"})
        with pytest.raises(ConfigurationError, match="unique"):
            parse_config(data)


class TestSenderSelection:

    def test_recording_sender(self):
        assert isinstance(build_sender(DeliveryConfig()), RecordingSender)

    def test_resend_requires_api_key(self):
        config = DeliveryConfig(sender="resend", email_from="no-reply@tpcglobal.io")
        with pytest.raises(ConfigurationError) as exc_info:
            build_sender(config, environ={})
        assert exc_info.value.field == "RESEND_API_KEY"

    def test_resend_sender(self):
        config = DeliveryConfig(sender="resend", email_from="no-reply@tpcglobal.io")
        sender = build_sender(config, environ={"RESEND_API_KEY": "re_test"})
        try:
            assert isinstance(sender, ResendEmailSender)
        finally:
            sender.close()
