"""DunningConfig defaults and owner overrides."""

import pytest

from agents.dunning.config import DunningConfig


def test_defaults_come_from_settings():
    config = DunningConfig.from_owner(None)
    assert config.owner_id is None
    assert config.chunk_size == 100
    assert config.effective_dispatch_limit is None


def test_owner_overrides(monkeypatch):
    monkeypatch.setenv("DUNNING_OWNER_ACME_CHUNK_SIZE", "25")
    monkeypatch.setenv("DUNNING_OWNER_ACME_DISPATCH_LIMIT", "50")
    monkeypatch.setenv("DUNNING_OWNER_ACME_COMPANY_NAME", "Acme Supplies")
    monkeypatch.setenv("DUNNING_OWNER_ACME_TIMEZONE", "Europe/Berlin")
    monkeypatch.setenv("DUNNING_OWNER_ACME_DELIVERY_TIMEOUT_MS", "1500")

    config = DunningConfig.from_owner("owner-acme")

    assert config.chunk_size == 25
    assert config.effective_dispatch_limit == 50
    assert config.company_name == "Acme Supplies"
    assert config.timezone == "Europe/Berlin"
    assert config.delivery_timeout_ms == 1500


@pytest.mark.parametrize(
    "field,value",
    [
        ("chunk_size", 0),
        ("max_workers", 0),
        ("dispatch_limit", 1001),
        ("delivery_timeout_ms", 0),
        ("default_tone_modifier", 6),
    ],
)
def test_out_of_range_values_are_rejected(field, value):
    config = DunningConfig()
    setattr(config, field, value)
    with pytest.raises(ValueError):
        config.validate()


def test_invalid_override_is_rejected(monkeypatch):
    monkeypatch.setenv("DUNNING_OWNER_ACME_TONE_MODIFIER", "7")
    with pytest.raises(ValueError):
        DunningConfig.from_owner("owner-acme")
