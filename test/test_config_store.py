from decimal import Decimal

import pytest
from sqlmodel import select

from tableorder.config_store import SERVICE_CHARGE_RATE, TAX_RATE, PricingConfig, seed_default_settings
from tableorder.errors import ValidationFailed
from tableorder.models import Setting


def test_defaults_without_settings_rows(engine):
    config = PricingConfig(engine)
    assert config.rates() == (Decimal("0.07"), Decimal("0.10"))


def test_seed_is_idempotent(session):
    seed_default_settings(session)
    seed_default_settings(session)
    keys = session.exec(select(Setting.key)).all()
    assert sorted(keys) == sorted([SERVICE_CHARGE_RATE, TAX_RATE])


def test_cached_until_invalidated(engine, session):
    seed_default_settings(session)
    config = PricingConfig(engine)
    assert config.get_rate(TAX_RATE) == Decimal("0.10")

    setting = session.exec(select(Setting).where(Setting.key == TAX_RATE)).one()
    setting.value = "0.11"
    session.add(setting)
    session.commit()

    assert config.get_rate(TAX_RATE) == Decimal("0.10")
    config.invalidate()
    assert config.get_rate(TAX_RATE) == Decimal("0.11")


def test_set_rate_persists_and_refreshes(engine, session):
    seed_default_settings(session)
    config = PricingConfig(engine)
    config.get_rate(SERVICE_CHARGE_RATE)

    config.set_rate(SERVICE_CHARGE_RATE, "0.05")

    assert config.get_rate(SERVICE_CHARGE_RATE) == Decimal("0.05")
    assert PricingConfig(engine).get_rate(SERVICE_CHARGE_RATE) == Decimal("0.05")


@pytest.mark.parametrize("value", ["-0.01", "1.5", "abc"])
def test_set_rate_rejects_bad_values(engine, value):
    with pytest.raises(ValidationFailed):
        PricingConfig(engine).set_rate(TAX_RATE, value)


def test_set_rate_rejects_unknown_key(engine):
    with pytest.raises(ValidationFailed):
        PricingConfig(engine).set_rate("discount_rate", "0.1")


def test_set_rate_respects_locked_setting(engine, session):
    session.add(Setting(key=TAX_RATE, value="0.10", type="decimal", is_editable=False))
    session.commit()
    with pytest.raises(ValidationFailed):
        PricingConfig(engine).set_rate(TAX_RATE, "0.12")


def test_garbage_value_falls_back_to_default(engine, session):
    session.add(Setting(key=TAX_RATE, value="ten percent", type="decimal"))
    session.commit()
    assert PricingConfig(engine).get_rate(TAX_RATE) == Decimal("0.10")
