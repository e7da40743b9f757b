"""
Pricing configuration store.

Rates live in the `setting` table and are read through a PricingConfig
instance that is created once and injected where pricing is needed.
Cached values are dropped by `invalidate()`, which `set_rate` calls itself.
"""

import logging
import threading
from decimal import Decimal, InvalidOperation

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .clock import utcnow
from .errors import ValidationFailed
from .models import Setting
from .settings import settings

logger = logging.getLogger(__name__)

SERVICE_CHARGE_RATE = "service_charge_rate"
TAX_RATE = "tax_rate"

PRICING_KEYS = (SERVICE_CHARGE_RATE, TAX_RATE)


class PricingConfig:
    def __init__(self, engine: Engine, defaults: dict[str, Decimal] | None = None):
        self._engine = engine
        self._defaults = defaults or {
            SERVICE_CHARGE_RATE: settings.default_service_charge_rate,
            TAX_RATE: settings.default_tax_rate,
        }
        self._cache: dict[str, Decimal] = {}
        self._lock = threading.Lock()

    def get_rate(self, key: str) -> Decimal:
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        with Session(self._engine) as session:
            setting = session.exec(select(Setting).where(Setting.key == key)).first()

        if setting is None:
            rate = Decimal(str(self._defaults.get(key, Decimal("0"))))
        else:
            try:
                rate = Decimal(setting.value)
            except InvalidOperation:
                logger.warning(f"Setting {key} has non-numeric value {setting.value!r}, using default")
                rate = Decimal(str(self._defaults.get(key, Decimal("0"))))

        with self._lock:
            self._cache[key] = rate
        return rate

    def rates(self) -> tuple[Decimal, Decimal]:
        return self.get_rate(SERVICE_CHARGE_RATE), self.get_rate(TAX_RATE)

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    def set_rate(self, key: str, value: Decimal | float | str) -> Decimal:
        if key not in PRICING_KEYS:
            raise ValidationFailed(f"Unknown pricing setting {key!r}")
        try:
            rate = Decimal(str(value))
        except InvalidOperation:
            raise ValidationFailed(f"Invalid rate {value!r}", key=key)
        if rate < 0 or rate > 1:
            raise ValidationFailed("Rate must be between 0 and 1", key=key, value=str(rate))

        with Session(self._engine) as session:
            setting = session.exec(select(Setting).where(Setting.key == key)).first()
            if setting is None:
                setting = Setting(key=key, value=str(rate), type="decimal", category="pricing")
            elif not setting.is_editable:
                raise ValidationFailed(f"Setting {key!r} is not editable", key=key)
            else:
                setting.value = str(rate)
                setting.updated_at = utcnow()
            session.add(setting)
            session.commit()

        self.invalidate()
        logger.info(f"Pricing setting {key} set to {rate}")
        return rate


def seed_default_settings(session: Session) -> None:
    """Insert the pricing settings if they are missing."""
    descriptions = {
        SERVICE_CHARGE_RATE: "Service charge rate (0.07 = 7%)",
        TAX_RATE: "Restaurant tax rate (0.10 = 10%)",
    }
    defaults = {
        SERVICE_CHARGE_RATE: settings.default_service_charge_rate,
        TAX_RATE: settings.default_tax_rate,
    }
    for key in PRICING_KEYS:
        existing = session.exec(select(Setting).where(Setting.key == key)).first()
        if existing is None:
            session.add(Setting(
                key=key,
                value=str(defaults[key]),
                type="decimal",
                description=descriptions[key],
                category="pricing",
            ))
    session.commit()
