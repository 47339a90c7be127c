"""
System settings

Defaults come from the environment; admins override them through the
"setting" collection. The resulting SystemSettings object is passed
explicitly to pricing, billing and late-fee code.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, Field

from pricing import PricingPolicy

logger = logging.getLogger("rental.config")

SETTING_COLLECTION = "setting"


class SystemSettings(BaseModel):
    tax_rate: float = Field(0.18, ge=0, le=1, description="Tax as a fraction, e.g. 0.18 for 18% GST")
    late_fee_percentage: float = Field(20.0, ge=0, description="Percent of the daily rate charged per late day")
    quotation_validity_days: int = Field(7, ge=1, description="Days a quotation stays valid")
    pricing_policy: PricingPolicy = Field(PricingPolicy.DAILY, description="daily | banded | cheapest")
    currency: str = Field("INR", description="ISO currency code")

    @property
    def late_fee_rate(self) -> float:
        return self.late_fee_percentage / 100


DATA_TYPES = {
    "tax_rate": "NUMBER",
    "late_fee_percentage": "NUMBER",
    "quotation_validity_days": "NUMBER",
    "pricing_policy": "STRING",
    "currency": "STRING",
}


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def env_defaults() -> Dict[str, Any]:
    return {
        "tax_rate": float(_env_or("TAX_RATE", "0.18")),
        "late_fee_percentage": float(_env_or("LATE_FEE_PERCENTAGE", "20")),
        "quotation_validity_days": int(_env_or("QUOTATION_VALIDITY_DAYS", "7")),
        "pricing_policy": _env_or("PRICING_POLICY", "daily"),
        "currency": _env_or("CURRENCY", "INR"),
    }


def parse_setting_value(value, data_type: str):
    if value is None:
        return None
    if data_type == "NUMBER":
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0
    if data_type == "BOOLEAN":
        return value in (True, "true", "1")
    if data_type == "JSON":
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return None
    return str(value)


def stringify_setting_value(value, data_type: str) -> str:
    if value is None:
        return ""
    if data_type == "BOOLEAN":
        return "true" if value else "false"
    if data_type == "JSON":
        return json.dumps(value)
    if isinstance(value, PricingPolicy):
        return value.value
    return str(value)


def load_settings(db=None) -> SystemSettings:
    values = env_defaults()
    if db is not None:
        for doc in db[SETTING_COLLECTION].find({}):
            key = doc.get("setting_key")
            if key in DATA_TYPES:
                values[key] = parse_setting_value(doc.get("setting_value"), doc.get("data_type", DATA_TYPES[key]))
    if isinstance(values.get("quotation_validity_days"), float):
        values["quotation_validity_days"] = int(values["quotation_validity_days"])
    return SystemSettings(**values)


def update_settings(db, updates: Dict[str, Any]) -> SystemSettings:
    """Validate and persist setting overrides. Unknown keys raise ValueError."""
    unknown = sorted(set(updates) - set(DATA_TYPES))
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(unknown)}")

    merged = load_settings(db).model_dump()
    merged.update(updates)
    settings = SystemSettings(**merged)

    now = datetime.now(timezone.utc)
    for key in updates:
        data_type = DATA_TYPES[key]
        db[SETTING_COLLECTION].update_one(
            {"setting_key": key},
            {
                "$set": {
                    "setting_value": stringify_setting_value(getattr(settings, key), data_type),
                    "data_type": data_type,
                    "updated_at": now,
                }
            },
            upsert=True,
        )
        logger.info("Updated setting %s", key)
    return settings
