# rewards/settings.py
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from extensions import db
from models import PlatformSettings, AuditLog
from rewards.atomic import run_atomic
from rewards.errors import OperationResult, ErrorKind


@dataclass(frozen=True)
class PlatformConfig:
    """Snapshot of the platform settings, loaded once per operation."""
    direct_referral_requirement: int = 2
    maintenance_mode: bool = False
    registration_open: bool = True
    welcome_bonus: Decimal = Decimal("0")
    max_rank_level: int = 10
    updated_by: Optional[int] = None

    @classmethod
    def from_row(cls, row: PlatformSettings) -> "PlatformConfig":
        return cls(
            direct_referral_requirement=row.direct_referral_requirement,
            maintenance_mode=bool(row.maintenance_mode),
            registration_open=bool(row.registration_open),
            welcome_bonus=Decimal(str(row.welcome_bonus or 0)),
            max_rank_level=row.max_rank_level,
            updated_by=row.updated_by,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "directReferralRequirement": self.direct_referral_requirement,
            "maintenanceMode": self.maintenance_mode,
            "registrationOpen": self.registration_open,
            "welcomeBonus": float(self.welcome_bonus),
            "maxRankLevel": self.max_rank_level,
            "updatedBy": self.updated_by,
        }


def _as_int(value, low, high):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("must be an integer")
    if value < low or value > high:
        raise ValueError(f"must be between {low} and {high}")
    return value


def _as_bool(value):
    if not isinstance(value, bool):
        raise ValueError("must be true or false")
    return value


def _as_non_negative_decimal(value):
    if isinstance(value, bool):
        raise ValueError("must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError("must be a number")
    if not amount.is_finite() or amount < 0:
        raise ValueError("must be zero or more")
    return amount


class PlatformSettingsHelper:
    SINGLETON_ID = 1

    FIELDS = {
        "direct_referral_requirement": lambda v: _as_int(v, 0, 10),
        "maintenance_mode": _as_bool,
        "registration_open": _as_bool,
        "welcome_bonus": _as_non_negative_decimal,
        "max_rank_level": lambda v: _as_int(v, 1, 20),
    }
    ALIASES = {
        "directReferralRequirement": "direct_referral_requirement",
        "maintenanceMode": "maintenance_mode",
        "registrationOpen": "registration_open",
        "welcomeBonus": "welcome_bonus",
        "maxRankLevel": "max_rank_level",
    }

    @staticmethod
    def load() -> PlatformConfig:
        row = db.session.get(PlatformSettings, PlatformSettingsHelper.SINGLETON_ID)
        if row is None:
            return PlatformConfig()
        return PlatformConfig.from_row(row)

    @staticmethod
    def _normalise(changes: Dict[str, Any]):
        """Validate an update payload. Returns (clean values, field errors)."""
        clean, errors = {}, {}
        for key, value in (changes or {}).items():
            field = PlatformSettingsHelper.ALIASES.get(key, key)
            if field not in PlatformSettingsHelper.FIELDS:
                errors[key] = "unknown setting"
                continue
            try:
                clean[field] = PlatformSettingsHelper.FIELDS[field](value)
            except ValueError as e:
                errors[key] = str(e)
        return clean, errors

    @staticmethod
    def update(admin_id: int, changes: Dict[str, Any]) -> OperationResult:
        """Single write path for platform settings, last writer wins, audited."""
        clean, errors = PlatformSettingsHelper._normalise(changes)
        if errors:
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "Invalid settings", fields=errors)
        if not clean:
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "No settings supplied")

        def apply_update():
            row = db.session.get(PlatformSettings, PlatformSettingsHelper.SINGLETON_ID, with_for_update=True)
            if row is None:
                defaults = asdict(PlatformConfig())
                defaults.pop("updated_by")
                row = PlatformSettings(id=PlatformSettingsHelper.SINGLETON_ID, **defaults)
                db.session.add(row)
                db.session.flush()

            previous = PlatformConfig.from_row(row)
            for field, value in clean.items():
                setattr(row, field, value)
            row.updated_by = admin_id

            db.session.add(AuditLog(
                actor_id=admin_id,
                action="settings.updated",
                entity_type="platform_settings",
                entity_id=row.id,
                details={
                    "old": {k: str(getattr(previous, k)) for k in clean},
                    "new": {k: str(v) for k, v in clean.items()},
                },
            ))
            db.session.flush()
            return OperationResult.success(settings=PlatformConfig.from_row(row).to_dict(),
                                           changed=sorted(clean))

        return run_atomic(apply_update, name="update_platform_settings")
