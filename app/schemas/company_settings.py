"""Typed view of Company.settings, parsed once at the settings-write boundary."""

import re
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
CLOCK_RE = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$")

ORDER_FIELD_OPTIONS = ("client_name", "phone", "service_name", "address", "amount", "note")
APPOINTMENT_FIELD_OPTIONS = (
    "client_name",
    "phone",
    "service_name",
    "address",
    "appointment_date",
    "appointment_time",
    "appointment_duration_minutes",
    "amount",
    "note",
)
DEFAULT_ORDER_FIELDS = ["phone", "service_name", "address"]
DEFAULT_APPOINTMENT_FIELDS = [
    "phone",
    "service_name",
    "address",
    "appointment_date",
    "appointment_time",
    "appointment_duration_minutes",
]
RESPONSE_LANGUAGE_OPTIONS = ("ru", "en", "tg", "uz", "tr", "fa")


class SettingsValidationError(ValueError):
    """Settings payload rejected at the write boundary."""

    def __init__(self, errors: list[dict]):
        self.errors = errors
        super().__init__("; ".join(f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errors))


def _int_at_least(value: Any, default: int, minimum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    return max(number, minimum)


def _pick_allowed(values: Any, defaults: list[str], allowed: tuple[str, ...]) -> list[str]:
    raw = values if isinstance(values, list) else defaults
    picked: list[str] = []
    for value in raw:
        if not isinstance(value, str):
            continue
        field = value.strip()
        if field and field in allowed and field not in picked:
            picked.append(field)
    return picked


def normalize_clock(value: Any, default: str) -> str:
    text = str(value or "").strip()
    return text if CLOCK_RE.match(text) else default


class DaySchedule(BaseModel):
    is_day_off: bool = False
    start_time: str = ""
    end_time: str = ""

    @property
    def is_open(self) -> bool:
        return not self.is_day_off and bool(CLOCK_RE.match(self.start_time)) and bool(CLOCK_RE.match(self.end_time))


class BusinessSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    address: Optional[str] = None
    timezone: str = "UTC"
    schedule: dict[str, DaySchedule] = Field(default_factory=dict)

    @field_validator("timezone", mode="before")
    @classmethod
    def _known_timezone(cls, value: Any) -> str:
        name = str(value or "").strip()
        if not name:
            return "UTC"
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            return "UTC"
        return name

    @field_validator("schedule", mode="before")
    @classmethod
    def _weekday_keys(cls, value: Any) -> dict:
        if not isinstance(value, dict):
            return {}
        return {str(k).lower(): v for k, v in value.items() if str(k).lower() in WEEKDAYS and isinstance(v, dict)}

    def day(self, weekday_key: str) -> DaySchedule:
        return self.schedule.get(weekday_key) or DaySchedule(is_day_off=True)


class AppointmentSettings(BaseModel):
    enabled: bool = False
    slot_minutes: int = 30
    buffer_minutes: int = 0
    max_days_ahead: int = 30
    auto_confirm: bool = True

    @field_validator("slot_minutes", mode="before")
    @classmethod
    def _slot(cls, value: Any) -> int:
        return _int_at_least(value, 30, 15)

    @field_validator("buffer_minutes", mode="before")
    @classmethod
    def _buffer(cls, value: Any) -> int:
        return _int_at_least(value, 0, 0)

    @field_validator("max_days_ahead", mode="before")
    @classmethod
    def _max_days(cls, value: Any) -> int:
        return _int_at_least(value, 30, 1)


class DeliverySettings(BaseModel):
    enabled: bool = False
    require_delivery_address: bool = True
    require_delivery_datetime: bool = True
    default_eta_minutes: int = 120
    fee: float = 0.0
    free_from_amount: Optional[float] = None
    available_from: str = "09:00"
    available_to: str = "21:00"
    notes: Optional[str] = None

    @field_validator("default_eta_minutes", mode="before")
    @classmethod
    def _eta(cls, value: Any) -> int:
        return _int_at_least(value, 120, 15)

    @field_validator("fee", mode="before")
    @classmethod
    def _fee(cls, value: Any) -> float:
        try:
            return round(max(float(value), 0.0), 2)
        except (TypeError, ValueError):
            return 0.0

    @field_validator("free_from_amount", mode="before")
    @classmethod
    def _free_from(cls, value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            return round(max(float(value), 0.0), 2)
        except (TypeError, ValueError):
            return None

    @field_validator("available_from", mode="before")
    @classmethod
    def _from(cls, value: Any) -> str:
        return normalize_clock(value, "09:00")

    @field_validator("available_to", mode="before")
    @classmethod
    def _to(cls, value: Any) -> str:
        return normalize_clock(value, "21:00")

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, value: Any) -> Optional[str]:
        text = str(value or "").strip()
        return text or None


class CrmSettings(BaseModel):
    order_required_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_ORDER_FIELDS))
    appointment_required_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_APPOINTMENT_FIELDS))

    @field_validator("order_required_fields", mode="before")
    @classmethod
    def _order_fields(cls, value: Any) -> list[str]:
        return _pick_allowed(value, DEFAULT_ORDER_FIELDS, ORDER_FIELD_OPTIONS)

    @field_validator("appointment_required_fields", mode="before")
    @classmethod
    def _appointment_fields(cls, value: Any) -> list[str]:
        return _pick_allowed(value, DEFAULT_APPOINTMENT_FIELDS, APPOINTMENT_FIELD_OPTIONS)


class AiSettings(BaseModel):
    response_languages: list[str] = Field(default_factory=lambda: ["ru"])

    @field_validator("response_languages", mode="before")
    @classmethod
    def _languages(cls, value: Any) -> list[str]:
        return _pick_allowed(value, ["ru"], RESPONSE_LANGUAGE_OPTIONS)


class CompanySettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    account_type: str = "without_appointments"
    business: BusinessSettings = Field(default_factory=BusinessSettings)
    appointment: AppointmentSettings = Field(default_factory=AppointmentSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    crm: CrmSettings = Field(default_factory=CrmSettings)
    ai: AiSettings = Field(default_factory=AiSettings)

    @field_validator("account_type", mode="before")
    @classmethod
    def _account_type(cls, value: Any) -> str:
        text = str(value or "").strip()
        return text if text in {"with_appointments", "without_appointments"} else "without_appointments"

    @property
    def appointments_enabled(self) -> bool:
        return self.account_type == "with_appointments" and self.appointment.enabled

    @property
    def timezone(self) -> str:
        return self.business.timezone


def parse_company_settings(raw: Any) -> CompanySettings:
    """Strict parse used when settings are written; raises SettingsValidationError."""
    try:
        return CompanySettings.model_validate(raw if isinstance(raw, dict) else {})
    except ValidationError as exc:
        raise SettingsValidationError(exc.errors()) from exc


def load_company_settings(raw: Any) -> CompanySettings:
    """Lenient read of stored settings; malformed sections fall back to defaults."""
    data = raw if isinstance(raw, dict) else {}
    try:
        return CompanySettings.model_validate(data)
    except ValidationError:
        sections = {}
        for key, model in (
            ("business", BusinessSettings),
            ("appointment", AppointmentSettings),
            ("delivery", DeliverySettings),
            ("crm", CrmSettings),
            ("ai", AiSettings),
        ):
            try:
                sections[key] = model.model_validate(data.get(key) if isinstance(data.get(key), dict) else {})
            except ValidationError:
                sections[key] = model()
        return CompanySettings(account_type=data.get("account_type"), **sections)
