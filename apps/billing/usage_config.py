"""
Discriminated configuration structs for usage billing.

Pricing tables, restriction policies and alert schedules are stored as JSON
columns and parsed into the frozen dataclasses below. Unknown keys and
invalid combinations raise ``django.core.exceptions.ValidationError`` so a
bad configuration is rejected when the record is saved.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, ClassVar

from django.core.exceptions import ValidationError
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from . import config

if TYPE_CHECKING:
    from .interfaces import ClientAttributes

WEEKDAY_NAMES: tuple[str, ...] = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
WEEKEND_DAYS = frozenset({5, 6})

ROAMING_ALLOWED = "allowed"
ROAMING_BLOCKED = "blocked"
ROAMING_CHARGED = "charged"


# ===============================================================================
# PARSING HELPERS
# ===============================================================================


def _require_mapping(data: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationError(f"{name} must be an object, got {type(data).__name__}")
    return data


def _reject_unknown(data: Mapping[str, Any], allowed: Iterable[str], name: str) -> None:
    unknown = set(data) - set(allowed)
    if unknown:
        raise ValidationError(f"{name}: unknown keys {', '.join(sorted(unknown))}")


def _decimal(value: Any, name: str, *, minimum: Decimal | None = Decimal("0")) -> Decimal:
    try:
        result = Decimal(str(value))
    except (TypeError, ValueError, InvalidOperation) as e:
        raise ValidationError(f"{name} must be a number, got {value!r}") from e
    if not result.is_finite():
        raise ValidationError(f"{name} must be finite")
    if minimum is not None and result < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    return result


def _datetime(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        parsed: datetime | None = value
    else:
        parsed = parse_datetime(str(value)) if value else None
    if parsed is None:
        raise ValidationError(f"{name} must be an ISO 8601 datetime, got {value!r}")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def _date(value: Any, name: str) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    parsed = parse_date(str(value)) if value else None
    if parsed is None:
        raise ValidationError(f"{name} must be an ISO 8601 date, got {value!r}")
    return parsed


def _string_tuple(value: Any, name: str, *, upper: bool = False) -> tuple[str, ...]:
    if value in (None, ""):
        return ()
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise ValidationError(f"{name} must be a list of strings")
    items = tuple(str(item).strip() for item in value if str(item).strip())
    return tuple(item.upper() for item in items) if upper else items


def _weekday(value: Any) -> int:
    if isinstance(value, int) and 0 <= value <= 6:  # noqa: PLR2004
        return value
    text = str(value).strip().lower()
    if text.isdigit() and 0 <= int(text) <= 6:  # noqa: PLR2004
        return int(text)
    for index, day_name in enumerate(WEEKDAY_NAMES):
        if text in (day_name, day_name[:3]):
            return index
    raise ValidationError(f"Unknown weekday {value!r}")


def local_moment(moment: datetime, tz: tzinfo | None = None) -> datetime:
    """Express an aware moment in the given (or current) timezone"""
    if timezone.is_naive(moment):
        return moment
    return timezone.localtime(moment, tz)


# ===============================================================================
# TIME WINDOWS
# ===============================================================================


@dataclass(frozen=True)
class HourWindow:
    """Hour-of-day window, end-exclusive. A start after the end wraps midnight."""

    start_hour: int
    end_hour: int

    def __post_init__(self) -> None:
        if not 0 <= self.start_hour <= 23:  # noqa: PLR2004
            raise ValidationError(f"start_hour must be 0-23, got {self.start_hour}")
        if not 0 <= self.end_hour <= 24:  # noqa: PLR2004
            raise ValidationError(f"end_hour must be 0-24, got {self.end_hour}")
        if self.start_hour == self.end_hour:
            raise ValidationError("Hour window must not be empty")

    def contains(self, hour: int) -> bool:
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour

    @classmethod
    def from_json(cls, data: Any) -> HourWindow:
        if isinstance(data, (list, tuple)) and len(data) == 2:  # noqa: PLR2004
            start, end = data
        else:
            mapping = _require_mapping(data, "Hour window")
            _reject_unknown(mapping, ("start", "end"), "Hour window")
            if "start" not in mapping or "end" not in mapping:
                raise ValidationError("Hour window needs both 'start' and 'end'")
            start, end = mapping["start"], mapping["end"]
        try:
            return cls(start_hour=int(start), end_hour=int(end))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Hour window bounds must be integers, got {data!r}") from e

    def to_json(self) -> dict[str, int]:
        return {"start": self.start_hour, "end": self.end_hour}


def default_peak_window() -> HourWindow:
    return HourWindow(config.DEFAULT_PEAK_START_HOUR, config.DEFAULT_PEAK_END_HOUR)


@dataclass(frozen=True)
class BlackoutPeriod:
    """Closed datetime range during which no usage may be allocated"""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValidationError("Blackout period must end after it starts")

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    @classmethod
    def from_json(cls, data: Any) -> BlackoutPeriod:
        mapping = _require_mapping(data, "Blackout period")
        _reject_unknown(mapping, ("start", "end"), "Blackout period")
        return cls(start=_datetime(mapping.get("start"), "Blackout start"), end=_datetime(mapping.get("end"), "Blackout end"))

    def to_json(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class TimeRestrictions:
    """When a pool or bucket may absorb usage"""

    KEYS: ClassVar[tuple[str, ...]] = ("allowed_windows", "blackout_periods", "peak_only", "off_peak_only")

    allowed_windows: tuple[HourWindow, ...] = ()
    blackout_periods: tuple[BlackoutPeriod, ...] = ()
    peak_only: bool = False
    off_peak_only: bool = False

    def __post_init__(self) -> None:
        if self.peak_only and self.off_peak_only:
            raise ValidationError("Time restrictions cannot be both peak-only and off-peak-only")

    @property
    def is_unrestricted(self) -> bool:
        return not (self.allowed_windows or self.blackout_periods or self.peak_only or self.off_peak_only)

    def violation(self, moment: datetime) -> str | None:
        """Reason usage at this moment is refused, or None when allowed"""
        for blackout in self.blackout_periods:
            if blackout.contains(moment):
                return f"blackout period {blackout.start.isoformat()} - {blackout.end.isoformat()}"

        hour = local_moment(moment).hour
        if self.allowed_windows and not any(window.contains(hour) for window in self.allowed_windows):
            return f"hour {hour} is outside the allowed windows"

        is_peak = default_peak_window().contains(hour)
        if self.peak_only and not is_peak:
            return f"hour {hour} is outside peak hours"
        if self.off_peak_only and is_peak:
            return f"hour {hour} is inside peak hours"
        return None

    def allows(self, moment: datetime) -> bool:
        return self.violation(moment) is None

    @classmethod
    def from_json(cls, data: Any) -> TimeRestrictions:
        if not data:
            return cls()
        mapping = _require_mapping(data, "Time restrictions")
        _reject_unknown(mapping, cls.KEYS, "Time restrictions")
        return cls(
            allowed_windows=tuple(HourWindow.from_json(item) for item in mapping.get("allowed_windows") or ()),
            blackout_periods=tuple(BlackoutPeriod.from_json(item) for item in mapping.get("blackout_periods") or ()),
            peak_only=bool(mapping.get("peak_only", False)),
            off_peak_only=bool(mapping.get("off_peak_only", False)),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "allowed_windows": [window.to_json() for window in self.allowed_windows],
            "blackout_periods": [period.to_json() for period in self.blackout_periods],
            "peak_only": self.peak_only,
            "off_peak_only": self.off_peak_only,
        }


# ===============================================================================
# GEOGRAPHY
# ===============================================================================


@dataclass(frozen=True)
class LocationRestrictions:
    """Where usage may originate and terminate"""

    KEYS: ClassVar[tuple[str, ...]] = ("allowed_countries", "restricted_destinations", "roaming_behavior")
    ROAMING_CHOICES: ClassVar[tuple[str, ...]] = (ROAMING_ALLOWED, ROAMING_BLOCKED, ROAMING_CHARGED)

    allowed_countries: tuple[str, ...] = ()
    restricted_destinations: tuple[str, ...] = ()
    roaming_behavior: str = ROAMING_ALLOWED

    def __post_init__(self) -> None:
        if self.roaming_behavior not in self.ROAMING_CHOICES:
            raise ValidationError(f"roaming_behavior must be one of {', '.join(self.ROAMING_CHOICES)}")
        overlap = set(self.allowed_countries) & set(self.restricted_destinations)
        if overlap:
            raise ValidationError(f"Countries both allowed and restricted: {', '.join(sorted(overlap))}")

    @property
    def is_unrestricted(self) -> bool:
        return not (self.allowed_countries or self.restricted_destinations) and self.roaming_behavior == ROAMING_ALLOWED

    def violation(self, origin_country: str = "", destination_country: str = "", is_roaming: bool = False) -> str | None:
        """Reason usage between these locations is refused, or None when allowed"""
        origin = origin_country.upper()
        destination = destination_country.upper()
        if self.allowed_countries and origin and origin not in self.allowed_countries:
            return f"origin {origin} is not an allowed country"
        if destination and destination in self.restricted_destinations:
            return f"destination {destination} is restricted"
        if is_roaming and self.roaming_behavior == ROAMING_BLOCKED:
            return "roaming usage is blocked"
        return None

    def charges_roaming(self, is_roaming: bool) -> bool:
        return is_roaming and self.roaming_behavior == ROAMING_CHARGED

    @classmethod
    def from_json(cls, data: Any) -> LocationRestrictions:
        if not data:
            return cls()
        mapping = _require_mapping(data, "Location restrictions")
        _reject_unknown(mapping, cls.KEYS, "Location restrictions")
        return cls(
            allowed_countries=_string_tuple(mapping.get("allowed_countries"), "allowed_countries", upper=True),
            restricted_destinations=_string_tuple(
                mapping.get("restricted_destinations"), "restricted_destinations", upper=True
            ),
            roaming_behavior=str(mapping.get("roaming_behavior", ROAMING_ALLOWED)),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "allowed_countries": list(self.allowed_countries),
            "restricted_destinations": list(self.restricted_destinations),
            "roaming_behavior": self.roaming_behavior,
        }


@dataclass(frozen=True)
class GeographicRates:
    """Per-destination price multipliers keyed by ISO country code"""

    multipliers: dict[str, Decimal] = field(default_factory=dict)

    def multiplier_for(self, country_code: str | None) -> Decimal | None:
        if not country_code:
            return None
        return self.multipliers.get(country_code.upper())

    @classmethod
    def from_json(cls, data: Any) -> GeographicRates:
        if not data:
            return cls()
        mapping = _require_mapping(data, "Geographic rates")
        multipliers: dict[str, Decimal] = {}
        for country, multiplier in mapping.items():
            code = str(country).strip().upper()
            if len(code) != 2 or not code.isalpha():  # noqa: PLR2004
                raise ValidationError(f"Geographic rates: invalid country code {country!r}")
            multipliers[code] = _decimal(multiplier, f"Multiplier for {code}")
        return cls(multipliers=multipliers)

    def to_json(self) -> dict[str, str]:
        return {country: str(multiplier) for country, multiplier in self.multipliers.items()}


# ===============================================================================
# PRICE ADJUSTMENTS
# ===============================================================================


@dataclass(frozen=True)
class TimeBasedRates:
    """Peak, off-peak, weekend and holiday multipliers. Exactly one applies per event."""

    KEYS: ClassVar[tuple[str, ...]] = (
        "peak_multiplier",
        "off_peak_multiplier",
        "weekend_multiplier",
        "holiday_multiplier",
        "peak_windows",
        "holidays",
    )

    peak_multiplier: Decimal = Decimal("1")
    off_peak_multiplier: Decimal = Decimal("1")
    weekend_multiplier: Decimal = Decimal("1")
    holiday_multiplier: Decimal | None = None
    peak_windows: tuple[HourWindow, ...] = ()
    holidays: tuple[date, ...] = ()

    def multiplier_for(self, moment: datetime) -> tuple[str, Decimal]:
        """Label and multiplier for the period the moment falls in"""
        local = local_moment(moment)
        if local.date() in self.holidays:
            if self.holiday_multiplier is not None:
                return "holiday", self.holiday_multiplier
            return "weekend", self.weekend_multiplier
        if local.weekday() in WEEKEND_DAYS:
            return "weekend", self.weekend_multiplier
        windows = self.peak_windows or (default_peak_window(),)
        if any(window.contains(local.hour) for window in windows):
            return "peak", self.peak_multiplier
        return "off_peak", self.off_peak_multiplier

    @classmethod
    def from_json(cls, data: Any) -> TimeBasedRates | None:
        if not data:
            return None
        mapping = _require_mapping(data, "Time-based rates")
        _reject_unknown(mapping, cls.KEYS, "Time-based rates")
        holiday = mapping.get("holiday_multiplier")
        return cls(
            peak_multiplier=_decimal(mapping.get("peak_multiplier", "1"), "peak_multiplier"),
            off_peak_multiplier=_decimal(mapping.get("off_peak_multiplier", "1"), "off_peak_multiplier"),
            weekend_multiplier=_decimal(mapping.get("weekend_multiplier", "1"), "weekend_multiplier"),
            holiday_multiplier=None if holiday is None else _decimal(holiday, "holiday_multiplier"),
            peak_windows=tuple(HourWindow.from_json(item) for item in mapping.get("peak_windows") or ()),
            holidays=tuple(_date(item, "Holiday") for item in mapping.get("holidays") or ()),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "peak_multiplier": str(self.peak_multiplier),
            "off_peak_multiplier": str(self.off_peak_multiplier),
            "weekend_multiplier": str(self.weekend_multiplier),
            "holiday_multiplier": None if self.holiday_multiplier is None else str(self.holiday_multiplier),
            "peak_windows": [window.to_json() for window in self.peak_windows],
            "holidays": [holiday.isoformat() for holiday in self.holidays],
        }


@dataclass(frozen=True)
class VolumeDiscount:
    """Percentage off the base cost once usage reaches min_usage"""

    KEYS: ClassVar[tuple[str, ...]] = ("min_usage", "discount_percentage", "name")

    min_usage: Decimal
    discount_percentage: Decimal
    name: str = ""

    def __post_init__(self) -> None:
        if self.discount_percentage > Decimal("100"):
            raise ValidationError("discount_percentage cannot exceed 100")

    @classmethod
    def from_json(cls, data: Any) -> VolumeDiscount:
        mapping = _require_mapping(data, "Volume discount")
        _reject_unknown(mapping, cls.KEYS, "Volume discount")
        if "min_usage" not in mapping or "discount_percentage" not in mapping:
            raise ValidationError("Volume discount needs 'min_usage' and 'discount_percentage'")
        return cls(
            min_usage=_decimal(mapping["min_usage"], "min_usage"),
            discount_percentage=_decimal(mapping["discount_percentage"], "discount_percentage"),
            name=str(mapping.get("name", "")),
        )

    def to_json(self) -> dict[str, str]:
        return {"min_usage": str(self.min_usage), "discount_percentage": str(self.discount_percentage), "name": self.name}


def parse_volume_discounts(data: Any) -> tuple[VolumeDiscount, ...]:
    """Volume discount tiers in stored order; the first whose min_usage is met wins"""
    if not data:
        return ()
    if isinstance(data, (str, Mapping)) or not isinstance(data, Iterable):
        raise ValidationError("Volume discounts must be a list")
    return tuple(VolumeDiscount.from_json(item) for item in data)


# ===============================================================================
# CLIENT CRITERIA
# ===============================================================================


@dataclass(frozen=True)
class ClientCriteria:
    """Predicate over client directory attributes used by group-scoped rules"""

    KEYS: ClassVar[tuple[str, ...]] = ("customer_types", "countries", "industries", "min_account_age_days", "tags")

    customer_types: tuple[str, ...] = ()
    countries: tuple[str, ...] = ()
    industries: tuple[str, ...] = ()
    min_account_age_days: int | None = None
    tags: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (
            self.customer_types or self.countries or self.industries or self.tags
        ) and self.min_account_age_days is None

    def matches(self, attributes: ClientAttributes) -> bool:
        """All configured predicates must hold; an empty criteria set matches nobody"""
        if self.is_empty:
            return False
        if self.customer_types and attributes.customer_type not in self.customer_types:
            return False
        if self.countries and attributes.country_code.upper() not in self.countries:
            return False
        if self.industries and attributes.industry.lower() not in {industry.lower() for industry in self.industries}:
            return False
        if self.min_account_age_days is not None and attributes.account_age_days < self.min_account_age_days:
            return False
        return not self.tags or set(self.tags) <= set(attributes.tags)

    @classmethod
    def from_json(cls, data: Any) -> ClientCriteria:
        if not data:
            return cls()
        mapping = _require_mapping(data, "Client criteria")
        _reject_unknown(mapping, cls.KEYS, "Client criteria")
        min_age = mapping.get("min_account_age_days")
        if min_age is not None:
            try:
                min_age = int(min_age)
            except (TypeError, ValueError) as e:
                raise ValidationError("min_account_age_days must be an integer") from e
            if min_age < 0:
                raise ValidationError("min_account_age_days must be >= 0")
        return cls(
            customer_types=_string_tuple(mapping.get("customer_types"), "customer_types"),
            countries=_string_tuple(mapping.get("countries"), "countries", upper=True),
            industries=_string_tuple(mapping.get("industries"), "industries"),
            min_account_age_days=min_age,
            tags=_string_tuple(mapping.get("tags"), "tags"),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "customer_types": list(self.customer_types),
            "countries": list(self.countries),
            "industries": list(self.industries),
            "min_account_age_days": self.min_account_age_days,
            "tags": list(self.tags),
        }


# ===============================================================================
# ALERT SCHEDULES
# ===============================================================================


@dataclass(frozen=True)
class BusinessHours:
    """Per-weekday notification windows (Python weekday numbers, Monday = 0)"""

    days: dict[int, HourWindow] = field(default_factory=dict)

    def allows(self, moment: datetime, tz: tzinfo | None = None) -> bool:
        """No configured days means every hour counts as business hours"""
        if not self.days:
            return True
        local = local_moment(moment, tz)
        window = self.days.get(local.weekday())
        return window is not None and window.contains(local.hour)

    @classmethod
    def from_json(cls, data: Any) -> BusinessHours:
        if not data:
            return cls()
        mapping = _require_mapping(data, "Business hours")
        return cls(days={_weekday(day): HourWindow.from_json(window) for day, window in mapping.items()})

    def to_json(self) -> dict[str, dict[str, int]]:
        return {WEEKDAY_NAMES[day]: window.to_json() for day, window in sorted(self.days.items())}
