"""
Centralized usage billing configuration for Ledgerline Platform.

All metering, pricing and allocation constants are defined here
to ensure DRY compliance and easy maintenance.
"""

import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings

logger = logging.getLogger(__name__)

# ===============================================================================
# HELPER: SAFE VALUE PARSING
# ===============================================================================


def _get_positive_int(setting_name: str, default: int) -> int:
    """Get a positive integer from settings with validation."""
    value = getattr(settings, setting_name, default)
    try:
        result = int(value)
    except (TypeError, ValueError):
        result = default
    return max(1, result)  # Ensure at least 1


def _get_hour(setting_name: str, default: int) -> int:
    """Get an hour of day (0-24) from settings with validation."""
    value = getattr(settings, setting_name, default)
    try:
        result = int(value)
    except (TypeError, ValueError):
        result = default
    return min(24, max(0, result))


def _get_decimal(setting_name: str, default: str) -> Decimal:
    """Get a non-negative decimal from settings with validation."""
    value = getattr(settings, setting_name, default)
    try:
        # Always convert to string first to avoid float precision issues
        result = Decimal(str(value))
    except (TypeError, ValueError, InvalidOperation):
        result = Decimal(default)
    return max(Decimal("0"), result)


def _get_decimal_rate(setting_name: str, default: str) -> Decimal:
    """Get a decimal rate (0-100 percent) from settings with validation."""
    result = _get_decimal(setting_name, default)
    if result > Decimal("100"):
        return Decimal("100")
    return result


def _get_layer_order(setting_name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Get the pricing layer order, falling back when it names unknown layers."""
    value = getattr(settings, setting_name, default)
    try:
        layers = tuple(str(layer) for layer in value)
    except TypeError:
        return default
    if sorted(layers) != sorted(default):
        logger.warning(f"⚠️ [Config] Ignoring invalid {setting_name}={value!r}, using {default}")
        return default
    return layers


# ===============================================================================
# MONEY & PRECISION
# ===============================================================================

# Quantum applied to every monetary total, once, at the end of a calculation
MONEY_QUANTUM = Decimal("0.0001")

# Quantum for utilization percentages
PERCENT_QUANTUM = Decimal("0.01")

# Tolerance for the "=" and "!=" alert operators
EQUALITY_TOLERANCE = _get_decimal("USAGE_EQUALITY_TOLERANCE", "0.01")


# ===============================================================================
# PRICING RULES
# ===============================================================================

# Layering order for composed rule application (contract overrides, promotions, standard)
PRICING_LAYER_ORDER = _get_layer_order("USAGE_PRICING_LAYER_ORDER", ("contract", "promotional", "standard"))

# Default peak window used when a time restriction asks for peak/off-peak only
DEFAULT_PEAK_START_HOUR = _get_hour("USAGE_PEAK_START_HOUR", 8)
DEFAULT_PEAK_END_HOUR = _get_hour("USAGE_PEAK_END_HOUR", 18)


# ===============================================================================
# ALLOCATION
# ===============================================================================

# Lost compare-and-update races are retried this many times before giving up
ALLOCATION_MAX_RETRIES = _get_positive_int("USAGE_ALLOCATION_MAX_RETRIES", 3)

# Longest overflow chain followed before treating the chain as misconfigured
MAX_OVERFLOW_DEPTH = _get_positive_int("USAGE_MAX_OVERFLOW_DEPTH", 16)

# Bounded usage history kept on each pool
POOL_USAGE_HISTORY_SIZE = _get_positive_int("USAGE_POOL_HISTORY_SIZE", 100)


# ===============================================================================
# THRESHOLD ALERTS
# ===============================================================================

# Default warning/critical thresholds (percent) for new pools, buckets and alerts
DEFAULT_WARNING_THRESHOLD = _get_decimal_rate("USAGE_DEFAULT_WARNING_THRESHOLD", "80")
DEFAULT_CRITICAL_THRESHOLD = _get_decimal_rate("USAGE_DEFAULT_CRITICAL_THRESHOLD", "95")

# Ring buffer size for recent alert history on each alert
ALERT_HISTORY_SIZE = _get_positive_int("USAGE_ALERT_HISTORY_SIZE", 50)

# Look-back window for consecutive breaching evaluations
CONSECUTIVE_LOOKBACK_HOURS = _get_positive_int("USAGE_CONSECUTIVE_LOOKBACK_HOURS", 24)

# Default suppression window after a delivered notification
DEFAULT_SUPPRESSION_WINDOW_MINUTES = _get_positive_int("USAGE_SUPPRESSION_WINDOW_MINUTES", 60)


# ===============================================================================
# ASYNC TASKS
# ===============================================================================

# Timeout for queued notification delivery (seconds)
NOTIFICATION_TASK_TIMEOUT = _get_positive_int("USAGE_NOTIFICATION_TASK_TIMEOUT", 60)

# Default usage purchased by the auto-purchase automated action
DEFAULT_AUTO_PURCHASE_AMOUNT = _get_decimal("USAGE_DEFAULT_AUTO_PURCHASE_AMOUNT", "100")

# Queue post-allocation threshold evaluation instead of running it inline
DEFER_THRESHOLD_EVALUATION = bool(getattr(settings, "USAGE_DEFER_THRESHOLD_EVALUATION", False))
