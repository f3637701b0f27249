"""
Usage billing error taxonomy for Ledgerline Platform.

Capacity and restriction failures degrade to uncovered usage priced at the
standard rate. Configuration errors are Django ValidationErrors raised at
write time and never surface mid-allocation.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class UsageBillingError(Exception):
    """Base class for all usage billing errors"""


class NoApplicableRule(UsageBillingError):
    """No effective pricing rule matches the usage event"""

    def __init__(self, client_id: Any, service_type: str, message: str | None = None) -> None:
        self.client_id = client_id
        self.service_type = service_type
        super().__init__(message or f"No applicable pricing rule for client {client_id} and service '{service_type}'")


class CapacityExceeded(UsageBillingError):
    """Allocation refused with no overflow or overallocation available"""

    def __init__(self, target: str, requested: Decimal, uncovered: Decimal) -> None:
        self.target = target
        self.requested = requested
        self.uncovered = uncovered
        super().__init__(f"{target}: {uncovered} of {requested} could not be allocated")


class RestrictionViolation(UsageBillingError):
    """A time, geographic or feature restriction blocks allocation entirely"""

    def __init__(self, target: str, reason: str) -> None:
        self.target = target
        self.reason = reason
        super().__init__(f"{target}: {reason}")


class OverflowCycle(UsageBillingError):
    """An overflow chain loops back onto itself"""

    def __init__(self, chain: list[Any]) -> None:
        self.chain = chain
        super().__init__("Overflow chain forms a cycle: " + " → ".join(str(item) for item in chain))


class ThresholdEvaluationSkipped(UsageBillingError):
    """Monitor inactive, stale or suppressed. Logged as a no-op, never an error."""

    def __init__(self, alert: str, reason: str) -> None:
        self.alert = alert
        self.reason = reason
        super().__init__(f"{alert}: {reason}")


class ConcurrentAllocationError(UsageBillingError):
    """A compare-and-update lost its race after every retry"""

    def __init__(self, target: str, attempts: int) -> None:
        self.target = target
        self.attempts = attempts
        super().__init__(f"{target}: revision changed underneath {attempts} allocation attempts")
