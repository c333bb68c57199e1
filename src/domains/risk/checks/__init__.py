"""Transaction risk checks.

``default_checks()`` builds a fresh ordered list of the built-in checks; the
engine receives its list at construction, so new checks are added by passing
a longer list rather than by editing the engine.
"""

from .amount import HighValueTransactionCheck
from .base import RiskCheck
from .device import NewOrUntrustedDeviceCheck
from .velocity import RapidConsecutiveTransfersCheck, VelocityAnomalyCheck


def default_checks() -> list[RiskCheck]:
    """Built-in checks in evaluation (and flag-reason) order."""
    return [
        HighValueTransactionCheck(),
        RapidConsecutiveTransfersCheck(),
        VelocityAnomalyCheck(),
        NewOrUntrustedDeviceCheck(),
    ]


__all__ = [
    "RiskCheck",
    "default_checks",
    "HighValueTransactionCheck",
    "RapidConsecutiveTransfersCheck",
    "VelocityAnomalyCheck",
    "NewOrUntrustedDeviceCheck",
]
