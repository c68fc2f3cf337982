"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from orderflow.core.config import get_settings, Settings, EnvironmentMode, EffectsBackend
from orderflow.core.exceptions import (
    TransitionError,
    NotFound,
    StaleVersion,
    ClaimDenied,
    InvalidTransition,
    EffectDeliveryError,
)

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "EffectsBackend",
    "TransitionError",
    "NotFound",
    "StaleVersion",
    "ClaimDenied",
    "InvalidTransition",
    "EffectDeliveryError",
]
