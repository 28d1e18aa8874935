"""
Feature flags for pledge automation.

Centralizes toggles for automated execution paths so they can be rolled out
gradually while admins keep manual control.
"""

import os
from typing import Dict
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class FeatureFlags:
    """Feature flags for automated execution and payments."""

    # Close and execute sessions with execution_rule=session_end from the scheduler
    ENABLE_AUTO_EXECUTION: bool = _flag("ENABLE_AUTO_EXECUTION")

    # Allow price feeds to trigger auto_target sell legs
    ENABLE_AUTO_SELL_TRIGGER: bool = _flag("ENABLE_AUTO_SELL_TRIGGER")

    # Payment stage runs against the simulated provider regardless of settings
    PAYMENT_TEST_MODE: bool = _flag("PAYMENT_TEST_MODE", "true")

    @classmethod
    def to_dict(cls) -> Dict[str, bool]:
        """Return all flags as dictionary for API responses."""
        return {
            "enableAutoExecution": cls.ENABLE_AUTO_EXECUTION,
            "enableAutoSellTrigger": cls.ENABLE_AUTO_SELL_TRIGGER,
            "paymentTestMode": cls.PAYMENT_TEST_MODE,
        }


# Global instance
feature_flags = FeatureFlags()
