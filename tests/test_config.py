"""
Test suite for config module
"""

import os
import pytest
from unittest.mock import patch
from decimal import Decimal
from datetime import datetime, timezone

from lending_engine.config import LendingConfig, reload_config, get_config
from lending_engine.exceptions import FeePolicyError
from lending_engine.fees import CalculationMode, FeePolicy


class TestLendingConfig:
    """Test configuration defaults and environment overrides"""

    def test_defaults(self):
        config = LendingConfig()

        assert config.use_sqlite is False
        assert config.api_port == 8090
        assert config.tolerance == Decimal('0.01')
        assert config.late_fee_overpayment_policy == "reject"
        assert not config.overpayment_applies_to_balance
        assert config.record_fee_history is True

    def test_config_from_env_vars(self):
        env_vars = {
            "LENDING_USE_SQLITE": "true",
            "LENDING_DATABASE_URL": "sqlite:///:memory:",
            "LENDING_AMOUNT_TOLERANCE": "0.05",
            "LENDING_LATE_FEE_OVERPAYMENT_POLICY": "apply_to_balance",
            "LENDING_DEFAULT_LATE_FEE_MODE": "compound",
        }

        with patch.dict(os.environ, env_vars):
            config = LendingConfig()

            assert config.use_sqlite is True
            assert config.database_url == "sqlite:///:memory:"
            assert config.tolerance == Decimal('0.05')
            assert config.overpayment_applies_to_balance
            assert config.default_fee_policy().calculation_mode == CalculationMode.COMPOUND

    def test_reload_config(self):
        with patch.dict(os.environ, {"LENDING_API_PORT": "9100"}):
            assert reload_config().api_port == 9100
            assert get_config().api_port == 9100
        reload_config()


class TestDefaultFeePolicy:
    """Test the tenant-wide default late fee policy"""

    def test_default_policy(self):
        config = LendingConfig(default_late_fee_rate="1.5", default_max_late_fee="250")

        assert config.default_fee_policy() == FeePolicy(
            enabled=True, rate_per_period=Decimal('1.5'), max_late_fee=Decimal('250')
        )

    def test_invalid_default_policy(self):
        config = LendingConfig(default_late_fee_mode="hourly")

        with pytest.raises(FeePolicyError):
            config.default_fee_policy()


class TestBusinessToday:
    """Test the business calendar date"""

    def test_business_today_in_utc(self):
        config = LendingConfig(business_timezone="UTC")
        assert config.business_today() == datetime.now(timezone.utc).date()
