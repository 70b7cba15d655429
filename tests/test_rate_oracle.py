"""
Configured exchange rate oracle
"""

from decimal import Decimal

import pytest

from services.rate_oracle import ConfiguredRateOracle
from services.web3_errors import RateUnavailable


class TestConfiguredRateOracle:

    @pytest.mark.asyncio
    async def test_returns_configured_rate(self):
        oracle = ConfiguredRateOracle({"eth": "2000.5"}, fiat_currency="usd")
        assert await oracle.get_rate("ETH", "USD") == Decimal("2000.5")

    @pytest.mark.asyncio
    async def test_unknown_currency(self):
        oracle = ConfiguredRateOracle({"ETH": Decimal("2000")}, fiat_currency="USD")
        with pytest.raises(RateUnavailable):
            await oracle.get_rate("USDC", "USD")

    @pytest.mark.asyncio
    async def test_other_fiat_currency(self):
        oracle = ConfiguredRateOracle({"ETH": Decimal("2000")}, fiat_currency="USD")
        with pytest.raises(RateUnavailable):
            await oracle.get_rate("ETH", "EUR")

    @pytest.mark.asyncio
    async def test_non_positive_rate_is_unavailable(self):
        oracle = ConfiguredRateOracle({"ETH": "0"}, fiat_currency="USD")
        with pytest.raises(RateUnavailable):
            await oracle.get_rate("ETH", "USD")
