"""Exchange rate oracle used to price crypto payments in fiat"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Optional

from config import Config
from services.web3_errors import RateUnavailable
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


class RateOracle(ABC):
    """Pluggable source of crypto -> fiat conversion rates"""

    @abstractmethod
    async def get_rate(self, currency: str, fiat_currency: str) -> Decimal:
        """
        Fiat value of one unit of `currency`

        Raises:
            RateUnavailable: No rate is known for the pair
        """


class ConfiguredRateOracle(RateOracle):
    """Rates from static configuration (EXCHANGE_RATES), quoted in the configured fiat currency"""

    def __init__(self, rates: Optional[Dict[str, Decimal]] = None, fiat_currency: Optional[str] = None):
        source = rates if rates is not None else Config.EXCHANGE_RATES
        self.rates = {currency.upper(): MonetaryDecimal.to_decimal(rate, "exchange_rate")
                      for currency, rate in source.items()}
        self.fiat_currency = (fiat_currency or Config.FIAT_CURRENCY).upper()

    async def get_rate(self, currency: str, fiat_currency: str) -> Decimal:
        if fiat_currency.upper() != self.fiat_currency:
            raise RateUnavailable(f"No rates quoted in {fiat_currency}")

        rate = self.rates.get(currency.upper())
        if rate is None or rate <= 0:
            logger.warning(f"⚠️ RATE_UNAVAILABLE: {currency}/{fiat_currency}")
            raise RateUnavailable(f"No exchange rate configured for {currency}/{fiat_currency}")
        return rate
