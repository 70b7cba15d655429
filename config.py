"""Configuration management for the W3bStore ledger core"""

import os
import json
import logging
from decimal import Decimal
from typing import Dict

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _env_json(name: str, default: Dict) -> Dict:
    """Parse a JSON object from the environment, falling back to the default"""
    raw = os.getenv(name)
    if not raw:
        return dict(default)
    try:
        value = json.loads(raw)
    except ValueError:
        logger.error(f"❌ CONFIG_ERROR: {name} is not valid JSON - using defaults")
        return dict(default)
    if not isinstance(value, dict):
        logger.error(f"❌ CONFIG_ERROR: {name} must be a JSON object - using defaults")
        return dict(default)
    return value


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database (PostgreSQL in production, rewritten to asyncpg by database.py)
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./w3bstore.db")

    # Ledger node
    LEDGER_RPC_URL = os.getenv("LEDGER_RPC_URL", "http://127.0.0.1:8545")
    LEDGER_RPC_TIMEOUT = int(os.getenv("LEDGER_RPC_TIMEOUT", "30"))
    LEDGER_INCLUSION_TIMEOUT = float(os.getenv("LEDGER_INCLUSION_TIMEOUT", "120"))
    LEDGER_POLL_INTERVAL = float(os.getenv("LEDGER_POLL_INTERVAL", "2.0"))
    # Only read-only queries are retried; submissions never are
    LEDGER_READ_RETRY_ATTEMPTS = int(os.getenv("LEDGER_READ_RETRY_ATTEMPTS", "3"))
    LEDGER_CIRCUIT_FAILURE_THRESHOLD = int(os.getenv("LEDGER_CIRCUIT_FAILURE_THRESHOLD", "5"))
    LEDGER_CIRCUIT_RECOVERY_TIMEOUT = int(os.getenv("LEDGER_CIRCUIT_RECOVERY_TIMEOUT", "60"))

    # Contracts
    NFT_RECEIPT_CONTRACT_ADDRESS = os.getenv("NFT_RECEIPT_CONTRACT_ADDRESS", "")
    LOYALTY_TOKEN_CONTRACT_ADDRESS = os.getenv("LOYALTY_TOKEN_CONTRACT_ADDRESS", "")
    LOYALTY_TOKEN_DECIMALS = int(os.getenv("LOYALTY_TOKEN_DECIMALS", "18"))
    STABLECOIN_CONTRACTS = _env_json("STABLECOIN_CONTRACTS", {"USDT": "", "USDC": ""})
    STABLECOIN_DECIMALS = _env_json("STABLECOIN_DECIMALS", {"USDT": 6, "USDC": 6})
    NATIVE_DECIMALS = 18

    # Store accounts (keys are held by the node, custody is out of scope)
    STORE_WALLET_ADDRESS = os.getenv("STORE_WALLET_ADDRESS", "")
    SIGNER_ADDRESS = os.getenv("SIGNER_ADDRESS", "")

    # Loyalty policy: one token per REWARD_UNIT_VALUE of fiat spent
    REWARD_UNIT_VALUE = _env_decimal("REWARD_UNIT_VALUE", "10")

    # Pricing
    FIAT_CURRENCY = os.getenv("FIAT_CURRENCY", "USD")
    EXCHANGE_RATES = {
        currency: Decimal(str(rate))
        for currency, rate in _env_json("EXCHANGE_RATES", {}).items()
    }

    # Confirmations required before a payment is treated as final, per currency
    FINALITY_CONFIRMATIONS = {
        currency: int(count)
        for currency, count in _env_json(
            "FINALITY_CONFIRMATIONS", {"ETH": 12, "USDT": 12, "USDC": 12}
        ).items()
    }
    DEFAULT_FINALITY_CONFIRMATIONS = int(os.getenv("DEFAULT_FINALITY_CONFIRMATIONS", "12"))

    # Background jobs
    PAYMENT_MONITOR_INTERVAL_SECONDS = int(os.getenv("PAYMENT_MONITOR_INTERVAL_SECONDS", "60"))
    PAYMENT_MONITOR_BATCH_SIZE = int(os.getenv("PAYMENT_MONITOR_BATCH_SIZE", "100"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Ledger Core Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Ledger RPC: {Config.LEDGER_RPC_URL}")
        logger.info(f"   Inclusion timeout: {Config.LEDGER_INCLUSION_TIMEOUT}s")
        logger.info(
            f"   Receipt contract: {Config.NFT_RECEIPT_CONTRACT_ADDRESS or 'NOT CONFIGURED'}"
        )
        logger.info(
            f"   Loyalty contract: {Config.LOYALTY_TOKEN_CONTRACT_ADDRESS or 'NOT CONFIGURED'}"
        )
        if not Config.STORE_WALLET_ADDRESS:
            logger.warning("⚠️ STORE_WALLET_ADDRESS not configured - payments cannot settle")
        if not Config.EXCHANGE_RATES:
            logger.warning("⚠️ EXCHANGE_RATES empty - configure a rate oracle before taking payments")
