"""
Payment Confirmation Monitor
Re-queries confirmations for payments that are pending with a submitted
transaction, or completed but not yet final. Never resubmits anything.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from models import CryptoPaymentStatus
from services.web3_service import Web3Service

logger = logging.getLogger(__name__)


async def run_payment_confirmation_monitor(service: Web3Service, batch_size: Optional[int] = None) -> Dict[str, int]:
    """
    Refresh one batch of unsettled payments

    Returns:
        Counts of payments checked, newly completed, and refresh errors
    """
    batch_size = batch_size or Config.PAYMENT_MONITOR_BATCH_SIZE
    stats = {"checked": 0, "completed": 0, "errors": 0}

    payments = await service.ledger.list_unsettled_payments(limit=batch_size)
    if not payments:
        logger.debug("✅ PAYMENT_MONITOR: No unsettled payments")
        return stats

    logger.info(f"🔎 PAYMENT_MONITOR: Checking {len(payments)} unsettled payment(s)")
    for payment_id, previous_status in payments:
        stats["checked"] += 1
        try:
            result = await service.verify_payment(payment_id)
        except Exception as e:
            logger.error(f"❌ PAYMENT_MONITOR: Error refreshing payment {payment_id}: {e}")
            stats["errors"] += 1
            continue
        if not result.ok:
            stats["errors"] += 1
            continue
        if (
            previous_status == CryptoPaymentStatus.PENDING.value
            and result.data["status"] == CryptoPaymentStatus.COMPLETED.value
        ):
            stats["completed"] += 1

    logger.info(
        f"✅ PAYMENT_MONITOR: checked={stats['checked']} completed={stats['completed']} errors={stats['errors']}"
    )
    return stats


def schedule_payment_confirmation_monitor(
    scheduler: AsyncIOScheduler,
    service: Web3Service,
    interval_seconds: Optional[int] = None,
):
    """Register the monitor on the application scheduler"""
    interval_seconds = interval_seconds or Config.PAYMENT_MONITOR_INTERVAL_SECONDS
    scheduler.add_job(
        run_payment_confirmation_monitor,
        trigger=IntervalTrigger(seconds=interval_seconds, start_date=datetime.now().replace(microsecond=0)),
        args=[service],
        id="payment_confirmation_monitor",
        name="🔎 Payment Confirmation Monitor - Settle Pending Crypto Payments",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
        replace_existing=True,
    )
    logger.info(f"✅ Payment confirmation monitor scheduled every {interval_seconds} seconds")
