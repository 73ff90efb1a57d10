"""
Escrow Automation Module

Background jobs for the escrow system:
- Automatic release of expired escrow holds
- Payout and refund retries
- Expiry of unpaid transactions
- Delivery of queued notifications

Every job is safe to run on several instances at once: the work it does goes
through the same compare-and-set transitions as the API.

Dependencies:
    - APScheduler: For background job scheduling
    - escrow_service.py: For escrow operations
    - notifications.py: For the outbound queue
"""

import logging
import time
from typing import Optional, Dict, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from escrow_service import EscrowService
from notifications import NotificationService
from utils import utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_DRAIN_SECONDS = 15


class EscrowAutomation:
    """
    Automation service for the escrow system.

    Attributes:
        escrow_service: EscrowService used by the sweeps
        notifier: NotificationService whose queue is drained
        scheduler: APScheduler instance
    """

    def __init__(
        self,
        escrow_service: EscrowService,
        notifier: NotificationService,
        config: Config,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.escrow_service = escrow_service
        self.notifier = notifier
        self.config = config
        self.scheduler = scheduler or AsyncIOScheduler(timezone='UTC')
        self.is_running = False

        # Statistics
        self.stats = {
            'auto_releases': 0,
            'payout_retries': 0,
            'refund_retries': 0,
            'expired_unpaid': 0,
            'notifications_sent': 0,
            'last_run': {}
        }

    async def start(self) -> None:
        """Start the automation scheduler."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        self._schedule_tasks()
        self.scheduler.start()
        self.is_running = True
        self.stats['start_time'] = utcnow()

        logger.info("Escrow automation started successfully")
        logger.info(f"Scheduled jobs: {len(self.scheduler.get_jobs())}")

    async def stop(self) -> None:
        """Stop the automation scheduler and flush pending notifications."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        await self.deliver_notifications()
        logger.info("Escrow automation stopped")

    def _schedule_tasks(self) -> None:
        """Schedule all automation tasks."""

        self.scheduler.add_job(
            self.auto_release_payments,
            trigger=IntervalTrigger(minutes=self.config.auto_release_interval_minutes),
            id='auto_release_payments',
            name='Auto Release Payments',
            max_instances=1,
            misfire_grace_time=300
        )

        self.scheduler.add_job(
            self.retry_payouts,
            trigger=IntervalTrigger(minutes=self.config.payout_retry_interval_minutes),
            id='retry_payouts',
            name='Retry Failed Payouts',
            max_instances=1,
            misfire_grace_time=300
        )

        self.scheduler.add_job(
            self.retry_refunds,
            trigger=IntervalTrigger(minutes=self.config.payout_retry_interval_minutes),
            id='retry_refunds',
            name='Retry Failed Refunds',
            max_instances=1,
            misfire_grace_time=300
        )

        self.scheduler.add_job(
            self.expire_unpaid,
            trigger=IntervalTrigger(minutes=self.config.unpaid_expiry_interval_minutes),
            id='expire_unpaid',
            name='Expire Unpaid Transactions',
            max_instances=1,
            misfire_grace_time=300
        )

        self.scheduler.add_job(
            self.deliver_notifications,
            trigger=IntervalTrigger(seconds=NOTIFICATION_DRAIN_SECONDS),
            id='deliver_notifications',
            name='Deliver Notifications',
            max_instances=1,
            coalesce=True
        )

        logger.info("All automation tasks scheduled")

    async def auto_release_payments(self) -> int:
        """
        Complete TRANSFER_PENDING transactions whose escrow period has ended.

        Process:
        1. Find transactions with escrow_release_date in the past
        2. Complete each through the same compare-and-set as a manual confirmation
        3. Payout and notifications follow from the completion
        """
        logger.info("Starting auto-release payments task")
        start_time = time.monotonic()

        try:
            released = await self.escrow_service.process_auto_releases()
        except Exception as e:
            logger.error(f"Auto-release payments task failed: {e}", exc_info=True)
            return 0

        self.stats['auto_releases'] += len(released)
        self.stats['last_run']['auto_release'] = utcnow()

        duration = time.monotonic() - start_time
        logger.info(f"Auto-release task completed: {len(released)} released in {duration:.2f}s")
        return len(released)

    async def retry_payouts(self) -> Dict[str, int]:
        """Re-attempt payouts whose backoff has elapsed."""
        try:
            result = await self.escrow_service.retry_pending_payouts()
        except Exception as e:
            logger.error(f"Payout retry task failed: {e}", exc_info=True)
            return {}

        self.stats['payout_retries'] += result['attempted']
        self.stats['last_run']['payout_retry'] = utcnow()
        if result['attempted']:
            logger.info(
                f"Payout retry completed: {result['succeeded']} succeeded, {result['failed']} failed"
            )
        return result

    async def retry_refunds(self) -> Dict[str, int]:
        """Re-attempt refunds the gateway did not accept the first time."""
        try:
            result = await self.escrow_service.retry_pending_refunds()
        except Exception as e:
            logger.error(f"Refund retry task failed: {e}", exc_info=True)
            return {}

        self.stats['refund_retries'] += result['attempted']
        self.stats['last_run']['refund_retry'] = utcnow()
        if result['attempted']:
            logger.info(
                f"Refund retry completed: {result['succeeded']} succeeded, {result['failed']} failed"
            )
        return result

    async def expire_unpaid(self) -> int:
        """Cancel transactions whose payment deadline has passed."""
        try:
            expired = await self.escrow_service.expire_unpaid_transactions()
        except Exception as e:
            logger.error(f"Unpaid expiry task failed: {e}", exc_info=True)
            return 0

        self.stats['expired_unpaid'] += len(expired)
        self.stats['last_run']['unpaid_expiry'] = utcnow()
        return len(expired)

    async def deliver_notifications(self) -> int:
        try:
            delivered = await self.notifier.drain()
        except Exception as e:
            logger.error(f"Notification delivery failed: {e}", exc_info=True)
            return 0

        self.stats['notifications_sent'] += delivered
        return delivered

    def get_stats(self) -> Dict[str, Any]:
        """Get automation statistics."""
        start_time = self.stats.get('start_time')
        return {
            'is_running': self.is_running,
            'scheduled_jobs': len(self.scheduler.get_jobs()) if self.is_running else 0,
            'stats': self.stats,
            'uptime': (utcnow() - start_time).total_seconds() if start_time else 0
        }
