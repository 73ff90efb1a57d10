"""
Notification delivery for the escrow core.

``notify()`` never blocks and never raises: it renders the message and puts
it on an in-process outbound queue. The scheduler drains the queue; each
item is stored as an in-app notification and, when the user has a linked
Telegram chat, sent through the bot. Failed deliveries are retried a
bounded number of times and then dropped with an error log.
"""

import asyncio
import html
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from telegram import Bot

from config import Config
from utils import format_currency

logger = logging.getLogger(__name__)


TEMPLATES = {
    'transaction_created': (
        "🛒 <b>New purchase started</b>\n\n"
        "Transaction <code>{code}</code> for {amount} is waiting for payment."
    ),
    'payment_pending': (
        "💳 <b>Payment pending</b>\n\n"
        "Pay {amount} for <code>{code}</code> before {deadline}."
    ),
    'payment_confirmed': (
        "💰 <b>Payment held in escrow</b>\n\n"
        "Your payment for <code>{code}</code> is held securely until you confirm the transfer."
    ),
    'sale_paid': (
        "🔔 <b>Payment received</b>\n\n"
        "The buyer paid for <code>{code}</code>. Transfer the reservation and mark it as transferred."
    ),
    'transfer_marked': (
        "📦 <b>Reservation transferred</b>\n\n"
        "The seller marked <code>{code}</code> as transferred. Confirm receipt, or funds are "
        "released automatically on {release_date}."
    ),
    'funds_incoming': (
        "✅ <b>Funds on the way</b>\n\n"
        "<code>{code}</code> is complete ({release}). {net_amount} will be paid out to you."
    ),
    'transaction_completed': (
        "✅ <b>Transaction complete</b>\n\n"
        "<code>{code}</code> is complete. Thank you for using escrow."
    ),
    'transaction_cancelled': (
        "❌ <b>Transaction cancelled</b>\n\n"
        "<code>{code}</code> was cancelled: {reason}"
    ),
    'transaction_refunded': (
        "💸 <b>Transaction refunded</b>\n\n"
        "<code>{code}</code> was refunded: {reason}"
    ),
    'dispute_opened': (
        "⚠️ <b>Dispute opened</b>\n\n"
        "Dispute <code>{protocol}</code> was opened on <code>{code}</code>. Funds stay held until it is resolved."
    ),
    'dispute_resolved': (
        "⚖️ <b>Dispute resolved</b>\n\n"
        "Dispute <code>{protocol}</code> on <code>{code}</code> was closed as {resolution}."
    ),
    'vendor_approval': (
        "🏷️ <b>Vendor approval</b>\n\n"
        "The vendor {vendor_status} the transfer of <code>{code}</code>."
    ),
}


def render_message(kind: str, context: Dict[str, Any]) -> str:
    """
    Render the HTML message for a notification kind.

    Context values are escaped; money values are formatted. Unknown kinds and
    missing placeholders fall back to a generic message.
    """
    values = {}
    for key, value in context.items():
        if key.endswith('amount'):
            try:
                value = format_currency(value)
            except ValueError:
                pass
        values[key] = html.escape(str(value))

    template = TEMPLATES.get(kind)
    if template is None:
        return f"🔔 {html.escape(kind.replace('_', ' '))}"

    try:
        return template.format(**values)
    except (KeyError, IndexError):
        logger.warning(f"Notification '{kind}' is missing context keys, sending generic text")
        return f"🔔 {html.escape(kind.replace('_', ' '))}"


@dataclass
class OutboundMessage:
    """One queued delivery."""
    user_id: Optional[str]
    kind: str
    text: str
    context: Dict[str, Any] = field(default_factory=dict)
    chat_id: Optional[int] = None
    attempts: int = 0
    stored: bool = False


class NotificationService:
    """
    Notification sink with an outbound queue.

    Attributes:
        store: Escrow store (for in-app rows and chat lookup)
        telegram_bot: Bot used for delivery (optional)
        max_attempts: Delivery attempts per message
    """

    def __init__(self, store: Any, config: Config, telegram_bot: Optional[Bot] = None):
        self.store = store
        self.config = config
        self.max_attempts = config.notification_max_attempts
        if telegram_bot is None and config.has_telegram_config:
            telegram_bot = Bot(token=config.telegram_bot_token)
        self.telegram_bot = telegram_bot
        self.queue: asyncio.Queue = asyncio.Queue()
        self.stats = {'delivered': 0, 'failed': 0, 'dropped': 0}

    def notify(self, user_id: str, kind: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Queue a notification for a user. Never raises."""
        try:
            context = dict(context or {})
            message = OutboundMessage(
                user_id=user_id,
                kind=kind,
                text=render_message(kind, context),
                context=context
            )
            self.queue.put_nowait(message)
        except Exception as e:
            logger.error(f"Failed to queue '{kind}' notification for {user_id}: {e}")

    def alert_admin(self, text: str) -> None:
        """Queue a plain message for the admin chat. Never raises."""
        if not self.config.admin_chat_id:
            logger.warning(f"Admin chat not configured, alert not sent: {text}")
            return
        try:
            self.queue.put_nowait(OutboundMessage(
                user_id=None,
                kind='admin_alert',
                text=f"🚨 <b>Admin alert</b>\n\n{html.escape(text)}",
                chat_id=int(self.config.admin_chat_id)
            ))
        except Exception as e:
            logger.error(f"Failed to queue admin alert: {e}")

    async def drain(self, max_items: int = 100) -> int:
        """
        Deliver up to ``max_items`` queued messages.

        Returns:
            Number of messages delivered
        """
        delivered = 0
        retry = []

        for _ in range(max_items):
            try:
                message = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break

            try:
                await self._deliver(message)
                delivered += 1
                self.stats['delivered'] += 1
            except Exception as e:
                message.attempts += 1
                self.stats['failed'] += 1
                if message.attempts < self.max_attempts:
                    logger.warning(
                        f"Notification '{message.kind}' for {message.user_id} failed "
                        f"(attempt {message.attempts}/{self.max_attempts}): {e}"
                    )
                    retry.append(message)
                else:
                    self.stats['dropped'] += 1
                    logger.error(
                        f"Dropping notification '{message.kind}' for {message.user_id} "
                        f"after {message.attempts} attempts: {e}"
                    )

        for message in retry:
            self.queue.put_nowait(message)

        return delivered

    async def _deliver(self, message: OutboundMessage) -> None:
        chat_id = message.chat_id

        if message.user_id is not None:
            # Retries only resend the Telegram part
            if not message.stored:
                await self.store.insert_notification(
                    message.user_id, message.kind, message.text, message.context
                )
                message.stored = True
            if chat_id is None:
                profile = await self.store.get_profile(message.user_id)
                chat_id = profile.get('telegram_chat_id') if profile else None

        if chat_id is None:
            return

        if not self.telegram_bot:
            logger.debug("Telegram bot not configured, skipping chat delivery")
            return

        await self.telegram_bot.send_message(
            chat_id=chat_id,
            text=message.text,
            parse_mode='HTML'
        )
