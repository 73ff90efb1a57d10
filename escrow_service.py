"""
Escrow Service Module.

Business logic for the reservation escrow: the transaction state machine,
fees, the charge/payout flow through the payment gateway, the escrow timer
(automatic release), cancellation and refunds.

Every status change is a compare-and-set in the store, so concurrent
requests and sweep workers on different instances can race safely: the
winner applies the side effects, the loser gets InvalidState or
AlreadyCompleted and does nothing.

Dependencies:
    - escrow_database.py: persistence (compare-and-set updates)
    - payment_gateway.py: charges, payouts and refunds
    - notifications.py: outbound notifications
    - fraud_scoring.py: advisory risk scores
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Iterable, Tuple

from config import Config, get_config
from escrow_database import DuplicateRecordError
from fraud_scoring import FraudScore, score_listing, score_transaction
from payment_gateway import GatewayError, GatewayUnavailable
from utils import utcnow, to_money, generate_code, sanitize_input, mask_sensitive_data

logger = logging.getLogger(__name__)


# ==================== ERRORS ====================

class EscrowError(Exception):
    """Base exception for escrow-related errors."""
    status_code = 400
    code = 'EscrowError'

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(EscrowError):
    """Raised when a request is malformed."""
    code = 'ValidationError'


class RequiredFieldError(ValidationError):
    """Raised when a conditionally required field is missing."""
    code = 'Required'


class MissingIdentityError(EscrowError):
    """Raised when the payer has no tax id registered."""
    code = 'CPF_REQUIRED'


class TooEarlyError(EscrowError):
    """Raised when automatic release is attempted before the deadline."""
    code = 'TooEarly'


class ForbiddenError(EscrowError):
    """Raised when the caller lacks the required relationship to the record."""
    status_code = 403
    code = 'Forbidden'


class NotFoundError(EscrowError):
    status_code = 404
    code = 'NotFound'


class InvalidStateError(EscrowError):
    """Raised when an operation is illegal in the current lifecycle phase."""
    status_code = 409
    code = 'InvalidState'


class ConflictError(EscrowError):
    """Raised when a duplicate active record exists."""
    status_code = 409
    code = 'Conflict'


class AlreadyExistsError(ConflictError):
    code = 'AlreadyExists'


class AlreadyCompletedError(EscrowError):
    """Raised when the transaction is already completed."""
    status_code = 409
    code = 'AlreadyCompleted'


class GoneError(EscrowError):
    status_code = 410
    code = 'Gone'


class ProtocolGenerationFailedError(EscrowError):
    """Raised when unique code generation exhausts its retries."""
    status_code = 500
    code = 'ProtocolGenerationFailed'


# ==================== STATES ====================

class TransactionStatus(str, Enum):
    """Transaction lifecycle states."""
    INITIATED = "INITIATED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    ESCROW_HELD = "ESCROW_HELD"
    TRANSFER_PENDING = "TRANSFER_PENDING"
    COMPLETED = "COMPLETED"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    PIX = "PIX"
    CARD = "CARD"
    BOLETO = "BOLETO"


class DisputeOutcome(str, Enum):
    """Administrative decisions applied to a resolved dispute's transaction."""
    REOPEN_TRANSFER = "reopen_transfer"
    REFUND = "refund"
    CANCEL = "cancel"


S = TransactionStatus

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.CANCELLED, S.REFUNDED})

ALLOWED_TRANSITIONS = {
    S.INITIATED: {S.AWAITING_PAYMENT, S.CANCELLED},
    S.AWAITING_PAYMENT: {S.PAYMENT_CONFIRMED, S.CANCELLED},
    S.PAYMENT_CONFIRMED: {S.ESCROW_HELD, S.TRANSFER_PENDING, S.CANCELLED, S.REFUNDED},
    S.ESCROW_HELD: {S.TRANSFER_PENDING, S.DISPUTE_OPENED, S.CANCELLED, S.REFUNDED},
    S.TRANSFER_PENDING: {S.COMPLETED, S.DISPUTE_OPENED, S.CANCELLED, S.REFUNDED},
    S.DISPUTE_OPENED: {S.DISPUTE_RESOLVED, S.REFUNDED},
    S.DISPUTE_RESOLVED: {S.TRANSFER_PENDING, S.REFUNDED, S.CANCELLED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
    S.REFUNDED: set(),
}

# Funds are with the platform in these states
FUNDED_STATUSES = frozenset({
    S.PAYMENT_CONFIRMED, S.ESCROW_HELD, S.TRANSFER_PENDING, S.DISPUTE_OPENED, S.DISPUTE_RESOLVED,
})

CANCELLABLE_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if S.CANCELLED in targets
)

REFUNDABLE_STATUSES = FUNDED_STATUSES

SYSTEM_ACTOR = 'system'


def can_transition(current: str, target: str) -> bool:
    """Whether ``current -> target`` is a legal edge."""
    return S(target) in ALLOWED_TRANSITIONS.get(S(current), set())


def _values(statuses: Iterable[TransactionStatus]) -> List[str]:
    return [S(status).value for status in statuses]


# ==================== FEES ====================

@dataclass(frozen=True)
class FeeBreakdown:
    agreed_price: Decimal
    platform_fee: Decimal
    platform_fee_rate: Decimal
    seller_net_amount: Decimal
    buyer_fee: Decimal
    buyer_total: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_fees(
    price: Any,
    seller_fee_rate: Decimal,
    buyer_fee_rate: Decimal = Decimal('0'),
    minimum_fee: Decimal = Decimal('0')
) -> FeeBreakdown:
    """
    Compute the commercial terms of a transaction once, at creation.

    Args:
        price: Agreed price
        seller_fee_rate: Platform fee rate deducted from the seller's side
        buyer_fee_rate: Service fee rate added on the buyer's side
        minimum_fee: Floor for the platform fee

    Returns:
        FeeBreakdown where ``seller_net_amount + platform_fee == agreed_price``

    Raises:
        ValidationError: If the price is not positive or does not cover the fee

    Example:
        >>> calculate_fees(1000, Decimal('0.05')).seller_net_amount
        Decimal('950.00')
    """
    try:
        agreed_price = to_money(price)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    if agreed_price <= 0:
        raise ValidationError(f"Price must be positive, got {agreed_price}")

    platform_fee = max(to_money(minimum_fee), to_money(agreed_price * seller_fee_rate))
    seller_net_amount = to_money(agreed_price - platform_fee)
    if seller_net_amount <= 0:
        raise ValidationError(f"Price {agreed_price} does not cover the platform fee {platform_fee}")

    buyer_fee = to_money(agreed_price * buyer_fee_rate)
    return FeeBreakdown(
        agreed_price=agreed_price,
        platform_fee=platform_fee,
        platform_fee_rate=Decimal(seller_fee_rate),
        seller_net_amount=seller_net_amount,
        buyer_fee=buyer_fee,
        buyer_total=to_money(agreed_price + buyer_fee)
    )


# ==================== SERVICE ====================

class EscrowService:
    """
    Core escrow business logic service.

    Attributes:
        store: EscrowDatabase (or any object with the same methods)
        gateway: PaymentGateway
        notifier: NotificationService
        config: Configuration instance
    """

    CODE_PREFIX = 'TXN'
    CODE_LENGTH = 4
    MAX_CODE_ATTEMPTS = 5
    LISTING_ACTIVE = 'ACTIVE'
    LISTING_RESERVED = 'RESERVED'
    LISTING_SOLD = 'SOLD'
    PAGE_SIZE = 20
    MAX_PAGE_SIZE = 50
    COHORT_SIZE = 200
    # A charge row without a gateway id younger than this many gateway
    # timeouts may still have its create call running
    CHARGE_CLAIM_TIMEOUTS = 3
    REFUNDABLE_CHARGE_STATUSES = ('PENDING', 'SUCCEEDED', 'FAILED')

    def __init__(
        self,
        store: Any,
        gateway: Any,
        notifier: Any,
        config: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.config = config or get_config()
        self.clock = clock
        logger.info("EscrowService initialized successfully")

    def _now(self) -> datetime:
        return self.clock()

    # ==================== HELPERS ====================

    async def get_transaction_or_404(self, transaction_id: int) -> Dict[str, Any]:
        transaction = await self.store.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    @staticmethod
    def is_party(transaction: Dict[str, Any], user_id: str) -> bool:
        return user_id in (transaction['buyer_id'], transaction['seller_id'])

    def check_transaction_state(
        self,
        transaction: Dict[str, Any],
        allowed_states: Iterable[TransactionStatus],
        target: Optional[TransactionStatus] = None
    ) -> None:
        """
        Verify transaction is in an allowed state.

        Raises:
            AlreadyCompletedError: If completing an already completed transaction
            InvalidStateError: If the state is not allowed
        """
        current = transaction['status']
        if target == S.COMPLETED and current == S.COMPLETED.value:
            raise AlreadyCompletedError(f"Transaction {transaction['code']} is already completed")

        allowed = _values(allowed_states)
        if current not in allowed:
            raise InvalidStateError(
                f"Invalid state transition for {transaction['code']}. "
                f"Current state: {current}, allowed states: {allowed}",
                current_status=current
            )

    async def _transition(
        self,
        transaction: Dict[str, Any],
        expected: Iterable[TransactionStatus],
        target: TransactionStatus,
        fields: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Compare-and-set the transaction status.

        Raises:
            AlreadyCompletedError / InvalidStateError: When another writer won
        """
        expected = [S(status) for status in expected]
        for status in expected:
            if target not in ALLOWED_TRANSITIONS[status]:
                raise InvalidStateError(f"Illegal transition {status.value} -> {target.value}")

        updated = await self.store.transition_transaction(
            transaction['id'], _values(expected), target.value, fields or {}
        )
        if updated is None:
            current = await self.get_transaction_or_404(transaction['id'])
            logger.warning(
                f"Lost status race on {transaction['code']}: wanted {target.value}, "
                f"found {current['status']}"
            )
            if target == S.COMPLETED and current['status'] == S.COMPLETED.value:
                raise AlreadyCompletedError(f"Transaction {current['code']} is already completed")
            raise InvalidStateError(
                f"Transaction {current['code']} changed to {current['status']}",
                current_status=current['status']
            )

        logger.info(
            f"Transaction {updated['code']}: {transaction['status']} -> {updated['status']}"
        )
        return updated

    def _notify_parties(self, transaction: Dict[str, Any], kind: str, **context: Any) -> None:
        context.setdefault('code', transaction['code'])
        for user_id in (transaction['buyer_id'], transaction['seller_id']):
            self.notifier.notify(user_id, kind, context)

    async def _release_listing(self, transaction: Dict[str, Any]) -> None:
        await self.store.update_listing_status(
            transaction['listing_id'], self.LISTING_ACTIVE, [self.LISTING_RESERVED]
        )

    # ==================== CREATION ====================

    async def create_transaction(
        self,
        listing_id: int,
        buyer_id: str,
        quantity: int = 1,
        buyer_ip: Optional[str] = None,
        buyer_first_viewed_at: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Start a purchase of a listing.

        Raises:
            NotFoundError: Unknown listing or buyer
            InvalidStateError: Listing not active
            ValidationError: Buyer is the seller, or bad quantity
            ConflictError: Buyer already has an open transaction on the listing
            ProtocolGenerationFailedError: Code generation exhausted its retries
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        listing = await self.store.get_listing(listing_id)
        if not listing:
            raise NotFoundError(f"Listing not found: {listing_id}")
        if listing['status'] != self.LISTING_ACTIVE:
            raise InvalidStateError(f"Listing {listing_id} is not available ({listing['status']})")
        if listing['seller_id'] == buyer_id:
            raise ValidationError("Sellers cannot buy their own listing")

        buyer = await self.store.get_profile(buyer_id)
        if not buyer:
            raise NotFoundError(f"Profile not found: {buyer_id}")

        open_transaction = await self.store.find_open_transaction(
            listing_id, buyer_id, _values(TERMINAL_STATUSES)
        )
        if open_transaction:
            raise ConflictError(
                f"Buyer already has an open transaction on listing {listing_id}",
                transaction_code=open_transaction['code']
            )

        fees = calculate_fees(
            to_money(listing['asking_price']) * quantity,
            self.config.seller_fee_rate,
            self.config.buyer_fee_rate,
            self.config.minimum_platform_fee
        )
        now = self._now()
        fields = {
            'listing_id': listing_id,
            'buyer_id': buyer_id,
            'seller_id': listing['seller_id'],
            'quantity': quantity,
            **fees.to_dict(),
            'status': S.INITIATED.value,
            'payment_deadline': now + timedelta(hours=self.config.payment_deadline_hours),
            'buyer_ip': buyer_ip,
            'buyer_first_viewed_at': buyer_first_viewed_at,
            'created_at': now,
            'updated_at': now,
        }

        transaction = None
        for attempt in range(1, self.MAX_CODE_ATTEMPTS + 1):
            fields['code'] = generate_code(self.CODE_PREFIX, self.CODE_LENGTH, now.year)
            try:
                transaction = await self.store.insert_transaction(dict(fields))
                break
            except DuplicateRecordError:
                logger.warning(f"Transaction code collision on attempt {attempt}: {fields['code']}")

        if transaction is None:
            raise ProtocolGenerationFailedError(
                f"Could not generate a unique transaction code after {self.MAX_CODE_ATTEMPTS} attempts"
            )

        logger.info(
            f"Transaction {transaction['code']} created: listing={listing_id}, "
            f"price={fees.agreed_price}, fee={fees.platform_fee}, net={fees.seller_net_amount}"
        )

        await self._review_transaction_risk(transaction, buyer, listing)

        self.notifier.notify(transaction['seller_id'], 'transaction_created', {
            'code': transaction['code'],
            'amount': fees.agreed_price,
        })
        return transaction

    # ==================== FRAUD ====================

    async def _review_transaction_risk(
        self,
        transaction: Dict[str, Any],
        buyer: Optional[Dict[str, Any]],
        listing: Optional[Dict[str, Any]]
    ) -> Optional[FraudScore]:
        """Score a new transaction and queue it for review when risky. Never raises."""
        try:
            result = await self.assess_transaction_risk(transaction, buyer=buyer, listing=listing)
        except Exception as e:
            logger.error(f"Fraud scoring failed for {transaction['code']}: {e}")
            return None
        return result

    async def assess_transaction_risk(
        self,
        transaction: Dict[str, Any],
        buyer: Optional[Dict[str, Any]] = None,
        listing: Optional[Dict[str, Any]] = None,
        enqueue: bool = True
    ) -> FraudScore:
        """
        Score a transaction; high and critical results go to the review queue.
        """
        now = self._now()
        buyer = buyer or await self.store.get_profile(transaction['buyer_id'])
        seller = await self.store.get_profile(transaction['seller_id'])
        listing = listing or await self.store.get_listing(transaction['listing_id'])
        recent = await self.store.count_buyer_transactions_since(
            transaction['buyer_id'], now - timedelta(hours=24)
        )

        result = score_transaction(
            transaction, buyer, seller, listing,
            now=now, recent_buyer_transactions=recent
        )
        logger.info(f"Fraud score for {transaction['code']}: {result.score} ({result.risk})")

        if enqueue and result.risk in ('high', 'critical'):
            await self.store.enqueue_fraud_review(
                'transaction', transaction['id'], result.score, result.risk,
                [asdict(signal) for signal in result.signals]
            )
            logger.warning(f"Transaction {transaction['code']} queued for fraud review")
        return result

    async def assess_listing_risk(self, listing_id: int, enqueue: bool = True) -> FraudScore:
        """Score a listing against the active cohort."""
        listing = await self.store.get_listing(listing_id)
        if not listing:
            raise NotFoundError(f"Listing not found: {listing_id}")

        seller = await self.store.get_profile(listing['seller_id'])
        cohort = {
            item['id']: item
            for item in await self.store.get_active_listings(None, listing_id, self.COHORT_SIZE)
        }
        for item in await self.store.get_seller_listings(listing['seller_id'], listing_id):
            cohort.setdefault(item['id'], item)

        result = score_listing(listing, seller, list(cohort.values()), now=self._now())
        logger.info(f"Fraud score for listing {listing_id}: {result.score} ({result.risk})")

        if enqueue and result.risk in ('high', 'critical'):
            await self.store.enqueue_fraud_review(
                'listing', listing_id, result.score, result.risk,
                [asdict(signal) for signal in result.signals]
            )
        return result

    # ==================== PAYMENT FLOW ====================

    async def create_payment(self, transaction_id: int, actor_id: str, method: str) -> Dict[str, Any]:
        """
        Create the buyer's charge and move the transaction to AWAITING_PAYMENT.

        Returns:
            Dict with ``transaction``, ``payment`` and gateway ``instructions``

        Raises:
            ForbiddenError: Caller is not the buyer
            ValidationError: Unknown method
            InvalidStateError: Transaction not INITIATED
            AlreadyExistsError: A charge exists at the gateway or is still being created
            MissingIdentityError: Buyer has no tax id
            GatewayError: The gateway rejected the charge
            GatewayUnavailable: Outcome unknown; a later call adopts the charge if it exists
        """
        transaction = await self.get_transaction_or_404(transaction_id)
        if actor_id != transaction['buyer_id']:
            raise ForbiddenError("Only the buyer can pay for this transaction")

        try:
            method = PaymentMethod(str(method).upper()).value
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {method}")

        self.check_transaction_state(transaction, [S.INITIATED])

        existing = await self.store.get_active_payment(transaction_id, 'charge')
        if existing and existing.get('gateway_id'):
            raise AlreadyExistsError(
                f"A payment already exists for {transaction['code']}",
                gateway_id=existing['gateway_id']
            )
        if existing:
            if self._charge_in_flight(existing):
                raise AlreadyExistsError(
                    f"A payment is already being created for {transaction['code']}; try again shortly"
                )
            recovered = await self._recover_charge(existing, transaction)
            if recovered:
                return recovered

        buyer = await self.store.get_profile(transaction['buyer_id'])
        if not buyer or not buyer.get('tax_id'):
            raise MissingIdentityError("A CPF is required to pay; add it to your profile")

        try:
            payment = await self.store.insert_payment({
                'transaction_id': transaction_id,
                'direction': 'charge',
                'payer_id': transaction['buyer_id'],
                'payee_id': transaction['seller_id'],
                'gross_amount': transaction['buyer_total'],
                'net_amount': transaction['seller_net_amount'],
                'platform_fee': transaction['platform_fee'],
                'method': method,
                'status': 'PENDING',
            })
        except DuplicateRecordError as e:
            raise AlreadyExistsError(f"A payment is already being created for {transaction['code']}") from e

        logger.info(
            f"Creating {method} charge for {transaction['code']} "
            f"(payer tax id {mask_sensitive_data(buyer['tax_id'])})"
        )
        attempts = (payment.get('attempts') or 0) + 1
        try:
            charge = await self.gateway.create_charge(
                buyer, transaction['buyer_total'], method, transaction['code']
            )
        except GatewayUnavailable as e:
            # Outcome unknown: the row stays PENDING without a gateway id
            # until a lookup by reference or a webhook settles it.
            await self.store.update_payment(payment['id'], {'last_error': str(e), 'attempts': attempts})
            logger.error(f"Charge creation for {transaction['code']} unconfirmed: {e}")
            raise
        except GatewayError as e:
            await self.store.update_payment(payment['id'], {
                'status': 'FAILED',
                'last_error': str(e),
                'attempts': attempts,
            })
            await self.store.increment_failed_payment_attempts(transaction_id)
            logger.error(f"Charge creation failed for {transaction['code']}: {e}")
            raise

        return await self._charge_created(transaction, payment, charge, attempts)

    def _charge_in_flight(self, payment: Dict[str, Any]) -> bool:
        created_at = payment.get('created_at')
        if created_at is None:
            return False
        window = timedelta(seconds=self.config.gateway_timeout * self.CHARGE_CLAIM_TIMEOUTS)
        return self._now() - created_at < window

    async def _recover_charge(
        self,
        payment: Dict[str, Any],
        transaction: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Settle a charge row whose create call never returned a gateway id.

        The gateway is asked for a charge carrying the transaction code. If
        it has one, the row adopts it and the payment proceeds as if the
        create call had answered; if not, the row is closed as FAILED and
        None is returned. Lookup failures propagate and leave the row as is.
        """
        charge = await self.gateway.find_charge(transaction['code'])
        if charge is None:
            logger.info(f"No gateway charge behind payment {payment['id']} for {transaction['code']}")
            await self.store.update_payment(payment['id'], {'status': 'FAILED'})
            return None

        logger.warning(f"Adopting gateway charge {charge['gateway_id']} for {transaction['code']}")
        return await self._charge_created(transaction, payment, charge, payment.get('attempts') or 1)

    async def _charge_created(
        self,
        transaction: Dict[str, Any],
        payment: Dict[str, Any],
        charge: Dict[str, Any],
        attempts: int
    ) -> Dict[str, Any]:
        payment = await self.store.update_payment(payment['id'], {
            'gateway_id': charge['gateway_id'],
            'status': charge['status'],
            'attempts': attempts,
            'last_error': None,
        })

        try:
            transaction = await self._transition(
                transaction, [S.INITIATED], S.AWAITING_PAYMENT, {'payment_method': payment['method']}
            )
        except (InvalidStateError, AlreadyCompletedError):
            # Cancelled while the charge was being created
            await self._withdraw_charge(payment)
            raise

        self.notifier.notify(transaction['buyer_id'], 'payment_pending', {
            'code': transaction['code'],
            'amount': transaction['buyer_total'],
            'deadline': transaction['payment_deadline'],
        })

        return {
            'transaction': transaction,
            'payment': payment,
            'instructions': charge['instructions'],
        }

    async def _withdraw_charge(self, payment: Dict[str, Any], reason: str = 'transaction cancelled') -> None:
        """Close an unpaid charge; one the gateway already knows is cancelled there too."""
        if payment.get('gateway_id'):
            try:
                await self.gateway.cancel_charge(payment['gateway_id'])
            except GatewayError as e:
                # Left PENDING; a payment that still arrives is refunded
                logger.error(f"Could not cancel charge {payment['gateway_id']}: {e}")
                return
        await self.store.update_payment(payment['id'], {'status': 'FAILED', 'last_error': reason})

    async def confirm_payment(
        self,
        transaction_id: int,
        payment: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Gateway confirmed the charge: AWAITING_PAYMENT -> PAYMENT_CONFIRMED -> ESCROW_HELD.

        A repeated confirmation for a transaction already past
        AWAITING_PAYMENT returns it unchanged. Money that arrives for a
        cancelled transaction is refunded.
        """
        transaction = await self.get_transaction_or_404(transaction_id)
        if transaction['status'] == S.CANCELLED.value:
            return await self._refund_late_payment(transaction, payment)
        if transaction['status'] not in (S.INITIATED.value, S.AWAITING_PAYMENT.value):
            logger.info(f"Payment for {transaction['code']} already confirmed ({transaction['status']})")
            return transaction

        self.check_transaction_state(transaction, [S.AWAITING_PAYMENT])

        now = self._now()
        try:
            confirmed = await self._transition(
                transaction, [S.AWAITING_PAYMENT], S.PAYMENT_CONFIRMED, {'payment_confirmed_at': now}
            )
        except InvalidStateError:
            current = await self.get_transaction_or_404(transaction_id)
            if current['status'] == S.CANCELLED.value:
                return await self._refund_late_payment(current, payment)
            if current['status'] not in (S.INITIATED.value, S.AWAITING_PAYMENT.value):
                return current
            raise

        transaction = await self._transition(confirmed, [S.PAYMENT_CONFIRMED], S.ESCROW_HELD)

        charge = await self.store.get_active_payment(transaction_id, 'charge')
        if charge and charge['status'] != 'SUCCEEDED':
            await self.store.update_payment(charge['id'], {'status': 'SUCCEEDED'})

        await self.store.update_listing_status(
            transaction['listing_id'], self.LISTING_RESERVED, [self.LISTING_ACTIVE]
        )

        self.notifier.notify(transaction['buyer_id'], 'payment_confirmed', {'code': transaction['code']})
        self.notifier.notify(transaction['seller_id'], 'sale_paid', {'code': transaction['code']})
        return transaction

    async def _apply_charge_status(
        self,
        payment: Dict[str, Any],
        status: str,
        reason: str
    ) -> Dict[str, Any]:
        """Apply a mapped gateway charge status to our records."""
        transaction_id = payment['transaction_id']

        if status == 'SUCCEEDED':
            return await self.confirm_payment(transaction_id, payment)

        if status == 'FAILED':
            await self.store.update_payment(payment['id'], {'status': 'FAILED', 'last_error': reason})
            await self.store.increment_failed_payment_attempts(transaction_id)
            transaction = await self.get_transaction_or_404(transaction_id)
            if transaction['status'] in (S.INITIATED.value, S.AWAITING_PAYMENT.value):
                return await self.cancel(transaction_id, SYSTEM_ACTOR, reason, system=True)
            return transaction

        if status == 'REFUNDED':
            await self.store.update_payment(payment['id'], {'status': 'REFUNDED'})
            transaction = await self.get_transaction_or_404(transaction_id)
            if transaction['status'] in _values(REFUNDABLE_STATUSES):
                transaction = await self._transition(
                    transaction, REFUNDABLE_STATUSES, S.REFUNDED,
                    {'refunded_at': self._now(), 'refund_reason': reason}
                )
                await self._release_listing(transaction)
                self._notify_parties(transaction, 'transaction_refunded', reason=reason)
            return transaction

        return await self.get_transaction_or_404(transaction_id)

    async def reconcile_payment(self, transaction_id: int) -> Dict[str, Any]:
        """
        Poll the gateway for the charge status and apply it.

        A charge whose creation never returned a gateway id is first looked
        up by the transaction code.

        Raises:
            NotFoundError: No charge exists at the gateway
        """
        payment = await self.store.get_active_payment(transaction_id, 'charge')
        if payment and not payment.get('gateway_id'):
            transaction = await self.get_transaction_or_404(transaction_id)
            recovered = None
            if transaction['status'] == S.INITIATED.value:
                recovered = await self._recover_charge(payment, transaction)
            if recovered is None:
                raise NotFoundError(f"No gateway charge to reconcile for transaction {transaction_id}")
            payment = recovered['payment']

        if not payment or not payment.get('gateway_id'):
            raise NotFoundError(f"No gateway charge to reconcile for transaction {transaction_id}")

        result = await self.gateway.get_status(payment['gateway_id'])
        logger.info(
            f"Reconciling charge {payment['gateway_id']}: "
            f"{result.get('gateway_status')} -> {result['status']}"
        )
        return await self._apply_charge_status(
            payment, result['status'], f"gateway status {result.get('gateway_status')}"
        )

    async def handle_gateway_event(self, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process a gateway webhook event once.

        Returns:
            Dict with ``status``: processed, duplicate, ignored or unknown
        """
        resource = payload.get('transfer') if event.startswith('TRANSFER_') else payload.get('payment')
        if not resource or not resource.get('id'):
            raise ValidationError(f"Webhook {event} carries no resource id")

        event_id = f"{event}_{resource['id']}"
        if not await self.store.register_webhook_event(event_id, event):
            logger.info(f"Duplicate webhook ignored: {event_id}")
            return {'status': 'duplicate', 'event_id': event_id}

        try:
            return await self._dispatch_gateway_event(event, resource, event_id)
        except EscrowError as e:
            logger.warning(f"Webhook {event_id} not applied: {e.message}")
            return {'status': 'ignored', 'event_id': event_id, 'reason': e.code}
        except Exception:
            # Let the gateway redeliver
            await self.store.delete_webhook_event(event_id)
            raise

    async def _dispatch_gateway_event(
        self,
        event: str,
        resource: Dict[str, Any],
        event_id: str
    ) -> Dict[str, Any]:
        payment = await self.store.get_payment_by_gateway_id(resource['id'])
        if not payment:
            payment = await self._adopt_by_reference(event, resource)
        if not payment:
            logger.warning(f"Webhook {event_id} refers to unknown gateway id {resource['id']}")
            return {'status': 'ignored', 'event_id': event_id, 'reason': 'unknown_resource'}

        if event in ('PAYMENT_RECEIVED', 'PAYMENT_CONFIRMED'):
            transaction = await self._apply_charge_status(payment, 'SUCCEEDED', event)
        elif event == 'PAYMENT_OVERDUE':
            transaction = await self._apply_charge_status(payment, 'FAILED', 'payment overdue')
        elif event == 'PAYMENT_REFUNDED':
            transaction = await self._apply_charge_status(payment, 'REFUNDED', 'refunded by gateway')
        elif event in ('TRANSFER_DONE', 'TRANSFER_FAILED'):
            status = 'SUCCEEDED' if event == 'TRANSFER_DONE' else 'FAILED'
            await self._apply_payout_status(payment, status, resource.get('failReason') or event)
            return {'status': 'processed', 'event_id': event_id}
        else:
            logger.info(f"Unhandled webhook event {event}")
            return {'status': 'unknown', 'event_id': event_id}

        return {'status': 'processed', 'event_id': event_id, 'transaction_status': transaction['status']}

    async def _adopt_by_reference(self, event: str, resource: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Match a webhook for an unknown gateway id to our payment row whose
        create call timed out, through the resource's external reference.
        """
        reference = resource.get('externalReference')
        if not reference:
            return None
        transaction = await self.store.get_transaction_by_code(reference)
        if not transaction:
            return None

        direction = 'payout' if event.startswith('TRANSFER_') else 'charge'
        payment = await self.store.get_active_payment(transaction['id'], direction)
        if not payment or payment.get('gateway_id') or payment['status'] != 'PENDING':
            return None

        logger.warning(f"Adopting gateway id {resource['id']} for {direction} of {transaction['code']}")
        payment = await self.store.update_payment(payment['id'], {
            'gateway_id': resource['id'], 'last_error': None, 'next_attempt_at': None,
        })
        if direction == 'charge':
            await self.store.transition_transaction(
                transaction['id'], [S.INITIATED.value], S.AWAITING_PAYMENT.value,
                {'payment_method': payment['method']}
            )
        return payment

    # ==================== TRANSFER & RELEASE ====================

    async def mark_transferred(
        self,
        transaction_id: int,
        actor_id: str,
        seller_ip: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Seller marks the reservation as transferred; starts the escrow timer.

        Raises:
            ForbiddenError: Caller is not the seller
            InvalidStateError: Not in ESCROW_HELD or PAYMENT_CONFIRMED
        """
        transaction = await self.get_transaction_or_404(transaction_id)
        if actor_id != transaction['seller_id']:
            raise ForbiddenError("Only the seller can mark the transfer")

        allowed = [S.ESCROW_HELD, S.PAYMENT_CONFIRMED]
        self.check_transaction_state(transaction, allowed)

        now = self._now()
        release_date = now + timedelta(days=self.config.escrow_timeout_days)
        fields = {'seller_transferred_at': now, 'escrow_release_date': release_date}
        if seller_ip:
            fields['seller_ip'] = seller_ip

        transaction = await self._transition(transaction, allowed, S.TRANSFER_PENDING, fields)

        self.notifier.notify(transaction['buyer_id'], 'transfer_marked', {
            'code': transaction['code'],
            'release_date': release_date.strftime('%Y-%m-%d %H:%M UTC'),
        })
        return transaction

    async def confirm_receipt(
        self,
        transaction_id: int,
        actor_id: Optional[str] = None,
        automatic: bool = False
    ) -> Dict[str, Any]:
        """
        Complete the transaction, either by the buyer or by the escrow timer.

        Raises:
            ForbiddenError: Manual confirmation by someone other than the buyer
            AlreadyCompletedError: Already completed
            InvalidStateError: Not in TRANSFER_PENDING
            TooEarlyError: Automatic release before the escrow release date
        """
        transaction = await self.get_transaction_or_404(transaction_id)
        if not automatic and actor_id != transaction['buyer_id']:
            raise ForbiddenError("Only the buyer can confirm receipt")

        self.check_transaction_state(transaction, [S.TRANSFER_PENDING], S.COMPLETED)

        now = self._now()
        fields: Dict[str, Any] = {'completed_at': now}
        if automatic:
            release_date = transaction.get('escrow_release_date')
            if release_date is None:
                raise InvalidStateError(f"Transaction {transaction['code']} has no escrow release date")
            if now < release_date:
                raise TooEarlyError(
                    f"Escrow for {transaction['code']} is held until {release_date.isoformat()}",
                    escrow_release_date=release_date.isoformat()
                )
            fields['auto_release'] = True
        else:
            fields['buyer_confirmed_at'] = now

        transaction = await self._transition(transaction, [S.TRANSFER_PENDING], S.COMPLETED, fields)
        await self._on_completed(transaction, automatic)
        return transaction

    async def _on_completed(self, transaction: Dict[str, Any], automatic: bool) -> None:
        """Side effects of completion; applied only by the writer that won the transition."""
        try:
            await self.store.update_listing_status(
                transaction['listing_id'], self.LISTING_SOLD, [self.LISTING_ACTIVE, self.LISTING_RESERVED]
            )
        except Exception as e:
            logger.error(f"Failed to mark listing {transaction['listing_id']} sold: {e}")

        try:
            await self._initiate_payout(transaction)
        except Exception as e:
            logger.error(f"Payout initiation failed for {transaction['code']}: {e}")

        self.notifier.notify(transaction['seller_id'], 'funds_incoming', {
            'code': transaction['code'],
            'net_amount': transaction['seller_net_amount'],
            'release': 'automatic release' if automatic else 'confirmed by the buyer',
        })
        self.notifier.notify(transaction['buyer_id'], 'transaction_completed', {'code': transaction['code']})

    # ==================== PAYOUTS ====================

    async def _initiate_payout(self, transaction: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        existing = await self.store.get_active_payment(transaction['id'], 'payout')
        if existing:
            logger.info(f"Payout already exists for {transaction['code']}")
            return existing

        try:
            payout = await self.store.insert_payment({
                'transaction_id': transaction['id'],
                'direction': 'payout',
                'payer_id': None,
                'payee_id': transaction['seller_id'],
                'gross_amount': transaction['seller_net_amount'],
                'net_amount': transaction['seller_net_amount'],
                'platform_fee': Decimal('0'),
                'method': PaymentMethod.PIX.value,
                'status': 'PENDING',
            })
        except DuplicateRecordError:
            logger.info(f"Payout for {transaction['code']} created concurrently")
            return None

        return await self._attempt_payout(payout, transaction)

    async def _attempt_payout(self, payout: Dict[str, Any], transaction: Dict[str, Any]) -> Dict[str, Any]:
        """One payout attempt; failures are queued, never raised."""
        attempts = (payout.get('attempts') or 0) + 1
        seller = await self.store.get_profile(transaction['seller_id'])

        try:
            result = await self.gateway.create_payout(
                seller or {'id': transaction['seller_id']},
                transaction['seller_net_amount'],
                transaction['code']
            )
        except GatewayUnavailable as e:
            return await self._payout_unconfirmed(payout, transaction, attempts, str(e))
        except GatewayError as e:
            return await self._payout_failed(payout, transaction, attempts, str(e))

        logger.info(f"Payout {result['gateway_id']} created for {transaction['code']}")
        return await self._payout_created(payout, result, attempts)

    async def _payout_created(self, payout: Dict[str, Any], result: Dict[str, Any], attempts: int) -> Dict[str, Any]:
        return await self.store.update_payment(payout['id'], {
            'gateway_id': result['gateway_id'],
            'status': result['status'],
            'attempts': attempts,
            'last_error': None,
            'next_attempt_at': None,
        })

    async def _payout_unconfirmed(
        self,
        payout: Dict[str, Any],
        transaction: Dict[str, Any],
        attempts: int,
        error: str
    ) -> Dict[str, Any]:
        """
        The create call ended without an answer, so the transfer may exist.

        The row stays PENDING without a gateway id; the retry sweep looks
        the transfer up by reference before sending anything again.
        """
        next_attempt = self._now() + timedelta(minutes=self.config.payout_retry_interval_minutes * attempts)
        logger.error(
            f"Payout for {transaction['code']} unconfirmed (attempt {attempts}), "
            f"checking after {next_attempt.isoformat()}: {error}"
        )
        return await self.store.update_payment(payout['id'], {
            'status': 'PENDING',
            'attempts': attempts,
            'last_error': error,
            'next_attempt_at': next_attempt,
        })

    async def _payout_failed(
        self,
        payout: Dict[str, Any],
        transaction: Dict[str, Any],
        attempts: int,
        error: str
    ) -> Dict[str, Any]:
        """The gateway refused the transfer; retry with backoff, then give up."""
        if attempts >= self.config.max_payout_attempts:
            logger.error(f"Payout for {transaction['code']} failed permanently after {attempts} attempts: {error}")
            self.notifier.alert_admin(
                f"Payout for {transaction['code']} failed after {attempts} attempts: {error}"
            )
            return await self.store.update_payment(payout['id'], {
                'status': 'FAILED',
                'attempts': attempts,
                'last_error': error,
                'next_attempt_at': None,
            })

        next_attempt = self._now() + timedelta(minutes=self.config.payout_retry_interval_minutes * attempts)
        logger.error(
            f"Payout for {transaction['code']} failed (attempt {attempts}), "
            f"retrying after {next_attempt.isoformat()}: {error}"
        )
        return await self.store.update_payment(payout['id'], {
            'status': 'RETRY',
            'attempts': attempts,
            'last_error': error,
            'next_attempt_at': next_attempt,
        })

    async def _retry_payout(self, payout: Dict[str, Any], transaction: Dict[str, Any]) -> Dict[str, Any]:
        if payout['status'] == 'PENDING' and not payout.get('gateway_id'):
            found = await self.gateway.find_payout(transaction['code'])
            if found:
                logger.info(f"Transfer {found['gateway_id']} for {transaction['code']} was accepted earlier")
                return await self._payout_created(payout, found, payout.get('attempts') or 1)

            attempts = payout.get('attempts') or 0
            if attempts >= self.config.max_payout_attempts:
                return await self._payout_failed(
                    payout, transaction, attempts, payout.get('last_error') or 'payout unconfirmed'
                )

        return await self._attempt_payout(payout, transaction)

    async def _apply_payout_status(self, payout: Dict[str, Any], status: str, reason: str) -> None:
        transaction = await self.get_transaction_or_404(payout['transaction_id'])
        if status == 'SUCCEEDED':
            await self.store.update_payment(payout['id'], {'status': 'SUCCEEDED', 'last_error': None})
            logger.info(f"Payout for {transaction['code']} settled")
        elif status == 'FAILED':
            await self._payout_failed(payout, transaction, (payout.get('attempts') or 0), reason)

    async def retry_pending_payouts(self, limit: int = 50) -> Dict[str, int]:
        """
        Re-attempt payouts whose backoff has elapsed.

        Payouts left unconfirmed by a timeout are looked up at the gateway
        first and only sent again when the gateway has no transfer for them.
        """
        stats = {'attempted': 0, 'succeeded': 0, 'failed': 0}
        for payout in await self.store.get_payouts_due(self._now(), limit):
            stats['attempted'] += 1
            try:
                transaction = await self.get_transaction_or_404(payout['transaction_id'])
                updated = await self._retry_payout(payout, transaction)
                if updated and updated.get('gateway_id') and updated['status'] in ('PENDING', 'SUCCEEDED'):
                    stats['succeeded'] += 1
                else:
                    stats['failed'] += 1
            except Exception as e:
                stats['failed'] += 1
                logger.error(f"Payout retry {payout['id']} failed: {e}")
        return stats

    # ==================== CANCEL & REFUND ====================

    async def _refund_charge(self, transaction: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Refund the buyer's charge, if it was collected. Never raises gateway errors."""
        charge = await self.store.get_active_payment(transaction['id'], 'charge')
        if not charge or not charge.get('gateway_id'):
            return None
        return await self._refund_payment(charge, transaction)

    async def _refund_payment(self, charge: Dict[str, Any], transaction: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Refund one charge row.

        Only the caller that moves the row to REFUND_PENDING talks to the
        gateway. A failed refund stays queued for ``retry_pending_refunds``.

        Returns:
            The updated row, or None when another caller already owns the refund
        """
        claimed = await self.store.transition_payment(
            charge['id'], self.REFUNDABLE_CHARGE_STATUSES, 'REFUND_PENDING', {
                'attempts': 0,
                'last_error': None,
                'next_attempt_at': self._now() + timedelta(minutes=self.config.payout_retry_interval_minutes),
            }
        )
        if claimed is None:
            logger.info(f"Refund of charge {charge['gateway_id']} for {transaction['code']} already handled")
            return None
        return await self._attempt_refund(claimed, transaction)

    async def _attempt_refund(self, charge: Dict[str, Any], transaction: Dict[str, Any]) -> Dict[str, Any]:
        attempts = (charge.get('attempts') or 0) + 1
        try:
            await self.gateway.refund_charge(charge['gateway_id'])
        except GatewayError as e:
            return await self._refund_failed(charge, transaction, attempts, str(e))

        logger.info(f"Charge {charge['gateway_id']} refunded for {transaction['code']}")
        return await self.store.update_payment(charge['id'], {
            'status': 'REFUNDED',
            'attempts': attempts,
            'last_error': None,
            'next_attempt_at': None,
        })

    async def _refund_failed(
        self,
        charge: Dict[str, Any],
        transaction: Dict[str, Any],
        attempts: int,
        error: str
    ) -> Dict[str, Any]:
        if attempts >= self.config.max_payout_attempts:
            logger.error(f"Refund for {transaction['code']} failed permanently after {attempts} attempts: {error}")
            self.notifier.alert_admin(
                f"Refund of {charge['gateway_id']} for {transaction['code']} failed after {attempts} attempts: {error}"
            )
            return await self.store.update_payment(charge['id'], {
                'status': 'REFUND_FAILED',
                'attempts': attempts,
                'last_error': error,
                'next_attempt_at': None,
            })

        next_attempt = self._now() + timedelta(minutes=self.config.payout_retry_interval_minutes * attempts)
        logger.error(
            f"Refund for {transaction['code']} failed (attempt {attempts}), "
            f"retrying after {next_attempt.isoformat()}: {error}"
        )
        return await self.store.update_payment(charge['id'], {
            'attempts': attempts,
            'last_error': error,
            'next_attempt_at': next_attempt,
        })

    async def retry_pending_refunds(self, limit: int = 50) -> Dict[str, int]:
        """
        Re-attempt queued refunds.

        The charge status is read first, so a refund the gateway applied
        without answering is recorded instead of sent twice.
        """
        stats = {'attempted': 0, 'succeeded': 0, 'failed': 0}
        for charge in await self.store.get_refunds_due(self._now(), limit):
            stats['attempted'] += 1
            try:
                transaction = await self.get_transaction_or_404(charge['transaction_id'])
                current = await self.gateway.get_status(charge['gateway_id'])
                if current['status'] == 'REFUNDED':
                    logger.info(f"Charge {charge['gateway_id']} for {transaction['code']} was refunded earlier")
                    updated = await self.store.update_payment(charge['id'], {
                        'status': 'REFUNDED', 'last_error': None, 'next_attempt_at': None,
                    })
                else:
                    updated = await self._attempt_refund(charge, transaction)

                if updated and updated['status'] == 'REFUNDED':
                    stats['succeeded'] += 1
                else:
                    stats['failed'] += 1
            except Exception as e:
                stats['failed'] += 1
                logger.error(f"Refund retry {charge['id']} failed: {e}")
        return stats

    async def _refund_late_payment(
        self,
        transaction: Dict[str, Any],
        payment: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """A charge was paid after its transaction was cancelled; the money goes back."""
        charge = payment or await self.store.get_active_payment(transaction['id'], 'charge')
        if not charge or not charge.get('gateway_id'):
            return transaction

        logger.warning(
            f"Payment {charge['gateway_id']} arrived for cancelled transaction {transaction['code']}; refunding"
        )
        refunded = await self._refund_payment(charge, transaction)
        if refunded is not None:
            self.notifier.alert_admin(
                f"Payment {charge['gateway_id']} for cancelled {transaction['code']} "
                f"was refunded ({refunded['status']})"
            )
            self.notifier.notify(transaction['buyer_id'], 'transaction_refunded', {
                'code': transaction['code'],
                'reason': 'payment received after cancellation',
            })
        return transaction

    async def cancel(
        self,
        transaction_id: int,
        actor_id: str,
        reason: str,
        system: bool = False
    ) -> Dict[str, Any]:
        """
        Cancel a transaction without an active dispute.

        The cancellation is recorded first. A payment already collected is
        then refunded; an unpaid charge is withdrawn at the gateway.

        Raises:
            ForbiddenError: Caller is not a party
            RequiredFieldError: No reason given
            InvalidStateError: Terminal or disputed transaction, or another
                change (such as completion) won the race
        """
        transaction = await self.get_transaction_or_404(transaction_id)
        if not system and not self.is_party(transaction, actor_id):
            raise ForbiddenError("Only the buyer or the seller can cancel")

        reason = sanitize_input(reason or '', max_length=500)
        if not reason:
            raise RequiredFieldError("A cancellation reason is required")

        self.check_transaction_state(transaction, CANCELLABLE_STATUSES)
        if await self.store.count_active_disputes(transaction_id):
            raise InvalidStateError(f"Transaction {transaction['code']} has an active dispute")

        previous = S(transaction['status'])
        transaction = await self._transition(
            transaction, [previous], S.CANCELLED,
            {'cancelled_at': self._now(), 'cancel_reason': reason}
        )
        await self._release_listing(transaction)

        if previous in FUNDED_STATUSES:
            await self._refund_charge(transaction)
        else:
            charge = await self.store.get_active_payment(transaction_id, 'charge')
            if charge and charge['status'] == 'PENDING':
                await self._withdraw_charge(charge, reason)

        logger.info(f"Transaction {transaction['code']} cancelled by {actor_id}: {reason}")
        self._notify_parties(transaction, 'transaction_cancelled', reason=reason)
        return transaction

    async def refund(self, transaction_id: int, admin_id: str, reason: str) -> Dict[str, Any]:
        """
        Administrative refund.

        The REFUNDED status is recorded before the gateway is called; a
        gateway failure leaves the refund queued for retry.

        Raises:
            RequiredFieldError: No reason given
            InvalidStateError: Not in a funded state
        """
        reason = sanitize_input(reason or '', max_length=500)
        if not reason:
            raise RequiredFieldError("A refund reason is required")

        transaction = await self.get_transaction_or_404(transaction_id)
        self.check_transaction_state(transaction, REFUNDABLE_STATUSES)

        transaction = await self._transition(
            transaction, [S(transaction['status'])], S.REFUNDED,
            {'refunded_at': self._now(), 'refund_reason': reason}
        )
        await self._release_listing(transaction)
        await self._refund_charge(transaction)

        logger.info(f"Transaction {transaction['code']} refunded by admin {admin_id}: {reason}")
        self._notify_parties(transaction, 'transaction_refunded', reason=reason)
        return transaction

    async def apply_dispute_outcome(
        self,
        transaction_id: int,
        admin_id: str,
        action: str,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Apply the administrative decision after a dispute was resolved.

        Args:
            action: reopen_transfer, refund or cancel
        """
        try:
            outcome = DisputeOutcome(action)
        except ValueError:
            raise ValidationError(f"Unknown dispute outcome: {action}")

        transaction = await self.get_transaction_or_404(transaction_id)
        self.check_transaction_state(transaction, [S.DISPUTE_RESOLVED])
        reason = reason or f"dispute outcome: {outcome.value}"

        if outcome == DisputeOutcome.REFUND:
            return await self.refund(transaction_id, admin_id, reason)

        if outcome == DisputeOutcome.CANCEL:
            return await self.cancel(transaction_id, admin_id, reason, system=True)

        release_date = self._now() + timedelta(days=self.config.escrow_timeout_days)
        transaction = await self._transition(
            transaction, [S.DISPUTE_RESOLVED], S.TRANSFER_PENDING,
            {'escrow_release_date': release_date}
        )
        self.notifier.notify(transaction['buyer_id'], 'transfer_marked', {
            'code': transaction['code'],
            'release_date': release_date.strftime('%Y-%m-%d %H:%M UTC'),
        })
        return transaction

    # ==================== SWEEPS ====================

    async def process_auto_releases(self, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Complete every TRANSFER_PENDING transaction whose escrow has expired.

        Safe to run from several workers at once; each transaction is
        completed by exactly one of them.

        Returns:
            List of released transactions
        """
        now = self._now()
        candidates = await self.store.get_auto_release_candidates(now, limit)
        released = []

        for candidate in candidates:
            try:
                released.append(await self.confirm_receipt(candidate['id'], SYSTEM_ACTOR, automatic=True))
                logger.info(f"Auto-released transaction: {candidate['code']}")
            except (AlreadyCompletedError, InvalidStateError, TooEarlyError) as e:
                logger.info(f"Auto-release skipped for {candidate['code']}: {e.message}")
            except Exception as e:
                logger.error(f"Failed to auto-release {candidate['code']}: {e}")

        logger.info(f"Auto-release complete: {len(released)}/{len(candidates)} transactions released")
        return released

    async def expire_unpaid_transactions(self, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Cancel transactions whose payment deadline passed without payment.

        The open charge is withdrawn by the cancellation.
        """
        expired = []
        for candidate in await self.store.get_unpaid_expired(self._now(), limit):
            try:
                expired.append(await self.cancel(
                    candidate['id'], SYSTEM_ACTOR, 'payment deadline expired', system=True
                ))
            except EscrowError as e:
                logger.info(f"Expiry skipped for {candidate['code']}: {e.message}")
            except Exception as e:
                logger.error(f"Failed to expire {candidate['code']}: {e}")

        if expired:
            logger.info(f"Expired {len(expired)} unpaid transactions")
        return expired

    # ==================== QUERIES ====================

    async def get_transaction(self, transaction_id: int, actor_id: str) -> Dict[str, Any]:
        transaction = await self.get_transaction_or_404(transaction_id)
        if not self.is_party(transaction, actor_id):
            raise ForbiddenError("You are not a party to this transaction")
        return transaction

    async def list_transactions(
        self,
        user_id: str,
        page: int = 1,
        per_page: int = PAGE_SIZE
    ) -> Dict[str, Any]:
        page, per_page = paginate(page, per_page, self.MAX_PAGE_SIZE)
        rows, total = await self.store.list_user_transactions(user_id, per_page, (page - 1) * per_page)
        return {'items': rows, 'page': page, 'per_page': per_page, 'total': total}


def paginate(page: int, per_page: int, max_per_page: int) -> Tuple[int, int]:
    """Clamp pagination arguments."""
    page = max(1, int(page or 1))
    per_page = max(1, min(int(per_page or max_per_page), max_per_page))
    return page, per_page


# Singleton instance management
_escrow_service_instance: Optional[EscrowService] = None


async def get_escrow_service(
    store: Optional[Any] = None,
    gateway: Optional[Any] = None,
    notifier: Optional[Any] = None,
    config: Optional[Config] = None
) -> EscrowService:
    """
    Get or create the escrow service singleton instance.

    Missing collaborators are built from the configuration.
    """
    global _escrow_service_instance

    if _escrow_service_instance is None:
        config = config or get_config()

        if store is None:
            from database import get_database
            from escrow_database import EscrowDatabase
            database = await get_database(
                config.database_url, config.db_pool_min_size, config.db_pool_max_size
            )
            store = EscrowDatabase(database)

        if gateway is None:
            from payment_gateway import PaymentGateway
            gateway = PaymentGateway(config)

        if notifier is None:
            from notifications import NotificationService
            notifier = NotificationService(store, config)

        _escrow_service_instance = EscrowService(store, gateway, notifier, config)

    return _escrow_service_instance
