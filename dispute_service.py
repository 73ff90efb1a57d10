"""
Dispute Service Module.

Disputes are a branch of the transaction lifecycle. Opening one forces the
transaction into DISPUTE_OPENED inside the same database transaction as the
dispute insert, so a transaction with an active dispute always reports that
status. Resolution is administrative; what happens to the transaction
afterwards is a separate explicit decision (see
``EscrowService.apply_dispute_outcome``).
"""

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Callable

from escrow_database import DuplicateRecordError
from escrow_service import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ProtocolGenerationFailedError,
    TransactionStatus,
    ValidationError,
    paginate,
)
from utils import utcnow, generate_code, sanitize_input

logger = logging.getLogger(__name__)


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_BUYER = "RESOLVED_BUYER"
    RESOLVED_SELLER = "RESOLVED_SELLER"
    CLOSED = "CLOSED"


class DisputeReason(str, Enum):
    LISTING_MISMATCH = "listing_mismatch"
    TRANSFER_REJECTED = "transfer_rejected"
    MISSING_DOCUMENTATION = "missing_documentation"
    PAYMENT_ISSUES = "payment_issues"
    OTHER = "other"


ACTIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN.value, DisputeStatus.UNDER_REVIEW.value)
RESOLUTIONS = (DisputeStatus.RESOLVED_BUYER, DisputeStatus.RESOLVED_SELLER, DisputeStatus.CLOSED)

DISPUTABLE_STATUSES = (TransactionStatus.ESCROW_HELD.value, TransactionStatus.TRANSFER_PENDING.value)

PROTOCOL_PREFIX = 'DSP'
PROTOCOL_LENGTH = 6
MAX_PROTOCOL_ATTEMPTS = 5

DESCRIPTION_MIN_LENGTH = 50
DESCRIPTION_MAX_LENGTH = 2000
MAX_EVIDENCE_URLS = 10
DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 50

URL_PATTERN = re.compile(r'^https?://[^\s/$.?#].[^\s]*$', re.IGNORECASE)


def validate_evidence(evidence_urls: Optional[List[str]]) -> List[str]:
    """
    Validate evidence references.

    Raises:
        ValidationError: Too many entries or a malformed URL
    """
    urls = [url.strip() for url in (evidence_urls or []) if url and url.strip()]
    if len(urls) > MAX_EVIDENCE_URLS:
        raise ValidationError(f"At most {MAX_EVIDENCE_URLS} evidence URLs are allowed")
    for url in urls:
        if not URL_PATTERN.match(url):
            raise ValidationError(f"Invalid evidence URL: {url}")
    return urls


class DisputeService:
    """
    Dispute branch workflow.

    Attributes:
        store: Escrow store
        notifier: NotificationService
    """

    def __init__(self, store: Any, notifier: Any, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.notifier = notifier
        self.clock = clock

    async def _get_transaction(self, transaction_id: int) -> Dict[str, Any]:
        transaction = await self.store.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    async def get_dispute_or_404(self, dispute_id: int) -> Dict[str, Any]:
        dispute = await self.store.get_dispute(dispute_id)
        if not dispute:
            raise NotFoundError(f"Dispute not found: {dispute_id}")
        return dispute

    def _notify(self, transaction: Dict[str, Any], kind: str, context: Dict[str, Any], admin_text: str) -> None:
        for user_id in (transaction['buyer_id'], transaction['seller_id']):
            self.notifier.notify(user_id, kind, context)
        self.notifier.alert_admin(admin_text)

    async def open_dispute(
        self,
        transaction_id: int,
        opener_id: str,
        reason: str,
        description: str,
        evidence_urls: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Open a dispute and force the transaction into DISPUTE_OPENED.

        Raises:
            ValidationError: Bad reason, description or evidence
            ForbiddenError: Opener is not a party
            InvalidStateError: Transaction not in ESCROW_HELD or TRANSFER_PENDING
            ConflictError: Opener already has an active dispute on the transaction
            ProtocolGenerationFailedError: Protocol generation exhausted its retries
        """
        try:
            reason = DisputeReason(reason).value
        except ValueError:
            raise ValidationError(f"Invalid dispute reason: {reason}")

        description = sanitize_input(description or '', max_length=DESCRIPTION_MAX_LENGTH + 1)
        if not DESCRIPTION_MIN_LENGTH <= len(description) <= DESCRIPTION_MAX_LENGTH:
            raise ValidationError(
                f"Description must be between {DESCRIPTION_MIN_LENGTH} and "
                f"{DESCRIPTION_MAX_LENGTH} characters"
            )
        evidence = validate_evidence(evidence_urls)

        transaction = await self._get_transaction(transaction_id)
        if opener_id not in (transaction['buyer_id'], transaction['seller_id']):
            raise ForbiddenError("Only the buyer or the seller can open a dispute")

        if transaction['status'] not in DISPUTABLE_STATUSES:
            raise InvalidStateError(
                f"Disputes can only be opened in {list(DISPUTABLE_STATUSES)}, "
                f"transaction {transaction['code']} is {transaction['status']}",
                current_status=transaction['status']
            )

        if await self.store.get_active_dispute(transaction_id, opener_id):
            raise ConflictError("You already have an open dispute on this transaction")

        now = self.clock()
        fields = {
            'transaction_id': transaction_id,
            'opened_by': opener_id,
            'reason': reason,
            'description': description,
            'evidence_urls': evidence,
            'status': DisputeStatus.OPEN.value,
            'created_at': now,
            'updated_at': now,
        }

        for attempt in range(1, MAX_PROTOCOL_ATTEMPTS + 1):
            fields['protocol'] = generate_code(PROTOCOL_PREFIX, PROTOCOL_LENGTH, now.year)
            try:
                dispute, transaction = await self.store.open_dispute(
                    dict(fields), DISPUTABLE_STATUSES, TransactionStatus.DISPUTE_OPENED.value
                )
            except DuplicateRecordError as e:
                if e.constraint and 'protocol' in e.constraint:
                    logger.warning(f"Dispute protocol collision on attempt {attempt}: {fields['protocol']}")
                    continue
                raise ConflictError("You already have an open dispute on this transaction") from e

            if dispute is None:
                current = await self._get_transaction(transaction_id)
                raise InvalidStateError(
                    f"Transaction {current['code']} changed to {current['status']}",
                    current_status=current['status']
                )
            break
        else:
            raise ProtocolGenerationFailedError(
                f"Could not generate a unique dispute protocol after {MAX_PROTOCOL_ATTEMPTS} attempts"
            )

        logger.warning(
            f"Dispute {dispute['protocol']} opened on {transaction['code']} by {opener_id} ({reason})"
        )
        self._notify(
            transaction, 'dispute_opened',
            {'protocol': dispute['protocol'], 'code': transaction['code']},
            f"Dispute {dispute['protocol']} opened on {transaction['code']} ({reason})"
        )
        return dispute

    async def start_review(self, dispute_id: int, admin_id: str) -> Dict[str, Any]:
        """OPEN -> UNDER_REVIEW."""
        dispute = await self.get_dispute_or_404(dispute_id)
        if dispute['status'] != DisputeStatus.OPEN.value:
            raise InvalidStateError(f"Dispute {dispute['protocol']} is {dispute['status']}")

        updated = await self.store.update_dispute_status(
            dispute_id, [DisputeStatus.OPEN.value], DisputeStatus.UNDER_REVIEW.value
        )
        if updated is None:
            raise InvalidStateError(f"Dispute {dispute['protocol']} changed concurrently")

        logger.info(f"Dispute {dispute['protocol']} under review by {admin_id}")
        return updated

    async def resolve_dispute(
        self,
        dispute_id: int,
        admin_id: str,
        resolution: str,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Close a dispute. The transaction moves to DISPUTE_RESOLVED once no
        other active dispute remains on it.

        Returns:
            Dict with ``dispute`` and ``transaction``
        """
        try:
            resolution = DisputeStatus(resolution)
        except ValueError:
            resolution = None
        if resolution not in RESOLUTIONS:
            raise ValidationError(f"Resolution must be one of {[r.value for r in RESOLUTIONS]}")

        dispute = await self.get_dispute_or_404(dispute_id)
        if dispute['status'] not in ACTIVE_DISPUTE_STATUSES:
            raise InvalidStateError(f"Dispute {dispute['protocol']} is already {dispute['status']}")

        fields = {
            'resolution_notes': sanitize_input(notes or '') or None,
            'resolved_by': admin_id,
            'resolved_at': self.clock(),
        }
        resolved, transaction = await self.store.resolve_dispute(
            dispute_id, resolution.value, fields,
            TransactionStatus.DISPUTE_OPENED.value, TransactionStatus.DISPUTE_RESOLVED.value
        )
        if resolved is None:
            raise InvalidStateError(f"Dispute {dispute['protocol']} changed concurrently")

        if transaction is None:
            transaction = await self._get_transaction(dispute['transaction_id'])
            logger.info(
                f"Dispute {dispute['protocol']} resolved; {transaction['code']} stays "
                f"{transaction['status']}"
            )

        logger.info(f"Dispute {dispute['protocol']} resolved as {resolution.value} by {admin_id}")
        self._notify(
            transaction, 'dispute_resolved',
            {'protocol': dispute['protocol'], 'code': transaction['code'], 'resolution': resolution.value},
            f"Dispute {dispute['protocol']} resolved as {resolution.value}"
        )
        return {'dispute': resolved, 'transaction': transaction}

    async def get_dispute(self, dispute_id: int, user_id: str) -> Dict[str, Any]:
        """Party-only view of a dispute."""
        dispute = await self.get_dispute_or_404(dispute_id)
        transaction = await self._get_transaction(dispute['transaction_id'])
        if user_id not in (transaction['buyer_id'], transaction['seller_id']):
            raise ForbiddenError("You are not a party to this dispute")
        return dispute

    async def list_disputes(
        self,
        user_id: str,
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        page, per_page = paginate(page, per_page, MAX_PAGE_SIZE)
        rows, total = await self.store.list_user_disputes(user_id, per_page, (page - 1) * per_page)
        return {'items': rows, 'page': page, 'per_page': per_page, 'total': total}
