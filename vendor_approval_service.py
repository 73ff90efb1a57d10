"""
Vendor approval workflow.

The seller asks the venue or service provider to sign off on a reservation
transfer. The vendor answers through a link carrying an unguessable token,
which is the only credential of the public endpoints.
"""

import logging
import re
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, Callable

from config import Config
from escrow_database import DuplicateRecordError
from escrow_service import (
    TERMINAL_STATUSES,
    ConflictError,
    ForbiddenError,
    GoneError,
    InvalidStateError,
    NotFoundError,
    RequiredFieldError,
    ValidationError,
)
from utils import utcnow, sanitize_input, mask_sensitive_data

logger = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


EMAIL_PATTERN = re.compile(r'^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$')


class VendorApprovalService:
    """Token-based third-party sign-off attached to a transaction."""

    def __init__(
        self,
        store: Any,
        notifier: Any,
        config: Config,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.notifier = notifier
        self.expiry = timedelta(days=config.vendor_approval_expiry_days)
        self.clock = clock

    async def _get_transaction(self, transaction_id: int) -> Dict[str, Any]:
        transaction = await self.store.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    async def request_approval(
        self,
        transaction_id: int,
        requester_id: str,
        vendor_email: str,
        vendor_name: Optional[str] = None,
        vendor_phone: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Issue an approval request for the vendor.

        Raises:
            ValidationError / RequiredFieldError: Bad vendor contact
            ForbiddenError: Requester is not the seller
            InvalidStateError: Transaction is terminal
            ConflictError: A pending or approved request already exists
        """
        vendor_email = (vendor_email or '').strip().lower()
        if not vendor_email:
            raise RequiredFieldError("vendor_email is required")
        if not EMAIL_PATTERN.match(vendor_email):
            raise ValidationError(f"Invalid vendor email: {vendor_email}")

        transaction = await self._get_transaction(transaction_id)
        if requester_id != transaction['seller_id']:
            raise ForbiddenError("Only the seller can request vendor approval")
        if transaction['status'] in {status.value for status in TERMINAL_STATUSES}:
            raise InvalidStateError(
                f"Transaction {transaction['code']} is {transaction['status']}",
                current_status=transaction['status']
            )

        if await self.store.get_active_vendor_approval(transaction_id):
            raise ConflictError("A vendor approval is already pending or approved for this transaction")

        now = self.clock()
        try:
            approval = await self.store.insert_vendor_approval({
                'token': uuid.uuid4().hex,
                'transaction_id': transaction_id,
                'listing_id': transaction['listing_id'],
                'requested_by': requester_id,
                'vendor_name': sanitize_input(vendor_name or '', max_length=200) or None,
                'vendor_email': vendor_email,
                'vendor_phone': sanitize_input(vendor_phone or '', max_length=30) or None,
                'status': ApprovalStatus.PENDING.value,
                'expires_at': now + self.expiry,
                'created_at': now,
            })
        except DuplicateRecordError as e:
            raise ConflictError("A vendor approval is already pending or approved for this transaction") from e

        logger.info(
            f"Vendor approval requested for {transaction['code']} "
            f"(token {mask_sensitive_data(approval['token'])}, expires {approval['expires_at'].isoformat()})"
        )
        return approval

    async def _load_live(self, token: str) -> Dict[str, Any]:
        """
        Fetch by token, marking a lapsed pending record as expired.

        Raises:
            NotFoundError: Unknown token
            GoneError: Record expired
        """
        approval = await self.store.get_vendor_approval_by_token(token)
        if not approval:
            raise NotFoundError("Approval link not found")

        if approval['status'] == ApprovalStatus.EXPIRED.value:
            raise GoneError("This approval link has expired")

        if approval['status'] == ApprovalStatus.PENDING.value and self.clock() >= approval['expires_at']:
            await self.store.update_vendor_approval(
                approval['id'], ApprovalStatus.PENDING.value, ApprovalStatus.EXPIRED.value
            )
            logger.info(f"Vendor approval {approval['id']} expired")
            raise GoneError("This approval link has expired")

        return approval

    async def get_by_token(self, token: str) -> Dict[str, Any]:
        """Public view of an approval request, with the transaction code."""
        approval = await self._load_live(token)
        transaction = await self._get_transaction(approval['transaction_id'])
        return {
            'status': approval['status'],
            'vendor_name': approval['vendor_name'],
            'transaction_code': transaction['code'],
            'listing_id': approval['listing_id'],
            'expires_at': approval['expires_at'],
        }

    async def respond(
        self,
        token: str,
        action: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Vendor approves or rejects.

        Raises:
            NotFoundError: Unknown token
            GoneError: Link expired
            ConflictError: Already answered
            RequiredFieldError: Rejection without a reason
        """
        try:
            action = ApprovalAction(action)
        except ValueError:
            raise ValidationError(f"Action must be 'approve' or 'reject', got {action}")

        approval = await self._load_live(token)
        if approval['status'] != ApprovalStatus.PENDING.value:
            raise ConflictError(f"This request was already {approval['status']}")

        reason = sanitize_input(reason or '', max_length=1000)
        now = self.clock()
        if action == ApprovalAction.REJECT:
            if not reason:
                raise RequiredFieldError("A reason is required to reject")
            new_status = ApprovalStatus.REJECTED
            fields = {'rejected_at': now, 'rejected_reason': reason, 'ip_address': ip_address}
        else:
            new_status = ApprovalStatus.APPROVED
            fields = {'approved_at': now, 'ip_address': ip_address}

        updated = await self.store.update_vendor_approval(
            approval['id'], ApprovalStatus.PENDING.value, new_status.value, fields
        )
        if updated is None:
            raise ConflictError("This request was already answered")

        transaction = await self._get_transaction(approval['transaction_id'])
        logger.info(f"Vendor {new_status.value} transfer of {transaction['code']} from {ip_address}")
        for user_id in (transaction['buyer_id'], transaction['seller_id']):
            self.notifier.notify(user_id, 'vendor_approval', {
                'vendor_status': new_status.value,
                'code': transaction['code'],
            })
        return updated

    async def get_for_transaction(self, transaction_id: int, user_id: str) -> Optional[Dict[str, Any]]:
        """Latest approval record, for the transaction's parties."""
        transaction = await self._get_transaction(transaction_id)
        if user_id not in (transaction['buyer_id'], transaction['seller_id']):
            raise ForbiddenError("You are not a party to this transaction")
        return await self.store.get_latest_vendor_approval(transaction_id)
