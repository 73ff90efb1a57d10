"""
Tests for the dispute branch and the administrative outcomes applied after it.
"""

import re
from datetime import timedelta

import pytest

from conftest import BUYER, SELLER, STRANGER
from dispute_service import MAX_EVIDENCE_URLS, validate_evidence
from escrow_service import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ProtocolGenerationFailedError,
    ValidationError,
)

DESCRIPTION = (
    "The seller transferred the reservation to a different date than the one "
    "shown in the listing and stopped answering messages."
)
EVIDENCE = ['https://files.example.com/screenshot-1.png']


async def _open(disputes, transaction, opener=BUYER, reason='listing_mismatch'):
    return await disputes.open_dispute(transaction['id'], opener, reason, DESCRIPTION, EVIDENCE)


# ==================== OPENING ====================

async def test_open_dispute_forces_transaction_status(disputes, store, flow, notifier):
    transaction = await flow.escrow_held()

    dispute = await _open(disputes, transaction)

    assert re.match(r'^DSP-2026-[A-Z0-9]{6}$', dispute['protocol'])
    assert dispute['status'] == 'OPEN'
    assert dispute['evidence_urls'] == EVIDENCE
    assert store.transactions[transaction['id']]['status'] == 'DISPUTE_OPENED'
    assert 'dispute_opened' in notifier.kinds_for(BUYER)
    assert 'dispute_opened' in notifier.kinds_for(SELLER)
    assert dispute['protocol'] in notifier.admin_alerts[0]


async def test_open_dispute_from_transfer_pending(disputes, flow):
    transaction = await flow.transfer_pending()
    dispute = await _open(disputes, transaction, opener=SELLER, reason='transfer_rejected')
    assert dispute['opened_by'] == SELLER


async def test_open_dispute_validation(disputes, flow):
    transaction = await flow.escrow_held()

    with pytest.raises(ValidationError):
        await disputes.open_dispute(transaction['id'], BUYER, 'bad_vibes', DESCRIPTION)
    with pytest.raises(ValidationError):
        await disputes.open_dispute(transaction['id'], BUYER, 'other', 'too short')
    with pytest.raises(ValidationError):
        await disputes.open_dispute(transaction['id'], BUYER, 'other', 'x' * 2001)
    with pytest.raises(ValidationError):
        await disputes.open_dispute(transaction['id'], BUYER, 'other', DESCRIPTION, ['ftp://nope'])
    with pytest.raises(NotFoundError):
        await disputes.open_dispute(31337, BUYER, 'other', DESCRIPTION)


def test_evidence_limits():
    urls = [f"https://files.example.com/{i}.png" for i in range(MAX_EVIDENCE_URLS)]
    assert validate_evidence(urls + ['', '  ']) == urls

    with pytest.raises(ValidationError):
        validate_evidence(urls + ['https://files.example.com/extra.png'])


async def test_open_dispute_by_stranger(disputes, flow):
    transaction = await flow.escrow_held()
    with pytest.raises(ForbiddenError):
        await _open(disputes, transaction, opener=STRANGER)


async def test_open_dispute_in_wrong_state(disputes, flow):
    transaction = await flow.awaiting_payment()
    with pytest.raises(InvalidStateError) as exc_info:
        await _open(disputes, transaction)
    assert exc_info.value.details['current_status'] == 'AWAITING_PAYMENT'


async def test_second_dispute_on_disputed_transaction(disputes, flow):
    transaction = await flow.escrow_held()
    await _open(disputes, transaction)

    with pytest.raises(InvalidStateError):
        await _open(disputes, transaction, opener=SELLER)


async def test_same_opener_twice_is_conflict(disputes, store, flow):
    transaction = await flow.escrow_held()
    await _open(disputes, transaction)
    # Status forced back by hand so only the uniqueness rule applies
    store.transactions[transaction['id']]['status'] = 'ESCROW_HELD'

    with pytest.raises(ConflictError):
        await _open(disputes, transaction)


async def test_active_dispute_constraint_maps_to_conflict(disputes, store, flow, monkeypatch):
    transaction = await flow.escrow_held()
    await _open(disputes, transaction)
    store.transactions[transaction['id']]['status'] = 'ESCROW_HELD'

    async def none(*args):
        return None

    monkeypatch.setattr(store, 'get_active_dispute', none)
    with pytest.raises(ConflictError):
        await _open(disputes, transaction)


async def test_protocol_collisions_are_retried(disputes, store, flow):
    transaction = await flow.escrow_held()
    store.protocol_collisions = 3

    dispute = await _open(disputes, transaction)
    assert dispute['status'] == 'OPEN'


async def test_protocol_generation_gives_up(disputes, store, flow):
    transaction = await flow.escrow_held()
    store.protocol_collisions = 5

    with pytest.raises(ProtocolGenerationFailedError):
        await _open(disputes, transaction)
    assert store.transactions[transaction['id']]['status'] == 'ESCROW_HELD'


# ==================== REVIEW & RESOLUTION ====================

async def test_review_and_resolve(disputes, store, flow, notifier):
    transaction = await flow.escrow_held()
    dispute = await _open(disputes, transaction)

    reviewed = await disputes.start_review(dispute['id'], 'admin-1')
    assert reviewed['status'] == 'UNDER_REVIEW'
    with pytest.raises(InvalidStateError):
        await disputes.start_review(dispute['id'], 'admin-1')

    result = await disputes.resolve_dispute(dispute['id'], 'admin-1', 'RESOLVED_BUYER', 'Seller admitted the error')

    assert result['dispute']['status'] == 'RESOLVED_BUYER'
    assert result['dispute']['resolved_by'] == 'admin-1'
    assert result['dispute']['resolution_notes'] == 'Seller admitted the error'
    assert result['transaction']['status'] == 'DISPUTE_RESOLVED'
    assert 'dispute_resolved' in notifier.kinds_for(SELLER)


async def test_resolve_validation(disputes, flow):
    transaction = await flow.escrow_held()
    dispute = await _open(disputes, transaction)

    with pytest.raises(ValidationError):
        await disputes.resolve_dispute(dispute['id'], 'admin-1', 'OPEN')
    with pytest.raises(ValidationError):
        await disputes.resolve_dispute(dispute['id'], 'admin-1', 'whatever')

    await disputes.resolve_dispute(dispute['id'], 'admin-1', 'CLOSED')
    with pytest.raises(InvalidStateError):
        await disputes.resolve_dispute(dispute['id'], 'admin-1', 'RESOLVED_SELLER')


async def test_transaction_waits_for_last_active_dispute(disputes, store, flow):
    transaction = await flow.escrow_held()
    first = await _open(disputes, transaction)
    store.transactions[transaction['id']]['status'] = 'ESCROW_HELD'
    second = await _open(disputes, transaction, opener=SELLER)

    result = await disputes.resolve_dispute(first['id'], 'admin-1', 'CLOSED')
    assert result['transaction']['status'] == 'DISPUTE_OPENED'

    result = await disputes.resolve_dispute(second['id'], 'admin-1', 'RESOLVED_SELLER')
    assert result['transaction']['status'] == 'DISPUTE_RESOLVED'


# ==================== OUTCOMES ====================

async def _resolved(disputes, flow):
    transaction = await flow.escrow_held()
    dispute = await _open(disputes, transaction)
    await disputes.resolve_dispute(dispute['id'], 'admin-1', 'RESOLVED_BUYER')
    return transaction


async def test_outcome_refund(escrow, disputes, gateway, flow):
    transaction = await _resolved(disputes, flow)

    refunded = await escrow.apply_dispute_outcome(transaction['id'], 'admin-1', 'refund')

    assert refunded['status'] == 'REFUNDED'
    assert refunded['refund_reason'] == 'dispute outcome: refund'
    assert len(gateway.refunds) == 1


async def test_outcome_cancel(escrow, disputes, flow):
    transaction = await _resolved(disputes, flow)

    cancelled = await escrow.apply_dispute_outcome(transaction['id'], 'admin-1', 'cancel', 'venue refused')

    assert cancelled['status'] == 'CANCELLED'
    assert cancelled['cancel_reason'] == 'venue refused'


async def test_outcome_reopen_transfer(escrow, disputes, clock, flow):
    transaction = await _resolved(disputes, flow)

    reopened = await escrow.apply_dispute_outcome(transaction['id'], 'admin-1', 'reopen_transfer')

    assert reopened['status'] == 'TRANSFER_PENDING'
    assert reopened['escrow_release_date'] == clock() + timedelta(days=7)


async def test_outcome_requires_resolution(escrow, disputes, flow):
    transaction = await flow.escrow_held()
    await _open(disputes, transaction)

    with pytest.raises(InvalidStateError):
        await escrow.apply_dispute_outcome(transaction['id'], 'admin-1', 'refund')
    with pytest.raises(ValidationError):
        await escrow.apply_dispute_outcome(transaction['id'], 'admin-1', 'split')


async def test_cancel_blocked_while_disputed(escrow, disputes, flow):
    transaction = await flow.escrow_held()
    await _open(disputes, transaction)

    with pytest.raises(InvalidStateError):
        await escrow.cancel(transaction['id'], BUYER, 'I give up')


# ==================== QUERIES ====================

async def test_get_and_list_disputes(disputes, flow):
    transaction = await flow.escrow_held()
    dispute = await _open(disputes, transaction)

    assert (await disputes.get_dispute(dispute['id'], SELLER))['id'] == dispute['id']
    with pytest.raises(ForbiddenError):
        await disputes.get_dispute(dispute['id'], STRANGER)
    with pytest.raises(NotFoundError):
        await disputes.get_dispute(404404, BUYER)

    page = await disputes.list_disputes(BUYER)
    assert page['total'] == 1
    assert page['per_page'] == 12
    assert page['items'][0]['transaction_code'] == transaction['code']
    assert (await disputes.list_disputes(STRANGER))['total'] == 0
