"""
Tests for the token-based vendor sign-off.
"""

from datetime import timedelta

import pytest

from conftest import BUYER, SELLER, STRANGER
from escrow_service import (
    ConflictError,
    ForbiddenError,
    GoneError,
    InvalidStateError,
    NotFoundError,
    RequiredFieldError,
    ValidationError,
)


async def _request(vendor_approvals, transaction, **kwargs):
    return await vendor_approvals.request_approval(
        transaction['id'], SELLER, kwargs.pop('email', 'Reservas@MarAzul.com.br'),
        vendor_name='Restaurante Mar Azul', **kwargs
    )


async def test_request_approval(vendor_approvals, flow, clock):
    transaction = await flow.escrow_held()

    approval = await _request(vendor_approvals, transaction)

    assert approval['status'] == 'pending'
    assert approval['vendor_email'] == 'reservas@marazul.com.br'
    assert len(approval['token']) == 32
    assert approval['expires_at'] == clock() + timedelta(days=7)


async def test_request_approval_validation(vendor_approvals, flow):
    transaction = await flow.initiated()

    with pytest.raises(RequiredFieldError):
        await vendor_approvals.request_approval(transaction['id'], SELLER, '  ')
    with pytest.raises(ValidationError):
        await vendor_approvals.request_approval(transaction['id'], SELLER, 'not-an-email')
    with pytest.raises(NotFoundError):
        await vendor_approvals.request_approval(777, SELLER, 'vendor@example.com')
    with pytest.raises(ForbiddenError):
        await vendor_approvals.request_approval(transaction['id'], BUYER, 'vendor@example.com')


async def test_request_approval_on_terminal_transaction(vendor_approvals, escrow, flow):
    transaction = await flow.initiated()
    await escrow.cancel(transaction['id'], BUYER, 'found another table')

    with pytest.raises(InvalidStateError):
        await _request(vendor_approvals, transaction)


async def test_one_active_request_per_transaction(vendor_approvals, flow):
    transaction = await flow.escrow_held()
    await _request(vendor_approvals, transaction)

    with pytest.raises(ConflictError):
        await _request(vendor_approvals, transaction, email='other@example.com')


async def test_public_view(vendor_approvals, flow):
    transaction = await flow.escrow_held()
    approval = await _request(vendor_approvals, transaction)

    view = await vendor_approvals.get_by_token(approval['token'])

    assert view['status'] == 'pending'
    assert view['transaction_code'] == transaction['code']
    assert view['vendor_name'] == 'Restaurante Mar Azul'
    assert 'vendor_email' not in view

    with pytest.raises(NotFoundError):
        await vendor_approvals.get_by_token('f' * 32)


async def test_approve(vendor_approvals, flow, notifier):
    transaction = await flow.escrow_held()
    approval = await _request(vendor_approvals, transaction)

    approved = await vendor_approvals.respond(approval['token'], 'approve', ip_address='200.1.2.3')

    assert approved['status'] == 'approved'
    assert approved['ip_address'] == '200.1.2.3'
    assert approved['approved_at'] is not None
    assert 'vendor_approval' in notifier.kinds_for(BUYER)
    assert 'vendor_approval' in notifier.kinds_for(SELLER)

    with pytest.raises(ConflictError):
        await vendor_approvals.respond(approval['token'], 'reject', reason='changed my mind')


async def test_reject_requires_reason(vendor_approvals, flow):
    transaction = await flow.escrow_held()
    approval = await _request(vendor_approvals, transaction)

    with pytest.raises(RequiredFieldError):
        await vendor_approvals.respond(approval['token'], 'reject')
    with pytest.raises(ValidationError):
        await vendor_approvals.respond(approval['token'], 'maybe')

    rejected = await vendor_approvals.respond(approval['token'], 'reject', reason='No transfers for this date')
    assert rejected['status'] == 'rejected'
    assert rejected['rejected_reason'] == 'No transfers for this date'


async def test_rejection_allows_a_new_request(vendor_approvals, flow):
    transaction = await flow.escrow_held()
    approval = await _request(vendor_approvals, transaction)
    await vendor_approvals.respond(approval['token'], 'reject', reason='wrong name')

    again = await _request(vendor_approvals, transaction)
    assert again['token'] != approval['token']


async def test_expired_link(vendor_approvals, store, clock, flow):
    transaction = await flow.escrow_held()
    approval = await _request(vendor_approvals, transaction)

    clock.advance(days=7)

    with pytest.raises(GoneError):
        await vendor_approvals.respond(approval['token'], 'approve')
    assert store.vendor_approvals[approval['id']]['status'] == 'expired'
    with pytest.raises(GoneError):
        await vendor_approvals.get_by_token(approval['token'])


async def test_get_for_transaction(vendor_approvals, flow):
    transaction = await flow.escrow_held()
    assert await vendor_approvals.get_for_transaction(transaction['id'], BUYER) is None

    approval = await _request(vendor_approvals, transaction)

    latest = await vendor_approvals.get_for_transaction(transaction['id'], BUYER)
    assert latest['id'] == approval['id']
    with pytest.raises(ForbiddenError):
        await vendor_approvals.get_for_transaction(transaction['id'], STRANGER)
