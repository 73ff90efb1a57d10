"""
Tests for the chat trust gate and message classification.
"""

import pytest

from message_filter import (
    BLOCKED_PLACEHOLDER,
    FilterMode,
    analyze_message,
    get_violation_description,
    resolve_filter_mode,
    strip_whitelisted,
)


@pytest.mark.parametrize('status, expected', [
    (None, FilterMode.PRE_ESCROW),
    ('INITIATED', FilterMode.PRE_ESCROW),
    ('AWAITING_PAYMENT', FilterMode.PRE_ESCROW),
    ('PAYMENT_CONFIRMED', FilterMode.PRE_ESCROW),
    ('CANCELLED', FilterMode.PRE_ESCROW),
    ('REFUNDED', FilterMode.PRE_ESCROW),
    ('ESCROW_HELD', FilterMode.POST_ESCROW),
    ('TRANSFER_PENDING', FilterMode.POST_ESCROW),
    ('COMPLETED', FilterMode.POST_ESCROW),
    ('DISPUTE_OPENED', FilterMode.POST_ESCROW),
    ('DISPUTE_RESOLVED', FilterMode.POST_ESCROW),
])
def test_filter_mode_follows_transaction_status(status, expected):
    assert resolve_filter_mode(status) == expected


def test_filter_mode_accepts_enum_members():
    from escrow_service import TransactionStatus

    assert resolve_filter_mode(TransactionStatus.ESCROW_HELD) == FilterMode.POST_ESCROW


def test_phone_number_blocked_before_escrow():
    analysis = analyze_message("call me at 11 3456-7890")

    assert analysis.is_blocked
    assert analysis.severity == 'high'
    assert analysis.violations == ['phone']
    assert '3456-7890' not in analysis.sanitized_text
    assert BLOCKED_PLACEHOLDER in analysis.sanitized_text


def test_email_blocked_and_masked():
    analysis = analyze_message("my email is joao.silva@gmail.com")

    assert analysis.violations[0] == 'email'
    assert 'joao.silva@gmail.com' not in analysis.sanitized_text
    assert get_violation_description(analysis.violations).startswith('Email addresses')


def test_prices_dates_and_times_are_not_contact_details():
    text = "Is the reservation still available for 15/03/2026 at 18:30? I can pay R$ 1.500,00"
    analysis = analyze_message(text)

    assert not analysis.is_blocked
    assert analysis.severity == 'none'
    assert analysis.violations == []
    assert analysis.sanitized_text == text


def test_whitelist_placeholders():
    assert strip_whitelisted("R$ 250,00 on 20/12/2026 at 21:00") == "AMOUNT on DATE at TIME"


@pytest.mark.parametrize('text, label', [
    ("let's talk on whatsapp instead", 'messaging_app'),
    ("follow me on instagram", 'social_redirect'),
    ("my cpf is 529.982.247-25", 'cpf'),
    ("check https://my-tickets.example.org/deal", 'external_link'),
    ("we can close the deal outside the platform", 'off_platform_deal'),
    ("meu numero é nove nove oito sete seis", 'written_number'),
])
def test_contact_attempts_blocked_before_escrow(text, label):
    analysis = analyze_message(text, FilterMode.PRE_ESCROW)
    assert analysis.is_blocked
    assert label in analysis.violations


def test_contact_details_allowed_after_escrow():
    analysis = analyze_message("call me at 11 3456-7890", FilterMode.POST_ESCROW)

    assert not analysis.is_blocked
    assert analysis.violations == []


@pytest.mark.parametrize('mode', [FilterMode.PRE_ESCROW, FilterMode.POST_ESCROW])
def test_harassment_blocked_in_both_modes(mode):
    analysis = analyze_message("I know where you live", mode)

    assert analysis.is_blocked
    assert analysis.violations == ['harassment']


@pytest.mark.parametrize('mode', [FilterMode.PRE_ESCROW, FilterMode.POST_ESCROW])
def test_code_request_scam_blocked_in_both_modes(mode):
    analysis = analyze_message("please send me the code you received", mode)

    assert analysis.violations == ['scam_code_request']
    assert analysis.severity == 'high'


def test_description_prefers_highest_priority():
    assert get_violation_description(['web_address', 'harassment']).startswith('Threats')
    assert get_violation_description([]) == ''
    assert 'not allowed' in get_violation_description(['something_new'])


def test_empty_message():
    analysis = analyze_message('')
    assert not analysis.is_blocked
    assert analysis.to_dict()['severity'] == 'none'
