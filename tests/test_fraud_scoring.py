"""
Tests for listing and transaction risk scoring.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fraud_scoring import (
    DEFAULT_WEIGHTS,
    calculate_risk,
    get_recommendation,
    score_listing,
    score_transaction,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _seller(**fields):
    seller = {
        'id': 'seller-1',
        'created_at': NOW - timedelta(days=400),
        'is_verified': True,
        'completed_transactions_count': 8,
    }
    seller.update(fields)
    return seller


def _listing(**fields):
    listing = {
        'id': 1,
        'seller_id': 'seller-1',
        'title': 'Two tickets for the jazz festival',
        'description': 'Two front row seats for the Saturday night jazz festival, transfer through the organizer.',
        'category': 'concert',
        'asking_price': Decimal('1000'),
        'original_price': Decimal('1200'),
        'images': ['https://cdn.example.com/jazz.jpg'],
        'event_date': NOW + timedelta(days=30),
        'created_at': NOW,
    }
    listing.update(fields)
    return listing


def _signals(result):
    return {signal.signal for signal in result.signals}


# ==================== TIERS ====================

@pytest.mark.parametrize('score, risk, recommendation', [
    (0, 'low', 'allow'),
    (25, 'low', 'allow'),
    (26, 'medium', 'review'),
    (50, 'medium', 'review'),
    (51, 'high', 'block'),
    (75, 'high', 'block'),
    (76, 'critical', 'block'),
    (100, 'critical', 'block'),
])
def test_risk_tiers(score, risk, recommendation):
    assert calculate_risk(score) == risk
    assert get_recommendation(score) == recommendation


# ==================== LISTINGS ====================

def test_established_seller_scores_low():
    result = score_listing(_listing(), _seller(), now=NOW)

    assert result.score == 0
    assert result.risk == 'low'
    assert _signals(result) == {'verified_identity', 'has_completed_transactions'}


def test_everything_wrong_is_critical():
    seller = _seller(created_at=NOW - timedelta(days=2), is_verified=False, completed_transactions_count=0)
    listing = _listing(
        asking_price=Decimal('150'), original_price=Decimal('1000'), images=[],
        description='cheap', event_date=NOW - timedelta(days=1)
    )

    result = score_listing(listing, seller, now=NOW)

    assert result.score == 100
    assert result.risk == 'critical'
    assert result.recommendation == 'block'
    assert {
        'extreme_discount_weak_identity', 'new_account', 'unverified_identity',
        'no_completed_transactions', 'no_images', 'short_description', 'past_event',
    } <= _signals(result)


def test_discount_alone_is_not_a_signal():
    result = score_listing(_listing(asking_price=Decimal('300')), _seller(), now=NOW)
    assert not any('discount' in signal for signal in _signals(result))


def test_deep_discount_with_unverified_seller():
    result = score_listing(_listing(asking_price=Decimal('400')), _seller(is_verified=False), now=NOW)
    assert 'deep_discount_weak_identity' in _signals(result)


def test_cohort_price_outlier():
    cohort = [
        _listing(id=10 + i, seller_id='other', asking_price=Decimal(price), title=f"Listing {i}",
                 description=f"Unrelated description number {i} for another concert in town, nothing shared.")
        for i, price in enumerate(('1000', '1100', '1050'))
    ]

    result = score_listing(_listing(asking_price=Decimal('200')), _seller(), cohort, now=NOW)
    assert 'cohort_price_outlier' in _signals(result)

    result = score_listing(_listing(asking_price=Decimal('200')), _seller(), cohort[:2], now=NOW)
    assert 'cohort_price_outlier' not in _signals(result)


def test_reused_image_and_near_duplicate():
    twin = _listing(id=2)
    result = score_listing(_listing(), _seller(), [twin], now=NOW)
    assert {'shared_image', 'near_duplicate'} <= _signals(result)


def test_many_listings_the_same_day():
    cohort = [
        _listing(id=20 + i, images=[f"https://cdn.example.com/{i}.jpg"], title=f"Dinner {i}",
                 description=f"Completely different text {i} about a restaurant reservation downtown.")
        for i in range(2)
    ]
    result = score_listing(_listing(), _seller(), cohort, now=NOW)
    assert 'many_listings_today' in _signals(result)


def test_imminent_event():
    result = score_listing(_listing(event_date=NOW + timedelta(hours=5)), _seller(), now=NOW)
    assert 'imminent_event' in _signals(result)


def test_missing_profile_photo():
    seller = _seller(is_verified=None, completed_transactions_count=None, avatar_url=None)

    result = score_listing(_listing(), seller, now=NOW)

    assert _signals(result) == {'no_profile_photo'}
    assert result.score == DEFAULT_WEIGHTS.no_profile_photo
    assert 'no_profile_photo' in _signals(score_listing(_listing(), _seller(avatar_url=''), now=NOW))
    assert 'no_profile_photo' not in _signals(
        score_listing(_listing(), _seller(avatar_url='https://cdn.example.com/me.jpg'), now=NOW)
    )


def test_mismatched_location():
    seller = _seller(is_verified=None, completed_transactions_count=None, city='Curitiba')

    result = score_listing(_listing(venue_city='São Paulo'), seller, now=NOW)

    assert _signals(result) == {'mismatched_location'}
    assert result.score == DEFAULT_WEIGHTS.mismatched_location


@pytest.mark.parametrize('seller_city, venue_city', [
    ('São Paulo', 'sao paulo'),
    ('  Curitiba ', 'CURITIBA'),
    (None, 'Curitiba'),
    ('Curitiba', ''),
])
def test_location_matches_or_is_unknown(seller_city, venue_city):
    result = score_listing(_listing(venue_city=venue_city), _seller(city=seller_city), now=NOW)
    assert 'mismatched_location' not in _signals(result)


def test_scoring_is_deterministic():
    seller = _seller(is_verified=False)
    listing = _listing(images=[])
    assert score_listing(listing, seller, now=NOW).to_dict() == score_listing(listing, seller, now=NOW).to_dict()


def test_adding_a_risk_signal_never_lowers_the_score():
    base = score_listing(_listing(), _seller(is_verified=False), now=NOW)
    worse = score_listing(_listing(images=[]), _seller(is_verified=False), now=NOW)
    assert worse.score >= base.score


def test_malformed_fields_are_ignored():
    listing = _listing(asking_price='abc', original_price=None, images=None,
                       event_date='not-a-date', created_at=12345)
    seller = {'created_at': 'yesterday', 'completed_transactions_count': 'many'}

    result = score_listing(listing, seller, [{'id': 99, 'asking_price': object()}], now=NOW)

    assert 0 <= result.score <= 100
    assert score_listing({}, None, now=NOW).score == 0


def test_custom_weights():
    weights = replace(DEFAULT_WEIGHTS, no_images=0)
    seller = _seller(is_verified=None, kyc_status=None, completed_transactions_count=None)

    default = score_listing(_listing(images=[]), seller, now=NOW)
    tuned = score_listing(_listing(images=[]), seller, now=NOW, weights=weights)

    assert default.score == DEFAULT_WEIGHTS.no_images
    assert tuned.score == 0


# ==================== TRANSACTIONS ====================

def _transaction(**fields):
    transaction = {
        'id': 7,
        'code': 'TXN-2026-AB12',
        'agreed_price': Decimal('1000'),
        'quantity': 1,
        'failed_payment_attempts': 0,
        'created_at': NOW,
    }
    transaction.update(fields)
    return transaction


def _buyer(**fields):
    buyer = {'id': 'buyer-1', 'created_at': NOW - timedelta(days=200)}
    buyer.update(fields)
    return buyer


def test_ordinary_transaction_scores_zero():
    result = score_transaction(_transaction(), _buyer(), _seller(), _listing(), now=NOW)
    assert result.score == 0
    assert result.signals == []


def test_quantity_is_part_of_the_listing_price():
    transaction = _transaction(agreed_price=Decimal('2000'), quantity=2)
    result = score_transaction(transaction, _buyer(), _seller(), _listing(), now=NOW)
    assert result.signals == []


def test_amount_above_listing():
    above = score_transaction(_transaction(agreed_price=Decimal('1200')), _buyer(), _seller(), _listing(), now=NOW)
    far = score_transaction(_transaction(agreed_price=Decimal('1600')), _buyer(), _seller(), _listing(), now=NOW)

    assert _signals(above) == {'amount_above_listing'}
    assert _signals(far) == {'amount_far_above_listing'}


def test_same_ip_and_same_network():
    same = score_transaction(_transaction(buyer_ip='10.0.0.5', seller_ip='10.0.0.5'),
                             _buyer(), _seller(), now=NOW)
    network = score_transaction(_transaction(buyer_ip='10.0.0.5', seller_ip='10.0.0.77'),
                                _buyer(), _seller(), now=NOW)
    apart = score_transaction(_transaction(buyer_ip='10.0.0.5', seller_ip='177.20.1.1'),
                              _buyer(), _seller(), now=NOW)

    assert _signals(same) == {'same_ip'}
    assert same.score == 50
    assert _signals(network) == {'same_network'}
    assert apart.signals == []


def test_purchase_latency():
    fast = score_transaction(
        _transaction(buyer_first_viewed_at=NOW - timedelta(seconds=10)), _buyer(), _seller(), now=NOW
    )
    fast_expensive = score_transaction(
        _transaction(agreed_price=Decimal('6000'), buyer_first_viewed_at=NOW - timedelta(seconds=10)),
        _buyer(), _seller(), now=NOW
    )
    slow_failing = score_transaction(
        _transaction(buyer_first_viewed_at=NOW - timedelta(days=2), failed_payment_attempts=3),
        _buyer(), _seller(), now=NOW
    )

    assert _signals(fast) == {'fast_purchase'}
    assert _signals(fast_expensive) == {'fast_purchase_high_amount'}
    assert _signals(slow_failing) == {'failed_payments', 'slow_purchase_with_failures'}


def test_new_buyer_with_rapid_transactions():
    result = score_transaction(
        _transaction(), _buyer(created_at=NOW - timedelta(days=1)), _seller(),
        now=NOW, recent_buyer_transactions=3
    )
    assert _signals(result) == {'new_buyer_account', 'rapid_buyer_transactions'}
    assert result.score == 30
    assert result.risk == 'medium'


def test_transaction_with_garbage_ip_still_scores():
    result = score_transaction(
        _transaction(buyer_ip='not-an-ip', seller_ip='10.0.0.1', agreed_price='x'),
        _buyer(), _seller(), _listing(), now=NOW
    )
    assert result.score == 0
