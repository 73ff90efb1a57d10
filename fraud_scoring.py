"""
Fraud Risk Scoring.

Pure, deterministic scoring of listings and transactions. Each scorer
combines weighted signals into a 0-100 score and a risk tier; the result is
advisory and feeds the review queue.

Inputs are plain mappings (database rows or request payloads). A missing or
malformed field contributes nothing; a scorer never raises. ``now`` is always
passed in explicitly.

Example:
    >>> result = score_listing(listing, seller, cohort, now=utcnow())
    >>> result.risk, result.recommendation
    ('medium', 'review')
"""

import ipaddress
import logging
import re
import unicodedata
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from statistics import median
from typing import Optional, List, Dict, Any, Iterable, Callable

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    """Risk tiers, ordered."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Upper bound (inclusive) of each tier; anything above HIGH is critical
RISK_THRESHOLDS = {
    RiskLevel.LOW: 25,
    RiskLevel.MEDIUM: 50,
    RiskLevel.HIGH: 75,
}

NEW_ACCOUNT_DAYS = 7
HIGH_VALUE_THRESHOLD = Decimal('10000')
FAST_PURCHASE_SECONDS = 30
FAST_PURCHASE_HIGH_AMOUNT = Decimal('5000')
SLOW_PURCHASE_HOURS = 24
FAILED_ATTEMPTS_THRESHOLD = 3
MIN_DESCRIPTION_LENGTH = 50
NEAR_DUPLICATE_SIMILARITY = 0.85
SAME_DAY_LISTINGS_THRESHOLD = 3
RAPID_TRANSACTIONS_THRESHOLD = 2
COHORT_MIN_SIZE = 3
COHORT_MAD_FACTOR = 3
COHORT_MEDIAN_FLOOR = Decimal('0.30')

_TOKEN_RE = re.compile(r'\w+', re.UNICODE)


@dataclass(frozen=True)
class FraudWeights:
    """Signal weights. Tunable policy; the defaults are the production values."""
    deep_discount: int = 30
    extreme_discount: int = 45
    cohort_price_outlier: int = 20
    new_account: int = 15
    unverified_identity: int = 20
    no_completed_transactions: int = 10
    new_account_high_value: int = 25
    no_images: int = 15
    shared_image: int = 30
    short_description: int = 10
    near_duplicate: int = 35
    past_event: int = 40
    imminent_event: int = 20
    many_listings_today: int = 15
    verified_identity: int = -20
    has_completed_transactions: int = -15
    mismatched_location: int = 10
    no_profile_photo: int = 5

    amount_above_listing: int = 30
    amount_far_above_listing: int = 45
    same_ip: int = 50
    same_network: int = 25
    failed_payments: int = 20
    fast_purchase: int = 15
    fast_purchase_high_amount: int = 25
    slow_purchase_with_failures: int = 20
    new_buyer_account: int = 10
    rapid_buyer_transactions: int = 20


DEFAULT_WEIGHTS = FraudWeights()


@dataclass
class FraudSignal:
    signal: str
    weight: int
    category: str
    description: str


@dataclass
class FraudScore:
    """Result of a scoring run."""
    score: int
    risk: str
    recommendation: str
    signals: List[FraudSignal] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_risk(score: int) -> str:
    """
    Map a score to its tier.

    Example:
        >>> calculate_risk(25), calculate_risk(26), calculate_risk(76)
        ('low', 'medium', 'critical')
    """
    for level, upper in RISK_THRESHOLDS.items():
        if score <= upper:
            return level.value
    return RiskLevel.CRITICAL.value


def get_recommendation(score: int) -> str:
    """allow up to the low tier, review in the medium tier, block above."""
    if score <= RISK_THRESHOLDS[RiskLevel.LOW]:
        return 'allow'
    if score <= RISK_THRESHOLDS[RiskLevel.MEDIUM]:
        return 'review'
    return 'block'


# ==================== INPUT COERCION ====================

def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def _datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _is_verified(profile: Dict[str, Any]) -> Optional[bool]:
    if 'is_verified' in profile and profile['is_verified'] is not None:
        return bool(profile['is_verified'])
    if profile.get('kyc_status'):
        return profile['kyc_status'] == 'approved'
    return None


def _account_age(profile: Dict[str, Any], now: datetime) -> Optional[timedelta]:
    created_at = _datetime(profile.get('created_at'))
    return now - created_at if created_at else None


def _is_new_account(profile: Dict[str, Any], now: datetime) -> bool:
    age = _account_age(profile, now)
    return age is not None and age < timedelta(days=NEW_ACCOUNT_DAYS)


def _place(value: Any) -> Optional[str]:
    """Case- and accent-insensitive form of a city name."""
    if not isinstance(value, str) or not value.strip():
        return None
    decomposed = unicodedata.normalize('NFD', value.strip().lower())
    return ''.join(ch for ch in decomposed if not unicodedata.combining(ch))


def _tokens(text: str) -> set:
    return set(_TOKEN_RE.findall(text.lower()))


def _jaccard(left: set, right: set) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def _listing_text(listing: Dict[str, Any]) -> str:
    parts = [listing.get('title'), listing.get('description')]
    return ' '.join(p for p in parts if isinstance(p, str))


def _combine(
    checks: Iterable[Callable[[], List[FraudSignal]]],
    subject: str
) -> FraudScore:
    signals: List[FraudSignal] = []
    for check in checks:
        try:
            signals.extend(check())
        except Exception as e:
            # A malformed input drops one signal group, never the whole score
            logger.warning(f"Skipping {check.__name__} for {subject}: {e}")

    total = sum(signal.weight for signal in signals)
    score = max(0, min(100, total))
    return FraudScore(
        score=score,
        risk=calculate_risk(score),
        recommendation=get_recommendation(score),
        signals=signals
    )


# ==================== LISTINGS ====================

def score_listing(
    listing: Dict[str, Any],
    seller: Optional[Dict[str, Any]],
    cohort: Iterable[Dict[str, Any]] = (),
    *,
    now: datetime,
    weights: FraudWeights = DEFAULT_WEIGHTS
) -> FraudScore:
    """
    Score a listing.

    Args:
        listing: Listing row (asking_price, original_price, category, images,
            title, description, event_date, seller_id, created_at)
        seller: Seller profile (created_at, is_verified/kyc_status,
            completed_transactions_count)
        cohort: Other active listings, used for price distribution, image
            reuse, duplicate text and same-day volume
        now: Reference time
        weights: Signal weights

    Returns:
        FraudScore
    """
    seller = seller or {}
    others = [item for item in cohort if item.get('id') != listing.get('id')]
    completed = _int(seller.get('completed_transactions_count'))
    verified = _is_verified(seller)
    new_account = _is_new_account(seller, now)
    identity_weak = new_account or verified is False or completed == 0

    def pricing() -> List[FraudSignal]:
        signals = []
        asking = _decimal(listing.get('asking_price'))
        original = _decimal(listing.get('original_price'))
        if asking is None:
            return signals

        if original and original > 0 and identity_weak:
            discount = 1 - asking / original
            if discount > Decimal('0.80'):
                signals.append(FraudSignal(
                    'extreme_discount_weak_identity', weights.extreme_discount, 'pricing',
                    f"Asking price {discount:.0%} below original with an unproven seller"
                ))
            elif discount > Decimal('0.60'):
                signals.append(FraudSignal(
                    'deep_discount_weak_identity', weights.deep_discount, 'pricing',
                    f"Asking price {discount:.0%} below original with an unproven seller"
                ))

        category = listing.get('category')
        prices = [
            p for p in (_decimal(item.get('asking_price')) for item in others
                        if category and item.get('category') == category)
            if p is not None and p > 0
        ]
        if len(prices) >= COHORT_MIN_SIZE:
            center = median(prices)
            mad = median([abs(p - center) for p in prices])
            far_out = mad > 0 and abs(asking - center) > COHORT_MAD_FACTOR * mad
            too_cheap = asking < center * COHORT_MEDIAN_FLOOR
            if far_out or too_cheap:
                signals.append(FraudSignal(
                    'cohort_price_outlier', weights.cohort_price_outlier, 'pricing',
                    f"Price {asking} is far from the category median {center}"
                ))
        return signals

    def identity() -> List[FraudSignal]:
        signals = []
        if new_account:
            signals.append(FraudSignal(
                'new_account', weights.new_account, 'identity',
                f"Account younger than {NEW_ACCOUNT_DAYS} days"
            ))
            asking = _decimal(listing.get('asking_price'))
            if asking is not None and asking > HIGH_VALUE_THRESHOLD:
                signals.append(FraudSignal(
                    'new_account_high_value', weights.new_account_high_value, 'identity',
                    f"New account listing above {HIGH_VALUE_THRESHOLD}"
                ))
        if verified is False:
            signals.append(FraudSignal(
                'unverified_identity', weights.unverified_identity, 'identity',
                "Identity not verified"
            ))
        elif verified:
            signals.append(FraudSignal(
                'verified_identity', weights.verified_identity, 'identity',
                "Identity verified"
            ))
        if completed == 0:
            signals.append(FraudSignal(
                'no_completed_transactions', weights.no_completed_transactions, 'identity',
                "No completed transactions"
            ))
        elif completed is not None and completed > 0:
            signals.append(FraudSignal(
                'has_completed_transactions', weights.has_completed_transactions, 'identity',
                f"{completed} completed transactions"
            ))
        if 'avatar_url' in seller and not seller['avatar_url']:
            signals.append(FraudSignal(
                'no_profile_photo', weights.no_profile_photo, 'identity',
                "Seller has no profile photo"
            ))
        seller_city = _place(seller.get('city'))
        venue_city = _place(listing.get('venue_city'))
        if seller_city and venue_city and seller_city != venue_city:
            signals.append(FraudSignal(
                'mismatched_location', weights.mismatched_location, 'identity',
                f"Seller city {seller.get('city')} differs from venue city {listing.get('venue_city')}"
            ))
        return signals

    def content() -> List[FraudSignal]:
        signals = []
        images = listing.get('images')
        if isinstance(images, (list, tuple)):
            if not images:
                signals.append(FraudSignal('no_images', weights.no_images, 'content', "Listing has no images"))
            else:
                own_images = set()
                for item in others:
                    if item.get('seller_id') == listing.get('seller_id'):
                        own_images.update(item.get('images') or [])
                if own_images & set(images):
                    signals.append(FraudSignal(
                        'shared_image', weights.shared_image, 'content',
                        "Image reused from another active listing by the same seller"
                    ))

        description = listing.get('description')
        if isinstance(description, str) and len(description.strip()) < MIN_DESCRIPTION_LENGTH:
            signals.append(FraudSignal(
                'short_description', weights.short_description, 'content',
                f"Description shorter than {MIN_DESCRIPTION_LENGTH} characters"
            ))

        tokens = _tokens(_listing_text(listing))
        for item in others:
            if _jaccard(tokens, _tokens(_listing_text(item))) >= NEAR_DUPLICATE_SIMILARITY:
                signals.append(FraudSignal(
                    'near_duplicate', weights.near_duplicate, 'content',
                    f"Text nearly identical to listing {item.get('id')}"
                ))
                break
        return signals

    def temporal() -> List[FraudSignal]:
        signals = []
        event_date = _datetime(listing.get('event_date'))
        if event_date is not None:
            if event_date < now:
                signals.append(FraudSignal('past_event', weights.past_event, 'temporal', "Event date is in the past"))
            elif event_date - now < timedelta(hours=24):
                signals.append(FraudSignal(
                    'imminent_event', weights.imminent_event, 'temporal',
                    "Event is less than 24 hours away"
                ))

        created_at = _datetime(listing.get('created_at')) or now
        same_day = 1 + sum(
            1 for item in others
            if item.get('seller_id') == listing.get('seller_id')
            and (_datetime(item.get('created_at')) or now).date() == created_at.date()
        )
        if same_day >= SAME_DAY_LISTINGS_THRESHOLD:
            signals.append(FraudSignal(
                'many_listings_today', weights.many_listings_today, 'behavior',
                f"{same_day} listings created by the seller the same day"
            ))
        return signals

    return _combine([pricing, identity, content, temporal], f"listing {listing.get('id')}")


# ==================== TRANSACTIONS ====================

def _same_network(left: str, right: str) -> bool:
    a = ipaddress.ip_address(left)
    b = ipaddress.ip_address(right)
    if a.version != b.version:
        return False
    prefix = 24 if a.version == 4 else 64
    return ipaddress.ip_network(f"{a}/{prefix}", strict=False) == ipaddress.ip_network(f"{b}/{prefix}", strict=False)


def score_transaction(
    transaction: Dict[str, Any],
    buyer: Optional[Dict[str, Any]],
    seller: Optional[Dict[str, Any]],
    listing: Optional[Dict[str, Any]] = None,
    *,
    now: datetime,
    recent_buyer_transactions: Optional[int] = None,
    weights: FraudWeights = DEFAULT_WEIGHTS
) -> FraudScore:
    """
    Score a transaction.

    Args:
        transaction: Transaction row (agreed_price, buyer_ip, seller_ip,
            failed_payment_attempts, buyer_first_viewed_at, created_at)
        buyer: Buyer profile
        seller: Seller profile
        listing: Originating listing (asking_price)
        now: Reference time
        recent_buyer_transactions: Buyer's transactions in the last 24 hours
        weights: Signal weights

    Returns:
        FraudScore
    """
    buyer = buyer or {}
    seller = seller or {}
    amount = _decimal(transaction.get('agreed_price'))
    failed = _int(transaction.get('failed_payment_attempts')) or 0

    def pricing() -> List[FraudSignal]:
        price = _decimal((listing or {}).get('asking_price'))
        if amount is None or price is None:
            return []
        price = price * (_int(transaction.get('quantity')) or 1)
        if amount - price <= Decimal('0.01'):
            return []
        if price > 0 and amount > price * Decimal('1.5'):
            return [FraudSignal(
                'amount_far_above_listing', weights.amount_far_above_listing, 'pricing',
                f"Amount {amount} is more than 50% above the listing price {price}"
            )]
        return [FraudSignal(
            'amount_above_listing', weights.amount_above_listing, 'pricing',
            f"Amount {amount} is above the listing price {price}"
        )]

    def network() -> List[FraudSignal]:
        buyer_ip = transaction.get('buyer_ip') or buyer.get('ip_address')
        seller_ip = transaction.get('seller_ip') or seller.get('ip_address')
        if not buyer_ip or not seller_ip:
            return []
        if str(buyer_ip) == str(seller_ip):
            return [FraudSignal('same_ip', weights.same_ip, 'network', "Buyer and seller share an IP address")]
        if _same_network(str(buyer_ip), str(seller_ip)):
            return [FraudSignal(
                'same_network', weights.same_network, 'network',
                "Buyer and seller are on the same network"
            )]
        return []

    def behavior() -> List[FraudSignal]:
        signals = []
        if failed >= FAILED_ATTEMPTS_THRESHOLD:
            signals.append(FraudSignal(
                'failed_payments', weights.failed_payments, 'payment',
                f"{failed} failed payment attempts"
            ))

        viewed_at = _datetime(transaction.get('buyer_first_viewed_at'))
        purchased_at = _datetime(transaction.get('created_at')) or now
        if viewed_at is not None:
            latency = purchased_at - viewed_at
            if timedelta(0) <= latency < timedelta(seconds=FAST_PURCHASE_SECONDS):
                if amount is not None and amount > FAST_PURCHASE_HIGH_AMOUNT:
                    signals.append(FraudSignal(
                        'fast_purchase_high_amount', weights.fast_purchase_high_amount, 'behavior',
                        f"Purchased {int(latency.total_seconds())}s after first view, high amount"
                    ))
                else:
                    signals.append(FraudSignal(
                        'fast_purchase', weights.fast_purchase, 'behavior',
                        f"Purchased {int(latency.total_seconds())}s after first view"
                    ))
            elif latency > timedelta(hours=SLOW_PURCHASE_HOURS) and failed >= FAILED_ATTEMPTS_THRESHOLD:
                signals.append(FraudSignal(
                    'slow_purchase_with_failures', weights.slow_purchase_with_failures, 'behavior',
                    "Long gap between view and purchase with repeated payment failures"
                ))

        if _is_new_account(buyer, now):
            signals.append(FraudSignal(
                'new_buyer_account', weights.new_buyer_account, 'identity',
                f"Buyer account younger than {NEW_ACCOUNT_DAYS} days"
            ))

        recent = _int(recent_buyer_transactions)
        if recent is not None and recent > RAPID_TRANSACTIONS_THRESHOLD:
            signals.append(FraudSignal(
                'rapid_buyer_transactions', weights.rapid_buyer_transactions, 'behavior',
                f"Buyer started {recent} transactions in 24 hours"
            ))
        return signals

    return _combine([pricing, network, behavior], f"transaction {transaction.get('code') or transaction.get('id')}")
