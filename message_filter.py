"""
Chat message filtering.

Decides which filter mode applies to a conversation (the trust gate) and
classifies outgoing messages. Before escrow, any attempt to share contact
details or move the deal off the platform is blocked. After escrow, the
parties may exchange contact details, but harassment and scam patterns are
blocked in both modes.

Patterns cover Portuguese and English phrasing.
"""

import re
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Dict, Any, Optional, Callable, Tuple, Pattern


class FilterMode(str, Enum):
    """Communication filter mode."""
    PRE_ESCROW = "PRE_ESCROW"
    POST_ESCROW = "POST_ESCROW"


# Transaction statuses in which funds are secured
UNLOCKED_STATUSES = frozenset({
    'ESCROW_HELD',
    'TRANSFER_PENDING',
    'COMPLETED',
    'DISPUTE_OPENED',
    'DISPUTE_RESOLVED',
})

BLOCKED_PLACEHOLDER = '[blocked]'


def resolve_filter_mode(transaction_status: Optional[Any]) -> FilterMode:
    """
    Select the filter mode for a conversation from its transaction status.

    No transaction at all means PRE_ESCROW.

    Example:
        >>> resolve_filter_mode('TRANSFER_PENDING')
        <FilterMode.POST_ESCROW: 'POST_ESCROW'>
        >>> resolve_filter_mode(None)
        <FilterMode.PRE_ESCROW: 'PRE_ESCROW'>
    """
    status = getattr(transaction_status, 'value', transaction_status)
    if status in UNLOCKED_STATUSES:
        return FilterMode.POST_ESCROW
    return FilterMode.PRE_ESCROW


@dataclass
class MessageAnalysis:
    is_blocked: bool
    severity: str
    violations: List[str] = field(default_factory=list)
    sanitized_text: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Rule = Tuple[Pattern, str]


def _rules(*specs: Tuple[str, str, int]) -> List[Rule]:
    return [(re.compile(pattern, flags), label) for pattern, label, flags in specs]


# ==================== WHITELIST ====================

# Stripped before the contact rules run so that prices, dates and seat
# numbers are not mistaken for phone numbers.
WHITELIST = [
    (re.compile(r'R?\$\s*[\d.,]+', re.IGNORECASE), 'AMOUNT'),
    (re.compile(r'\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b'), 'DATE'),
    (re.compile(r'\b(20\d{2}|19\d{2})\b'), 'YEAR'),
    (re.compile(r'\b\d{1,2}h(\d{2})?\b', re.IGNORECASE), 'TIME'),
    (re.compile(r'\b\d{1,2}:\d{2}\b'), 'TIME'),
    (re.compile(r'\b\d{5}-?\d{3}\b'), 'POSTCODE'),
    (re.compile(r'\b\d+[,.]?\d*\s*%'), 'PERCENT'),
    (re.compile(
        r'\b(lote|ingresso|mesa|lugar|assento|setor|cadeira|fila|'
        r'lot|ticket|table|seat|sector|row|gate)\s+\d+\b',
        re.IGNORECASE
    ), 'SEAT'),
    (re.compile(
        r'\b([1-9]|1\d|20)\s*(ingressos?|pessoas?|convidados?|pax|tickets?|people|guests?)\b',
        re.IGNORECASE
    ), 'QUANTITY'),
]


def strip_whitelisted(text: str) -> str:
    for pattern, placeholder in WHITELIST:
        text = pattern.sub(placeholder, text)
    return text


# ==================== CONTACT RULES ====================

_I = re.IGNORECASE

EMAIL_RULES = _rules(
    (r'[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}', 'email', 0),
    (r'\b\w[\w.\-]*\s*(arr[0o]ba|arroba|\[?at\]?|\(at\))\s*\w[\w.\-]*\s*'
     r'(\.|\s+dot\s+|\s+ponto\s+)(com|net|org|br|io|co)\b', 'obfuscated_email', _I),
)

URL_RULES = _rules(
    (r'https?://[^\s,;)>]+', 'external_link', _I),
    (r'\bwww\.[a-zA-Z0-9\-]+\.[a-zA-Z]{2,}\S*', 'external_link', _I),
    (r'\b(bit\.ly|t\.co|goo\.gl|tinyurl\.com|ow\.ly|short\.io|tiny\.cc|rb\.gy)\s*/\s*[a-zA-Z0-9]+',
     'short_url', _I),
    (r'\b[a-zA-Z0-9\-]{2,}\.(com|net|org|br|io|co|app|me|link)\b', 'web_address', _I),
)

SOCIAL_RULES = _rules(
    (r'@[a-zA-Z0-9_.]{3,}', 'social_profile', 0),
    (r'\b(instagram|facebook|fb|twitter|x\.com|linkedin|tiktok|snapchat|telegram|signal)'
     r'\s*[./:]?\s*[a-zA-Z0-9_.]{2,}', 'social_profile', _I),
    (r'\b(me\s+chama|chama\s+no|me\s+add|add\s+no|me\s+segue|me\s+manda|manda\s+msg|'
     r'me\s+contata?|entra\s+em\s+contato|add\s+me|follow\s+me|text\s+me|dm\s+me|'
     r'message\s+me|hit\s+me\s+up|reach\s+me)\s*(no|na|pelo?|via|on|at)?\s*'
     r'(insta(gram)?|zap(zap)?|whats(app)?|face(book)?|tele(gram)?|signal|linkedin|twitter|tiktok)\b',
     'social_redirect', _I),
    (r'\b(whatsapp|whats\s*app|zap\s*zap|zapzap|telegramm?|signal\s+app)\b', 'messaging_app', _I),
)

_PT_DIGITS = r'(zero|um|uma|dois|duas|tr[eê]s|quatro|cinco|seis|sete|oito|nove)'
_EN_DIGITS = r'(zero|oh|one|two|three|four|five|six|seven|eight|nine)'

WRITTEN_NUMBER_RULES = _rules(
    (r'\b(meu|minha)\s+(n[uú]mero|n[uú]mero\s+de\s+(cel|celular|telefone|whats|zap)|'
     r'cel|celular|fone|telefone|contato)\b', 'number_sharing', _I),
    (r'\bmy\s+(number|phone|cell|mobile|contact)\b', 'number_sharing', _I),
    (rf'\b{_PT_DIGITS}(\s+{_PT_DIGITS}){{4,}}\b', 'written_number', _I),
    (rf'\b{_EN_DIGITS}(\s+{_EN_DIGITS}){{4,}}\b', 'written_number', _I),
    (rf'\b(meu|minha)\s+{_PT_DIGITS}\b', 'written_number', _I),
)

BYPASS_RULES = _rules(
    (r'\b(fechar?\s+fora|negoci(ar?|amos)\s+fora|conversar?\s+fora|falar\s+fora|tratar\s+fora|'
     r'resolver\s+fora|contato\s+fora|direto\s+comigo|direto\s+pelo|deal\s+outside|'
     r'outside\s+(the\s+)?(platform|app|site)|off\s+(the\s+)?(platform|app|site))\b',
     'off_platform_deal', _I),
    (r'\b(pix\s+direto|transfere\s+direto|manda?\s+pix|passa?\s+o\s+pix|pix\s+pessoal|'
     r'pay\s+me\s+directly|direct\s+(transfer|payment)|send\s+(me\s+)?(a\s+)?pix)\b',
     'direct_payment', _I),
    (r'\b(sai?\s+da\s+plataforma|saindo\s+daqui|v[aã]?\s+no\s+(zap|whats|insta|tele)|'
     r'continua?\s+(l[aá]|no\s+whats|no\s+zap)|leave\s+(the\s+)?(platform|app|site))\b',
     'leave_platform', _I),
)

CPF_RULES = _rules(
    (r'\b\d{3}\.\d{3}\.\d{3}-\d{2}\b', 'cpf', 0),
    (r'\b\d{11}\b', 'long_numeric_sequence', 0),
)

PHONE_RULES = _rules(
    (r'(\+55[\s\-.]?)?\(?\d{2}\)?[\s\-.]?\d{4,5}[\s\-.]?\d{4}\b', 'phone', 0),
    (r'\b9\d[\s\-.]?\d{4}[\s\-.]?\d{4}\b', 'mobile_phone', 0),
    (r'\b(\d[\s.\-_]{1,2}){7,10}\d\b', 'obfuscated_phone', 0),
    (r'\b\d{8,11}\b', 'numeric_sequence', 0),
)

# ==================== ALWAYS-BLOCKED RULES ====================

HARASSMENT_RULES = _rules(
    (r'\b(vou\s+te\s+(matar|pegar|achar)|sei\s+onde\s+voc[eê]\s+mora|voc[eê]\s+vai\s+se\s+arrepender|'
     r'i\s+will\s+(kill|find|hurt)\s+you|i\s+know\s+where\s+you\s+live|you\s+will\s+regret)',
     'harassment', _I),
)

SCAM_RULES = _rules(
    (r'\b(pag(ue|ar|a)\s+antes|paga(mento)?\s+antecipado|adiantamento\s+fora|'
     r'pay\s+(me\s+)?(upfront|in\s+advance|before)|advance\s+payment)',
     'scam_advance_payment', _I),
    (r'\b((me\s+)?(manda|passa|envia)\s+o\s+c[oó]digo|c[oó]digo\s+de\s+(verifica[cç][aã]o|seguran[cç]a)|'
     r'send\s+(me\s+)?the\s+code|verification\s+code)',
     'scam_code_request', _I),
    (r'\b(suporte\s+(oficial|t[eé]cnico)|equipe\s+de\s+seguran[cç]a|'
     r'official\s+support|support\s+team\s+here|account\s+security\s+team)',
     'scam_fake_support', _I),
)


def _is_real_phone_candidate(match: str) -> bool:
    """At least 8 digits, and not exactly 11 (those are tax ids)."""
    digits = re.sub(r'\D', '', match)
    return len(digits) >= 8 and len(digits) != 11


HIGH_SEVERITY = frozenset({
    'email', 'obfuscated_email', 'phone', 'mobile_phone', 'obfuscated_phone',
    'external_link', 'short_url', 'social_profile', 'social_redirect',
    'messaging_app', 'cpf', 'harassment', 'scam_advance_payment',
    'scam_code_request', 'scam_fake_support',
})

MEDIUM_SEVERITY = frozenset({
    'written_number', 'number_sharing', 'off_platform_deal', 'direct_payment',
    'leave_platform', 'numeric_sequence', 'long_numeric_sequence', 'web_address',
})


def _severity(violations: List[str]) -> str:
    if not violations:
        return 'none'
    if any(v in HIGH_SEVERITY for v in violations):
        return 'high'
    if any(v in MEDIUM_SEVERITY for v in violations):
        return 'medium'
    return 'low'


def analyze_message(text: str, mode: FilterMode = FilterMode.PRE_ESCROW) -> MessageAnalysis:
    """
    Classify a message.

    Args:
        text: Message text
        mode: Filter mode from resolve_filter_mode()

    Returns:
        MessageAnalysis; ``is_blocked`` iff severity is not 'none'
    """
    text = text or ''
    violations: List[str] = []
    sanitized = text
    stripped = strip_whitelisted(text)

    def check(rules: List[Rule], validator: Optional[Callable[[str], bool]] = None) -> None:
        nonlocal sanitized
        for pattern, label in rules:
            matches = [m.group(0) for m in pattern.finditer(stripped)]
            if validator:
                matches = [m for m in matches if validator(m)]
            if matches and label not in violations:
                violations.append(label)
                sanitized = pattern.sub(BLOCKED_PLACEHOLDER, sanitized)

    if mode != FilterMode.POST_ESCROW:
        check(EMAIL_RULES)
        check(URL_RULES)
        check(SOCIAL_RULES)
        check(WRITTEN_NUMBER_RULES)
        check(BYPASS_RULES)
        check(CPF_RULES)
        check(PHONE_RULES, _is_real_phone_candidate)

    check(HARASSMENT_RULES)
    check(SCAM_RULES)

    severity = _severity(violations)
    return MessageAnalysis(
        is_blocked=severity != 'none',
        severity=severity,
        violations=violations,
        sanitized_text=sanitized
    )


VIOLATION_PRIORITY = [
    'harassment',
    'scam_advance_payment',
    'scam_code_request',
    'scam_fake_support',
    'email',
    'obfuscated_email',
    'phone',
    'mobile_phone',
    'obfuscated_phone',
    'social_profile',
    'social_redirect',
    'messaging_app',
    'external_link',
    'short_url',
    'web_address',
    'off_platform_deal',
    'direct_payment',
    'leave_platform',
    'written_number',
    'number_sharing',
    'cpf',
    'numeric_sequence',
    'long_numeric_sequence',
]

VIOLATION_MESSAGES = {
    'harassment': 'Threats and harassment are not allowed.',
    'scam_advance_payment': 'Payments must go through escrow. Never pay in advance outside the platform.',
    'scam_code_request': 'Never share verification or security codes in the chat.',
    'scam_fake_support': 'Platform support never contacts you through this chat.',
    'email': 'Email addresses are not allowed before payment is confirmed.',
    'obfuscated_email': 'An attempt to share an email address was detected.',
    'phone': 'Phone numbers are not allowed before payment is confirmed.',
    'mobile_phone': 'Mobile numbers are not allowed before payment is confirmed.',
    'obfuscated_phone': 'An attempt to share a phone number was detected.',
    'social_profile': 'Social media profiles are not allowed before payment is confirmed.',
    'social_redirect': 'Moving the conversation to social media is not allowed.',
    'messaging_app': 'External messaging apps are not allowed at this stage.',
    'external_link': 'External links are not allowed before payment is confirmed.',
    'short_url': 'Shortened URLs are not allowed before payment is confirmed.',
    'web_address': 'Web addresses are not allowed before payment is confirmed.',
    'off_platform_deal': 'Negotiations must stay on the platform.',
    'direct_payment': 'Payments outside the platform are not allowed.',
    'leave_platform': 'The conversation must stay on the platform.',
    'written_number': 'An attempt to share a number written out in words was detected.',
    'number_sharing': 'Numbers cannot be shared before payment is confirmed.',
    'cpf': 'Tax ids must not be shared in the chat before payment is confirmed.',
    'numeric_sequence': 'A suspicious numeric sequence was detected.',
    'long_numeric_sequence': 'A long numeric sequence was detected.',
}


def get_violation_description(violations: List[str]) -> str:
    """User-facing message for the highest-priority violation."""
    if not violations:
        return ''
    for label in VIOLATION_PRIORITY:
        if label in violations:
            return VIOLATION_MESSAGES.get(label, 'Contact information detected.')
    return 'This content is not allowed at this stage of the negotiation.'
