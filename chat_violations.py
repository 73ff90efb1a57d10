"""
Chat violation tracking and the pre-send screening path.

Each user has a violation counter in the database. The counter only grows;
the penalty level is a pure function of it and is reset only by an admin.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Callable

from message_filter import (
    MessageAnalysis,
    analyze_message,
    get_violation_description,
    resolve_filter_mode,
)
from utils import utcnow, sanitize_input

logger = logging.getLogger(__name__)

SNIPPET_MAX_LENGTH = 120


class PenaltyLevel(str, Enum):
    NONE = "none"
    WARNING = "warning"
    RESTRICTED = "restricted"
    SUSPENDED = "suspended"


PENALTY_MESSAGES = {
    PenaltyLevel.WARNING: (
        "Warning: sharing contact details is not allowed before payment is confirmed. "
        "Further violations will suspend your chat."
    ),
    PenaltyLevel.RESTRICTED: (
        "Your chat is restricted because of previous violations. "
        "Do not share contact details."
    ),
    PenaltyLevel.SUSPENDED: (
        "Your chat has been suspended after repeated attempts to share contact details "
        "outside the platform. Please contact support."
    ),
}


def compute_penalty_level(count: int) -> PenaltyLevel:
    """
    Penalty for a violation count.

    Example:
        >>> [compute_penalty_level(n).value for n in (0, 1, 2, 3, 4, 5, 9)]
        ['none', 'warning', 'warning', 'restricted', 'restricted', 'suspended', 'suspended']
    """
    if count <= 0:
        return PenaltyLevel.NONE
    if count <= 2:
        return PenaltyLevel.WARNING
    if count <= 4:
        return PenaltyLevel.RESTRICTED
    return PenaltyLevel.SUSPENDED


def get_penalty_message(level: PenaltyLevel) -> str:
    return PENALTY_MESSAGES.get(PenaltyLevel(level), '')


def _with_penalty(data: Optional[Dict[str, Any]], user_id: str) -> Dict[str, Any]:
    if data is None:
        data = {
            'user_id': user_id,
            'violation_count': 0,
            'last_violation_at': None,
            'records': [],
        }
    data['penalty_level'] = compute_penalty_level(data['violation_count']).value
    return data


class ViolationTracker:
    """Per-user violation counter backed by the escrow store."""

    def __init__(self, store: Any, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def record_violation(
        self,
        user_id: str,
        conversation_id: str,
        violation_type: str,
        message_snippet: str
    ) -> Dict[str, Any]:
        """
        Record one violation atomically.

        Returns:
            Updated violation data with ``penalty_level``
        """
        snippet = sanitize_input(message_snippet, max_length=SNIPPET_MAX_LENGTH)
        data = await self.store.record_violation(
            user_id, str(conversation_id), violation_type, snippet, self.clock()
        )
        data = _with_penalty(data, user_id)
        logger.warning(
            f"Chat violation by {user_id} in {conversation_id}: {violation_type} "
            f"(count={data['violation_count']}, level={data['penalty_level']})"
        )
        return data

    async def get_violation_data(self, user_id: str) -> Dict[str, Any]:
        return _with_penalty(await self.store.get_violation_data(user_id), user_id)

    async def get_penalty_level(self, user_id: str) -> PenaltyLevel:
        data = await self.store.get_violation_data(user_id)
        return compute_penalty_level(data['violation_count'] if data else 0)

    async def can_send(self, user_id: str) -> bool:
        return await self.get_penalty_level(user_id) != PenaltyLevel.SUSPENDED

    async def clear_violations(self, user_id: str) -> bool:
        """Administrative reset."""
        cleared = await self.store.clear_violations(user_id)
        logger.info(f"Violations cleared for {user_id}: {cleared}")
        return cleared

    async def get_all_violations(self) -> List[Dict[str, Any]]:
        return [_with_penalty(row, row['user_id']) for row in await self.store.list_violations()]


@dataclass
class ScreeningResult:
    """Outcome of screening one outgoing message."""
    allowed: bool
    mode: str
    penalty_level: str
    message: str = ''
    analysis: Optional[MessageAnalysis] = None
    violation_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ChatGuard:
    """Runs before every send attempt."""

    def __init__(self, tracker: ViolationTracker, notifier: Optional[Any] = None):
        self.tracker = tracker
        self.notifier = notifier

    async def screen_message(
        self,
        user_id: str,
        conversation_id: str,
        text: str,
        transaction_status: Optional[str] = None
    ) -> ScreeningResult:
        """
        Decide whether a message may be sent.

        Args:
            user_id: Sender
            conversation_id: Conversation the message belongs to
            text: Message text
            transaction_status: Current status of the conversation's
                transaction, read fresh by the caller (None if there is none)

        Returns:
            ScreeningResult
        """
        data = await self.tracker.get_violation_data(user_id)
        level = PenaltyLevel(data['penalty_level'])
        mode = resolve_filter_mode(transaction_status)

        if level == PenaltyLevel.SUSPENDED:
            logger.info(f"Message from suspended user {user_id} rejected")
            return ScreeningResult(
                allowed=False,
                mode=mode.value,
                penalty_level=level.value,
                message=get_penalty_message(level),
                violation_count=data['violation_count']
            )

        analysis = analyze_message(text, mode)
        if not analysis.is_blocked:
            return ScreeningResult(
                allowed=True,
                mode=mode.value,
                penalty_level=level.value,
                message=get_penalty_message(level) if level == PenaltyLevel.RESTRICTED else '',
                analysis=analysis,
                violation_count=data['violation_count']
            )

        data = await self.tracker.record_violation(
            user_id, conversation_id, analysis.violations[0], text
        )
        new_level = PenaltyLevel(data['penalty_level'])

        if new_level == PenaltyLevel.SUSPENDED and level != PenaltyLevel.SUSPENDED and self.notifier:
            self.notifier.alert_admin(
                f"Chat suspended for user {user_id} after {data['violation_count']} violations "
                f"(last in conversation {conversation_id}: {analysis.violations[0]})"
            )

        description = get_violation_description(analysis.violations)
        penalty_message = get_penalty_message(new_level)
        return ScreeningResult(
            allowed=False,
            mode=mode.value,
            penalty_level=new_level.value,
            message=f"{description} {penalty_message}".strip(),
            analysis=analysis,
            violation_count=data['violation_count']
        )
