"""Signed parent approval tokens for sensitive browser actions."""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from signup_pilot.browser.models import ApprovalToken
from signup_pilot.utils.logging import get_logger

logger = get_logger("browser.approval")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalVerifier:
    """
    Issues and verifies HMAC-SHA256 approval tokens.

    A token signs ``attempt_id|sorted actions|issued_at`` so it cannot be
    replayed against another attempt or widened to other actions.
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 900,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("Approval secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.ttl = timedelta(seconds=ttl_seconds)
        self._now = now

    def _sign(self, attempt_id: str, actions: Iterable[str], issued_at: datetime) -> str:
        message = "|".join([attempt_id, ",".join(sorted(actions)), issued_at.isoformat()])
        return hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, attempt_id: str, actions: Iterable[str]) -> ApprovalToken:
        """
        Issue a token approving ``actions`` for one attempt.

        Args:
            attempt_id: Registration attempt the approval belongs to
            actions: Sensitive action names being approved

        Returns:
            Signed ApprovalToken
        """
        approved = tuple(sorted(set(actions)))
        issued_at = self._now()
        token = self._sign(attempt_id, approved, issued_at)
        logger.info("approval_issued", attempt_id=attempt_id, actions=list(approved))
        return ApprovalToken(token=token, issued_at=issued_at, approved_actions=approved)

    def verify(
        self,
        token: Optional[ApprovalToken],
        action: str,
        attempt_id: str,
    ) -> bool:
        """
        Check that a token approves ``action`` for ``attempt_id`` and is fresh.

        Returns:
            True only for a valid, unexpired token covering the action
        """
        if token is None:
            return False

        if action not in token.approved_actions:
            logger.debug("approval_action_not_covered", action=action)
            return False

        if self._now() - token.issued_at > self.ttl:
            logger.info("approval_expired", attempt_id=attempt_id, action=action)
            return False

        expected = self._sign(attempt_id, token.approved_actions, token.issued_at)
        if not hmac.compare_digest(expected, token.token):
            logger.warning("approval_signature_mismatch", attempt_id=attempt_id, action=action)
            return False

        return True
