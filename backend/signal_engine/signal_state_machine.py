"""Signal delivery lifecycle.

States:
    PENDING    — created, waiting for (re)delivery
    DELIVERED  — notification accepted by the destination (terminal)
    FAILED     — delivery budget exhausted (terminal)
    EXPIRED    — older than the maximum age (terminal)

Legal transitions:
    PENDING → DELIVERED  (attempt succeeded)
    PENDING → PENDING    (attempt failed, budget left)
    PENDING → FAILED     (attempt failed, budget exhausted)
    PENDING → EXPIRED    (age limit reached, regardless of attempts)
"""
from __future__ import annotations

import logging

from .domain import SignalStatus
from .errors import IllegalTransitionError

logger = logging.getLogger(__name__)


_ALLOWED: dict[SignalStatus, set[SignalStatus]] = {
    SignalStatus.PENDING:   {SignalStatus.PENDING, SignalStatus.DELIVERED, SignalStatus.FAILED, SignalStatus.EXPIRED},
    SignalStatus.DELIVERED: set(),
    SignalStatus.FAILED:    set(),
    SignalStatus.EXPIRED:   set(),
}


def is_terminal(status: SignalStatus) -> bool:
    return not _ALLOWED.get(status)


def can_transition(current: SignalStatus, new: SignalStatus) -> bool:
    return new in _ALLOWED.get(current, set())


def transition(signal_id, current: SignalStatus, new: SignalStatus, reason: str = "") -> SignalStatus:
    """Validate a status change. Raises IllegalTransitionError when blocked."""
    if not can_transition(current, new):
        logger.warning(
            f"[SIGNAL] Blocked illegal transition #{signal_id} {current.value} → {new.value}"
            + (f" ({reason})" if reason else "")
        )
        raise IllegalTransitionError(f"signal {signal_id}: {current.value} -> {new.value}")
    if current != new:
        logger.info(f"[SIGNAL] #{signal_id} {current.value} → {new.value}" + (f" | {reason}" if reason else ""))
    return new


def status_after_failure(attempts: int, max_attempts: int) -> SignalStatus:
    """Status after a failed attempt, where `attempts` already includes it."""
    return SignalStatus.FAILED if attempts >= max_attempts else SignalStatus.PENDING
