"""Status Transition Validator.

Pure function over ``(current status, actor role, requested action)``.
No I/O: the caller supplies the snapshot and applies the result.
"""

from __future__ import annotations

from typing import Optional

from modules.orders.constants import (
    TERMINAL_STATES,
    TRANSITION_RULES,
    OrderStatus,
    TransitionRule,
)
from modules.orders.exceptions import AlreadyTerminal, InvalidTransition

_RULES_BY_EDGE: dict[tuple[str, str], TransitionRule] = {
    (rule.from_status, rule.action): rule for rule in TRANSITION_RULES
}


def find_rule(current_status: str, action: str) -> Optional[TransitionRule]:
    """Return the outgoing edge for ``action`` from ``current_status``, if any."""
    return _RULES_BY_EDGE.get((current_status, action))


def validate_transition(current_status: str, role: str, action: str) -> TransitionRule:
    """Return the single edge the requester may take, or raise.

    Raises:
        AlreadyTerminal: the order is delivered or cancelled.
        InvalidTransition: no edge for the action, or the role may not take it.
    """
    if current_status in TERMINAL_STATES:
        raise AlreadyTerminal(f"Order is already {current_status}.")

    rule = find_rule(current_status, action)
    if rule is None:
        raise InvalidTransition(
            f"Action '{action}' is not allowed from status '{current_status}'."
        )
    if role not in rule.roles:
        raise InvalidTransition(
            f"Role '{role}' may not perform '{action}' from status '{current_status}'."
        )
    return rule


def allowed_actions(current_status: str, role: str) -> list[str]:
    """List the actions ``role`` may request from ``current_status``."""
    return [
        rule.action
        for rule in TRANSITION_RULES
        if rule.from_status == current_status and role in rule.roles
    ]


def is_forward_path(statuses: list[str]) -> bool:
    """Check that a committed status sequence is a valid walk of the graph."""
    for current, following in zip(statuses, statuses[1:]):
        if current in TERMINAL_STATES:
            return False
        if current == following:
            # rider assignment keeps the status
            continue
        if not any(
            rule.from_status == current and rule.to_status == following
            for rule in TRANSITION_RULES
        ):
            return False
    return not statuses or statuses[0] == OrderStatus.PENDING
