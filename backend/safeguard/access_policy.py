import enum
import uuid
from typing import Dict, FrozenSet, Optional

from safeguard.approval_rules import (
    STATUS_PARTIALLY_APPROVED,
    STATUS_PENDING,
    STATUS_READY_FOR_FINAL,
)


class Role(str, enum.Enum):
    AGENT = "agent"
    PARTNER = "partner"
    ADMIN = "admin"


class Action(str, enum.Enum):
    VIEW = "view"
    SUBMIT = "submit"
    AMEND = "amend"
    ATTACH = "attach"
    REVIEW_METRIC = "review_metric"
    FINAL_APPROVE = "final_approve"
    FINAL_REJECT = "final_reject"
    SEND_REMINDERS = "send_reminders"


# Scopes:
#   any     - every submission
#   own     - submissions the user submitted
#   queue   - submissions whose status is in the role's review queue
#   queue_or_own
SCOPE_ANY = "any"
SCOPE_OWN = "own"
SCOPE_QUEUE = "queue"
SCOPE_QUEUE_OR_OWN = "queue_or_own"

ROLE_QUEUES: Dict[Role, FrozenSet[str]] = {
    Role.AGENT: frozenset(),
    Role.PARTNER: frozenset({STATUS_PENDING, STATUS_PARTIALLY_APPROVED}),
    Role.ADMIN: frozenset({STATUS_READY_FOR_FINAL}),
}

CAPABILITIES: Dict[Role, Dict[Action, str]] = {
    Role.AGENT: {
        Action.VIEW: SCOPE_OWN,
        Action.SUBMIT: SCOPE_ANY,
        Action.AMEND: SCOPE_OWN,
        Action.ATTACH: SCOPE_OWN,
    },
    Role.PARTNER: {
        Action.VIEW: SCOPE_QUEUE_OR_OWN,
        Action.SUBMIT: SCOPE_ANY,
        Action.AMEND: SCOPE_OWN,
        Action.ATTACH: SCOPE_OWN,
        Action.REVIEW_METRIC: SCOPE_QUEUE,
    },
    Role.ADMIN: {
        Action.VIEW: SCOPE_ANY,
        Action.SUBMIT: SCOPE_ANY,
        Action.REVIEW_METRIC: SCOPE_ANY,
        Action.FINAL_APPROVE: SCOPE_ANY,
        Action.FINAL_REJECT: SCOPE_ANY,
        Action.SEND_REMINDERS: SCOPE_ANY,
    },
}


def parse_role(raw: Optional[str]) -> Optional[Role]:
    try:
        return Role(str(raw or "").strip().lower())
    except ValueError:
        return None


def can_perform(role, action: Action, submission=None, user_id: Optional[uuid.UUID] = None) -> bool:
    """Capability-table check for one action.

    ``submission`` may be None for actions that are not about a specific
    submission (submitting, sending reminders). Whether the submission's
    current state allows the transition is the state machine's business, not
    this function's.
    """
    parsed = role if isinstance(role, Role) else parse_role(role)
    if parsed is None:
        return False
    scope = CAPABILITIES[parsed].get(action)
    if scope is None:
        return False
    if scope == SCOPE_ANY:
        return True
    if submission is None:
        return False
    is_own = user_id is not None and submission.submitted_by == user_id
    in_queue = submission.status in ROLE_QUEUES[parsed]
    if scope == SCOPE_OWN:
        return is_own
    if scope == SCOPE_QUEUE:
        return in_queue
    return in_queue or is_own
