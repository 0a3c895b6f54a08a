"""
Annotation lifecycle state machine.

States move from in-progress through completion and QA review to an admin
disposition. ``verified`` and ``invalid`` are terminal; ``needs-revision``
loops back to ``completed`` when the annotator resubmits.
"""

from __future__ import annotations

from dataclasses import replace
from enum import Enum
from typing import Any

from annotation_service.core.exceptions import (
    InvalidActionError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from annotation_service.services.records import AnnotationRecord, AnnotationStatus


class ActorRole(Enum):
    """Roles carried by an actor session."""

    ANNOTATOR = "annotator"
    ADMIN = "admin"


class DispositionAction(Enum):
    """Actions that move an annotation record between states."""

    APPROVE = "approve"
    NEEDS_REVISION = "needs-revision"
    MARK_INVALID = "mark-invalid"
    QA_APPROVE = "qa-approve"
    ESCALATE = "escalate"
    DEFER = "defer"
    RESUBMIT = "resubmit"


ADMIN_ACTIONS = frozenset(
    {DispositionAction.APPROVE, DispositionAction.NEEDS_REVISION, DispositionAction.MARK_INVALID}
)
QA_ACTIONS = frozenset(
    {DispositionAction.QA_APPROVE, DispositionAction.ESCALATE, DispositionAction.DEFER}
)
TERMINAL_STATUSES = frozenset({AnnotationStatus.VERIFIED, AnnotationStatus.INVALID})

_S = AnnotationStatus
_A = DispositionAction
_REVIEW_STATES = (_S.COMPLETED, _S.QA_PENDING, _S.QA_APPROVED, _S.ADMIN_REVIEW)
_QA_ROLES = (ActorRole.ANNOTATOR, ActorRole.ADMIN)

_Rule = tuple[
    tuple[AnnotationStatus, ...], DispositionAction, tuple[ActorRole, ...], AnnotationStatus
]

# (from states, action, roles allowed, to state)
_RULES: tuple[_Rule, ...] = (
    ((*_REVIEW_STATES, _S.VERIFIED), _A.APPROVE, (ActorRole.ADMIN,), _S.VERIFIED),
    (_REVIEW_STATES, _A.NEEDS_REVISION, (ActorRole.ADMIN,), _S.NEEDS_REVISION),
    ((*_REVIEW_STATES, _S.NEEDS_REVISION), _A.MARK_INVALID, (ActorRole.ADMIN,), _S.INVALID),
    ((_S.COMPLETED, _S.QA_PENDING), _A.QA_APPROVE, _QA_ROLES, _S.QA_APPROVED),
    ((_S.COMPLETED, _S.QA_PENDING), _A.ESCALATE, _QA_ROLES, _S.ADMIN_REVIEW),
    ((_S.COMPLETED,), _A.DEFER, _QA_ROLES, _S.QA_PENDING),
    ((_S.NEEDS_REVISION,), _A.RESUBMIT, (ActorRole.ANNOTATOR, ActorRole.ADMIN), _S.COMPLETED),
)

TRANSITIONS: dict[tuple[AnnotationStatus, DispositionAction, ActorRole], AnnotationStatus] = {
    (from_status, action, role): to_status
    for from_states, action, roles, to_status in _RULES
    for from_status in from_states
    for role in roles
}


def _validate_transitions() -> None:
    """Reject a transition table that is inconsistent with the state and action sets."""
    actions_seen = {action for _status, action, _role in TRANSITIONS}
    if actions_seen != set(DispositionAction):
        missing = sorted(action.value for action in set(DispositionAction) - actions_seen)
        msg = f"Transition table has no entry for actions: {missing}"
        raise RuntimeError(msg)

    for (from_status, action, role), to_status in TRANSITIONS.items():
        if from_status in TERMINAL_STATUSES and to_status is not from_status:
            msg = f"Terminal status {from_status.value} must not transition to {to_status.value}"
            raise RuntimeError(msg)
        if action in ADMIN_ACTIONS and role is not ActorRole.ADMIN:
            msg = f"Admin action {action.value} is granted to role {role.value}"
            raise RuntimeError(msg)
        if action in QA_ACTIONS and to_status is AnnotationStatus.VERIFIED:
            msg = f"QA action {action.value} must not set verified"
            raise RuntimeError(msg)

    sources = {from_status for from_status, _action, _role in TRANSITIONS}
    targets = set(TRANSITIONS.values())
    for status in AnnotationStatus:
        if status is AnnotationStatus.IN_PROGRESS:
            continue
        if status not in sources | targets:
            msg = f"Status {status.value} is unreachable in the transition table"
            raise RuntimeError(msg)


_validate_transitions()


def parse_action(raw: Any, allowed: frozenset[DispositionAction]) -> DispositionAction:
    """
    Read an action string, accepting only members of ``allowed``.

    Raises:
        InvalidActionError: unknown value, or an action not offered at this entry point
    """
    if not isinstance(raw, str):
        raise InvalidActionError(raw)
    try:
        action = DispositionAction(raw.strip().lower())
    except ValueError as exc:
        raise InvalidActionError(raw) from exc
    if action not in allowed:
        raise InvalidActionError(raw)
    return action


def next_status(
    current: AnnotationStatus,
    action: DispositionAction,
    role: ActorRole,
) -> AnnotationStatus:
    """
    Look up the status ``action`` leads to.

    Raises:
        PermissionDeniedError: the role may never perform this action
        InvalidTransitionError: the action is not allowed from ``current``
    """
    if not any(key[1] is action and key[2] is role for key in TRANSITIONS):
        raise PermissionDeniedError(
            f"Role '{role.value}' may not perform '{action.value}'",
            details={"role": role.value, "action": action.value},
        )
    to_status = TRANSITIONS.get((current, action, role))
    if to_status is None:
        raise InvalidTransitionError(current.value, action.value)
    return to_status


def ensure_not_self_review(record: AnnotationRecord, actor_id: str) -> None:
    """Reviewers may not dispose of their own annotations."""
    if record.annotator_id and record.annotator_id == actor_id:
        raise PermissionDeniedError(
            "Reviewers cannot review their own annotations",
            error="SELF_REVIEW",
            details={"rowId": record.row_id},
        )


def apply_disposition(
    record: AnnotationRecord,
    action: DispositionAction,
    *,
    actor_id: str,
    actor_email: str,
    role: ActorRole,
    comments: str | None = None,
    invalidity_reason: str | None = None,
) -> AnnotationRecord:
    """
    Return a copy of ``record`` with the disposition applied.

    Raises:
        PermissionDeniedError: wrong role, self-review, or resubmitting another worker's record
        InvalidTransitionError: action not allowed from the record's status
    """
    to_status = next_status(record.status, action, role)

    if action is DispositionAction.RESUBMIT:
        if record.annotator_id != actor_id:
            raise PermissionDeniedError(
                "Only the original annotator may resubmit a revision",
                details={"rowId": record.row_id},
            )
        return replace(record, status=to_status)

    ensure_not_self_review(record, actor_id)

    changes: dict[str, Any] = {"status": to_status}
    if action in ADMIN_ACTIONS:
        if comments is not None:
            changes["admin_comments"] = comments
        if action is DispositionAction.APPROVE:
            changes["verified_by"] = actor_email or actor_id
            changes["is_valid"] = True
        elif action is DispositionAction.MARK_INVALID:
            changes["is_valid"] = False
            changes["invalidity_reason"] = invalidity_reason or ""
    else:
        if comments is not None:
            changes["qa_comments"] = comments
        if action is DispositionAction.QA_APPROVE:
            changes["verified_by"] = actor_email or actor_id

    return replace(record, **changes)


DISPOSITION_MESSAGES: dict[DispositionAction, str] = {
    DispositionAction.APPROVE: "Annotation approved",
    DispositionAction.NEEDS_REVISION: "Annotation sent for revision",
    DispositionAction.MARK_INVALID: "Annotation marked as invalid",
    DispositionAction.QA_APPROVE: "Annotation approved by QA",
    DispositionAction.ESCALATE: "Annotation escalated for admin review",
    DispositionAction.DEFER: "Annotation queued for QA",
    DispositionAction.RESUBMIT: "Revision submitted",
}
