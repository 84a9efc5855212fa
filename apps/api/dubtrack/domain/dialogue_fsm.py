"""Dialogue review transition rules."""

from collections.abc import Iterable
from enum import Enum

from dubtrack.errors import ApiError, forbidden
from dubtrack.schemas.auth import ADMIN_ROLE
from dubtrack.schemas.dialogue import DialogueStatus


class DialogueAction(str, Enum):
    TRANSCRIBE = "transcribe"
    TRANSLATE = "translate"
    VOICE_OVER = "voice_over"
    REVIEW = "review"
    REMOVE_VOICE = "remove_voice"


_REVIEWABLE = {
    DialogueStatus.TRANSLATED,
    DialogueStatus.APPROVED,
    DialogueStatus.REVISION_REQUESTED,
    DialogueStatus.NEEDS_RERECORD,
    DialogueStatus.VOICE_OVER_ADDED,
}

# Source states each action may be applied from. Removing a voice is allowed from anywhere.
_ALLOWED_SOURCES: dict[DialogueAction, set[DialogueStatus]] = {
    DialogueAction.TRANSCRIBE: {
        DialogueStatus.PENDING,
        DialogueStatus.TRANSCRIBED,
        DialogueStatus.TRANSLATED,
        DialogueStatus.REVISION_REQUESTED,
    },
    DialogueAction.TRANSLATE: {
        DialogueStatus.TRANSCRIBED,
        DialogueStatus.TRANSLATED,
        DialogueStatus.REVISION_REQUESTED,
    },
    DialogueAction.VOICE_OVER: {
        DialogueStatus.TRANSLATED,
        DialogueStatus.APPROVED,
        DialogueStatus.NEEDS_RERECORD,
        DialogueStatus.VOICE_OVER_ADDED,
    },
    DialogueAction.REVIEW: _REVIEWABLE,
    DialogueAction.REMOVE_VOICE: set(DialogueStatus),
}

_ACTION_ROLES: dict[DialogueAction, frozenset[str]] = {
    DialogueAction.TRANSCRIBE: frozenset({"transcriber"}),
    DialogueAction.TRANSLATE: frozenset({"translator"}),
    DialogueAction.VOICE_OVER: frozenset({"voiceOver"}),
    DialogueAction.REVIEW: frozenset({"director", "srDirector"}),
    DialogueAction.REMOVE_VOICE: frozenset({"voiceOver", "director", "srDirector"}),
}

_FIXED_TARGETS: dict[DialogueAction, DialogueStatus] = {
    DialogueAction.TRANSCRIBE: DialogueStatus.TRANSCRIBED,
    DialogueAction.TRANSLATE: DialogueStatus.TRANSLATED,
    DialogueAction.VOICE_OVER: DialogueStatus.VOICE_OVER_ADDED,
    DialogueAction.REMOVE_VOICE: DialogueStatus.PENDING,
}


def roles_for_action(action: DialogueAction) -> list[str]:
    return sorted(_ACTION_ROLES[action] | {ADMIN_ROLE})


def ensure_role_allowed(action: DialogueAction, roles: Iterable[str]) -> None:
    """Reject the action unless one of the caller's project roles may perform it."""
    granted = set(roles)
    if ADMIN_ROLE in granted or granted & _ACTION_ROLES[action]:
        return
    raise forbidden(f"Role is not allowed to {action.value.replace('_', ' ')} dialogues")


def review_outcome(*, revision_requested: bool, needs_rerecord: bool) -> DialogueStatus:
    """Resolve the single review status; a re-record request outranks a revision request."""
    if needs_rerecord:
        return DialogueStatus.NEEDS_RERECORD
    if revision_requested:
        return DialogueStatus.REVISION_REQUESTED
    return DialogueStatus.APPROVED


def next_status(
    action: DialogueAction,
    current: DialogueStatus,
    *,
    revision_requested: bool = False,
    needs_rerecord: bool = False,
) -> DialogueStatus:
    """Return the status ``action`` leads to from ``current`` or raise on an illegal move."""
    if action is DialogueAction.REVIEW:
        target = review_outcome(revision_requested=revision_requested, needs_rerecord=needs_rerecord)
    else:
        target = _FIXED_TARGETS[action]

    if current not in _ALLOWED_SOURCES[action]:
        raise ApiError(
            status_code=409,
            code="FSM_TRANSITION_INVALID",
            message="Invalid dialogue status transition",
            details={
                "action": action,
                "current_status": current,
                "attempted_status": target,
                "allowed_from_statuses": sorted(_ALLOWED_SOURCES[action], key=lambda s: s.value),
            },
        )
    return target
