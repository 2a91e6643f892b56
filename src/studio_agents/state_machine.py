from __future__ import annotations

from enum import Enum

from .errors import IllegalTransitionError
from .models import ArtifactKind, SolutionStatus, ThemeStatus

THEME_TRANSITIONS: dict[ThemeStatus, frozenset[ThemeStatus]] = {
    ThemeStatus.DRAFT: frozenset({ThemeStatus.CONFIRMED, ThemeStatus.REJECTED}),
    ThemeStatus.CONFIRMED: frozenset({ThemeStatus.CONFIRMED, ThemeStatus.REJECTED}),
    ThemeStatus.REJECTED: frozenset(),
}

SOLUTION_TRANSITIONS: dict[SolutionStatus, frozenset[SolutionStatus]] = {
    SolutionStatus.DRAFT: frozenset({SolutionStatus.ACCEPTED, SolutionStatus.REJECTED}),
    SolutionStatus.ACCEPTED: frozenset(),
    SolutionStatus.REJECTED: frozenset(),
}

STATUS_TYPES: dict[ArtifactKind, type[Enum]] = {
    ArtifactKind.THEME: ThemeStatus,
    ArtifactKind.SOLUTION: SolutionStatus,
}

_TRANSITIONS: dict[ArtifactKind, dict] = {
    ArtifactKind.THEME: THEME_TRANSITIONS,
    ArtifactKind.SOLUTION: SOLUTION_TRANSITIONS,
}


def parse_status(kind: ArtifactKind, value: str | Enum) -> Enum:
    """Coerce *value* to the status enum of *kind*.

    Raises:
        IllegalTransitionError: If *kind* has no status or *value* is not one of its states.
    """
    status_type = STATUS_TYPES.get(kind)
    if status_type is None:
        raise IllegalTransitionError(f"{kind.value} artifacts have no status")
    try:
        return status_type(value.value if isinstance(value, Enum) else value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in status_type)
        raise IllegalTransitionError(f"Invalid {kind.value} status {value!r}; expected one of: {allowed}") from exc


def allowed_transitions(kind: ArtifactKind, current: str | Enum) -> frozenset:
    return _TRANSITIONS[kind][parse_status(kind, current)]


def ensure_transition(kind: ArtifactKind, current: str | Enum, new: str | Enum) -> Enum:
    """Return the parsed target status if ``current -> new`` is legal.

    Raises:
        IllegalTransitionError: If the transition is not in the table.
    """
    current_status = parse_status(kind, current)
    new_status = parse_status(kind, new)
    if new_status not in _TRANSITIONS[kind][current_status]:
        raise IllegalTransitionError(
            f"Invalid {kind.value} status transition: {current_status.value} -> {new_status.value}"
        )
    return new_status
