from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from fieldops.errors import AuthorizationError, InvalidTransitionError
from fieldops.models import TicketStatus, UserRole

S = TicketStatus


def _build_table() -> Mapping[TicketStatus, frozenset[TicketStatus]]:
    table: dict[TicketStatus, frozenset[TicketStatus]] = {
        S.OPEN: frozenset({S.ASSIGNED, S.CANCELLED, S.PENDING}),
        S.ASSIGNED: frozenset({S.IN_PROGRESS, S.ONSITE_VISIT, S.CANCELLED, S.PENDING}),
        S.IN_PROGRESS: frozenset(
            {
                S.WAITING_CUSTOMER,
                S.ONSITE_VISIT,
                S.PO_NEEDED,
                S.SPARE_PARTS_NEEDED,
                S.CLOSED_PENDING,
                S.CANCELLED,
                S.RESOLVED,
                S.ON_HOLD,
                S.ESCALATED,
                S.PENDING,
            }
        ),
        S.WAITING_CUSTOMER: frozenset({S.IN_PROGRESS, S.CLOSED_PENDING, S.CANCELLED, S.PENDING}),
        S.ONSITE_VISIT: frozenset({S.ONSITE_VISIT_PLANNED, S.IN_PROGRESS, S.CANCELLED, S.PENDING}),
        S.ONSITE_VISIT_PLANNED: frozenset({S.ONSITE_VISIT_STARTED, S.IN_PROGRESS, S.CANCELLED, S.PENDING}),
        S.ONSITE_VISIT_STARTED: frozenset(
            {S.ONSITE_VISIT_REACHED, S.ONSITE_VISIT_PENDING, S.CANCELLED, S.PENDING}
        ),
        S.ONSITE_VISIT_REACHED: frozenset(
            {S.ONSITE_VISIT_IN_PROGRESS, S.ONSITE_VISIT_PENDING, S.CANCELLED, S.PENDING}
        ),
        S.ONSITE_VISIT_IN_PROGRESS: frozenset(
            {
                S.ONSITE_VISIT_RESOLVED,
                S.ONSITE_VISIT_PENDING,
                S.PO_NEEDED,
                S.SPARE_PARTS_NEEDED,
                S.CANCELLED,
                S.PENDING,
            }
        ),
        S.ONSITE_VISIT_RESOLVED: frozenset({S.ONSITE_VISIT_COMPLETED, S.CLOSED_PENDING, S.PENDING}),
        S.ONSITE_VISIT_PENDING: frozenset(
            {S.ONSITE_VISIT_IN_PROGRESS, S.ONSITE_VISIT_COMPLETED, S.CANCELLED, S.PENDING}
        ),
        S.ONSITE_VISIT_COMPLETED: frozenset({S.CLOSED_PENDING, S.IN_PROGRESS, S.PENDING}),
        S.PO_NEEDED: frozenset({S.PO_REACHED, S.PO_RECEIVED, S.CANCELLED, S.PENDING}),
        S.PO_REACHED: frozenset({S.PO_RECEIVED, S.CANCELLED, S.PENDING}),
        S.PO_RECEIVED: frozenset({S.IN_PROGRESS, S.CANCELLED, S.PENDING}),
        S.SPARE_PARTS_NEEDED: frozenset({S.SPARE_PARTS_BOOKED, S.CANCELLED, S.PENDING}),
        S.SPARE_PARTS_BOOKED: frozenset({S.SPARE_PARTS_DELIVERED, S.CANCELLED, S.PENDING}),
        S.SPARE_PARTS_DELIVERED: frozenset({S.IN_PROGRESS, S.CANCELLED, S.PENDING}),
        S.CLOSED_PENDING: frozenset({S.CLOSED, S.REOPENED, S.PENDING}),
        S.CLOSED: frozenset({S.REOPENED}),
        S.CANCELLED: frozenset({S.REOPENED, S.PENDING}),
        S.REOPENED: frozenset({S.ASSIGNED, S.IN_PROGRESS, S.CANCELLED, S.PENDING}),
        S.ON_HOLD: frozenset({S.IN_PROGRESS, S.CANCELLED, S.PENDING}),
        S.ESCALATED: frozenset({S.IN_PROGRESS, S.CANCELLED, S.PENDING}),
        S.RESOLVED: frozenset({S.CLOSED, S.REOPENED, S.PENDING}),
        S.PENDING: frozenset({S.OPEN, S.ASSIGNED, S.IN_PROGRESS}),
    }
    return MappingProxyType(table)


TRANSITIONS = _build_table()

# Targets that only one role may drive a ticket into.
ROLE_GATED_TARGETS: Mapping[TicketStatus, UserRole] = MappingProxyType(
    {
        S.CLOSED_PENDING: UserRole.SERVICE_PERSON,
        S.CLOSED: UserRole.ADMIN,
    }
)


def find_table_gaps(table: Mapping[TicketStatus, frozenset[TicketStatus]] = TRANSITIONS) -> list[str]:
    """Return human readable problems with the adjacency table; empty when it is total."""
    problems: list[str] = []
    for status in TicketStatus:
        if status not in table:
            problems.append(f"MISSING_ENTRY:{status.value}")
    for source, targets in table.items():
        for target in targets:
            if target not in table:
                problems.append(f"UNKNOWN_TARGET:{source.value}->{target}")
        if source in targets:
            problems.append(f"SELF_LOOP:{source.value}")
    return problems


def verify_transition_table() -> None:
    problems = find_table_gaps()
    if problems:
        raise RuntimeError(f"Ticket transition table is not total: {', '.join(problems)}")


def allowed_next(status: TicketStatus | str) -> frozenset[TicketStatus]:
    return TRANSITIONS[TicketStatus(status)]


def is_valid_transition(current: TicketStatus | str, target: TicketStatus | str) -> bool:
    try:
        return TicketStatus(target) in allowed_next(current)
    except ValueError:
        return False


def ensure_valid_transition(current: TicketStatus, target: TicketStatus) -> None:
    if not is_valid_transition(current, target):
        raise InvalidTransitionError(TicketStatus(current).value, TicketStatus(target).value)


def role_may_enter(role: UserRole, target: TicketStatus) -> bool:
    required = ROLE_GATED_TARGETS.get(target)
    return required is None or role == required


def ensure_role_may_enter(role: UserRole, target: TicketStatus) -> None:
    if not role_may_enter(role, target):
        required = ROLE_GATED_TARGETS[target]
        raise AuthorizationError(
            f"Only {required.value} users may set status to {target.value}.",
            code="ROLE_NOT_ALLOWED_FOR_STATUS",
        )


def allowed_next_for_role(status: TicketStatus, role: UserRole) -> list[TicketStatus]:
    candidates = allowed_next(status)
    return [item for item in TicketStatus if item in candidates and role_may_enter(role, item)]


verify_transition_table()
