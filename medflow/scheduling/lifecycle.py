"""Authorization and validation of appointment status transitions.

The gate is a pure function of the actor, the persisted appointment, the
requested status and the current time. It performs no I/O; callers fetch the
appointment and resolve ownership through the store before calling it and
persist the change only when it returns without raising.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from types import MappingProxyType
from typing import Mapping

from medflow.core import config
from medflow.models.appointment import AppointmentStatus
from medflow.models.user import Role
from medflow.scheduling.errors import (
    AppointmentValidationError,
    ForbiddenError,
    InvalidTransitionError,
    NotOwnerError,
    TooLateToCancelError,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED})
STAFF_ROLES = frozenset({Role.ADMIN, Role.DOCTOR, Role.RECEPTIONIST})

_OPEN = frozenset(AppointmentStatus)
DEFAULT_TRANSITIONS = MappingProxyType({
    AppointmentStatus.SCHEDULED: _OPEN,
    AppointmentStatus.CONFIRMED: _OPEN,
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
})


@dataclass(frozen=True)
class LifecyclePolicy:
    transitions: Mapping[AppointmentStatus, frozenset] = field(default_factory=lambda: DEFAULT_TRANSITIONS)
    staff_roles: frozenset = STAFF_ROLES
    cancellation_window: timedelta = timedelta(hours=24)
    enforce_transitions: bool = True

    def allows(self, current: AppointmentStatus, requested: AppointmentStatus) -> bool:
        if not self.enforce_transitions:
            return True
        return requested in self.transitions.get(current, frozenset())


def parse_status(value) -> AppointmentStatus:
    try:
        return AppointmentStatus(value.value if isinstance(value, AppointmentStatus) else str(value).strip().upper())
    except ValueError as exc:
        raise AppointmentValidationError('Invalid status value.') from exc


def parse_transition_table(raw: Mapping[str, list]) -> Mapping[AppointmentStatus, frozenset]:
    table = {status: frozenset() for status in AppointmentStatus}
    for source, targets in raw.items():
        table[parse_status(source)] = frozenset(parse_status(target) for target in targets)
    return MappingProxyType(table)


@lru_cache
def get_lifecycle_policy() -> LifecyclePolicy:
    """Build the process-wide policy from configuration once; read-only afterwards."""
    transitions = DEFAULT_TRANSITIONS
    if config.APPOINTMENT_TRANSITIONS:
        transitions = parse_transition_table(config.APPOINTMENT_TRANSITIONS)
        logger.info('Loaded custom appointment transition table for %d statuses', len(config.APPOINTMENT_TRANSITIONS))

    return LifecyclePolicy(
        transitions=transitions,
        cancellation_window=timedelta(hours=config.APPOINTMENT_CANCELLATION_WINDOW_HOURS),
        enforce_transitions=config.APPOINTMENT_ENFORCE_TERMINAL_STATES,
    )


def authorize_transition(
    actor_role,
    actor_is_owner: bool,
    appointment,
    requested_status,
    now: datetime,
    policy: LifecyclePolicy | None = None,
) -> None:
    """Raise a gate error unless the actor may move the appointment to requested_status."""
    policy = policy or get_lifecycle_policy()
    requested = parse_status(requested_status)
    current = parse_status(appointment.status)

    try:
        role = Role(actor_role)
    except ValueError as exc:
        raise ForbiddenError() from exc

    if role == Role.PATIENT:
        if not actor_is_owner:
            raise NotOwnerError()
        if requested != AppointmentStatus.CANCELLED:
            raise InvalidTransitionError('Patients can only cancel appointments.')
        if appointment.start_time - now < policy.cancellation_window:
            hours = policy.cancellation_window.total_seconds() / 3600
            raise TooLateToCancelError(
                f'Cannot cancel appointment less than {hours:g} hours before scheduled time. '
                'Please contact the clinic.'
            )
    elif role not in policy.staff_roles:
        raise ForbiddenError()

    if not policy.allows(current, requested):
        raise InvalidTransitionError(
            f'Cannot change appointment status from {current.value} to {requested.value}.'
        )
