"""Role based access table for the API.

The table is built at import time and exposed read-only; route handlers ask
`is_authorized` instead of matching paths against role lists.
"""

from types import MappingProxyType

from medflow.models.user import Role

_ALL = frozenset(Role)
_STAFF = frozenset({Role.ADMIN, Role.DOCTOR, Role.RECEPTIONIST})

ACCESS_RULES = MappingProxyType({
    ('appointments', 'read'): _ALL,
    ('appointments', 'create'): _ALL,
    # Patients pass here; the lifecycle gate narrows what they may request.
    ('appointments', 'update_status'): _ALL,
    ('appointments', 'reschedule'): _STAFF,
    ('appointments', 'cancel'): _STAFF,
    ('appointments', 'remind'): _STAFF,
    ('notifications', 'read'): _ALL,
    ('admin', 'access'): frozenset({Role.ADMIN}),
})


def is_authorized(role, resource: str, action: str) -> bool:
    try:
        role = Role(role)
    except ValueError:
        return False
    return role in ACCESS_RULES.get((resource, action), frozenset())
