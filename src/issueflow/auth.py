"""Caller identity and role checks for the operator APIs.

Identity is supplied by the fronting proxy in two headers:
- X-Issueflow-User: the caller's login
- X-Issueflow-Roles: comma-separated roles

Unknown role names are ignored.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Mapping, Optional


USER_HEADER = "x-issueflow-user"
ROLES_HEADER = "x-issueflow-roles"


class Role(str, Enum):
    VIEWER = "viewer"
    OPERATOR = "operator"
    REVIEWER = "reviewer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    login: str
    roles: FrozenSet[Role] = field(default_factory=frozenset)

    def has_any(self, *roles: Role) -> bool:
        return any(role in self.roles for role in roles)


def parse_roles(value: Optional[str]) -> FrozenSet[Role]:
    roles = set()
    for name in (value or "").split(","):
        try:
            roles.add(Role(name.strip().lower()))
        except ValueError:
            continue
    return frozenset(roles)


def caller_from_headers(headers: Mapping[str, str]) -> Optional[Caller]:
    """Build the caller from request headers, or None when anonymous."""
    login = (headers.get(USER_HEADER) or "").strip()
    if not login:
        return None
    return Caller(login=login, roles=parse_roles(headers.get(ROLES_HEADER)))
