"""Authorization rules for the HTTP API.

Every handler asks :func:`allowed` before touching the library. A rule names
the roles that may always perform an action and whether a ``USER`` may
perform it on a resource they own (their own member id).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from member import Member, Role, STAFF_ROLES


class Action(str, Enum):
    BOOK_READ = "book:read"
    BOOK_CREATE = "book:create"
    BOOK_UPDATE = "book:update"
    BOOK_DELETE = "book:delete"
    BORROWING_LIST = "borrowing:list"
    BORROWING_READ = "borrowing:read"
    BORROWING_CREATE = "borrowing:create"
    BORROWING_RETURN = "borrowing:return"
    BORROWING_PAY = "borrowing:pay"
    BORROWING_LIST_MEMBER = "borrowing:list-member"
    MEMBER_LIST = "member:list"
    MEMBER_READ = "member:read"
    MEMBER_CREATE = "member:create"
    ANALYTICS_READ = "analytics:read"


ALL_ROLES: FrozenSet[Role] = frozenset(Role)


@dataclass(frozen=True)
class Rule:
    roles: FrozenSet[Role] = frozenset()
    public: bool = False
    owner: bool = False


POLICY: Dict[Action, Rule] = {
    Action.BOOK_READ: Rule(public=True),
    Action.BOOK_CREATE: Rule(roles=STAFF_ROLES),
    Action.BOOK_UPDATE: Rule(roles=STAFF_ROLES),
    Action.BOOK_DELETE: Rule(roles=STAFF_ROLES),
    Action.BORROWING_LIST: Rule(roles=STAFF_ROLES),
    Action.BORROWING_READ: Rule(roles=STAFF_ROLES),
    Action.BORROWING_CREATE: Rule(roles=STAFF_ROLES, owner=True),
    Action.BORROWING_RETURN: Rule(roles=ALL_ROLES),
    Action.BORROWING_PAY: Rule(roles=ALL_ROLES),
    Action.BORROWING_LIST_MEMBER: Rule(roles=STAFF_ROLES, owner=True),
    Action.MEMBER_LIST: Rule(roles=STAFF_ROLES),
    Action.MEMBER_READ: Rule(roles=STAFF_ROLES, owner=True),
    Action.MEMBER_CREATE: Rule(roles=frozenset({Role.ADMIN})),
    Action.ANALYTICS_READ: Rule(roles=STAFF_ROLES),
}


def requires_authentication(action: Action) -> bool:
    return not POLICY[action].public


def allowed(principal: Optional[Member], action: Action, resource: Optional[Mapping[str, Any]] = None) -> bool:
    """Return True if ``principal`` may perform ``action`` on ``resource``.

    ``resource`` carries the ``member_id`` the request targets for actions
    with an ownership rule; a ``USER`` passes only when it equals their id.
    """
    rule = POLICY[action]
    if rule.public:
        return True
    if principal is None:
        return False
    if principal.role in rule.roles:
        return True
    if rule.owner and principal.role == Role.USER and resource is not None:
        return resource.get("member_id") == principal.id
    return False
