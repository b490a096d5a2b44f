"""
Role catalogue for the intranet.

Roles form a closed, ranked set. Authorization is always set membership
("holds any of these roles"); the rank is only used to pick a primary role
for display and default landing decisions.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Optional

logger = logging.getLogger(__name__)

ROOT = "root"
ADMIN = "admin"
HR = "hr"
DATA = "data"
COLLABORATOR = "collaborator"
PENDING_VERIFICATION = "pending_verification"
PLACEHOLDER = "nuevo"

ROLE_RANK: dict[str, int] = {
    ROOT: 100,
    ADMIN: 90,
    HR: 80,
    DATA: 70,
    COLLABORATOR: 60,
    PENDING_VERIFICATION: 10,
    PLACEHOLDER: 5,
}

AUTHORIZED_ROLES = frozenset({ROOT, ADMIN, HR, DATA, COLLABORATOR})
# Legacy placeholders seen in stored documents; none of them grants access.
UNAUTHORIZED_ROLES = frozenset({"", PENDING_VERIFICATION, "Sin rol", PLACEHOLDER})

ROLE_GROUPS: dict[str, frozenset[str]] = {
    "administrators": frozenset({ROOT, ADMIN}),
    "management": frozenset({ROOT, ADMIN, HR}),
    "data_access": frozenset({ROOT, ADMIN, HR, DATA}),
    "all_employees": AUTHORIZED_ROLES,
}

# Operators may issue invitations; only these roles may be granted by one.
INVITATION_OPERATORS = ROLE_GROUPS["management"]
INVITABLE_ROLES = frozenset({HR, DATA, COLLABORATOR})

# Spanish / historical spellings found in older user documents
LEGACY_ROLE_ALIASES: dict[str, str] = {
    "rrhh": HR,
    "RRHH-Admin": HR,
    "colaborador": COLLABORATOR,
    "datos": DATA,
}


def canonical_role(role: str) -> Optional[str]:
    """Map a stored role name onto the catalogue, or None if unknown."""
    role = role.strip()
    if role in ROLE_RANK:
        return role
    if role in LEGACY_ROLE_ALIASES:
        return LEGACY_ROLE_ALIASES[role]
    if role in UNAUTHORIZED_ROLES:
        return None
    logger.warning("Dropping unknown role %r", role)
    return None


def normalize_roles(roles: Optional[Iterable[str]]) -> frozenset[str]:
    if not roles:
        return frozenset()
    result = set()
    for role in roles:
        if not isinstance(role, str):
            continue
        canonical = canonical_role(role)
        if canonical:
            result.add(canonical)
    return frozenset(result)


def roles_from_document(data: Optional[Mapping[str, Any]]) -> frozenset[str]:
    """
    Read roles from either stored document shape.

    Older documents carry a single ``role`` string, newer ones a ``roles``
    array (sometimes with a cached ``primaryRole`` that is ignored here).
    Both collapse into one set; an absent document means no roles.
    """
    if not data:
        return frozenset()
    roles: list[str] = []
    raw_roles = data.get("roles")
    if isinstance(raw_roles, (list, tuple, set, frozenset)):
        roles.extend(raw_roles)
    raw_role = data.get("role")
    if isinstance(raw_role, str):
        roles.append(raw_role)
    return normalize_roles(roles)


def primary_role(roles: Iterable[str]) -> Optional[str]:
    ranked = [r for r in roles if r in ROLE_RANK]
    if not ranked:
        return None
    return max(ranked, key=lambda r: ROLE_RANK[r])


def has_any_role(roles: Iterable[str], targets: Iterable[str]) -> bool:
    return not set(roles).isdisjoint(targets)


def has_role_group(roles: Iterable[str], group: str) -> bool:
    return has_any_role(roles, ROLE_GROUPS[group])


def is_authorized(roles: Iterable[str]) -> bool:
    return has_any_role(roles, AUTHORIZED_ROLES)


def sorted_roles(roles: Iterable[str]) -> list[str]:
    """Highest rank first; stable storage order for the JSON column."""
    return sorted(set(roles), key=lambda r: (-ROLE_RANK.get(r, 0), r))
