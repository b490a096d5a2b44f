"""
Typed partial updates for directory entries.

Writers never hand the store a loose dict. They build a ``DirectoryPatch`` and
``merge_entry`` folds it into the current values. Merge rules per attribute:

* plain fields: last writer wins, field by field
* ``add_roles``: set union, so two grants commute
* ``replace_roles``: wholesale replacement (operator role editor only)
* ``append_logins``: concatenation onto ``login_history``

Two patches commute when their plain fields are disjoint and neither
replaces roles.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from intranet.utils.roles import normalize_roles, sorted_roles

PATCHABLE_FIELDS = frozenset(
    {
        "email",
        "display_name",
        "avatar_url",
        "dni",
        "invitation_id",
        "is_active",
        "last_login_at",
    }
)


@dataclass(frozen=True)
class DirectoryPatch:
    fields: Mapping[str, Any] = field(default_factory=dict)
    add_roles: frozenset[str] = frozenset()
    replace_roles: Optional[frozenset[str]] = None
    append_logins: tuple[datetime, ...] = ()
    touched_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        unknown = set(self.fields) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not patchable: {', '.join(sorted(unknown))}")
        if self.replace_roles is not None and self.add_roles:
            raise ValueError("A patch either adds roles or replaces them, not both")

    @property
    def touches_roles(self) -> bool:
        return bool(self.add_roles) or self.replace_roles is not None


def merge_entry(
    current: Optional[Mapping[str, Any]],
    patch: DirectoryPatch,
    merge: bool = True,
) -> dict[str, Any]:
    """
    Return the entry values after applying ``patch`` to ``current``.

    With ``merge=False`` patchable fields missing from the patch are reset and
    roles are taken from the patch alone; ``created_at`` and the login history
    survive either way.
    """
    base: dict[str, Any] = dict(current or {})
    if not merge:
        for name in PATCHABLE_FIELDS:
            base[name] = None
        base["is_active"] = True
        base["roles"] = []

    for name, value in patch.fields.items():
        base[name] = value

    if patch.replace_roles is not None:
        roles = normalize_roles(patch.replace_roles)
    else:
        roles = normalize_roles(base.get("roles")) | normalize_roles(patch.add_roles)
    base["roles"] = sorted_roles(roles)

    history = list(base.get("login_history") or [])
    history.extend(ts.isoformat() for ts in patch.append_logins)
    base["login_history"] = history

    if patch.touched_at is not None:
        base["updated_at"] = patch.touched_at

    return base
