# roles.py
"""
Priority roles: which single label a member gets for the Role column.

The priority list is ordered highest first. A member's label is the label of
the first entry whose role id they hold, or "" when they hold none of them.
"""
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, FrozenSet, Iterable, Tuple

HeldRoles = FrozenSet[int]
NO_ROLES: HeldRoles = frozenset()


@dataclass(frozen=True)
class PriorityRole:
    role_id: int
    label: str


PriorityRoleList = Tuple[PriorityRole, ...]


def _as_id(v: Any) -> int:
    if isinstance(v, bool):
        raise ValueError(f"not a role id: {v!r}")
    if isinstance(v, int):
        return v
    s = str(v).strip()
    if not s.isdigit():
        raise ValueError(f"not a role id: {v!r}")
    return int(s)


def held_roles_from(source: Any) -> HeldRoles:
    """
    Normalize whatever we have about a member's roles into a HeldRoles set.

    Accepts a discord.Member (or anything with `.roles` of objects with `.id`),
    a raw iterable of role ids (ints or numeric strings, as in interaction
    payloads), or None.
    """
    if source is None:
        return NO_ROLES
    roles = getattr(source, "roles", None)
    if roles is not None:
        return frozenset(_as_id(getattr(r, "id", r)) for r in roles if r is not None)
    if isinstance(source, (str, bytes)):
        raise TypeError("expected an iterable of role ids, got a string")
    return frozenset(_as_id(r) for r in source)


def resolve_priority_role(held: HeldRoles, priority: PriorityRoleList) -> str:
    for pr in priority:
        if pr.role_id in held:
            return pr.label
    return ""


def priority_index(label: str, priority: PriorityRoleList) -> int:
    """Position of `label` in the list, or len(priority) for unknown labels."""
    for i, pr in enumerate(priority):
        if pr.label == label:
            return i
    return len(priority)


def parse_priority_roles(items: Iterable[Any]) -> PriorityRoleList:
    out = []
    seen = set()
    for item in items:
        try:
            rid = _as_id(item["id"])
            label = str(item["label"]).strip()
        except (KeyError, TypeError) as e:
            raise ValueError(f"bad priority role entry {item!r}") from e
        if not label:
            raise ValueError(f"priority role {rid} has a blank label")
        if rid in seen:
            raise ValueError(f"priority role {rid} listed twice")
        seen.add(rid)
        out.append(PriorityRole(rid, label))
    return tuple(out)


def load_priority_roles(path: str | Path) -> PriorityRoleList:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of {{id, label}} objects")
    return parse_priority_roles(data)
