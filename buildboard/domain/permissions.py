from __future__ import annotations

from typing import Any

PERM_WILDCARD = "*"
PERM_ORGANIZATION_READ = "organization.read"
PERM_ORGANIZATION_WRITE = "organization.write"
PERM_PROJECT_READ = "project.read"
PERM_PROJECT_WRITE = "project.write"
PERM_ASSIGNMENT_READ = "assignment.read"
PERM_ASSIGNMENT_WRITE = "assignment.write"

DEFAULT_PERMISSION_NAMES = [
    PERM_WILDCARD,
    PERM_ORGANIZATION_READ,
    PERM_ORGANIZATION_WRITE,
    PERM_PROJECT_READ,
    PERM_PROJECT_WRITE,
    PERM_ASSIGNMENT_READ,
    PERM_ASSIGNMENT_WRITE,
]


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    return permission in permissions or PERM_WILDCARD in permissions


def merge_permissions(groups: list[list[str]]) -> list[str]:
    merged: set[str] = set()
    for group in groups:
        merged.update(item for item in group if item in DEFAULT_PERMISSION_NAMES)
    if PERM_WILDCARD in merged:
        return [PERM_WILDCARD]
    return sorted(merged)
