"""
Role hierarchy and permission matrix for book collaboration.

Everything here is pure. Role is the only source of truth; stored permission
flags are always re-derived from it.
"""

from typing import Dict, List, Optional

from app.models.book_collaborator import CollaboratorRole
from app.schemas.collaboration import CollaboratorPermissions


ROLE_HIERARCHY: Dict[CollaboratorRole, int] = {
    CollaboratorRole.OWNER: 4,
    CollaboratorRole.EDITOR: 3,
    CollaboratorRole.REVIEWER: 2,
    CollaboratorRole.VIEWER: 1,
}

ROLE_PERMISSIONS: Dict[CollaboratorRole, CollaboratorPermissions] = {
    CollaboratorRole.OWNER: CollaboratorPermissions(
        can_edit=True, can_review=True, can_invite=True, can_delete=True, can_publish=True
    ),
    CollaboratorRole.EDITOR: CollaboratorPermissions(can_edit=True, can_review=True),
    CollaboratorRole.REVIEWER: CollaboratorPermissions(can_review=True),
    CollaboratorRole.VIEWER: CollaboratorPermissions(),
}

NO_PERMISSIONS = CollaboratorPermissions()


def permissions_for(role: CollaboratorRole) -> CollaboratorPermissions:
    """Return the permission flags for a role."""
    return ROLE_PERMISSIONS[CollaboratorRole(role)]


def permissions_for_optional(role: Optional[CollaboratorRole]) -> CollaboratorPermissions:
    """Permissions of a possibly absent role; no role means no permissions."""
    if role is None:
        return NO_PERMISSIONS
    return permissions_for(role)


def permissions_payload(role: CollaboratorRole) -> Dict[str, bool]:
    """Permission flags in the stored (camelCase) JSON shape."""
    return permissions_for(role).model_dump(by_alias=True)


def role_rank(role: CollaboratorRole) -> int:
    return ROLE_HIERARCHY[CollaboratorRole(role)]


def _has_standing(acting: Optional[CollaboratorRole], editors_can_invite: bool) -> bool:
    if acting is None:
        return False
    if permissions_for(acting).can_invite:
        return True
    return editors_can_invite and CollaboratorRole(acting) == CollaboratorRole.EDITOR


def can_assign_role(
    acting: Optional[CollaboratorRole],
    target: CollaboratorRole,
    *,
    editors_can_invite: bool = True,
) -> bool:
    """Whether ``acting`` may hand out ``target`` (invite or role change).

    Owner is never assignable. Editors only count when the policy lets them
    invite, and nobody can grant a role at or above their own.
    """
    if CollaboratorRole(target) == CollaboratorRole.OWNER:
        return False
    if not _has_standing(acting, editors_can_invite):
        return False
    return role_rank(target) < role_rank(acting)


def can_manage(
    acting: Optional[CollaboratorRole],
    target: CollaboratorRole,
    *,
    editors_can_invite: bool = True,
) -> bool:
    """Whether ``acting`` may remove or re-role someone holding ``target``."""
    if not _has_standing(acting, editors_can_invite):
        return False
    return role_rank(target) < role_rank(acting)


def assignable_roles(
    acting: Optional[CollaboratorRole],
    *,
    editors_can_invite: bool = True,
) -> List[CollaboratorRole]:
    """Roles ``acting`` may assign, highest first."""
    return [
        role
        for role in sorted(ROLE_HIERARCHY, key=role_rank, reverse=True)
        if can_assign_role(acting, role, editors_can_invite=editors_can_invite)
    ]
