"""
verify.py
---------
Purpose:
    Caller identity for dashboard routes.

Notes:
    - Authentication happens upstream; the gateway forwards the user id
      and role in headers and this service trusts them.
    - Magic-link routes do not use this; the token is the credential.
"""

from dataclasses import dataclass

from fastapi import Header, HTTPException, status

from app.features.availability.domain.models import ADMIN_ROLES
from app.features.availability.repository.member_repository import MemberRepository


@dataclass(slots=True)
class CallerIdentity:
    user_id: str
    role: str | None = None

    @property
    def is_platform_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def identity_dependency(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CallerIdentity:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    return CallerIdentity(user_id=x_user_id, role=(x_user_role or "").lower() or None)


async def is_group_admin(identity: CallerIdentity, group_id: str) -> bool:
    """Platform admins, or owners/admins of the group."""
    if identity.is_platform_admin:
        return True
    member = await MemberRepository.get_group_member(group_id, identity.user_id)
    return bool(member and member.is_admin)


async def require_group_admin(identity: CallerIdentity, group_id: str) -> None:
    if not await is_group_admin(identity, group_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Group admin access required",
        )


async def require_group_member(identity: CallerIdentity, group_id: str) -> None:
    """Platform admins, or anyone in the group."""
    if identity.is_platform_admin:
        return
    if await MemberRepository.get_group_member(group_id, identity.user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Group membership required",
        )
