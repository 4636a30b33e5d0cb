"""
Organizations: named groups of users with ADMIN/MEMBER roles.

The creator is always an ADMIN and cannot be removed, demoted or leave; the
only way out for the creator is deleting the organization.
"""
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from billsledger.dispatch import DomainEvent, Notice, notice_event
from billsledger.errors import AuthorizationFailure, Conflict, NotFound, ValidationFailure
from billsledger.models import MemberRole, Organization, OrganizationMember
from billsledger.schemas import CreateOrganizationReq, UpdateOrganizationReq
from billsledger.serializers import organization_to_dict
from billsledger.services.users import load_users, require_user


def _load(db: Session, organization_id: str) -> Organization:
    o = db.execute(
        select(Organization)
        .where(Organization.id == organization_id)
        .options(selectinload(Organization.members))
    ).scalar_one_or_none()
    if not o:
        raise NotFound("Organization not found")
    return o


def _member(o: Organization, user_id: str) -> OrganizationMember | None:
    return next((m for m in o.members if m.user_id == user_id), None)


def _require_member(o: Organization, user_id: str) -> OrganizationMember:
    m = _member(o, user_id)
    if not m:
        raise AuthorizationFailure("You are not a member of this organization")
    return m


def _require_admin(o: Organization, user_id: str) -> OrganizationMember:
    m = _require_member(o, user_id)
    if m.role != MemberRole.ADMIN:
        raise AuthorizationFailure("Only admins can do this")
    return m


def _to_dict(db: Session, o: Organization) -> dict:
    return organization_to_dict(o, load_users(db, [m.user_id for m in o.members]))


def create_organization(db: Session, user_id: str, body: CreateOrganizationReq) -> dict:
    require_user(db, user_id)
    o = Organization(name=body.name, description=body.description, avatar=body.avatar, creator_id=user_id)
    o.members = [OrganizationMember(user_id=user_id, role=MemberRole.ADMIN)]
    db.add(o)
    db.flush()
    return _to_dict(db, o)


def list_organizations(db: Session, user_id: str) -> list[dict]:
    rows = db.execute(
        select(Organization)
        .where(Organization.members.any(OrganizationMember.user_id == user_id))
        .options(selectinload(Organization.members))
        .order_by(Organization.created_at.desc())
    ).scalars().all()
    users = load_users(db, {m.user_id for o in rows for m in o.members})
    return [organization_to_dict(o, users) for o in rows]


def get_organization(db: Session, user_id: str, organization_id: str) -> dict:
    o = _load(db, organization_id)
    _require_member(o, user_id)
    return _to_dict(db, o)


def update_organization(db: Session, user_id: str, organization_id: str, body: UpdateOrganizationReq) -> dict:
    o = _load(db, organization_id)
    _require_admin(o, user_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(o, field, value)
    db.flush()
    return _to_dict(db, o)


def add_member(
    db: Session, user_id: str, organization_id: str, new_user_id: str, role: MemberRole
) -> tuple[dict, list[DomainEvent]]:
    o = _load(db, organization_id)
    admin = _require_admin(o, user_id)
    if _member(o, new_user_id):
        raise Conflict("User is already a member")
    require_user(db, new_user_id)
    o.members.append(OrganizationMember(user_id=new_user_id, role=role))
    db.flush()

    inviter = require_user(db, admin.user_id)
    notice = Notice(
        title="Added to Organization",
        message=f"{inviter.full_name} added you to {o.name}",
        type="ORGANIZATION_INVITE",
        metadata={"organizationId": o.id},
    )
    return _to_dict(db, o), [notice_event([new_user_id], notice)]


def remove_member(db: Session, user_id: str, organization_id: str, member_id: str) -> dict:
    o = _load(db, organization_id)
    _require_admin(o, user_id)
    if member_id == o.creator_id:
        raise ValidationFailure("Cannot remove the organization creator")
    m = _member(o, member_id)
    if not m:
        raise NotFound("Member not found")
    o.members.remove(m)
    db.flush()
    return _to_dict(db, o)


def update_member_role(db: Session, user_id: str, organization_id: str, member_id: str, role: MemberRole) -> dict:
    o = _load(db, organization_id)
    _require_admin(o, user_id)
    if member_id == o.creator_id:
        raise ValidationFailure("Cannot change the creator's role")
    m = _member(o, member_id)
    if not m:
        raise NotFound("Member not found")
    m.role = role
    db.flush()
    return _to_dict(db, o)


def leave_organization(db: Session, user_id: str, organization_id: str) -> None:
    o = _load(db, organization_id)
    m = _require_member(o, user_id)
    if user_id == o.creator_id:
        raise ValidationFailure("The creator cannot leave; delete the organization instead")
    o.members.remove(m)
    db.flush()


def delete_organization(db: Session, user_id: str, organization_id: str) -> None:
    o = _load(db, organization_id)
    if o.creator_id != user_id:
        raise AuthorizationFailure("Only the creator can delete this organization")
    db.delete(o)
    db.flush()
