from fastapi import APIRouter, Depends, Request

from billsledger.db import run_db
from billsledger.deps import current_user_id, logger, publish
from billsledger.logging_utils import log_event
from billsledger.schemas import AddMemberReq, CreateOrganizationReq, UpdateMemberRoleReq, UpdateOrganizationReq
from billsledger.services import organizations

router = APIRouter(prefix="/api/organizations", tags=["organizations"])


@router.post("", status_code=201)
async def create_organization(body: CreateOrganizationReq, user_id: str = Depends(current_user_id)):
    org = await run_db(organizations.create_organization, user_id, body)
    log_event(logger, "organization_created", organization_id=org["id"], user_id=user_id)
    return org


@router.get("")
async def list_organizations(user_id: str = Depends(current_user_id)):
    return await run_db(organizations.list_organizations, user_id)


@router.get("/{organization_id}")
async def get_organization(organization_id: str, user_id: str = Depends(current_user_id)):
    return await run_db(organizations.get_organization, user_id, organization_id)


@router.put("/{organization_id}")
async def update_organization(
    organization_id: str, body: UpdateOrganizationReq, user_id: str = Depends(current_user_id)
):
    return await run_db(organizations.update_organization, user_id, organization_id, body)


@router.post("/{organization_id}/members", status_code=201)
async def add_member(
    organization_id: str, body: AddMemberReq, request: Request, user_id: str = Depends(current_user_id)
):
    org, events = await run_db(organizations.add_member, user_id, organization_id, body.user_id, body.role)
    log_event(logger, "organization_member_added", organization_id=organization_id, user_id=user_id, member_id=body.user_id)
    await publish(request, events)
    return org


@router.delete("/{organization_id}/members/{member_id}")
async def remove_member(organization_id: str, member_id: str, user_id: str = Depends(current_user_id)):
    org = await run_db(organizations.remove_member, user_id, organization_id, member_id)
    log_event(logger, "organization_member_removed", organization_id=organization_id, user_id=user_id, member_id=member_id)
    return org


@router.put("/{organization_id}/members/{member_id}/role")
async def update_member_role(
    organization_id: str, member_id: str, body: UpdateMemberRoleReq, user_id: str = Depends(current_user_id)
):
    return await run_db(organizations.update_member_role, user_id, organization_id, member_id, body.role)


@router.post("/{organization_id}/leave")
async def leave_organization(organization_id: str, user_id: str = Depends(current_user_id)):
    await run_db(organizations.leave_organization, user_id, organization_id)
    log_event(logger, "organization_left", organization_id=organization_id, user_id=user_id)
    return {"ok": True}


@router.delete("/{organization_id}")
async def delete_organization(organization_id: str, user_id: str = Depends(current_user_id)):
    await run_db(organizations.delete_organization, user_id, organization_id)
    log_event(logger, "organization_deleted", organization_id=organization_id, user_id=user_id)
    return {"ok": True}
