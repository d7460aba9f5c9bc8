import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlmodel import select

from db import SessionDep
from lifecycle import Actor, RequestLifecycleService
from mailer import NotifierDep
from models import HelpRequest, RequestStatus
from schemas import (
    Category,
    ContactForm,
    HelpType,
    PendingContactRead,
    Region,
    RequestCreate,
    RequestRead,
    Topic,
)
from stores import SqlRequestStore
from .auth import CurrentActorDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["requests"])

LIST_LIMIT = 200
SUMMARY_LENGTH = 160

RequestIdPath = Annotated[int, Path(gt=0)]


def get_lifecycle(session: SessionDep, notifier: NotifierDep) -> RequestLifecycleService:
    return RequestLifecycleService(SqlRequestStore(session), notifier)


LifecycleDep = Annotated[RequestLifecycleService, Depends(get_lifecycle)]


def _to_read(req: HelpRequest, actor: Optional[Actor]) -> RequestRead:
    out = RequestRead.model_validate(req)
    # Only the owner and admins get to see who is waiting for a decision.
    can_see_contact = actor is not None and (actor.id == req.user_id or actor.is_admin)
    if can_see_contact and req.has_pending_contact:
        out.pending_contact = PendingContactRead(
            name=req.pending_volunteer_name,
            email=req.pending_volunteer_email,
            phone=req.pending_volunteer_phone,
            message=req.pending_volunteer_msg,
            claimed_at=req.pending_volunteer_at,
        )
    return out


@router.post("/", status_code=201)
def create_request(request_data: RequestCreate, session: SessionDep, actor: CurrentActorDep):
    is_money = request_data.help_type == HelpType.MONEY
    amount_needed = None
    if is_money:
        if request_data.amount_needed is None or request_data.amount_needed <= 0:
            raise HTTPException(status_code=400, detail="Invalid amount_needed.")
        amount_needed = request_data.amount_needed

    new_request = HelpRequest(
        user_id=actor.id,
        help_type=request_data.help_type.value,
        category=request_data.category.value,
        target_group=request_data.target_group.value,
        topic=request_data.topic.value,
        region=request_data.region.value,
        title=request_data.title,
        short_summary=request_data.full_description[:SUMMARY_LENGTH],
        full_description=request_data.full_description,
        amount_needed=amount_needed,
        is_money_request=is_money,
        image_url=request_data.image_url,
        image_source=request_data.image_source.value if request_data.image_source else None,
        image_key=request_data.image_key,
        status=RequestStatus.OPEN.value,
    )
    session.add(new_request)
    session.commit()
    session.refresh(new_request)
    logger.info("request %s created by user %s", new_request.id, actor.id)
    return {"ok": True, "id": new_request.id}


@router.get("/", response_model=List[RequestRead])
def list_requests(
    session: SessionDep,
    actor: CurrentActorDep,
    mine: Optional[str] = None,
    region: Optional[Region] = None,
    topic: Optional[Topic] = None,
    category: Optional[Category] = None,
    help_type: Optional[HelpType] = None,
    status: Optional[str] = None,
):
    """
    List requests, newest first.
    ``mine=1`` limits to the caller's own requests, ``status=all`` shows every
    status; otherwise non-"mine" listings default to open requests only.
    """
    query = select(HelpRequest)
    if mine == "1":
        query = query.where(HelpRequest.user_id == actor.id)
    if region is not None:
        query = query.where(HelpRequest.region == region.value)
    if topic is not None:
        query = query.where(HelpRequest.topic == topic.value)
    if category is not None:
        query = query.where(HelpRequest.category == category.value)
    if help_type is not None:
        query = query.where(HelpRequest.help_type == help_type.value)

    statuses = {s.value for s in RequestStatus}
    if status == "all":
        pass
    elif status in statuses:
        query = query.where(HelpRequest.status == status)
    elif mine != "1":
        query = query.where(HelpRequest.status == RequestStatus.OPEN.value)

    query = query.order_by(HelpRequest.created_at.desc(), HelpRequest.id.desc()).limit(LIST_LIMIT)
    return [_to_read(req, actor) for req in session.exec(query).all()]


@router.get("/{request_id}", response_model=RequestRead)
def get_request(request_id: RequestIdPath, session: SessionDep, actor: CurrentActorDep):
    req = session.get(HelpRequest, request_id)
    if req is None:
        raise HTTPException(status_code=404, detail="Request not found.")
    return _to_read(req, actor)


@router.post("/{request_id}/contact")
def contact_request(
    request_id: RequestIdPath,
    lifecycle: LifecycleDep,
    actor: CurrentActorDep,
    form: Optional[ContactForm] = None,
):
    """
    Volunteer reaches out; locks the request until the owner decides.
    A missing body or a wrongly typed field is reported as a 400.
    """
    lifecycle.claim(request_id, actor, form)
    return {"ok": True, "status": RequestStatus.IN_PROGRESS.value}


@router.post("/{request_id}/accept")
def accept_request(request_id: RequestIdPath, lifecycle: LifecycleDep, actor: CurrentActorDep):
    lifecycle.accept(request_id, actor)
    return {"ok": True, "status": RequestStatus.CLOSED.value}


@router.post("/{request_id}/reject")
def reject_request(request_id: RequestIdPath, lifecycle: LifecycleDep, actor: CurrentActorDep):
    lifecycle.reject(request_id, actor)
    return {"ok": True, "status": RequestStatus.OPEN.value}


@router.post("/{request_id}/close")
def close_request(request_id: RequestIdPath, lifecycle: LifecycleDep, actor: CurrentActorDep):
    """Soft-delete: owner or admin closes the request."""
    lifecycle.close(request_id, actor)
    return {"ok": True, "status": RequestStatus.CLOSED.value}
