import logging
from collections import defaultdict
from typing import Annotated, List

from fastapi import APIRouter, HTTPException, Path
from sqlmodel import func, select

from db import SessionDep
from models import (
    DONATION_DEMO_SUCCESS,
    EmailVerification,
    GuestDonation,
    HelpRequest,
    MfaChallenge,
    PasswordResetToken,
    RequestStatus,
    User,
)
from schemas import UserRead
from .auth import AdminDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])

CHART_MONTHS = 24


class AdminUserRow(UserRead):
    request_count: int = 0


@router.get("/metrics")
def admin_metrics(session: SessionDep, admin: AdminDep):
    """Request totals, overall and per status, plus donations received."""
    rows = session.exec(
        select(HelpRequest.status, func.count(HelpRequest.id)).group_by(HelpRequest.status)
    ).all()
    by_status = {s.value: 0 for s in RequestStatus}
    for status, count in rows:
        by_status[status] = count
    total_users = session.exec(select(func.count(User.id))).one()
    total_donations = session.exec(
        select(func.coalesce(func.sum(GuestDonation.amount), 0))
        .where(GuestDonation.status == DONATION_DEMO_SUCCESS)
    ).one()
    return {
        "ok": True,
        "totalRequests": sum(by_status.values()),
        "requestsByStatus": by_status,
        "totalUsers": total_users,
        "totalDonations": float(total_donations),
    }


@router.get("/users", response_model=List[AdminUserRow])
def list_users(session: SessionDep, admin: AdminDep):
    """
    List users, newest first, with how many requests each has created.
    """
    stmt = (
        select(User, func.count(HelpRequest.id))
        .join(HelpRequest, HelpRequest.user_id == User.id, isouter=True)
        .group_by(User.id)
        .order_by(User.created_at.desc())
        .limit(200)
    )
    rows = session.exec(stmt).all()
    return [
        AdminUserRow(**UserRead.model_validate(user).model_dump(), request_count=count)
        for user, count in rows
    ]


@router.get("/charts/requests-by-region")
def requests_by_region(session: SessionDep, admin: AdminDep):
    count = func.count(HelpRequest.id)
    rows = session.exec(
        select(HelpRequest.region, count)
        .group_by(HelpRequest.region)
        .order_by(count.desc())
    ).all()
    return {"ok": True, "rows": [{"region": region, "cnt": cnt} for region, cnt in rows]}


@router.get("/charts/donations-by-month")
def donations_by_month(session: SessionDep, admin: AdminDep):
    """Donation totals per calendar month ("YYYY-MM"), oldest first."""
    # Bucketed here rather than in SQL: month formatting differs per database.
    donations = session.exec(
        select(GuestDonation.created_at, GuestDonation.amount)
        .where(GuestDonation.status == DONATION_DEMO_SUCCESS)
    ).all()
    totals = defaultdict(float)
    for created_at, amount in donations:
        totals[created_at.strftime("%Y-%m")] += amount
    months = sorted(totals)[-CHART_MONTHS:]
    return {"ok": True, "rows": [{"ym": ym, "total": totals[ym]} for ym in months]}


@router.delete("/users/{user_id}")
def delete_user(
    user_id: Annotated[int, Path(gt=0)],
    session: SessionDep,
    admin: AdminDep,
):
    if user_id == admin.id:
        raise HTTPException(status_code=400, detail="You can't delete your own account.")

    user = session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found.")
    if user.role == "admin":
        raise HTTPException(status_code=400, detail="Cannot delete admin.")

    # Everything that references the user goes first.
    for model in (HelpRequest, MfaChallenge, PasswordResetToken, EmailVerification):
        owned = session.exec(select(model).where(model.user_id == user_id)).all()
        for row in owned:
            session.delete(row)
    session.flush()
    session.delete(user)
    session.commit()
    logger.info("admin %s deleted user %s", admin.id, user_id)
    return {"ok": True}
