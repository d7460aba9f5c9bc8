import logging

from fastapi import APIRouter
from sqlmodel import func, select

from db import SessionDep
from models import DONATION_DEMO_SUCCESS, GuestDonation
from schemas import GuestDonationCreate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["donations"])


@router.post("/", status_code=201)
def create_guest_donation(donation_in: GuestDonationCreate, session: SessionDep):
    """
    Record a one-time donation from a visitor without an account.
    Demo only: nothing is charged, so every stored donation is a success.
    """
    donation = GuestDonation(
        amount=donation_in.amount,
        payment_method=donation_in.payment_method.value,
        donor_name=donation_in.donor_name,
        donor_email=donation_in.donor_email.lower() if donation_in.donor_email else None,
        donor_phone=donation_in.donor_phone,
        status=DONATION_DEMO_SUCCESS,
    )
    session.add(donation)
    session.commit()
    session.refresh(donation)
    logger.info("guest donation %s: %s via %s", donation.id, donation.amount, donation.payment_method)
    return {"ok": True, "donationId": donation.id, "status": donation.status}


@router.get("/stats")
def guest_donation_stats(session: SessionDep):
    total_count, total_amount = session.exec(
        select(func.count(GuestDonation.id), func.coalesce(func.sum(GuestDonation.amount), 0))
        .where(GuestDonation.status == DONATION_DEMO_SUCCESS)
    ).one()
    by_method = session.exec(
        select(
            GuestDonation.payment_method,
            func.count(GuestDonation.id),
            func.coalesce(func.sum(GuestDonation.amount), 0),
        )
        .where(GuestDonation.status == DONATION_DEMO_SUCCESS)
        .group_by(GuestDonation.payment_method)
        .order_by(GuestDonation.payment_method)
    ).all()
    return {
        "ok": True,
        "totals": {"total_count": total_count, "total_amount": float(total_amount)},
        "byMethod": [
            {"payment_method": method, "cnt": cnt, "sum_amount": float(amount)}
            for method, cnt, amount in by_method
        ],
    }
