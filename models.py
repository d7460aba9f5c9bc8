from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


DONATION_DEMO_SUCCESS = "demo_success"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    full_name: str
    phone: Optional[str] = None
    region: Optional[str] = None
    role: str = "user"  # user | admin
    password_hash: str
    email_verified_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class HelpRequest(SQLModel, table=True):
    __tablename__ = "requests"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)

    help_type: str
    category: str
    target_group: str
    topic: str
    region: str
    title: str = Field(max_length=255)
    short_summary: str
    full_description: str
    amount_needed: Optional[float] = None
    is_money_request: bool = False

    image_url: Optional[str] = None
    image_source: Optional[str] = None
    image_key: Optional[str] = None

    status: str = Field(default=RequestStatus.OPEN.value, index=True)  # open | in_progress | closed

    # Set only while status == in_progress
    pending_volunteer_name: Optional[str] = None
    pending_volunteer_email: Optional[str] = None
    pending_volunteer_phone: Optional[str] = None
    pending_volunteer_msg: Optional[str] = None
    pending_volunteer_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)

    @property
    def has_pending_contact(self) -> bool:
        return self.pending_volunteer_msg is not None


PENDING_FIELDS = (
    "pending_volunteer_name",
    "pending_volunteer_email",
    "pending_volunteer_phone",
    "pending_volunteer_msg",
    "pending_volunteer_at",
)


def cleared_pending_fields() -> dict:
    return {name: None for name in PENDING_FIELDS}


class EmailVerification(SQLModel, table=True):
    """
    A signup waiting for its emailed code.
    The account itself is only created once the code checks out.
    """

    __tablename__ = "email_verifications"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    email: str = Field(index=True)
    full_name: str
    phone: Optional[str] = None
    region: Optional[str] = None
    password_hash: str
    verify_token: str = Field(index=True, unique=True)
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class MfaChallenge(SQLModel, table=True):
    """Second login step: a code mailed after the password was accepted."""

    __tablename__ = "mfa_challenges"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    mfa_token: str = Field(index=True, unique=True)
    channel: str = "email"
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class PasswordResetToken(SQLModel, table=True):
    __tablename__ = "password_reset_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    # sha256 of the emailed token; the token itself is never stored
    token_hash: str = Field(index=True, unique=True)
    expires_at: datetime
    attempts: int = 0
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class GuestDonation(SQLModel, table=True):
    __tablename__ = "guest_donations"

    id: Optional[int] = Field(default=None, primary_key=True)
    amount: float
    payment_method: str  # card | bit
    donor_name: Optional[str] = None
    donor_email: Optional[str] = None
    donor_phone: Optional[str] = None
    status: str = Field(default=DONATION_DEMO_SUCCESS, index=True)
    created_at: datetime = Field(default_factory=utcnow)
