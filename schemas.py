from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class HelpType(str, Enum):
    MONEY = "money"
    VOLUNTEER = "volunteer"
    SERVICE = "service"


class Category(str, Enum):
    NURSING_HOME = "nursing_home"
    NGO = "ngo"
    SCHOOL = "school"
    HOSPITAL = "hospital"
    ORPHANAGE = "orphanage"
    PRIVATE = "private"
    OTHER = "other"


class TargetGroup(str, Enum):
    ELDERLY = "elderly"
    CHILDREN = "children"
    YOUTH = "youth"
    FAMILIES = "families"
    PATIENTS = "patients"
    REFUGEES = "refugees"
    GENERAL = "general"


class Topic(str, Enum):
    HEALTH = "health"
    EDUCATION = "education"
    ARTS = "arts"
    TECHNOLOGY = "technology"
    BASIC_NEEDS = "basic_needs"
    SOCIAL = "social"
    OTHER = "other"


class Region(str, Enum):
    NORTH = "north"
    CENTER = "center"
    SOUTH = "south"
    JERUSALEM = "jerusalem"
    EAST = "east"


class ImageSource(str, Enum):
    INTERNAL = "internal"
    CLOUDINARY = "cloudinary"
    AI = "ai"


IMAGE_SOURCE_ALIASES = {"upload": "internal", "ai_preset": "ai"}


class RequestCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    help_type: HelpType
    category: Category
    target_group: TargetGroup
    topic: Topic
    region: Region
    title: str = Field(min_length=1, max_length=255)
    full_description: str = Field(min_length=1)
    amount_needed: Optional[float] = None

    image_source: Optional[ImageSource] = None
    image_url: Optional[str] = Field(default=None, max_length=500)
    image_key: Optional[str] = Field(default=None, max_length=100)

    @field_validator("image_source", mode="before")
    @classmethod
    def _alias_image_source(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            return IMAGE_SOURCE_ALIASES.get(value, value)
        return value

    @field_validator("image_url", "image_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ContactForm(BaseModel):
    """
    Raw volunteer contact body, taken as sent.
    Types and bounds are checked by the lifecycle (PendingContact), so a
    wrong-typed field is reported as "Invalid <field>." with a 400.
    """

    name: Any = None
    email: Any = None
    phone: Any = None
    message: Any = None


class PendingContact(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=120)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=30)
    message: str = Field(min_length=5, max_length=2000)

    @field_validator("name", "email", "phone", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value):
        if isinstance(value, str):
            return value.lower()
        return value


class PendingContactRead(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    message: str
    claimed_at: Optional[datetime] = None


class RequestRead(BaseModel):
    id: int
    user_id: int
    help_type: str
    category: str
    target_group: str
    topic: str
    region: str
    title: str
    short_summary: str
    full_description: str
    amount_needed: Optional[float] = None
    status: str
    image_url: Optional[str] = None
    image_source: Optional[str] = None
    image_key: Optional[str] = None
    created_at: datetime
    pending_contact: Optional[PendingContactRead] = None

    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    email: EmailStr
    full_name: str = Field(min_length=1, max_length=120)
    password: str = Field(min_length=8)
    phone: Optional[str] = Field(default=None, max_length=30)
    region: Optional[Region] = None


class UserRead(BaseModel):
    id: int
    email: EmailStr
    full_name: str
    phone: Optional[str] = None
    region: Optional[str] = None
    role: str

    model_config = ConfigDict(from_attributes=True)


class LoginData(BaseModel):
    email: EmailStr
    password: str


class EmailCodeData(BaseModel):
    """Signup confirmation; ``code`` is ignored by the resend endpoint."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    verify_token: str = Field(default="", alias="verifyToken")
    code: str = ""


class MfaCodeData(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    mfa_token: str = Field(default="", alias="mfaToken")
    code: str = ""


class ForgotPasswordData(BaseModel):
    # Plain str: an unknown or malformed address still gets the generic answer.
    email: str = ""


class ResetPasswordData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = ""
    new_password: str = Field(default="", alias="newPassword")


class PaymentMethod(str, Enum):
    CARD = "card"
    BIT = "bit"


MAX_GUEST_DONATION = 1_000_000


class GuestDonationCreate(BaseModel):
    """One-time demo donation; no payment is processed and no card data is kept."""

    model_config = ConfigDict(str_strip_whitespace=True)

    amount: float = Field(gt=0, le=MAX_GUEST_DONATION, allow_inf_nan=False)
    payment_method: PaymentMethod
    donor_name: Optional[str] = Field(default=None, max_length=120)
    donor_email: Optional[EmailStr] = None
    donor_phone: Optional[str] = Field(default=None, max_length=30)

    @field_validator("donor_name", "donor_email", "donor_phone", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value
