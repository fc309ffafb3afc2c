from __future__ import annotations
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .utils import MAX_COMPLETION_TIME_LENGTH


class _Camel(BaseModel):
    # wire format is camelCase; python side keeps snake_case
    model_config = ConfigDict(populate_by_name=True)


class UserRegister(_Camel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=8)
    role: Literal["Runner", "Marshal"] = "Runner"

class LoginRequest(_Camel):
    email: str
    password: str

class MarshalVerification(_Camel):
    user_id: int = Field(alias="userId")
    action: Literal["approve", "reject"]

class CategoryCreate(_Camel):
    category_name: str = Field(alias="categoryName", min_length=1)
    description: str = ""
    target_audience: str = Field(default="", alias="targetAudience")
    gun_start_time: Optional[str] = Field(default=None, alias="gunStartTime")
    cut_off_time: Optional[str] = Field(default=None, alias="cutOffTime")

class EventCreate(_Camel):
    event_name: str = Field(alias="eventName", min_length=1)
    event_date: date = Field(alias="eventDate")
    location: str = ""
    description: str = ""
    categories: list[CategoryCreate] = Field(default_factory=list)
    staff_user_ids: list[int] = Field(default_factory=list, alias="staffUserIds")

class RegistrationCreate(_Camel):
    category_id: int = Field(alias="categoryId")

class PaymentVerification(_Camel):
    participant_id: int = Field(alias="participantId")
    action: Literal["approve", "reject"]
    rejection_reason: Optional[str] = Field(default=None, alias="rejectionReason")

class ResultCreate(_Camel):
    participant_id: int = Field(alias="participantId")
    category_id: int = Field(alias="categoryId")
    completion_time: str = Field(alias="completionTime", min_length=1, max_length=MAX_COMPLETION_TIME_LENGTH)  # HH:MM:SS[.fff] | MM:SS[.fff] | SS[.fff]
    notes: Optional[str] = None

class EventUpdate(_Camel):
    event_name: Optional[str] = Field(default=None, alias="eventName")
    event_date: Optional[date] = Field(default=None, alias="eventDate")
    location: Optional[str] = None
    description: Optional[str] = None

class CategoryUpdate(_Camel):
    category_name: Optional[str] = Field(default=None, alias="categoryName")
    description: Optional[str] = None
    target_audience: Optional[str] = Field(default=None, alias="targetAudience")
    gun_start_time: Optional[str] = Field(default=None, alias="gunStartTime")
    cut_off_time: Optional[str] = Field(default=None, alias="cutOffTime")

class PasswordChange(_Camel):
    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword", min_length=1)
