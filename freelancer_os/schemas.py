"""
Pydantic schemas for stored records and for the HTTP API.

Records are stored with camelCase keys (``contactInfo``, ``createdAt``);
Python code uses snake_case attributes and may pass either form.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

ClientStatus = Literal["Lead", "Active", "Completed"]
PaymentStatus = Literal["Paid", "Pending", "Overdue"]
ProjectStatus = Literal["To Do", "In Progress", "Done"]
TaskPriority = Literal["Low", "Medium", "High"]
TaskStatus = Literal["To Do", "Doing", "Done"]
FinanceType = Literal["Income", "Expense"]
GoalCategory = Literal["Work", "Personal", "Financial"]
GoalStatus = Literal["Active", "Completed", "Paused"]
ResourceType = Literal["Tool", "Article", "Video"]
InvoiceStatus = Literal["Draft", "Sent", "Paid", "Overdue"]
Theme = Literal["light", "dark"]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    def to_document(self) -> dict:
        """Serialize to the stored (camelCase, JSON-safe) representation."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RecordModel(CamelModel):
    """Fields common to every collection record."""

    id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_document(self) -> dict:
        document = super().to_document()
        document.pop("id", None)
        return document

    @classmethod
    def from_document(cls, record_id: str, document: Any):
        if not isinstance(document, dict):
            raise ValueError(f"Record {record_id!r} is not an object")
        return cls.model_validate({**document, "id": record_id})

    @classmethod
    def field_aliases(cls) -> dict[str, str]:
        """Map both attribute names and aliases to the stored key."""
        aliases = {}
        for name, info in cls.model_fields.items():
            alias = info.alias or name
            aliases[name] = alias
            aliases[alias] = alias
        return aliases


class Client(RecordModel):
    name: str = Field(..., min_length=1)
    company: str = ""
    contact_info: str = ""
    status: ClientStatus = "Lead"
    start_date: dt.date
    end_date: Optional[dt.date] = None
    payment_status: PaymentStatus = "Pending"
    notes: str = ""


class Project(RecordModel):
    name: str = Field(..., min_length=1)
    client_id: str = ""
    due_date: dt.date
    status: ProjectStatus = "To Do"
    budget: float = Field(0, ge=0)
    notes: str = ""


class Task(RecordModel):
    name: str = Field(..., min_length=1)
    project_id: str = ""
    deadline: dt.date
    priority: TaskPriority = "Medium"
    status: TaskStatus = "To Do"


class Finance(RecordModel):
    date: dt.date
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    type: FinanceType
    amount: float = Field(..., ge=0)
    payment_method: str = ""
    notes: str = ""


class Goal(RecordModel):
    name: str = Field(..., min_length=1)
    category: GoalCategory = "Work"
    progress: int = Field(0, ge=0, le=100)
    target_date: dt.date
    status: GoalStatus = "Active"
    notes: str = ""


class Resource(RecordModel):
    name: str = Field(..., min_length=1)
    type: ResourceType
    url: str = ""
    category: str = ""
    notes: str = ""


class InvoiceItem(CamelModel):
    id: str
    description: str = ""
    quantity: float = Field(1, ge=0)
    rate: float = Field(0, ge=0)
    amount: float = 0

    @model_validator(mode="after")
    def _compute_amount(self) -> "InvoiceItem":
        self.amount = self.quantity * self.rate
        return self


class Invoice(RecordModel):
    client_id: str = Field(..., min_length=1)
    project_id: Optional[str] = None
    invoice_number: str = Field(..., min_length=1)
    date: dt.date
    due_date: dt.date
    items: list[InvoiceItem] = Field(default_factory=list)
    total: float = 0
    status: InvoiceStatus = "Draft"
    notes: str = ""

    @model_validator(mode="after")
    def _compute_total(self) -> "Invoice":
        self.total = sum(item.amount for item in self.items)
        return self


class UserProfile(CamelModel):
    uid: str
    email: str = ""
    display_name: str = ""
    photo_url: Optional[str] = Field(default=None, alias="photoURL")
    theme: Theme = "light"
    is_new_user: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# HTTP payloads


class SignUpRequest(BaseModel):
    email: str
    password: str
    display_name: str = ""
    confirm_password: Optional[str] = None

    @model_validator(mode="after")
    def _passwords_match(self) -> "SignUpRequest":
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        return self


class LoginRequest(BaseModel):
    email: str
    password: str


class FederatedLoginRequest(BaseModel):
    id_token: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    uid: str


class PasswordResetRequest(BaseModel):
    email: str


class PasswordResetResponse(BaseModel):
    status: Literal["sent"]
    code: Optional[str] = None


class PasswordResetConfirm(BaseModel):
    code: str
    new_password: str


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1)
    theme: Optional[Theme] = None
    is_new_user: Optional[bool] = None


class PasswordUpdate(BaseModel):
    new_password: str
    confirm_password: str

    @model_validator(mode="after")
    def _passwords_match(self) -> "PasswordUpdate":
        if self.new_password != self.confirm_password:
            raise ValueError("New passwords do not match")
        return self


class EmailUpdate(BaseModel):
    email: str


class DeleteAccountRequest(BaseModel):
    password: str = ""


class PhotoUploadResponse(BaseModel):
    photo_url: str


class CreatedResponse(BaseModel):
    id: str


class MoveRequest(BaseModel):
    status: str


class InvoiceLineUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = None
    quantity: Optional[float] = Field(default=None, ge=0)
    rate: Optional[float] = Field(default=None, ge=0)


class StatusResponse(BaseModel):
    status: Literal["ok"]
