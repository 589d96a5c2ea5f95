"""Pydantic schemas for the FastAPI endpoints.

Request and response bodies use the camelCase field names the web
dashboard and the agent already speak.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.services.schedule import MedicationSchedule


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Health ───────────────────────────────────────────────────────────


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "poppa-concierge"


class DatabaseHealthResponse(BaseModel):
    success: bool
    message: str


# ── Agent bridge ─────────────────────────────────────────────────────


class AgentRequest(_CamelModel):
    """Direct message to the agent, bypassing WhatsApp."""

    message: str = Field(..., min_length=1, max_length=4000)
    phone_number: str = Field(..., alias="phoneNumber", min_length=1, max_length=32)
    template_context: dict[str, Any] | None = Field(default=None, alias="templateContext")


class AgentReplyMetadata(BaseModel):
    userFound: bool
    historyLength: int


class AgentResponse(BaseModel):
    success: bool = True
    response: str
    metadata: AgentReplyMetadata


# ── Notifications ────────────────────────────────────────────────────


class WelcomeRequest(_CamelModel):
    phone_number: str = Field(..., alias="phoneNumber", min_length=1, max_length=32)
    user_name: str = Field(..., alias="userName", min_length=1, max_length=100)


class NotificationResultItem(BaseModel):
    userId: str
    status: Literal["success", "error"]
    error: str | None = None
    messageId: str | None = None


class NotificationBatchResponse(BaseModel):
    success: bool = True
    results: list[NotificationResultItem] = Field(default_factory=list)


# ── Users ────────────────────────────────────────────────────────────


class UserCreateRequest(_CamelModel):
    id: str = Field(..., min_length=1, max_length=100)
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    emails: list[str] = Field(default_factory=list)
    phones: list[str] = Field(default_factory=list)
    age: int | None = Field(default=None, ge=0, le=130)
    role: Literal["Elder", "Caretaker"] | None = None
    sex: str | None = None
    language: str | None = None


class UserUpdateRequest(_CamelModel):
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    email: str | None = None
    phone: str | None = None
    age: int | None = Field(default=None, ge=0, le=130)
    role: Literal["Elder", "Caretaker"] | None = None
    sex: str | None = None
    language: str | None = None

    def to_properties(self) -> dict[str, Any]:
        """Only the fields the client actually sent, as graph property names."""
        return self.model_dump(by_alias=True, exclude_unset=True)


# ── Medications ──────────────────────────────────────────────────────


class MedicationLinkRequest(_CamelModel):
    """Attach a medication to a user, by id or by name.

    When ``medicationId`` is absent the medication is looked up by
    ``name`` and created if no exact match exists.
    """

    medication_id: str | None = Field(default=None, alias="medicationId")
    name: str | None = Field(default=None, max_length=200)
    brand_name: str | None = Field(default=None, alias="brandName")
    generic_name: str | None = Field(default=None, alias="genericName")
    schedule: MedicationSchedule


class IntakeRequest(_CamelModel):
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    scheduled_time: str = Field(..., alias="scheduledTime", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    actual_time: str | None = Field(default=None, alias="actualTime")
    status: Literal["taken", "missed", "pending"]
