# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic model of the quote request form.

Field rules produce messages meant for the person filling in the form, so
validators raise ``ValueError`` with complete sentences instead of relying on
pydantic's generic constraint messages. :func:`parse_quote_request` turns a
``ValidationError`` into that list of sentences.

Anti-spam rules (blocked addresses, disposable e-mail domains, spam words)
and the allowed project types come from configuration and reach the
validators through the pydantic validation context.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from .config import AntiSpamConfig, SubmissionConfig

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}$")
PHONE_PATTERN = re.compile(r"^[\d\s()\-+]+$")

FIELD_LABELS = {
    "name": "Name",
    "email": "E-mail",
    "phone": "Phone",
    "address": "Address",
    "message": "Project description",
    "project-type": "Project type",
    "project_type": "Project type",
}


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class QuoteRequest(BaseModel):
    """A validated quote request.

    Attributes:
        name: Customer name, letters and spaces only.
        email: Reply address.
        phone: Phone or WhatsApp number, 10 to 15 digits.
        address: Work site address.
        message: Free-text project description.
        project_type: One of the configured project types.
        start_date: Desired start date, if given.
        budget_range: Estimated budget, if given.
        city: City, if given; otherwise derived from the address later.
        services: Services ticked on the form.
    """

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True, extra="ignore")

    name: Annotated[str, Field(description="Customer name")]
    email: Annotated[str, Field(description="Reply e-mail address")]
    phone: Annotated[str, Field(description="Phone or WhatsApp number")]
    address: Annotated[str, Field(description="Work site address")]
    message: Annotated[str, Field(description="Project description")]
    project_type: Annotated[str, Field(alias="project-type", description="Project type")]
    start_date: Annotated[date | None, Field(default=None, alias="start-date")]
    budget_range: Annotated[str | None, Field(default=None, alias="budget-range")]
    city: str | None = None
    services: list[str] = Field(default_factory=list)

    @field_validator("start_date", "budget_range", "city", mode="before")
    @classmethod
    def blank_optional(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("start_date", mode="wrap")
    @classmethod
    def lenient_date(cls, v: Any, handler) -> date | None:
        """An unreadable start date is dropped rather than rejected."""
        try:
            return handler(v)
        except ValidationError:
            return None

    @field_validator("name")
    @classmethod
    def valid_name(cls, v: str) -> str:
        if len(v) < 2:
            raise ValueError("Name must have at least 2 characters")
        if len(v) > 100:
            raise ValueError("Name must have at most 100 characters")
        if not all(ch.isalpha() or ch.isspace() for ch in v):
            raise ValueError("Name may only contain letters and spaces")
        return v

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str, info: ValidationInfo) -> str:
        if len(v) > 255 or not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid e-mail address")
        antispam = _antispam(info)
        if antispam is not None:
            lowered = v.lower()
            if lowered in antispam.blocked_emails:
                raise ValueError("This e-mail address is not accepted")
            if lowered.rsplit("@", 1)[-1] in antispam.temp_email_domains:
                raise ValueError("Temporary e-mail addresses are not accepted")
        return v

    @field_validator("phone")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        digits = re.sub(r"\D", "", v)
        if not PHONE_PATTERN.match(v) or not 10 <= len(digits) <= 15:
            raise ValueError("Phone must contain between 10 and 15 digits")
        return v

    @field_validator("address")
    @classmethod
    def valid_address(cls, v: str) -> str:
        if len(v) < 10:
            raise ValueError("Address must be more specific (at least 10 characters)")
        if len(v) > 500:
            raise ValueError("Address must have at most 500 characters")
        return v

    @field_validator("message")
    @classmethod
    def valid_message(cls, v: str, info: ValidationInfo) -> str:
        if len(v) < 20:
            raise ValueError("Project description must have at least 20 characters")
        if len(v) > 3000:
            raise ValueError("Project description must have at most 3000 characters")
        antispam = _antispam(info)
        if antispam is not None:
            lowered = v.lower()
            if any(word in lowered for word in antispam.spam_words):
                raise ValueError("Project description looks like spam")
        return v

    @field_validator("project_type")
    @classmethod
    def valid_project_type(cls, v: str, info: ValidationInfo) -> str:
        if not v:
            raise ValueError("Project type is required")
        submission = (info.context or {}).get("submission")
        if submission is not None and submission.project_types and v not in submission.project_types:
            raise ValueError("Unknown project type")
        return v

    @field_validator("services", mode="before")
    @classmethod
    def clean_services(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(item).strip() for item in v if str(item).strip()]

    @property
    def start_date_display(self) -> str:
        return self.start_date.strftime("%d/%m/%Y") if self.start_date else "Not specified"

    @property
    def project_label(self) -> str:
        return self.project_type.replace("-", " ").capitalize()


def _antispam(info: ValidationInfo) -> AntiSpamConfig | None:
    return (info.context or {}).get("antispam")


def format_errors(exc: ValidationError) -> list[str]:
    """Convert a pydantic ``ValidationError`` into user-facing sentences."""
    messages = []
    for error in exc.errors():
        field_name = str(error["loc"][0]) if error.get("loc") else ""
        label = FIELD_LABELS.get(field_name, field_name.replace("_", " ").capitalize())
        if error["type"] == "missing":
            messages.append(f"{label} is required")
        elif error["type"] == "value_error":
            messages.append(str(error["ctx"]["error"]) if "ctx" in error else error["msg"])
        else:
            messages.append(f"{label} is invalid")
    return messages


def parse_quote_request(
    data: dict[str, Any],
    submission: SubmissionConfig | None = None,
    antispam: AntiSpamConfig | None = None,
) -> tuple[QuoteRequest | None, list[str]]:
    """Validate raw form data.

    Returns:
        ``(request, [])`` on success, ``(None, messages)`` otherwise.
    """
    try:
        request = QuoteRequest.model_validate(data, context={"submission": submission, "antispam": antispam})
    except ValidationError as exc:
        return None, format_errors(exc)
    return request, []
