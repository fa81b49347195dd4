from datetime import date

import pytest

from quote_intake.config import AntiSpamConfig, SubmissionConfig
from quote_intake.forms import parse_quote_request


def test_valid_form_is_stripped_and_parsed(valid_form):
    valid_form["name"] = "  Maria Silva  "
    valid_form["start-date"] = "2026-03-15"
    valid_form["budget-range"] = "   "
    valid_form["services"] = ["Pintura", " ", "Elétrica"]

    request, errors = parse_quote_request(valid_form, SubmissionConfig(), AntiSpamConfig())

    assert errors == []
    assert request.name == "Maria Silva"
    assert request.start_date == date(2026, 3, 15)
    assert request.start_date_display == "15/03/2026"
    assert request.budget_range is None
    assert request.services == ["Pintura", "Elétrica"]
    assert request.project_label == "Reforma completa"


def test_unreadable_start_date_is_dropped(valid_form):
    valid_form["start-date"] = "next week"
    request, errors = parse_quote_request(valid_form)
    assert errors == []
    assert request.start_date is None
    assert request.start_date_display == "Not specified"


def test_missing_fields_are_reported(valid_form):
    del valid_form["phone"]
    del valid_form["project-type"]
    request, errors = parse_quote_request(valid_form)
    assert request is None
    assert "Phone is required" in errors
    assert "Project type is required" in errors


@pytest.mark.parametrize(
    "field, value, expected",
    [
        ("name", "M", "Name must have at least 2 characters"),
        ("name", "R2D2 Robot", "Name may only contain letters and spaces"),
        ("email", "not-an-email", "Invalid e-mail address"),
        ("phone", "12345", "Phone must contain between 10 and 15 digits"),
        ("phone", "27 9999-1234 ext", "Phone must contain between 10 and 15 digits"),
        ("address", "Rua A", "Address must be more specific (at least 10 characters)"),
        ("message", "Too short", "Project description must have at least 20 characters"),
        ("project-type", "castle", "Unknown project type"),
    ],
)
def test_field_rules(valid_form, field, value, expected):
    valid_form[field] = value
    request, errors = parse_quote_request(valid_form, SubmissionConfig(), AntiSpamConfig())
    assert request is None
    assert errors == [expected]


def test_antispam_rules(valid_form):
    antispam = AntiSpamConfig(blocked_emails=frozenset({"bad@example.com"}))

    request, errors = parse_quote_request({**valid_form, "email": "bad@example.com"}, antispam=antispam)
    assert errors == ["This e-mail address is not accepted"]

    request, errors = parse_quote_request({**valid_form, "email": "x@mailinator.com"}, antispam=antispam)
    assert errors == ["Temporary e-mail addresses are not accepted"]

    message = "Congratulations, you are the lucky visitor of the month!"
    request, errors = parse_quote_request({**valid_form, "message": message}, antispam=antispam)
    assert errors == ["Project description looks like spam"]


def test_without_context_only_format_rules_apply(valid_form):
    request, errors = parse_quote_request({**valid_form, "email": "x@mailinator.com", "project-type": "castle"})
    assert errors == []
    assert request.project_type == "castle"
