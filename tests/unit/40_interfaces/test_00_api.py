from contextlib import asynccontextmanager
from dataclasses import replace
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from quote_intake.api import create_app
from quote_intake.config import RateLimitConfig, SubmissionConfig
from quote_intake.kvstore import SqliteKeyValueStore
from quote_intake.metrics import IntakeMetrics
from quote_intake.pipeline import SubmissionPipeline
from quote_intake.rate_limit import RateLimiter
from quote_intake.uploads import UploadValidator

JSON = {"Accept": "application/json"}


def build_client(config, transport):
    limiter = RateLimiter(SqliteKeyValueStore(config.paths.rate_limit_db), config.rate_limit)
    validator = UploadValidator(config.uploads, config.paths.uploads_dir)
    pipeline = SubmissionPipeline(config, limiter, validator, transport, metrics=IntakeMetrics())

    @asynccontextmanager
    async def lifespan(app):
        await pipeline.init()
        yield

    return TestClient(create_app(pipeline, lifespan=lifespan))


def query(location):
    parts = urlsplit(location)
    return parts.path, {k: v[0] for k, v in parse_qs(parts.query).items()}


def temp_leftovers(config):
    directory = config.paths.temp_dir
    return list(directory.iterdir()) if directory.exists() else []


def test_json_submission_with_attachments(intake_config, transport, valid_form, file_bytes):
    with build_client(intake_config, transport) as client:
        response = client.post(
            "/quote",
            data={**valid_form, "services": ["Pintura", "Elétrica"]},
            files=[
                ("attachments", ("kitchen.jpg", file_bytes["jpeg"], "image/jpeg")),
                ("attachments", ("fake.jpg", file_bytes["pdf"], "image/jpeg")),
            ],
            headers=JSON,
        )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "sent"
    assert body["files"] == ["kitchen.jpg"]
    assert len(body["warnings"]) == 1
    assert transport.sent[0]["attachments"][0].original_name == "kitchen.jpg"
    assert "Pintura" in transport.sent[0]["text"]
    assert len(list(intake_config.paths.uploads_dir.iterdir())) == 1
    assert temp_leftovers(intake_config) == []


def test_browser_submission_redirects_to_success_page(intake_config, transport, valid_form, file_bytes):
    with build_client(intake_config, transport) as client:
        response = client.post(
            "/quote",
            data=valid_form,
            files=[("attachments", ("plan.pdf", file_bytes["pdf"], "application/pdf"))],
            follow_redirects=False,
        )

    assert response.status_code == 303
    path, params = query(response.headers["location"])
    assert path == "/obrigado.html"
    assert params == {"sent": "true", "files": "1", "uploaded": "plan.pdf"}
    assert response.headers["x-content-type-options"] == "nosniff"


def test_invalid_submission(intake_config, transport, valid_form):
    with build_client(intake_config, transport) as client:
        redirect = client.post("/quote", data={**valid_form, "name": "X"}, follow_redirects=False)
        as_json = client.post("/quote", data={**valid_form, "name": "X"}, headers=JSON)

    path, params = query(redirect.headers["location"])
    assert path == "/orcamento.html"
    assert params["error"] == "Name must have at least 2 characters"
    assert as_json.status_code == 422
    assert as_json.json()["errors"] == ["Name must have at least 2 characters"]
    assert transport.sent == []


def test_rate_limit_returns_429(intake_config, transport, valid_form):
    config = replace(intake_config, rate_limit=RateLimitConfig(max_requests=1))
    with build_client(config, transport) as client:
        first = client.post("/quote", data=valid_form, headers=JSON)
        second = client.post("/quote", data=valid_form, headers=JSON)

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json()["retry_after"] > 0


def test_forwarded_for_used_only_when_trusted(intake_config, transport, valid_form):
    config = replace(
        intake_config,
        rate_limit=RateLimitConfig(max_requests=1),
        submission=SubmissionConfig(trust_forwarded_for=True),
    )
    with build_client(config, transport) as client:
        a = client.post("/quote", data=valid_form, headers={**JSON, "X-Forwarded-For": "198.51.100.1, 10.0.0.1"})
        b = client.post("/quote", data=valid_form, headers={**JSON, "X-Forwarded-For": "198.51.100.2"})
        c = client.post("/quote", data=valid_form, headers={**JSON, "X-Forwarded-For": "198.51.100.1"})

    assert [a.status_code, b.status_code, c.status_code] == [200, 200, 429]


def test_transport_failure_returns_502_and_rolls_back(intake_config, failing_transport, valid_form, file_bytes):
    with build_client(intake_config, failing_transport) as client:
        response = client.post(
            "/quote",
            data=valid_form,
            files=[("attachments", ("kitchen.jpg", file_bytes["jpeg"], "image/jpeg"))],
            headers=JSON,
        )
        redirect = client.post("/quote", data=valid_form, follow_redirects=False)

    assert response.status_code == 502
    assert list(intake_config.paths.uploads_dir.iterdir()) == []
    assert temp_leftovers(intake_config) == []
    path, params = query(redirect.headers["location"])
    assert path == "/orcamento.html"
    assert "try again later" in params["error"]


@pytest.mark.parametrize("path", ["/health", "/metrics"])
def test_service_endpoints(intake_config, transport, path):
    with build_client(intake_config, transport) as client:
        response = client.get(path)
    assert response.status_code == 200
    if path == "/health":
        assert response.json() == {"status": "ok"}
    else:
        assert "qi_submissions_total" in response.text


def test_get_quote_redirects_home(intake_config, transport):
    with build_client(intake_config, transport) as client:
        response = client.get("/quote", follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"] == "/index.html"
