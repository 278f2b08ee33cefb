from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Iterator, Tuple

import pytest
from fastapi.testclient import TestClient
from google.auth import exceptions as google_auth_exceptions

from app import _poll_forever, create_app
from logging_utils import LogBuffer
from mail_poller import MailPoller
from settings import Settings

from tests.helpers import (
    FakeMailbox,
    FakeOAuthClient,
    RecordingForwarder,
    make_credential,
    make_manager,
    make_message,
)

SETTINGS = Settings(
    client_id="client-id",
    client_secret="client-secret",
    redirect_uri="http://localhost:3000/oauth2callback",
    webhook_url="https://discord.example.test/hook",
    token_store="memory",
)


@contextlib.contextmanager
def build_client(manager, mailbox: FakeMailbox, forwarder: RecordingForwarder) -> Iterator[TestClient]:
    poller = MailPoller(credentials=manager, webhook_url=SETTINGS.webhook_url, forwarder=forwarder)
    log_buffer = LogBuffer(20)
    app = create_app(SETTINGS, credentials=manager, poller=poller, log_buffer=log_buffer, start_polling=False)
    try:
        yield TestClient(app)
    finally:
        log_buffer.detach()


@pytest.fixture
def unauthorized() -> Iterator[Tuple[TestClient, object]]:
    mailbox = FakeMailbox()
    manager = make_manager(mailbox, credential=None)
    with build_client(manager, mailbox, RecordingForwarder()) as client:
        yield client, manager


@pytest.fixture
def authorized() -> Iterator[Tuple[TestClient, FakeMailbox, RecordingForwarder]]:
    mailbox = FakeMailbox([make_message("m1", subject="Server ALERT: disk full")])
    forwarder = RecordingForwarder()
    manager = make_manager(mailbox, credential=make_credential())
    with build_client(manager, mailbox, forwarder) as client:
        yield client, mailbox, forwarder


def test_root_links_to_consent_when_unauthorized(unauthorized) -> None:
    client, manager = unauthorized

    response = client.get("/")

    assert response.status_code == 200
    assert "Authorization Required" in response.text
    assert "https://accounts.example.test/o/oauth2/auth?client_id=cid&amp;access_type=offline" in response.text
    assert manager.state.value == "authorizing"


def test_root_welcomes_when_authorized(authorized) -> None:
    client, _, _ = authorized

    response = client.get("/")

    assert "Welcome to the Email Fetcher Service" in response.text


def test_authorize_page_always_offers_link(authorized) -> None:
    client, _, _ = authorized

    response = client.get("/authorize")

    assert "Authorize Gmail Access" in response.text


def test_callback_without_code_is_rejected(unauthorized) -> None:
    client, _ = unauthorized

    response = client.get("/oauth2callback")

    assert response.status_code == 400
    assert response.text == "Authorization code not provided."


def test_callback_exchanges_code(unauthorized) -> None:
    client, manager = unauthorized

    response = client.get("/oauth2callback", params={"code": "code-123"})

    assert response.status_code == 200
    assert "Authorization successful" in response.text
    assert manager.is_authorized is True
    assert manager.store.credential.access_token == "exchanged-access"


def test_callback_reports_exchange_failure() -> None:
    mailbox = FakeMailbox()
    manager = make_manager(mailbox, credential=None, oauth_client=FakeOAuthClient(exchange_error=ValueError("invalid_grant")))
    with build_client(manager, mailbox, RecordingForwarder()) as client:
        response = client.get("/oauth2callback", params={"code": "stale"})

        assert response.status_code == 500
        assert "Failed to authorize." in response.text
        assert "https://accounts.example.test/o/oauth2/auth" in response.text
        assert manager.is_authorized is False


def test_logs_returns_recent_lines(unauthorized) -> None:
    client, _ = unauthorized
    client.get("/oauth2callback")

    entries = client.get("/logs").json()

    assert any("Authorization code not provided." in entry for entry in entries)


def test_logs_include_info_tick_lines_when_root_logger_is_at_warning() -> None:
    root = logging.getLogger()
    previous_level = root.level
    root.setLevel(logging.WARNING)
    mailbox = FakeMailbox([make_message("m1", subject="Server ALERT: disk full")])
    manager = make_manager(mailbox, credential=make_credential())
    try:
        with build_client(manager, mailbox, RecordingForwarder()) as client:
            client.post("/poll")
            entries = client.get("/logs").json()
    finally:
        root.setLevel(previous_level)

    assert any("Fetching latest unread emails" in entry for entry in entries)
    assert any("Sending email" in entry for entry in entries)


class FlakyPoller:
    def __init__(self) -> None:
        self.calls = 0

    def poll_once(self) -> None:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("tick exploded")


def test_poll_loop_survives_a_failing_tick() -> None:
    poller = FlakyPoller()

    async def run() -> None:
        task = asyncio.create_task(_poll_forever(poller, 0))
        for _ in range(200):
            if poller.calls >= 2:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    asyncio.run(run())

    assert poller.calls >= 2


def test_logview_serves_html_page(unauthorized) -> None:
    client, _ = unauthorized

    response = client.get("/logview")

    assert response.status_code == 200
    assert "/logs" in response.text


def test_health_reports_auth_state_and_last_poll(authorized) -> None:
    client, _, _ = authorized
    client.post("/poll")

    body = client.get("/healthz").json()

    assert body["auth_state"] == "authorized"
    assert body["token_store"] == "memory"
    assert body["last_poll"]["forwarded"] == 1
    assert client.get("/health").json()["auth_state"] == "authorized"


def test_poll_endpoint_runs_one_tick(authorized) -> None:
    client, mailbox, forwarder = authorized

    body = client.post("/poll").json()

    assert body["status"] == "ok"
    assert body["forwarded"] == 1
    assert len(forwarder.calls) == 1
    assert mailbox.unread == set()


def test_token_refresh_requires_authorization(unauthorized) -> None:
    client, _ = unauthorized

    assert client.post("/token/refresh").status_code == 409


def test_token_refresh_returns_new_expiry(authorized) -> None:
    client, _, _ = authorized

    response = client.post("/token/refresh")

    assert response.status_code == 200
    assert response.json()["message"] == "Token refreshed successfully!"


def test_token_refresh_failure_is_bad_gateway() -> None:
    mailbox = FakeMailbox()
    oauth_client = FakeOAuthClient(refresh_error=google_auth_exceptions.RefreshError("invalid_grant"))
    manager = make_manager(mailbox, credential=make_credential(), oauth_client=oauth_client)
    with build_client(manager, mailbox, RecordingForwarder()) as client:
        response = client.post("/token/refresh")

        assert response.status_code == 502
        assert manager.is_authorized is False
