"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src directory to Python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from fakes import (  # noqa: E402
    TEST_EMAIL,
    TEST_PASSWORD,
    FakeIMAPClient,
    FakeIMAPServer,
    seed_default_mailbox,
)

# ============================================================================
# Mail fixtures
# ============================================================================


@pytest.fixture
def fake_imap_server():
    """Seeded in-memory IMAP server: INBOX (3 messages), Sent, Drafts, Trash, Spam, Work."""
    return seed_default_mailbox(FakeIMAPServer())


@pytest.fixture
def imap_client_factory(fake_imap_server):
    """Drop-in for the ``IMAPClient`` constructor."""

    def factory(host, port=None, ssl=True, ssl_context=None, timeout=None):
        return FakeIMAPClient(fake_imap_server)

    return factory


@pytest.fixture
def imap_settings():
    from webmail_proxy.models.account import ServerSettings

    return ServerSettings(host="imap.example.com", port=993)


@pytest.fixture
def smtp_settings():
    from webmail_proxy.models.account import ServerSettings

    return ServerSettings(host="smtp.example.com", port=465)


@pytest.fixture
def connector_factory(imap_client_factory):
    """ConnectorFactory that builds real IMAPConnectors over the fake server."""
    from webmail_proxy.mail.imap_session import IMAPConnector

    def factory(settings, username, password):
        return IMAPConnector(settings, username, password, verify_tls=False, client_factory=imap_client_factory)

    return factory


@pytest.fixture
def folder_cache():
    from webmail_proxy.lib.cache import FolderCache

    return FolderCache(ttl_seconds=300, max_entries=100)


@pytest.fixture
def folder_resolver(folder_cache):
    from webmail_proxy.mail.folders import FolderResolver

    return FolderResolver(folder_cache)


@pytest.fixture
def mailbox_service(connector_factory, imap_settings, folder_resolver):
    """MailboxService bound to the seeded fake account."""
    from webmail_proxy.mail.mailbox_service import MailboxService

    connector = connector_factory(imap_settings, TEST_EMAIL, TEST_PASSWORD)
    return MailboxService(connector, folder_resolver, cache_key=f"{TEST_EMAIL}|imap.example.com")


@pytest.fixture
def smtp_transport():
    """Mock ``smtplib.SMTP`` / ``SMTP_SSL`` class; ``.return_value`` is the connection."""
    transport = MagicMock(name="SMTP")
    transport.return_value.send_message.return_value = {}
    return transport


@pytest.fixture
def sender_factory(smtp_transport):
    from webmail_proxy.mail.smtp import SMTPSender

    def factory(settings, username, password, display_name=None):
        return SMTPSender(
            settings,
            username,
            password,
            display_name=display_name,
            verify_tls=False,
            smtp_factory=smtp_transport,
            smtp_ssl_factory=smtp_transport,
        )

    return factory


# ============================================================================
# Auth and storage fixtures
# ============================================================================


@pytest.fixture
def temp_db(tmp_path):
    """Migrated SQLite database in a temporary directory."""
    from webmail_proxy.lib.session_db import SessionDatabase

    db = SessionDatabase(tmp_path / "data" / "webmail.db")
    yield db
    db.close()


@pytest.fixture
def codec():
    from webmail_proxy.auth.credentials import CredentialCodec

    return CredentialCodec(
        secrets={"k1": "unit-test-encryption-secret"},
        current_key_id="k1",
        salt=b"unit-test-salt",
        iterations=1_000,
    )


@pytest.fixture
def token_service():
    from webmail_proxy.auth.tokens import TokenService

    return TokenService("unit-test-jwt-secret")


@pytest.fixture
def fake_discovery():
    """MailDiscovery double that always resolves to imap/smtp.example.com."""
    from webmail_proxy.mail.discovery import (
        DiscoveredConfig,
        DiscoveryResult,
        MailDiscovery,
        ServerEndpoint,
    )

    discovery = MagicMock(spec=MailDiscovery)
    discovery.discover.return_value = DiscoveryResult(
        found=True,
        source="autoconfig",
        config=DiscoveredConfig(
            imap=ServerEndpoint(host="imap.example.com", port=993),
            smtp=ServerEndpoint(host="smtp.example.com", port=465),
        ),
    )
    return discovery


@pytest.fixture
def session_manager(temp_db, codec, token_service, fake_discovery, connector_factory, sender_factory):
    from webmail_proxy.auth.session_manager import SessionManager

    return SessionManager(
        db=temp_db,
        codec=codec,
        tokens=token_service,
        discovery=fake_discovery,
        connector_factory=connector_factory,
        sender_factory=sender_factory,
    )


# ============================================================================
# HTTP fixtures
# ============================================================================


@pytest.fixture
def app_services(
    temp_db, session_manager, fake_discovery, folder_cache, folder_resolver, connector_factory, sender_factory
):
    from webmail_proxy.api.app import Services
    from webmail_proxy.lib.cache import RateLimiter

    return Services(
        db=temp_db,
        sessions=session_manager,
        discovery=fake_discovery,
        folder_cache=folder_cache,
        resolver=folder_resolver,
        rate_limiter=RateLimiter(max_requests=1_000, window_seconds=60),
        connector_factory=connector_factory,
        sender_factory=sender_factory,
    )


@pytest.fixture
def app(app_services):
    from webmail_proxy.api.app import create_app
    from webmail_proxy.lib.config import AppConfig

    flask_app = create_app(app_services, config=AppConfig())
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(client):
    """Bearer header for a freshly logged-in session of the seeded account."""
    response = client.post("/api/auth/login", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})
    assert response.status_code == 200, response.get_json()
    return {"Authorization": f"Bearer {response.get_json()['token']}"}


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "contract: marks tests as contract tests (library surface mocking)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (HTTP API and CLI)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
