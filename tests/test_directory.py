"""Tests for the directory credential broker."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from azure.core.exceptions import ResourceNotFoundError
from azure_mock import FakeClock, MockGraphDirectory

from provisioner.directory import (
    AppCredentials,
    DirectoryCredentialBroker,
    MissingSecretError,
)
from provisioner.principals import ApplicationPrincipal


@pytest.fixture
def graph() -> MockGraphDirectory:
    return MockGraphDirectory()


class TestFindOrCreateApplication:
    """Tests for DirectoryCredentialBroker.find_or_create_application."""

    def test_creates_application_when_none_given(self, graph: MockGraphDirectory) -> None:
        """Test that a missing candidate creates a named app with a fresh secret."""
        clock = FakeClock()
        broker = DirectoryCredentialBroker(graph, propagation_wait_seconds=10, sleep=clock.sleep)

        creds = broker.find_or_create_application(None, "aks1", "westeurope")

        assert graph.calls_to("create_application") == [("provisioner-aks1-westeurope",)]
        assert creds.app_id in graph.applications
        assert creds.secret == "mock-secret-1"
        assert clock.sleeps == [10]

    def test_secret_uses_default_duration(self, graph: MockGraphDirectory) -> None:
        """Test that new secrets are valid for roughly two years."""
        broker = DirectoryCredentialBroker(graph)

        broker.find_or_create_application(None, "aks1", "westeurope")

        _, name, end = graph.calls_to("add_password")[0]
        assert name == "provisioner-aks1-westeurope-secret"
        expected = datetime.now(UTC) + timedelta(days=730)
        assert abs((end - expected).total_seconds()) < 60

    def test_no_wait_when_propagation_wait_is_zero(self, graph: MockGraphDirectory) -> None:
        """Test that a zero propagation wait never sleeps."""
        clock = FakeClock()
        broker = DirectoryCredentialBroker(graph, sleep=clock.sleep)

        broker.find_or_create_application(None, "aks1", "westeurope")

        assert clock.sleeps == []

    def test_application_principal_with_secret(self, graph: MockGraphDirectory) -> None:
        """Test that a principal carrying a secret is used without I/O."""
        principal = ApplicationPrincipal(app_id="app-1", object_id="sp-1", secret="s3cret")

        creds = DirectoryCredentialBroker(graph).find_or_create_application(
            principal, "aks1", "westeurope"
        )

        assert creds == AppCredentials(app_id="app-1", secret="s3cret")
        assert graph.calls == []

    def test_explicit_credentials_returned(self, graph: MockGraphDirectory) -> None:
        """Test that explicit credentials pass straight through."""
        given = AppCredentials(app_id="app-1", secret="s3cret")

        creds = DirectoryCredentialBroker(graph).find_or_create_application(
            given, "aks1", "westeurope"
        )

        assert creds is given

    def test_principal_without_secret(self, graph: MockGraphDirectory) -> None:
        """Test that a principal without a secret raises MissingSecretError."""
        principal = ApplicationPrincipal(app_id="app-1", object_id="sp-1")

        with pytest.raises(MissingSecretError) as exc_info:
            DirectoryCredentialBroker(graph).find_or_create_application(
                principal, "aks1", "westeurope"
            )

        assert "must supply app ID and secret" in str(exc_info.value)
        assert graph.calls == []

    def test_credentials_without_secret(self, graph: MockGraphDirectory) -> None:
        """Test that explicit credentials need a secret too."""
        with pytest.raises(MissingSecretError):
            DirectoryCredentialBroker(graph).find_or_create_application(
                AppCredentials(app_id="app-1"), "aks1", "westeurope"
            )

    def test_secret_not_in_repr(self) -> None:
        """Test that credentials never print their secret."""
        assert "s3cret" not in repr(AppCredentials(app_id="app-1", secret="s3cret"))


class TestRotateSecret:
    """Tests for DirectoryCredentialBroker.rotate_secret."""

    def test_rotate_issues_new_secret(self, graph: MockGraphDirectory) -> None:
        """Test that rotation adds a password to the existing application."""
        app = graph.add_application()
        broker = DirectoryCredentialBroker(graph)

        first = broker.rotate_secret(app.app_id)
        second = broker.rotate_secret(app.app_id)

        assert first != second
        assert len(app.passwords) == 2
        assert app.passwords[0]["displayName"].startswith("provisioner-rotated-")

    def test_rotate_with_name_and_duration(self, graph: MockGraphDirectory) -> None:
        """Test that an explicit name and duration are honoured."""
        app = graph.add_application()

        DirectoryCredentialBroker(graph).rotate_secret(
            app.app_id, name="ci-key", duration=timedelta(days=30)
        )

        _, name, end = graph.calls_to("add_password")[0]
        assert name == "ci-key"
        assert (end - datetime.now(UTC)).days in (29, 30)

    def test_rotate_unknown_application(self, graph: MockGraphDirectory) -> None:
        """Test that rotating an unknown app surfaces the directory error."""
        with pytest.raises(ResourceNotFoundError):
            DirectoryCredentialBroker(graph).rotate_secret("does-not-exist")

    def test_lookup_application(self, graph: MockGraphDirectory) -> None:
        """Test that lookups return the service principal object id."""
        app = graph.add_application()

        principal = DirectoryCredentialBroker(graph).lookup_application(app.app_id)

        assert principal.object_id == app.sp_object_id
        assert principal.application_object_id == app.object_id
