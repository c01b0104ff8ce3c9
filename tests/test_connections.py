from urllib.parse import urlparse, parse_qs

import pytest
from sqlalchemy import select

from app.models.integration import AuditLog, IntegrationType
from app.services.connections import (
    ConnectionManager,
    NO_CREDENTIALS_MESSAGE,
    InvalidStateError,
    NotFoundError,
    ProviderNotConfiguredError,
    UnauthorizedError,
    ForbiddenError,
    InvalidRequestError,
    UpstreamError,
    resolve_caller,
)
from app.services.integration_store import StoreError
from app.services.providers import get_provider
from app.services.token_codec import get_token_entry

from tests.conftest import make_user


def state_from(url):
    return parse_qs(urlparse(url).query)["state"][0]


class TestResolveCaller:
    def test_member_of_organization(self):
        caller = resolve_caller(make_user("U1", "O1"), get_provider("hubspot"))

        assert (caller.user_id, caller.organization_id) == ("U1", "O1")

    def test_individual_fallback(self):
        caller = resolve_caller(make_user("U1"), get_provider("outlook"))

        assert (caller.user_id, caller.organization_id) == ("U1", "U1")

    def test_provider_without_fallback_needs_organization(self):
        with pytest.raises(NotFoundError, match="No organization found"):
            resolve_caller(make_user("U1"), get_provider("hubspot"))

    def test_missing_user(self):
        with pytest.raises(UnauthorizedError):
            resolve_caller(None, get_provider("gmail"))


class TestConnect:
    @pytest.mark.asyncio
    async def test_auth_url_state_names_caller(self, manager, configured_providers):
        url = await manager.initiate_connect(make_user("U1", "O1"), IntegrationType.HUBSPOT_USER)

        assert state_from(url) == "U1:O1"

    @pytest.mark.asyncio
    async def test_individual_state_uses_user_id_twice(self, manager, configured_providers):
        url = await manager.initiate_connect(make_user("U1"), IntegrationType.GMAIL_USER)

        assert state_from(url) == "U1:U1"

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, manager):
        with pytest.raises(ProviderNotConfiguredError):
            await manager.initiate_connect(make_user("U1", "O1"), IntegrationType.HUBSPOT_USER)

    @pytest.mark.asyncio
    async def test_missing_caller_is_unauthorized_before_configuration(self, manager):
        with pytest.raises(UnauthorizedError):
            await manager.initiate_connect(None, IntegrationType.HUBSPOT_USER)

    @pytest.mark.asyncio
    async def test_identifier_with_delimiter_is_rejected(self, manager, configured_providers):
        with pytest.raises(UnauthorizedError):
            await manager.initiate_connect(make_user("U:1", "O1"), IntegrationType.HUBSPOT_USER)

    @pytest.mark.asyncio
    async def test_complete_connect_stores_user_entry(self, manager, store):
        record = await manager.complete_connect(
            IntegrationType.HUBSPOT_USER, "U1:O1", {"access_token": "T", "refresh_token": "R"}
        )

        assert record.organization_id == "O1"
        assert record.enabled_by == "U1"
        assert get_token_entry(record, "U1") == {"access_token": "T", "refresh_token": "R"}

    @pytest.mark.asyncio
    async def test_second_user_does_not_replace_first(self, manager, store):
        await manager.complete_connect(IntegrationType.OUTLOOK_USER, "U1:O1", {"access_token": "a"})
        await manager.complete_connect(IntegrationType.OUTLOOK_USER, "U2:O1", {"access_token": "b"})

        record = await store.find("O1", IntegrationType.OUTLOOK_USER)
        assert get_token_entry(record, "U1") == {"access_token": "a"}
        assert get_token_entry(record, "U2") == {"access_token": "b"}

    @pytest.mark.asyncio
    async def test_org_wide_connect_merges_fields(self, manager, store):
        await manager.complete_connect(
            IntegrationType.SALESFORCE, "U1:O1",
            {"access_token": "org", "instance_url": "https://acme.my.salesforce.com"},
        )

        record = await store.find("O1", IntegrationType.SALESFORCE)
        assert record.configuration["instance_url"] == "https://acme.my.salesforce.com"
        assert "U1" not in record.configuration

    @pytest.mark.asyncio
    async def test_malformed_state(self, manager):
        with pytest.raises(InvalidStateError):
            await manager.complete_connect(IntegrationType.HUBSPOT_USER, "no-delimiter", {"access_token": "T"})

    @pytest.mark.asyncio
    async def test_token_response_without_access_token(self, manager):
        with pytest.raises(UpstreamError):
            await manager.complete_connect(IntegrationType.HUBSPOT_USER, "U1:O1", {"error": "invalid_grant"})


class TestStatus:
    @pytest.mark.asyncio
    async def test_hubspot_lifecycle(self, manager, configured_providers):
        user = make_user("U1", "O1")

        status = await manager.check_status(user, "hubspot")
        assert (status.connected, status.message) == (False, "HubSpot not connected")

        url = await manager.initiate_connect(user, IntegrationType.HUBSPOT_USER)
        await manager.complete_connect(IntegrationType.HUBSPOT_USER, state_from(url), {"access_token": "T"})

        status = await manager.check_status(user, "hubspot")
        assert (status.connected, status.message) == (True, "HubSpot connected")

    @pytest.mark.asyncio
    async def test_other_users_credentials_only(self, manager):
        await manager.complete_connect(IntegrationType.OUTLOOK_USER, "U2:O1", {"access_token": "b"})

        status = await manager.check_status(make_user("U1", "O1"), "outlook")

        assert status.connected is False
        assert status.message == NO_CREDENTIALS_MESSAGE

    @pytest.mark.asyncio
    async def test_org_wide_token_counts_for_every_member(self, manager):
        await manager.complete_connect(IntegrationType.SALESFORCE, "ADMIN:O1", {"access_token": "org"})

        status = await manager.check_status(make_user("U1", "O1"), "salesforce")

        assert status.connected is True

    @pytest.mark.asyncio
    async def test_disabled_record_is_not_connected(self, manager, store):
        await manager.complete_connect(IntegrationType.SALESFORCE, "ADMIN:O1", {"access_token": "org"})
        await store.disable("O1", IntegrationType.SALESFORCE)

        status = await manager.check_status(make_user("U1", "O1"), "salesforce")

        assert status.message == "Salesforce not connected"

    @pytest.mark.asyncio
    async def test_individual_fallback_reads_own_record(self, manager):
        await manager.complete_connect(IntegrationType.GMAIL_USER, "U1:U1", {"access_token": "g"})

        status = await manager.check_status(make_user("U1"), "gmail")

        assert status.connected is True

    @pytest.mark.asyncio
    async def test_status_by_integration_type(self, manager):
        await manager.complete_connect(IntegrationType.MONDAY, "ADMIN:O1", {"access_token": "org"})

        user = make_user("U1", "O1")
        assert (await manager.check_status(user, IntegrationType.MONDAY)).connected is True
        assert (await manager.check_status(user, IntegrationType.MONDAY_USER)).connected is False

    @pytest.mark.asyncio
    async def test_hubspot_without_organization(self, manager):
        with pytest.raises(NotFoundError):
            await manager.check_status(make_user("U1"), "hubspot")

    @pytest.mark.asyncio
    async def test_store_failure_is_upstream_error(self, manager, monkeypatch):
        async def broken_find(*args, **kwargs):
            raise StoreError("database unavailable")

        monkeypatch.setattr(manager.store, "find", broken_find)

        with pytest.raises(UpstreamError):
            await manager.check_status(make_user("U1", "O1"), "outlook")


class TestOverview:
    @pytest.mark.asyncio
    async def test_overview_reports_each_provider(self, manager):
        await manager.complete_connect(IntegrationType.OUTLOOK_USER, "U1:O1", {"access_token": "o"})
        await manager.complete_connect(IntegrationType.SALESFORCE, "ADMIN:O1", {"access_token": "org"})
        await manager.complete_connect(IntegrationType.MONDAY_USER, "U2:O1", {"access_token": "m"})

        overview = await manager.overview(make_user("U1", "O1"))

        assert overview.providers["outlook"].connected is True
        assert overview.providers["outlook"].has_user_tokens is True
        assert overview.providers["salesforce"].connected is True
        assert overview.providers["salesforce"].has_user_tokens is False
        assert overview.providers["monday"].enabled is True
        assert overview.providers["monday"].connected is False
        assert overview.providers["hubspot"].enabled is False
        assert overview.providers["outlook"].last_updated is not None
        assert overview.email_provider == "microsoft"

    @pytest.mark.asyncio
    async def test_gmail_preferred_as_email_provider(self, manager):
        await manager.complete_connect(IntegrationType.OUTLOOK_USER, "U1:O1", {"access_token": "o"})
        await manager.complete_connect(IntegrationType.GMAIL_USER, "U1:O1", {"access_token": "g"})

        overview = await manager.overview(make_user("U1", "O1"))

        assert overview.email_provider == "google"

    @pytest.mark.asyncio
    async def test_individual_without_organization(self, manager):
        await manager.complete_connect(IntegrationType.GMAIL_USER, "U1:U1", {"access_token": "g"})

        overview = await manager.overview(make_user("U1"))

        assert overview.providers["gmail"].connected is True
        assert overview.providers["hubspot"].enabled is False
        assert overview.email_provider == "google"


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_admin_cleans_up_both_scopes(self, manager, store):
        await manager.complete_connect(IntegrationType.SALESFORCE_USER, "A1:O1", {"access_token": "u"})
        await manager.complete_connect(IntegrationType.SALESFORCE, "A1:O1", {"access_token": "org"})

        result = await manager.disconnect(make_user("A1", "O1", role="org_admin"), "salesforce")

        assert result.success is True
        assert result.message == "Salesforce disconnected successfully"
        assert result.outcomes == {"salesforce_user": "deleted", "salesforce": "disabled"}
        assert await store.find("O1", IntegrationType.SALESFORCE_USER, require_enabled=False) is None
        org_record = await store.find("O1", IntegrationType.SALESFORCE, require_enabled=False)
        assert org_record.is_enabled is False

    @pytest.mark.asyncio
    async def test_member_leaves_organization_connection(self, manager, store):
        await manager.complete_connect(IntegrationType.SALESFORCE_USER, "M1:O1", {"access_token": "u"})
        await manager.complete_connect(IntegrationType.SALESFORCE, "A1:O1", {"access_token": "org"})

        result = await manager.disconnect(make_user("M1", "O1"), "salesforce")

        assert result.success is True
        assert result.message == "Salesforce disconnected successfully"
        assert result.outcomes == {"salesforce_user": "deleted", "salesforce": "skipped"}
        status = await manager.check_status(make_user("M2", "O1"), "salesforce")
        assert status.connected is True

    @pytest.mark.asyncio
    async def test_member_without_own_connection(self, manager):
        await manager.complete_connect(IntegrationType.OUTLOOK, "A1:O1", {"access_token": "org"})

        result = await manager.disconnect(make_user("M1", "O1"), "outlook")

        assert result.message == "Outlook was not connected"
        assert result.outcomes == {"outlook_user": "absent", "outlook": "skipped"}

    @pytest.mark.asyncio
    async def test_repeat_disconnect_is_noop(self, manager, audit, session_factory):
        await manager.complete_connect(IntegrationType.OUTLOOK, "A1:O1", {"access_token": "org"})
        admin = make_user("A1", "O1", role="org_admin")

        first = await manager.disconnect(admin, "outlook")
        second = await manager.disconnect(admin, "outlook")

        assert first.message == "Outlook disconnected successfully"
        assert second.message == "Outlook was not connected"
        assert second.outcomes == {"outlook_user": "absent", "outlook": "absent"}

        await audit.drain()
        async with session_factory() as session:
            actions = (await session.execute(select(AuditLog.action).order_by(AuditLog.id))).scalars().all()
        assert actions == ["outlook_integration_connected", "outlook_integration_disconnected"]

    @pytest.mark.asyncio
    async def test_not_connected(self, manager):
        result = await manager.disconnect(make_user("U1", "O1"), "outlook")

        assert result.success is True
        assert result.message == "Outlook was not connected"
        assert result.outcomes == {"outlook_user": "absent", "outlook": "skipped"}

    @pytest.mark.asyncio
    async def test_remove_entry_keeps_other_users(self, manager, store):
        await manager.complete_connect(IntegrationType.OUTLOOK_USER, "U1:O1", {"access_token": "a"})
        await manager.complete_connect(IntegrationType.OUTLOOK_USER, "U2:O1", {"access_token": "b"})

        result = await manager.disconnect(make_user("U1", "O1"), "outlook")

        assert result.outcomes["outlook_user"] == "entry_removed"
        record = await store.find("O1", IntegrationType.OUTLOOK_USER)
        assert get_token_entry(record, "U1") is None
        assert get_token_entry(record, "U2") == {"access_token": "b"}

    @pytest.mark.asyncio
    async def test_last_user_deletes_row(self, manager, store):
        await manager.complete_connect(IntegrationType.MONDAY_USER, "U1:O1", {"access_token": "a"})

        result = await manager.disconnect(make_user("U1", "O1"), "monday")

        assert result.outcomes["monday_user"] == "deleted"
        assert await store.find("O1", IntegrationType.MONDAY_USER, require_enabled=False) is None

    @pytest.mark.asyncio
    async def test_user_without_entry_leaves_others(self, manager, store):
        await manager.complete_connect(IntegrationType.OUTLOOK_USER, "U2:O1", {"access_token": "b"})

        result = await manager.disconnect(make_user("U1", "O1"), "outlook")

        assert result.outcomes["outlook_user"] == "absent"
        assert await store.find("O1", IntegrationType.OUTLOOK_USER) is not None

    @pytest.mark.asyncio
    async def test_one_failed_attempt_still_succeeds(self, manager, store, monkeypatch):
        await manager.complete_connect(IntegrationType.SALESFORCE, "A1:O1", {"access_token": "org"})

        async def broken_remove(*args, **kwargs):
            raise StoreError("delete failed")

        monkeypatch.setattr(store, "remove", broken_remove)

        result = await manager.disconnect(make_user("A1", "O1", role="org_admin"), "salesforce")

        assert result.success is True
        assert result.outcomes == {"salesforce_user": "failed", "salesforce": "disabled"}

    @pytest.mark.asyncio
    async def test_all_attempts_failing_raises(self, manager, store, monkeypatch):
        async def broken(*args, **kwargs):
            raise StoreError("database unavailable")

        monkeypatch.setattr(store, "remove", broken)
        monkeypatch.setattr(store, "disable", broken)

        with pytest.raises(UpstreamError):
            await manager.disconnect(make_user("A1", "O1", role="org_admin"), "salesforce")

    @pytest.mark.asyncio
    async def test_member_failure_is_not_masked_by_skipped_attempt(self, manager, store, monkeypatch):
        async def broken(*args, **kwargs):
            raise StoreError("database unavailable")

        monkeypatch.setattr(store, "remove", broken)

        with pytest.raises(UpstreamError):
            await manager.disconnect(make_user("M1", "O1"), "salesforce")

    @pytest.mark.asyncio
    async def test_individual_disconnect_uses_fallback(self, manager, store):
        await manager.complete_connect(IntegrationType.GMAIL_USER, "U1:U1", {"access_token": "g"})

        result = await manager.disconnect(make_user("U1"), "gmail")

        assert result.outcomes == {"gmail_user": "deleted"}
        assert (await manager.check_status(make_user("U1"), "gmail")).connected is False


class TestAuditEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events_are_recorded(self, manager, audit, session_factory):
        await manager.complete_connect(IntegrationType.OUTLOOK_USER, "U1:O1", {"access_token": "a"})
        await manager.disconnect(make_user("U1", "O1"), "outlook")

        assert await audit.drain() == 2

        async with session_factory() as session:
            logs = (await session.execute(select(AuditLog).order_by(AuditLog.id))).scalars().all()

        assert [log.action for log in logs] == [
            "outlook_integration_connected",
            "outlook_integration_disconnected",
        ]
        assert logs[0].organization_id == "O1"
        assert logs[0].user_id == "U1"
        assert logs[0].resource_id == "outlook_user"

    @pytest.mark.asyncio
    async def test_noop_disconnect_is_not_audited(self, manager, audit):
        await manager.disconnect(make_user("U1", "O1"), "outlook")

        assert audit.pending == 0

    @pytest.mark.asyncio
    async def test_failing_audit_does_not_fail_operation(self, store):
        class BrokenAudit:
            def publish(self, event):
                raise RuntimeError("audit backend down")

        manager = ConnectionManager(store, audit=BrokenAudit())

        record = await manager.complete_connect(IntegrationType.GMAIL_USER, "U1:O1", {"access_token": "g"})

        assert record.id is not None


class TestClientCredentials:
    @pytest.mark.asyncio
    async def test_admin_saves_credentials_on_disabled_record(self, manager, store):
        admin = make_user("A1", "O1", role="org_admin")

        await manager.set_client_credentials(admin, "monday", "org-client", "org-secret")

        record = await store.find("O1", IntegrationType.MONDAY, require_enabled=False)
        assert record.is_enabled is False
        assert record.configuration["client_id"] == "org-client"
        assert record.configuration["credentials_saved_by"] == "A1"
        assert (await manager.check_status(admin, "monday")).message == "Monday.com not connected"

    @pytest.mark.asyncio
    async def test_connect_prefers_organization_client(self, manager):
        admin = make_user("A1", "O1", role="org_admin")
        await manager.set_client_credentials(admin, "salesforce", "org-client", "org-secret")

        for integration_type in (IntegrationType.SALESFORCE, IntegrationType.SALESFORCE_USER):
            url = await manager.initiate_connect(make_user("M1", "O1"), integration_type)
            assert parse_qs(urlparse(url).query)["client_id"] == ["org-client"]

    @pytest.mark.asyncio
    async def test_other_organizations_keep_global_client(self, manager, configured_providers):
        admin = make_user("A1", "O1", role="org_admin")
        await manager.set_client_credentials(admin, "salesforce", "org-client", "org-secret")

        url = await manager.initiate_connect(make_user("M1", "O2"), IntegrationType.SALESFORCE_USER)

        assert parse_qs(urlparse(url).query)["client_id"] == ["salesforce-client"]

    @pytest.mark.asyncio
    async def test_saving_credentials_keeps_connection(self, manager, store):
        await manager.complete_connect(IntegrationType.MONDAY, "A1:O1", {"access_token": "org"})

        await manager.set_client_credentials(
            make_user("A1", "O1", role="org_admin"), "monday", "org-client", "org-secret"
        )

        record = await store.find("O1", IntegrationType.MONDAY)
        assert record.is_enabled is True
        assert record.configuration["access_token"] == "org"

    @pytest.mark.asyncio
    async def test_member_cannot_save_credentials(self, manager):
        with pytest.raises(ForbiddenError):
            await manager.set_client_credentials(make_user("M1", "O1"), "monday", "id", "secret")

    @pytest.mark.asyncio
    async def test_individual_owns_their_credentials(self, manager, store):
        await manager.set_client_credentials(make_user("U1"), "salesforce", "own-client", "own-secret")

        record = await store.find("U1", IntegrationType.SALESFORCE, require_enabled=False)
        assert record.configuration["client_id"] == "own-client"

    @pytest.mark.asyncio
    async def test_provider_without_organization_record(self, manager):
        with pytest.raises(InvalidRequestError):
            await manager.set_client_credentials(
                make_user("A1", "O1", role="org_admin"), "gmail", "id", "secret"
            )

    @pytest.mark.asyncio
    async def test_secret_is_required(self, manager):
        with pytest.raises(InvalidRequestError):
            await manager.set_client_credentials(
                make_user("A1", "O1", role="org_admin"), "monday", "id", ""
            )
