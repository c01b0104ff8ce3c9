"""
Connection lifecycle for OAuth integrations.

Handles:
- Starting a connection (authorization URL carrying the OAuth state)
- Committing the provider's tokens when the callback comes back
- Status checks per provider and across all providers
- Disconnecting at whichever scope the tenant was connected

A connection is never persisted as "pending": between the redirect and the
callback it exists only as the state token.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Union
import logging

from app.models.integration import IntegrationRecord, IntegrationType, IntegrationScope
from app.services import state_token
from app.services.state_token import StateTokenError
from app.services.token_codec import (
    is_connected, has_org_token, set_token_entry, remove_token_entry, user_keys,
    get_client_credentials, set_client_credentials as with_client_credentials,
)
from app.services.providers import (
    ProviderDescriptor, UserDisconnectPolicy, PROVIDERS, get_provider, provider_for_type,
)
from app.services.integration_store import IntegrationStore, StoreError
from app.services.audit import AuditNotifier, AuditEvent

logger = logging.getLogger(__name__)

NO_CREDENTIALS_MESSAGE = "integration exists but no credentials for this user"

# Roles allowed to manage organization-wide connections
ADMIN_ROLES = ("org_admin", "super_admin")


class IntegrationError(Exception):
    """Base error for connection lifecycle operations."""
    pass


class UnauthorizedError(IntegrationError):
    """No usable caller principal."""
    pass


class ForbiddenError(IntegrationError):
    """The caller may not manage the organization's connection."""
    pass


class InvalidRequestError(IntegrationError):
    """Request payload is incomplete."""
    pass


class NotFoundError(IntegrationError):
    """The caller's user or organization cannot be resolved."""
    pass


class InvalidStateError(IntegrationError):
    """OAuth state failed to decode. Treated as an authentication failure."""
    pass


class UpstreamError(IntegrationError):
    """The store or the provider returned an error."""
    pass


class ProviderNotConfiguredError(IntegrationError):
    """OAuth client credentials for the provider are not set."""
    pass


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    organization_id: str


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    message: str


@dataclass(frozen=True)
class DisconnectResult:
    success: bool
    message: str
    outcomes: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderStatus:
    connected: bool
    enabled: bool
    has_user_tokens: bool
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class IntegrationsOverview:
    providers: Dict[str, ProviderStatus]
    email_provider: Optional[str] = None


Target = Union[str, ProviderDescriptor, IntegrationType]


def resolve_caller(user, provider: ProviderDescriptor) -> CallerIdentity:
    """
    Resolve the (user, organization) pair a connection is stored under.

    Users without an organization connect as individuals: their own id stands
    in for the organization id, but only for providers that allow it. Every
    lifecycle operation goes through here so the fallback is applied the same
    way on connect, status and disconnect.
    """
    if user is None or not getattr(user, "id", None):
        raise UnauthorizedError("No authenticated user")

    if user.organization_id:
        return CallerIdentity(user_id=user.id, organization_id=user.organization_id)

    if provider.uses_individual_fallback:
        return CallerIdentity(user_id=user.id, organization_id=user.id)

    raise NotFoundError("No organization found")


def can_manage_organization(user, caller: CallerIdentity) -> bool:
    """Admins manage their organization; individuals own their pseudo-organization."""
    if caller.organization_id == caller.user_id:
        return True
    return getattr(user, "role", None) in ADMIN_ROLES


def _resolve_target(target: Target) -> Tuple[ProviderDescriptor, List[IntegrationType]]:
    if isinstance(target, IntegrationType):
        return provider_for_type(target), [target]
    provider = target if isinstance(target, ProviderDescriptor) else get_provider(target)
    return provider, list(provider.integration_types)


class ConnectionManager:
    """Orchestrates the connection lifecycle over the integration store."""

    def __init__(self, store: IntegrationStore, audit: Optional[AuditNotifier] = None):
        self.store = store
        self.audit = audit

    def _emit(self, event: AuditEvent) -> None:
        if self.audit is None:
            return
        try:
            self.audit.publish(event)
        except Exception:
            logger.exception("Audit publish failed for %s", event.action)

    # ============ Connect ============

    async def _organization_client_id(
        self,
        provider: ProviderDescriptor,
        caller: CallerIdentity,
    ) -> Optional[str]:
        if provider.org_type is None:
            return None
        try:
            record = await self.store.find(
                caller.organization_id, provider.org_type, require_enabled=False
            )
        except StoreError as e:
            raise UpstreamError(str(e)) from e
        credentials = get_client_credentials(record)
        return credentials[0] if credentials else None

    async def initiate_connect(self, user, integration_type: IntegrationType) -> str:
        """
        Return the provider authorization URL for the caller.

        An OAuth client registered by the organization takes precedence over
        the globally configured one.
        """
        provider = provider_for_type(integration_type)
        caller = resolve_caller(user, provider)

        client_id = await self._organization_client_id(provider, caller)
        if client_id is None and not provider.is_configured:
            raise ProviderNotConfiguredError(f"{provider.label} integration not configured")

        try:
            state = state_token.encode(caller.user_id, caller.organization_id)
        except StateTokenError as e:
            raise UnauthorizedError(f"Caller identifiers cannot be used as OAuth state: {str(e)}") from e

        logger.info(
            "Starting %s connection for user %s in organization %s%s",
            integration_type.value, caller.user_id, caller.organization_id,
            " with organization credentials" if client_id else "",
        )
        return provider.authorization_url(state, integration_type, client_id=client_id)

    async def set_client_credentials(
        self,
        user,
        target: Target,
        client_id: str,
        client_secret: str,
    ) -> IntegrationRecord:
        """
        Store an organization's own OAuth client for a provider.

        Credentials live on the org-wide record. A new record stays disabled
        until the OAuth flow completes; existing tokens are preserved.
        """
        provider, _ = _resolve_target(target)
        caller = resolve_caller(user, provider)

        if provider.org_type is None:
            raise InvalidRequestError(f"{provider.label} does not support organization credentials")
        if not can_manage_organization(user, caller):
            raise ForbiddenError(
                f"Only organization admins can configure {provider.label} credentials"
            )
        if not client_id or not client_secret:
            raise InvalidRequestError("Client ID and Client Secret are required")

        def merge(configuration):
            return with_client_credentials(configuration, client_id, client_secret, saved_by=caller.user_id)

        try:
            record = await self.store.upsert(
                caller.organization_id, provider.org_type, merge, enable=False
            )
        except StoreError as e:
            raise UpstreamError(str(e)) from e

        self._emit(AuditEvent(
            organization_id=caller.organization_id,
            user_id=caller.user_id,
            action=f"{provider.name}_credentials_updated",
            resource_type="integration",
            resource_id=provider.org_type.value,
            details={"integration_type": provider.org_type.value},
        ))
        logger.info("Saved %s client credentials for organization %s", provider.name, caller.organization_id)
        return record

    async def complete_connect(
        self,
        integration_type: IntegrationType,
        state: str,
        token_response: Dict[str, Any],
    ) -> IntegrationRecord:
        """
        Store the tokens returned by the provider for the user named in ``state``.

        Per-user types merge a token entry under the user's key; org-wide
        types merge the payload directly into the configuration.
        """
        try:
            user_id, organization_id = state_token.decode(state)
        except StateTokenError as e:
            logger.warning("Rejected %s callback with malformed state", integration_type.value)
            raise InvalidStateError(f"Invalid OAuth state: {str(e)}") from e

        entry = dict(token_response or {})
        access_token = entry.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise UpstreamError("Provider token response has no access_token")

        if integration_type.scope == IntegrationScope.PER_USER:
            def merge(configuration):
                return set_token_entry(configuration, user_id, entry)
        else:
            def merge(configuration):
                return {**configuration, **entry}

        try:
            record = await self.store.upsert(
                organization_id, integration_type, merge, enabled_by=user_id
            )
        except StoreError as e:
            raise UpstreamError(str(e)) from e

        provider = provider_for_type(integration_type)
        self._emit(AuditEvent(
            organization_id=organization_id,
            user_id=user_id,
            action=f"{provider.name}_integration_connected",
            resource_type="integration",
            resource_id=integration_type.value,
            details={"integration_type": integration_type.value, "scope": integration_type.scope.value},
        ))
        logger.info("Connected %s for user %s in organization %s", integration_type.value, user_id, organization_id)
        return record

    # ============ Status ============

    async def check_status(self, user, target: Target) -> ConnectionStatus:
        """
        Check whether the caller is connected.

        "Not connected" and "connected by someone else but not this user" are
        reported with different messages.
        """
        provider, types = _resolve_target(target)
        caller = resolve_caller(user, provider)

        records: Dict[IntegrationType, IntegrationRecord] = {}
        try:
            for integration_type in types:
                record = await self.store.find(caller.organization_id, integration_type)
                if record is not None:
                    records[integration_type] = record
        except StoreError as e:
            raise UpstreamError(str(e)) from e

        if not records:
            return ConnectionStatus(connected=False, message=f"{provider.label} not connected")

        for integration_type, record in records.items():
            if integration_type.scope == IntegrationScope.PER_USER:
                connected = is_connected(record, caller.user_id)
            else:
                connected = has_org_token(record)
            if connected:
                return ConnectionStatus(connected=True, message=f"{provider.label} connected")

        return ConnectionStatus(connected=False, message=NO_CREDENTIALS_MESSAGE)

    async def overview(self, user) -> IntegrationsOverview:
        """Status of every provider for the caller, in one pass over the tenant's records."""
        if user is None or not getattr(user, "id", None):
            raise UnauthorizedError("No authenticated user")

        records_by_org: Dict[str, Dict[str, IntegrationRecord]] = {}
        providers: Dict[str, ProviderStatus] = {}

        for provider in PROVIDERS.values():
            try:
                caller = resolve_caller(user, provider)
            except NotFoundError:
                providers[provider.name] = ProviderStatus(connected=False, enabled=False, has_user_tokens=False)
                continue

            if caller.organization_id not in records_by_org:
                try:
                    rows = await self.store.list_for_organization(caller.organization_id)
                except StoreError as e:
                    raise UpstreamError(str(e)) from e
                records_by_org[caller.organization_id] = {
                    row.integration_type: row for row in rows if row.is_enabled
                }
            records = records_by_org[caller.organization_id]

            user_record = records.get(provider.user_type.value) if provider.user_type else None
            org_record = records.get(provider.org_type.value) if provider.org_type else None
            has_user_tokens = is_connected(user_record, caller.user_id)
            present = [r for r in (user_record, org_record) if r is not None]

            providers[provider.name] = ProviderStatus(
                connected=has_user_tokens or has_org_token(org_record),
                enabled=bool(present),
                has_user_tokens=has_user_tokens,
                last_updated=max((r.updated_at for r in present if r.updated_at), default=None),
            )

        email_provider = None
        if providers["gmail"].connected:
            email_provider = "google"
        elif providers["outlook"].connected:
            email_provider = "microsoft"

        return IntegrationsOverview(providers=providers, email_provider=email_provider)

    # ============ Disconnect ============

    async def _disconnect_user(
        self,
        provider: ProviderDescriptor,
        integration_type: IntegrationType,
        caller: CallerIdentity,
    ) -> str:
        if provider.user_disconnect == UserDisconnectPolicy.DELETE_ROW:
            removed = await self.store.remove(caller.organization_id, integration_type)
            return "deleted" if removed else "absent"

        found = False
        had_entry = False

        def drop_user(configuration):
            nonlocal found, had_entry
            found = True
            had_entry = caller.user_id in configuration
            updated = remove_token_entry(configuration, caller.user_id)
            if not user_keys(updated):
                return None
            return updated

        record = await self.store.update(caller.organization_id, integration_type, drop_user)
        if not found:
            return "absent"
        if record is None:
            return "deleted"
        return "entry_removed" if had_entry else "absent"

    async def _disconnect_org(self, integration_type: IntegrationType, caller: CallerIdentity) -> str:
        disabled = await self.store.disable(caller.organization_id, integration_type)
        return "disabled" if disabled else "absent"

    async def disconnect(self, user, target: Target) -> DisconnectResult:
        """
        Remove the caller's connection for a provider.

        A tenant may have been connected per user, org-wide, or both over time,
        so every integration type of the provider is cleaned up according to
        its scope. The org-wide connection is shared, so only callers who may
        manage the organization disable it; for anyone else it is "skipped".
        Each cleanup is attempted independently; the operation only fails when
        every attempted cleanup failed.
        """
        provider, types = _resolve_target(target)
        caller = resolve_caller(user, provider)
        manages_organization = can_manage_organization(user, caller)

        outcomes: Dict[str, str] = {}
        failures: Dict[str, str] = {}

        for integration_type in types:
            if integration_type.scope == IntegrationScope.ORG_WIDE and not manages_organization:
                outcomes[integration_type.value] = "skipped"
                continue
            try:
                if integration_type.scope == IntegrationScope.PER_USER:
                    outcome = await self._disconnect_user(provider, integration_type, caller)
                else:
                    outcome = await self._disconnect_org(integration_type, caller)
            except StoreError as e:
                logger.warning(
                    "Failed to clean up %s for organization %s: %s",
                    integration_type.value, caller.organization_id, e,
                )
                failures[integration_type.value] = str(e)
                outcome = "failed"
            outcomes[integration_type.value] = outcome

        attempted = [value for value in outcomes.values() if value != "skipped"]
        if attempted and len(failures) == len(attempted):
            detail = "; ".join(f"{key}: {value}" for key, value in failures.items())
            raise UpstreamError(f"Failed to disconnect {provider.label}: {detail}")

        if any(value not in ("absent", "failed", "skipped") for value in outcomes.values()):
            self._emit(AuditEvent(
                organization_id=caller.organization_id,
                user_id=caller.user_id,
                action=f"{provider.name}_integration_disconnected",
                resource_type="integration",
                resource_id=provider.name,
                details={"outcomes": outcomes, "failures": failures},
            ))
            message = f"{provider.label} disconnected successfully"
        else:
            message = f"{provider.label} was not connected"

        logger.info("Disconnect %s for user %s: %s", provider.name, caller.user_id, outcomes)
        return DisconnectResult(success=True, message=message, outcomes=outcomes)
