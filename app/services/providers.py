"""
Provider descriptors for OAuth-connected CRMs and mailboxes.

Each descriptor names the integration types a provider is stored under, how a
per-user disconnect cleans up, whether individual accounts (no organization)
may connect, and how the authorization URL is built.
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Tuple
from urllib.parse import urlencode
import enum

from app.core.config import settings
from app.models.integration import IntegrationType, IntegrationScope


class ProviderError(Exception):
    """Base error for provider lookups."""
    pass


class UnknownProviderError(ProviderError):
    """No provider registered under the requested name or type."""
    pass


class UserDisconnectPolicy(str, enum.Enum):
    """How a per-user record is cleaned up when a user disconnects."""
    REMOVE_ENTRY = "remove_entry"  # Drop the user's key; delete the row once no users remain
    DELETE_ROW = "delete_row"      # Delete the whole row


@dataclass(frozen=True)
class ProviderDescriptor:
    name: str
    label: str
    authorize_url: str
    client_id_setting: str
    configured_setting: str
    redirect_uri_setting: str
    user_type: Optional[IntegrationType] = None
    org_type: Optional[IntegrationType] = None
    user_redirect_uri_setting: Optional[str] = None
    uses_individual_fallback: bool = True
    user_disconnect: UserDisconnectPolicy = UserDisconnectPolicy.REMOVE_ENTRY
    scopes: Optional[str] = None
    extra_params: Dict[str, str] = field(default_factory=dict)

    @property
    def integration_types(self) -> Tuple[IntegrationType, ...]:
        return tuple(t for t in (self.user_type, self.org_type) if t is not None)

    @property
    def is_configured(self) -> bool:
        return bool(getattr(settings, self.configured_setting))

    def connect_type(self, organization_level: bool = False) -> IntegrationType:
        """Integration type a new connection is stored under."""
        if organization_level:
            if self.org_type is None:
                raise UnknownProviderError(f"{self.label} has no organization-level connection")
            return self.org_type
        if self.user_type is None:
            raise UnknownProviderError(f"{self.label} has no user-level connection")
        return self.user_type

    def authorization_url(
        self,
        state: str,
        integration_type: IntegrationType,
        client_id: Optional[str] = None,
    ) -> str:
        """
        Build the provider's authorization URL carrying ``state``.

        ``client_id`` overrides the globally configured OAuth client, for
        organizations that registered their own app with the provider.
        """
        redirect_setting = self.redirect_uri_setting
        if integration_type.scope == IntegrationScope.PER_USER and self.user_redirect_uri_setting:
            redirect_setting = self.user_redirect_uri_setting

        params = {
            "client_id": client_id or getattr(settings, self.client_id_setting),
            "redirect_uri": getattr(settings, redirect_setting),
            "response_type": "code",
        }
        if self.scopes:
            params["scope"] = self.scopes
        params.update(self.extra_params)
        params["state"] = state

        base_url = self.authorize_url.format(tenant=settings.MICROSOFT_TENANT_ID)
        return f"{base_url}?{urlencode(params)}"


SALESFORCE = ProviderDescriptor(
    name="salesforce",
    label="Salesforce",
    user_type=IntegrationType.SALESFORCE_USER,
    org_type=IntegrationType.SALESFORCE,
    authorize_url="https://login.salesforce.com/services/oauth2/authorize",
    client_id_setting="SALESFORCE_CLIENT_ID",
    configured_setting="SALESFORCE_CONFIGURED",
    redirect_uri_setting="SALESFORCE_REDIRECT_URI",
    user_redirect_uri_setting="SALESFORCE_USER_REDIRECT_URI",
    user_disconnect=UserDisconnectPolicy.DELETE_ROW,
    extra_params={"prompt": "consent"},
)

OUTLOOK = ProviderDescriptor(
    name="outlook",
    label="Outlook",
    user_type=IntegrationType.OUTLOOK_USER,
    org_type=IntegrationType.OUTLOOK,
    authorize_url="https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
    client_id_setting="MICROSOFT_CLIENT_ID",
    configured_setting="MICROSOFT_CONFIGURED",
    redirect_uri_setting="MICROSOFT_REDIRECT_URI",
    scopes="openid offline_access Mail.Send Mail.ReadWrite User.Read Calendars.Read Calendars.ReadWrite",
    extra_params={"response_mode": "query"},
)

HUBSPOT = ProviderDescriptor(
    name="hubspot",
    label="HubSpot",
    user_type=IntegrationType.HUBSPOT_USER,
    authorize_url="https://app.hubspot.com/oauth/authorize",
    client_id_setting="HUBSPOT_CLIENT_ID",
    configured_setting="HUBSPOT_CONFIGURED",
    redirect_uri_setting="HUBSPOT_REDIRECT_URI",
    uses_individual_fallback=False,
    scopes="crm.objects.contacts.read crm.objects.contacts.write crm.objects.companies.read",
)

GMAIL = ProviderDescriptor(
    name="gmail",
    label="Gmail",
    user_type=IntegrationType.GMAIL_USER,
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    client_id_setting="GOOGLE_CLIENT_ID",
    configured_setting="GOOGLE_CONFIGURED",
    redirect_uri_setting="GOOGLE_REDIRECT_URI",
    scopes=(
        "https://www.googleapis.com/auth/gmail.compose "
        "https://www.googleapis.com/auth/gmail.send "
        "https://www.googleapis.com/auth/calendar "
        "https://www.googleapis.com/auth/userinfo.email"
    ),
    extra_params={"access_type": "offline", "prompt": "consent"},
)

MONDAY = ProviderDescriptor(
    name="monday",
    label="Monday.com",
    user_type=IntegrationType.MONDAY_USER,
    org_type=IntegrationType.MONDAY,
    authorize_url="https://auth.monday.com/oauth2/authorize",
    client_id_setting="MONDAY_CLIENT_ID",
    configured_setting="MONDAY_CONFIGURED",
    redirect_uri_setting="MONDAY_REDIRECT_URI",
    user_redirect_uri_setting="MONDAY_USER_REDIRECT_URI",
)

PROVIDERS: Dict[str, ProviderDescriptor] = {
    p.name: p for p in (SALESFORCE, OUTLOOK, HUBSPOT, GMAIL, MONDAY)
}


def get_provider(name: str) -> ProviderDescriptor:
    provider = PROVIDERS.get(name.lower())
    if provider is None:
        raise UnknownProviderError(f"Unknown integration provider: {name}")
    return provider


def provider_for_type(integration_type: IntegrationType) -> ProviderDescriptor:
    for provider in PROVIDERS.values():
        if integration_type in provider.integration_types:
            return provider
    raise UnknownProviderError(f"No provider stores {integration_type.value}")
