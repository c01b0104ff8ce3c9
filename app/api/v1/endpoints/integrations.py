"""API endpoints for third-party integration connections."""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.responses import JSONResponse
import logging

from app.api.deps import get_current_user, get_connection_manager
from app.models.user import User
from app.schemas.integration import (
    ConnectResponse,
    ConnectionStatusResponse,
    DisconnectResponse,
    ProviderStatusResponse,
    IntegrationsOverviewResponse,
    ClientCredentialsRequest,
    ClientCredentialsResponse,
)
from app.services.connections import (
    ADMIN_ROLES,
    ConnectionManager,
    IntegrationError,
    UnauthorizedError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    InvalidStateError,
    UpstreamError,
    ProviderNotConfiguredError,
)
from app.services.providers import ProviderDescriptor, UnknownProviderError, get_provider

logger = logging.getLogger(__name__)

router = APIRouter()


# ============ Helper Functions ============

def _http_error(error: IntegrationError) -> HTTPException:
    if isinstance(error, UnauthorizedError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(error))
    if isinstance(error, ForbiddenError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, (InvalidStateError, InvalidRequestError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, ProviderNotConfiguredError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))


def get_provider_or_404(provider: str) -> ProviderDescriptor:
    try:
        return get_provider(provider)
    except UnknownProviderError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# ============ Combined Status ============

@router.get("/status", response_model=IntegrationsOverviewResponse)
async def get_integrations_status(
    current_user: User = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Connection status of every provider for the current user."""
    try:
        overview = await manager.overview(current_user)
    except IntegrationError as e:
        raise _http_error(e)

    payload = {
        name: ProviderStatusResponse(
            connected=provider_status.connected,
            enabled=provider_status.enabled,
            hasUserTokens=provider_status.has_user_tokens,
            lastUpdated=provider_status.last_updated,
        )
        for name, provider_status in overview.providers.items()
    }
    return IntegrationsOverviewResponse(**payload, emailProvider=overview.email_provider)


# ============ OAuth Endpoints ============

@router.get("/{provider}/connect", response_model=ConnectResponse)
async def connect_integration(
    provider: str,
    scope: str = Query("user", pattern="^(user|organization)$"),
    current_user: User = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """
    Start the OAuth flow for a provider.

    Returns the authorization URL to redirect the user to. Organization-level
    connections are shared by every member and require an admin.
    """
    descriptor = get_provider_or_404(provider)
    organization_level = scope == "organization"

    if organization_level and current_user.role not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only organization admins can connect integrations for the organization",
        )

    try:
        integration_type = descriptor.connect_type(organization_level)
    except UnknownProviderError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        auth_url = await manager.initiate_connect(current_user, integration_type)
    except IntegrationError as e:
        raise _http_error(e)

    return ConnectResponse(ok=True, authUrl=auth_url)


@router.put("/{provider}/credentials", response_model=ClientCredentialsResponse)
async def save_client_credentials(
    provider: str,
    payload: ClientCredentialsRequest,
    current_user: User = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """
    Save the organization's own OAuth client for a provider.

    Admin only. Later connections for the organization use this client
    instead of the globally configured one.
    """
    descriptor = get_provider_or_404(provider)

    try:
        await manager.set_client_credentials(
            current_user, descriptor, payload.clientId, payload.clientSecret
        )
    except IntegrationError as e:
        raise _http_error(e)

    return ClientCredentialsResponse(
        ok=True,
        message=f"Credentials saved successfully. You can now connect to {descriptor.label}.",
    )


@router.get("/{provider}/status", response_model=ConnectionStatusResponse)
async def get_integration_status(
    provider: str,
    current_user: User = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Check if the provider is connected for the current user."""
    descriptor = get_provider_or_404(provider)

    try:
        connection = await manager.check_status(current_user, descriptor)
    except IntegrationError as e:
        raise _http_error(e)

    return ConnectionStatusResponse(connected=connection.connected, message=connection.message)


@router.post("/{provider}/disconnect", response_model=DisconnectResponse)
async def disconnect_integration(
    provider: str,
    current_user: User = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Disconnect the provider for the current user."""
    descriptor = get_provider_or_404(provider)

    try:
        result = await manager.disconnect(current_user, descriptor)
    except UpstreamError as e:
        logger.error("Disconnect of %s failed for user %s: %s", descriptor.name, current_user.id, e)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"success": False, "message": str(e)},
        )
    except IntegrationError as e:
        raise _http_error(e)

    return DisconnectResponse(success=result.success, message=result.message, outcomes=result.outcomes)
