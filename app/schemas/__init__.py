from app.schemas.integration import (
    ConnectResponse,
    ConnectionStatusResponse,
    DisconnectResponse,
    ProviderStatusResponse,
    IntegrationsOverviewResponse,
    ClientCredentialsRequest,
    ClientCredentialsResponse,
)

__all__ = [
    "ConnectResponse",
    "ConnectionStatusResponse",
    "DisconnectResponse",
    "ProviderStatusResponse",
    "IntegrationsOverviewResponse",
    "ClientCredentialsRequest",
    "ClientCredentialsResponse",
]
