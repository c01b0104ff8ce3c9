"""Pydantic schemas for integration connection endpoints."""
from pydantic import BaseModel, Field
from typing import Optional, Dict
from datetime import datetime


class ConnectResponse(BaseModel):
    """Authorization URL to redirect the user to."""
    ok: bool = True
    authUrl: str


class ConnectionStatusResponse(BaseModel):
    connected: bool
    message: str


class DisconnectResponse(BaseModel):
    success: bool
    message: str
    outcomes: Dict[str, str] = Field(default_factory=dict, description="Cleanup result per integration type")


class ProviderStatusResponse(BaseModel):
    connected: bool
    enabled: bool
    hasUserTokens: bool
    lastUpdated: Optional[datetime] = None


class IntegrationsOverviewResponse(BaseModel):
    salesforce: ProviderStatusResponse
    outlook: ProviderStatusResponse
    hubspot: ProviderStatusResponse
    gmail: ProviderStatusResponse
    monday: ProviderStatusResponse
    emailProvider: Optional[str] = None


class ClientCredentialsRequest(BaseModel):
    """Organization-specific OAuth client registered with the provider."""
    clientId: str = Field(..., min_length=1)
    clientSecret: str = Field(..., min_length=1)


class ClientCredentialsResponse(BaseModel):
    ok: bool = True
    message: str
