"""
Service layer for third-party integration connections.
"""

from app.services.connections import ConnectionManager
from app.services.integration_store import IntegrationStore

__all__ = ["ConnectionManager", "IntegrationStore"]
