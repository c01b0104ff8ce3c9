from app.models.user import User
from app.models.integration import (
    IntegrationRecord,
    IntegrationType,
    IntegrationScope,
    AuditLog,
)

__all__ = [
    "User",
    "IntegrationRecord",
    "IntegrationType",
    "IntegrationScope",
    "AuditLog",
]
