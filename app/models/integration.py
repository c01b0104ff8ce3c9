"""
Integration models for third-party OAuth connections.

One row per (organization, integration type). Per-user integration types keep
each user's tokens nested in ``configuration`` keyed by user id; org-wide types
hold the provider fields directly in ``configuration``.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, UniqueConstraint
from datetime import datetime
import enum

from app.core.database import Base


class IntegrationType(str, enum.Enum):
    """Stored discriminator naming the provider and its scope."""
    SALESFORCE = "salesforce"
    SALESFORCE_USER = "salesforce_user"
    OUTLOOK = "outlook"
    OUTLOOK_USER = "outlook_user"
    HUBSPOT_USER = "hubspot_user"
    GMAIL_USER = "gmail_user"
    MONDAY = "monday"
    MONDAY_USER = "monday_user"

    @property
    def scope(self) -> "IntegrationScope":
        if self.value.endswith("_user"):
            return IntegrationScope.PER_USER
        return IntegrationScope.ORG_WIDE


class IntegrationScope(str, enum.Enum):
    """How credentials are laid out inside a record."""
    ORG_WIDE = "org_wide"    # One connection shared by the whole organization
    PER_USER = "per_user"    # configuration[user_id] -> token entry


class IntegrationRecord(Base):
    """
    Integration connection for a tenant.

    ``organization_id`` has no foreign key: individual accounts without an
    organization store their own user id here.

    ``version`` guards the read-merge-write of ``configuration``; an update
    issued against a stale version raises ``StaleDataError``.
    """
    __tablename__ = "organization_integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", "integration_type", name="uq_org_integration_type"),
    )

    id = Column(Integer, primary_key=True, index=True)

    organization_id = Column(String(36), nullable=False, index=True)
    integration_type = Column(String(50), nullable=False)

    is_enabled = Column(Boolean, default=True, nullable=False)

    # Per-user types: { "<user_id>": { "access_token": ..., "refresh_token": ... }, ... }
    # Org-wide types: { "access_token": ..., "instance_url": ..., ... }
    configuration = Column(JSON, default=dict, nullable=False)

    version = Column(Integer, nullable=False)

    enabled_at = Column(DateTime, nullable=True)
    enabled_by = Column(String(36), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def scope(self) -> IntegrationScope:
        return IntegrationType(self.integration_type).scope


class AuditLog(Base):
    """Lifecycle events written by the audit notifier."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    organization_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=True)

    action = Column(String(100), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(100), nullable=True)
    details = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
