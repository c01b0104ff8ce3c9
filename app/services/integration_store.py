"""
Integration record store.

Keyed access to ``organization_integrations`` by (organization_id,
integration_type).

Configuration writes are read-merge-write cycles. Updates are guarded by the
record's ``version`` column and inserts by the unique key, so two writers
racing on the same record cannot silently drop each other's keys: the loser
gets ``StaleDataError``/``IntegrityError``, rolls back and re-runs its merge
against the fresh row.
"""
from typing import Optional, List, Callable, Dict, Any
from datetime import datetime
import logging

from sqlalchemy import select, update, delete
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.integration import IntegrationRecord, IntegrationType

logger = logging.getLogger(__name__)

# Receives a copy of the current configuration and returns the new one.
# Returning None from an update deletes the record.
ConfigurationMutation = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


class StoreError(Exception):
    """Raised when the integration store cannot complete an operation."""
    pass


class StoreConflictError(StoreError):
    """Concurrent writers kept invalidating the read-merge-write cycle."""
    pass


def _type_value(integration_type) -> str:
    if isinstance(integration_type, IntegrationType):
        return integration_type.value
    return str(integration_type)


class IntegrationStore:
    """Persistence for integration records."""

    def __init__(self, session: AsyncSession, max_attempts: Optional[int] = None):
        self.session = session
        self.max_attempts = max_attempts or settings.INTEGRATION_STORE_MAX_ATTEMPTS

    async def _select(
        self,
        organization_id: str,
        integration_type,
        require_enabled: bool = False,
    ) -> Optional[IntegrationRecord]:
        query = (
            select(IntegrationRecord)
            .where(
                IntegrationRecord.organization_id == organization_id,
                IntegrationRecord.integration_type == _type_value(integration_type),
            )
            .execution_options(populate_existing=True)
        )
        if require_enabled:
            query = query.where(IntegrationRecord.is_enabled == True)  # noqa: E712
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find(
        self,
        organization_id: str,
        integration_type,
        require_enabled: bool = True,
    ) -> Optional[IntegrationRecord]:
        """Get the record for a key. Disabled records are absent when ``require_enabled``."""
        try:
            return await self._select(organization_id, integration_type, require_enabled)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read integration: {str(e)}") from e

    async def list_for_organization(self, organization_id: str) -> List[IntegrationRecord]:
        """All records of a tenant, enabled or not."""
        try:
            result = await self.session.execute(
                select(IntegrationRecord)
                .where(IntegrationRecord.organization_id == organization_id)
                .order_by(IntegrationRecord.integration_type)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list integrations: {str(e)}") from e

    async def upsert(
        self,
        organization_id: str,
        integration_type,
        mutate: ConfigurationMutation,
        enabled_by: Optional[str] = None,
        enable: bool = True,
    ) -> IntegrationRecord:
        """
        Create the record or merge into its configuration, and enable it.

        With ``enable=False`` a new record is created disabled and an existing
        record keeps its current state.

        ``mutate`` may run more than once when a concurrent writer wins the
        race, so it must be a pure function of the configuration it receives.
        """
        return await self._write_cycle(
            organization_id, integration_type, mutate,
            create=True, enabled_by=enabled_by, enable=enable,
        )

    async def update(
        self,
        organization_id: str,
        integration_type,
        mutate: ConfigurationMutation,
    ) -> Optional[IntegrationRecord]:
        """
        Rewrite the configuration of an existing record.

        Returns None when there is no record, or when ``mutate`` returned None
        and the record was deleted.
        """
        return await self._write_cycle(organization_id, integration_type, mutate, create=False)

    async def _write_cycle(
        self,
        organization_id: str,
        integration_type,
        mutate: ConfigurationMutation,
        create: bool,
        enabled_by: Optional[str] = None,
        enable: bool = True,
    ) -> Optional[IntegrationRecord]:
        type_value = _type_value(integration_type)

        for attempt in range(1, self.max_attempts + 1):
            try:
                record = await self._select(organization_id, type_value)
                now = datetime.utcnow()

                if record is None:
                    if not create:
                        return None
                    record = IntegrationRecord(
                        organization_id=organization_id,
                        integration_type=type_value,
                        is_enabled=enable,
                        configuration=mutate({}) or {},
                        enabled_at=now if enable else None,
                        enabled_by=enabled_by if enable else None,
                    )
                    self.session.add(record)
                else:
                    configuration = mutate(dict(record.configuration or {}))
                    if configuration is None:
                        if create:
                            raise ValueError("upsert mutation must return a configuration")
                        await self.session.delete(record)
                        await self.session.commit()
                        return None

                    record.configuration = configuration
                    record.updated_at = now
                    if create and enable and not record.is_enabled:
                        record.is_enabled = True
                        record.enabled_at = now
                        record.enabled_by = enabled_by

                await self.session.commit()
                return record

            except (StaleDataError, IntegrityError) as e:
                await self.session.rollback()
                logger.info(
                    "Integration %s/%s changed during write, retrying (attempt %d/%d): %s",
                    organization_id, type_value, attempt, self.max_attempts, e,
                )
            except SQLAlchemyError as e:
                await self.session.rollback()
                raise StoreError(f"Failed to write integration: {str(e)}") from e

        raise StoreConflictError(
            f"Integration {organization_id}/{type_value} kept changing; "
            f"gave up after {self.max_attempts} attempts"
        )

    async def remove(self, organization_id: str, integration_type) -> bool:
        """Hard delete. Returns whether a record existed."""
        try:
            result = await self.session.execute(
                delete(IntegrationRecord).where(
                    IntegrationRecord.organization_id == organization_id,
                    IntegrationRecord.integration_type == _type_value(integration_type),
                )
            )
            await self.session.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreError(f"Failed to remove integration: {str(e)}") from e

    async def disable(self, organization_id: str, integration_type) -> bool:
        """
        Soft delete: keep the row and its configuration, clear ``is_enabled``.

        Returns whether an enabled record was found; disabling twice is a no-op.
        """
        try:
            result = await self.session.execute(
                update(IntegrationRecord)
                .where(
                    IntegrationRecord.organization_id == organization_id,
                    IntegrationRecord.integration_type == _type_value(integration_type),
                    IntegrationRecord.is_enabled == True,  # noqa: E712
                )
                .values(
                    is_enabled=False,
                    updated_at=datetime.utcnow(),
                    version=IntegrationRecord.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreError(f"Failed to disable integration: {str(e)}") from e
