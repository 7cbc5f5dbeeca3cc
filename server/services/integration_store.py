import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional

from core.db import AsyncSessionLocal
from core.errors import UpstreamError
from core.logging_setup import log_step
from models.integrations import Integration
from models.profiles import Profile
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

LOG_STEP = "STORE"


class Provider(str, enum.Enum):
    MESSAGING = "whatsapp"
    CALENDAR = "google_calendar"


class ConnectionStatus(str, enum.Enum):
    NOT_INITIALIZED = "not_initialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass
class IntegrationRecord:
    """One row of the integrations table, detached from the ORM session."""

    user_id: str
    provider: Provider
    status: ConnectionStatus = ConnectionStatus.NOT_INITIALIZED
    instance_name: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def with_fields(self, **fields) -> "IntegrationRecord":
        return replace(self, **fields)

    @classmethod
    def from_row(cls, row: Integration) -> "IntegrationRecord":
        return cls(
            user_id=row.user_id,
            provider=Provider(row.provider),
            status=ConnectionStatus(row.status),
            instance_name=row.instance_name,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=row.expires_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


WRITABLE_FIELDS = {
    "instance_name",
    "status",
    "access_token",
    "refresh_token",
    "expires_at",
}


def _column_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown integration fields: {', '.join(sorted(unknown))}")
    values = dict(fields)
    if isinstance(values.get("status"), ConnectionStatus):
        values["status"] = values["status"].value
    return values


class SqlIntegrationStore:
    """
    Integration records in PostgreSQL.

    Every call opens its own session, so a single user's writes are visible
    to that user's next read.
    """

    async def find(
        self, user_id: str, provider: Provider
    ) -> Optional[IntegrationRecord]:
        try:
            async with AsyncSessionLocal() as session:
                result = await session.execute(
                    select(Integration).where(
                        Integration.user_id == user_id,
                        Integration.provider == provider.value,
                    )
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            with log_step(LOG_STEP):
                logger.error(f"Failed to read {provider.value} integration: {e}")
            raise UpstreamError("Failed to read integration record.") from e

        return IntegrationRecord.from_row(row) if row else None

    async def upsert(self, record: IntegrationRecord) -> IntegrationRecord:
        values = _column_values(
            {
                "instance_name": record.instance_name,
                "status": record.status,
                "access_token": record.access_token,
                "refresh_token": record.refresh_token,
                "expires_at": record.expires_at,
            }
        )
        try:
            async with AsyncSessionLocal() as session:
                profile_stmt = (
                    insert(Profile)
                    .values(id=record.user_id)
                    .on_conflict_do_nothing(index_elements=[Profile.id])
                )
                await session.execute(profile_stmt)

                stmt = insert(Integration).values(
                    user_id=record.user_id,
                    provider=record.provider.value,
                    **values,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[Integration.user_id, Integration.provider],
                    set_={
                        **{key: stmt.excluded[key] for key in values},
                        "updated_at": func.now(),
                    },
                ).returning(Integration)
                result = await session.execute(stmt)
                row = result.scalar_one()
                await session.commit()
        except SQLAlchemyError as e:
            with log_step(LOG_STEP):
                logger.error(
                    f"Failed to upsert {record.provider.value} integration: {e}"
                )
            raise UpstreamError("Failed to save integration record.") from e

        return IntegrationRecord.from_row(row)

    async def update(
        self, user_id: str, provider: Provider, fields: Dict[str, Any]
    ) -> Optional[IntegrationRecord]:
        """
        Applies a partial update. Returns None, without inserting anything,
        when the record does not exist.
        """
        values = _column_values(fields)
        try:
            async with AsyncSessionLocal() as session:
                result = await session.execute(
                    update(Integration)
                    .where(
                        Integration.user_id == user_id,
                        Integration.provider == provider.value,
                    )
                    .values(**values, updated_at=func.now())
                    .returning(Integration)
                )
                row = result.scalar_one_or_none()
                await session.commit()
        except SQLAlchemyError as e:
            with log_step(LOG_STEP):
                logger.error(f"Failed to update {provider.value} integration: {e}")
            raise UpstreamError("Failed to update integration record.") from e

        return IntegrationRecord.from_row(row) if row else None

    async def delete(self, user_id: str, provider: Provider) -> bool:
        try:
            async with AsyncSessionLocal() as session:
                result = await session.execute(
                    delete(Integration).where(
                        Integration.user_id == user_id,
                        Integration.provider == provider.value,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            with log_step(LOG_STEP):
                logger.error(f"Failed to delete {provider.value} integration: {e}")
            raise UpstreamError("Failed to delete integration record.") from e

        return (result.rowcount or 0) > 0
