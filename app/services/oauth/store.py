from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.oauth_connection import OAuthConnection
from app.services.oauth.types import ConnectionRecord, ensure_utc, utc_now


class ConnectionStore(ABC):
    """Persistence for connections, keyed by (profile_id, provider)."""

    @abstractmethod
    async def upsert(self, record: ConnectionRecord) -> ConnectionRecord:
        ...

    @abstractmethod
    async def get(self, profile_id: str, provider: str) -> ConnectionRecord | None:
        ...

    @abstractmethod
    async def list_for_profile(self, profile_id: str) -> list[ConnectionRecord]:
        ...

    @abstractmethod
    async def update_tokens(
        self,
        profile_id: str,
        provider: str,
        *,
        access_token_enc: str,
        refresh_token_enc: str | None,
        expires_at: datetime | None,
        scope: str | None,
        expected_refresh_token_enc: str | None = None,
    ) -> ConnectionRecord | None:
        """Write refreshed tokens.

        With ``expected_refresh_token_enc`` the write only happens while the row
        still holds that refresh token; ``None`` is returned when it does not
        (another request refreshed first) or when the row is gone.
        """

    @abstractmethod
    async def delete(self, profile_id: str, provider: str) -> bool:
        ...


def _to_record(row: OAuthConnection) -> ConnectionRecord:
    return ConnectionRecord(
        profile_id=row.profile_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        access_token_enc=row.access_token_enc,
        refresh_token_enc=row.refresh_token_enc,
        scope=row.scope,
        expires_at=ensure_utc(row.expires_at),
        metadata=dict(row.connection_metadata or {}),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


class SQLAlchemyConnectionStore(ConnectionStore):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _insert(self):
        table = OAuthConnection.__table__
        if self.session.get_bind().dialect.name == "sqlite":
            return sqlite_insert(table)
        return pg_insert(table)

    async def upsert(self, record: ConnectionRecord) -> ConnectionRecord:
        now = utc_now()
        values = {
            "profile_id": record.profile_id,
            "provider": record.provider,
            "provider_account_id": record.provider_account_id,
            "access_token_enc": record.access_token_enc,
            "refresh_token_enc": record.refresh_token_enc,
            "scope": record.scope,
            "expires_at": record.expires_at,
            "metadata": record.metadata or {},
            "updated_at": now,
        }
        stmt = self._insert().values(created_at=now, **values)
        # Re-linking overwrites the previous account for this profile/provider.
        stmt = stmt.on_conflict_do_update(
            index_elements=["profile_id", "provider"],
            set_={
                "provider_account_id": stmt.excluded.provider_account_id,
                "access_token_enc": stmt.excluded.access_token_enc,
                "refresh_token_enc": stmt.excluded.refresh_token_enc,
                "scope": stmt.excluded.scope,
                "expires_at": stmt.excluded.expires_at,
                "metadata": stmt.excluded["metadata"],
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.commit()

        stored = await self.get(record.profile_id, record.provider)
        if stored is None:
            raise RuntimeError("Connection upsert did not persist a row")
        return stored

    async def _get_row(self, profile_id: str, provider: str) -> OAuthConnection | None:
        result = await self.session.execute(
            select(OAuthConnection)
            .where(
                OAuthConnection.profile_id == profile_id,
                OAuthConnection.provider == provider,
            )
            # Upserts bypass the identity map; reload anything already cached.
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, profile_id: str, provider: str) -> ConnectionRecord | None:
        row = await self._get_row(profile_id, provider)
        if row is None:
            return None
        return _to_record(row)

    async def list_for_profile(self, profile_id: str) -> list[ConnectionRecord]:
        result = await self.session.execute(
            select(OAuthConnection)
            .where(OAuthConnection.profile_id == profile_id)
            .order_by(OAuthConnection.provider)
        )
        return [_to_record(row) for row in result.scalars().all()]

    async def update_tokens(
        self,
        profile_id: str,
        provider: str,
        *,
        access_token_enc: str,
        refresh_token_enc: str | None,
        expires_at: datetime | None,
        scope: str | None,
        expected_refresh_token_enc: str | None = None,
    ) -> ConnectionRecord | None:
        stmt = update(OAuthConnection).where(
            OAuthConnection.profile_id == profile_id,
            OAuthConnection.provider == provider,
        )
        if expected_refresh_token_enc is not None:
            stmt = stmt.where(OAuthConnection.refresh_token_enc == expected_refresh_token_enc)
        result = await self.session.execute(
            stmt.values(
                access_token_enc=access_token_enc,
                refresh_token_enc=refresh_token_enc,
                expires_at=expires_at,
                scope=scope,
                updated_at=utc_now(),
            )
        )
        await self.session.commit()
        if not result.rowcount:
            return None
        return await self.get(profile_id, provider)

    async def delete(self, profile_id: str, provider: str) -> bool:
        result = await self.session.execute(
            delete(OAuthConnection).where(
                OAuthConnection.profile_id == profile_id,
                OAuthConnection.provider == provider,
            )
        )
        await self.session.commit()
        return bool(result.rowcount)
