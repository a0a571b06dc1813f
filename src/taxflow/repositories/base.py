"""Shared async repository behaviour for tenant-owned rows."""

from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.db.base import Base

RowT = TypeVar("RowT", bound=Base)


class BaseRepository(Generic[RowT]):
    """Repository bound to one ORM class.

    Subclasses declare ``model`` and the name of its primary key column in
    ``pk``. Rows carrying a ``tenant_id`` column can be looked up with the
    tenant check folded into the query.
    """

    model: ClassVar[type[Base]]
    pk: ClassVar[str]

    def __init__(self, session: AsyncSession):
        self.session = session

    def _pk_column(self):
        return getattr(self.model, self.pk)

    async def get(self, row_id: str) -> RowT | None:
        stmt = select(self.model).where(self._pk_column() == row_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_for_tenant(self, tenant_id: str, row_id: str, for_update: bool = False) -> RowT | None:
        """Fetch a row only if it belongs to ``tenant_id``.

        ``for_update`` takes a row lock held until the transaction ends;
        SQLite ignores it.
        """
        stmt = select(self.model).where(
            self._pk_column() == row_id,
            self.model.tenant_id == tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def create(self, **values: Any) -> RowT:
        row = self.model(**values)
        self.session.add(row)
        await self.session.flush()
        return row

    async def update(self, row: RowT, **changes: Any) -> RowT:
        for column, value in changes.items():
            setattr(row, column, value)
        await self.session.flush()
        return row

    async def _status_counts(self, tenant_id: str, statuses: type[Enum]) -> dict[str, int]:
        """Row counts per status for a tenant, zero-filled for every member of ``statuses``."""
        stmt = (
            select(self.model.status, func.count())
            .where(self.model.tenant_id == tenant_id)
            .group_by(self.model.status)
        )
        counts = {member.value: 0 for member in statuses}
        for status, count in (await self.session.execute(stmt)).all():
            counts[status] = count
        return counts
