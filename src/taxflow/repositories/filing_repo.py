"""Filing and filing step repositories."""

from datetime import datetime

from sqlalchemy import select, update

from taxflow.db.base import utcnow
from taxflow.db.models.filing import FilingRow, FilingStepRow
from taxflow.repositories.base import BaseRepository


class FilingRepository(BaseRepository[FilingRow]):
    model = FilingRow
    pk = "filing_id"

    async def advance(self, filing: FilingRow, **values) -> bool:
        """Write ``values`` only if the filing is unchanged since it was read.

        Compares the stored version with the one on ``filing`` and bumps it in
        the same UPDATE. Returns False, writing nothing, when another
        transaction got there first.
        """
        stmt = (
            update(FilingRow)
            .where(FilingRow.filing_id == filing.filing_id, FilingRow.version == filing.version)
            .values(version=FilingRow.version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if not result.rowcount:
            return False
        await self.session.refresh(filing)
        return True

    async def get_by_client_month(self, tenant_id: str, client_id: str, month: str) -> FilingRow | None:
        stmt = select(FilingRow).where(
            FilingRow.tenant_id == tenant_id,
            FilingRow.client_id == client_id,
            FilingRow.month == month,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def list_by_client(
        self, tenant_id: str, client_id: str, financial_year: str | None = None
    ) -> list[FilingRow]:
        stmt = select(FilingRow).where(
            FilingRow.tenant_id == tenant_id, FilingRow.client_id == client_id
        )
        if financial_year:
            stmt = stmt.where(FilingRow.financial_year == financial_year)
        stmt = stmt.order_by(FilingRow.month)
        return list((await self.session.execute(stmt)).scalars().all())


class FilingStepRepository(BaseRepository[FilingStepRow]):
    model = FilingStepRow
    pk = "step_id"

    async def list_by_filing(self, filing_id: str) -> list[FilingStepRow]:
        stmt = (
            select(FilingStepRow)
            .where(FilingStepRow.filing_id == filing_id)
            .order_by(FilingStepRow.started_at, FilingStepRow.created_at)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def complete_open_steps(self, filing_id: str, completed_at: datetime) -> int:
        """Close every in-progress step of a filing. Returns the number closed."""
        stmt = (
            update(FilingStepRow)
            .where(
                FilingStepRow.filing_id == filing_id,
                FilingStepRow.status == "in_progress",
            )
            .values(status="completed", completed_at=completed_at)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0
