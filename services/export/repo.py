"""Repository for export service database operations."""

from typing import List, Optional

from db.client import queries, get_conn
from db.models.business import ExportRow
from services.export.models import ExportFilters


async def get_export_rows(user_id: int, filters: Optional[ExportFilters] = None) -> List[ExportRow]:
    """Businesses visible to a user, with email/phone already coalesced."""
    filters = filters or ExportFilters()
    async with get_conn() as conn:
        results = await queries.get_export_rows(
            conn,
            user_id=user_id,
            job_id=filters.job_id,
            state=filters.state,
            business_type=filters.business_type,
            has_email=filters.has_email,
            has_phone=filters.has_phone,
        )
        return [ExportRow.model_validate(dict(row)) for row in results]
