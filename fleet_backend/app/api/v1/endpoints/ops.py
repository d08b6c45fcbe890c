"""
Operations API Endpoints.

Diagnostics for operators.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_backend.app.core.guards import require_operator
from fleet_backend.app.db.session import get_db
from fleet_backend.app.schemas.dispatch import ConsistencyReport
from fleet_backend.app.services.consistency import check_assignment_consistency

router = APIRouter(prefix="/ops", tags=["Operations"])


@router.get("/assignment-consistency", response_model=ConsistencyReport)
async def assignment_consistency(
    current_user: dict = Depends(require_operator),
    db: AsyncSession = Depends(get_db)
):
    """
    Cross-check truck and request assignment references (Operator only).

    Mismatches are logged at error level and listed in the report.
    """
    return await check_assignment_consistency(db)
