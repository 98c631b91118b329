from typing import Optional

from fastapi import APIRouter, Depends

from ..dependencies import get_query_lab_service
from ..models import QueryLabRequest, QueryLabResponse
from ..scenarios.query_lab import QueryLabService

router = APIRouter(
    prefix="/query-lab",
    tags=["Query Lab"],
)


@router.post("/{operation}", response_model=QueryLabResponse, response_model_exclude_none=True)
async def run_operation(
    operation: str,
    metadata_key: Optional[str] = None,
    account_type: Optional[str] = None,
    region_code: Optional[str] = None,
    status: Optional[str] = None,
    service: QueryLabService = Depends(get_query_lab_service),
):
    """setup, query, optimize or query_optimized"""
    request = QueryLabRequest(
        operation=operation,
        metadata_key=metadata_key,
        account_type=account_type,
        region_code=region_code,
        status=status,
    )
    return await service.run(request)
