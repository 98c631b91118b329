from fastapi import APIRouter, Depends

from ..dependencies import get_single_transfer_service, get_transfer_service
from ..models import TransferRequest, TransferResponse
from ..scenarios.transfer import OCCTransferService

router = APIRouter(
    prefix="/transfer",
    tags=["Transfer"],
    responses={404: {"description": "Not found"}}
)


@router.post("", response_model=TransferResponse)
async def transfer(
    request: TransferRequest,
    service: OCCTransferService = Depends(get_transfer_service),
):
    """Transfer with OCC retry"""
    result = await service.transfer(request)
    return result.to_response()


@router.post("/single", response_model=TransferResponse)
async def single_transfer(
    request: TransferRequest,
    service: OCCTransferService = Depends(get_single_transfer_service),
):
    """Transfer in one transaction, conflicts are reported instead of retried"""
    result = await service.transfer(request)
    return result.to_response()
