# backend/modules/bom/routes/bom_routes.py

"""
API routes for BOM stock maintenance.

The account is selected with the X-Account-ID header.
"""

from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from core.database import get_db
from core.redis_config import get_redis_client

from ..exceptions.bom_exceptions import BOMConsumptionError
from ..schemas.bom_consumption_schemas import (
    BulkSyncResult, EffectiveStockResult, LedgerEntryResponse, RecoveryReport, SyncResult
)
from ..services.bom_consumption_service import BOMConsumptionService
from ..services.recovery_service import BOMRecoveryService

router = APIRouter(prefix="/bom", tags=["BOM Stock"])


def get_account_id(x_account_id: str = Header(..., alias="X-Account-ID")) -> str:
    return x_account_id


async def get_consumption_service(db: Session = Depends(get_db)):
    service = BOMConsumptionService(db, redis_client=get_redis_client())
    try:
        yield service
    finally:
        await service.close()


def _require_account_product(service: BOMConsumptionService, account_id: str, product_id: str) -> None:
    if service.inventory_sync.get_account_product(account_id, product_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Product {product_id} not found"
        )


@router.post("/products/{product_id}/sync", response_model=SyncResult)
async def sync_product_stock(
    product_id: str,
    variation_id: int = Query(0, ge=0),
    account_id: str = Depends(get_account_id),
    service: BOMConsumptionService = Depends(get_consumption_service),
):
    """Recalculate a BOM parent's effective stock and push it if it changed"""
    _require_account_product(service, account_id, product_id)
    try:
        return await service.inventory_sync.sync_effective_stock(account_id, product_id, variation_id)
    except BOMConsumptionError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.to_dict())


@router.get("/products/{product_id}/effective-stock", response_model=EffectiveStockResult)
async def get_effective_stock(
    product_id: str,
    variation_id: int = Query(0, ge=0),
    account_id: str = Depends(get_account_id),
    service: BOMConsumptionService = Depends(get_consumption_service),
):
    """Buildable units from the local stock cache, without platform calls"""
    _require_account_product(service, account_id, product_id)
    result = service.inventory_sync.calculate_effective_stock_local(account_id, product_id, variation_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Product {product_id} has no BOM with active components"
        )
    return result


@router.post("/sync-all", response_model=BulkSyncResult)
async def sync_all_products(
    account_id: str = Depends(get_account_id),
    service: BOMConsumptionService = Depends(get_consumption_service),
):
    return await service.inventory_sync.sync_all_bom_products(account_id)


@router.get("/orders/{order_id}/ledger", response_model=List[LedgerEntryResponse])
async def get_order_ledger(
    order_id: int,
    account_id: str = Depends(get_account_id),
    service: BOMConsumptionService = Depends(get_consumption_service),
):
    """All deduction ledger entries recorded for an order"""
    return service.ledger.get_entries(account_id, order_id)


@router.post("/recovery/run", response_model=RecoveryReport)
async def run_recovery(
    account_id: str = Depends(get_account_id),
    service: BOMConsumptionService = Depends(get_consumption_service),
):
    """Run the stalled-deduction recovery sweep for the calling account"""
    try:
        return await BOMRecoveryService(service).recover_stalled_deductions(account_id=account_id)
    except BOMConsumptionError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.to_dict())
