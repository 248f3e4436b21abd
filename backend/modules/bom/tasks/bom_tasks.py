# backend/modules/bom/tasks/bom_tasks.py

"""
Background entry points for BOM consumption.

handle_order_synced is called by the order-sync job for every order it
upserts. The maintenance scheduler runs the recovery sweep and the hourly
effective stock sync with APScheduler.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import sqlalchemy.exc

from core.database import get_db
from core.redis_config import get_redis_client
from ..config.bom_consumption_config import get_bom_settings
from ..exceptions.bom_exceptions import BOMConsumptionError
from ..models.bom_models import CommerceStoreCredentials
from ..schemas.bom_consumption_schemas import OrderPayload
from ..services.bom_consumption_service import BOMConsumptionService
from ..services.recovery_service import BOMRecoveryService

logger = logging.getLogger(__name__)


def build_consumption_service(db) -> BOMConsumptionService:
    return BOMConsumptionService(db, redis_client=get_redis_client())


async def handle_order_synced(
    account_id: str,
    order: Union[OrderPayload, Dict[str, Any]],
    service: Optional[BOMConsumptionService] = None
) -> None:
    """
    Route a synced order to consumption or reversal by its status.

    Errors are logged, never raised, so one order cannot break the sync batch.
    """
    order = order if isinstance(order, OrderPayload) else OrderPayload.model_validate(order)
    settings = get_bom_settings()

    if order.status in settings.CONSUME_ON_STATUSES:
        action = "consume"
    elif order.status in settings.REVERSE_ON_STATUSES:
        action = "reverse"
    else:
        return

    db = None
    owns_service = service is None
    if owns_service:
        db = next(get_db())
        service = build_consumption_service(db)

    try:
        if action == "consume":
            await service.consume_order_components(account_id, order)
        else:
            await service.reverse_order_consumption(account_id, order)
    except BOMConsumptionError as e:
        logger.error(f"BOM {action} failed for order {order.id}: {e.message}", extra={"details": e.details})
    except Exception as e:
        logger.critical(f"Unexpected BOM {action} failure for order {order.id}: {e}", exc_info=True)
    finally:
        if owns_service:
            await service.close()
            db.close()


class BOMMaintenanceScheduler:
    """Runs the stalled-deduction recovery sweep and the periodic BOM stock sync"""

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self.recovery_job_id = "bom_recovery_job"
        self.inventory_sync_job_id = "bom_inventory_sync_job"
        self.is_running = False

    def start(self):
        if self.is_running:
            logger.warning("BOM scheduler already running")
            return

        settings = get_bom_settings()
        try:
            self.scheduler.add_job(
                func=self._recovery_task,
                trigger=IntervalTrigger(minutes=settings.RECOVERY_INTERVAL_MINUTES),
                id=self.recovery_job_id,
                name="BOM Deduction Recovery",
                replace_existing=True,
                max_instances=1
            )
            self.scheduler.add_job(
                func=self._inventory_sync_task,
                trigger=IntervalTrigger(minutes=settings.INVENTORY_SYNC_INTERVAL_MINUTES),
                id=self.inventory_sync_job_id,
                name="BOM Inventory Sync",
                replace_existing=True,
                max_instances=1
            )

            self.scheduler.start()
            self.is_running = True
            logger.info("BOM maintenance scheduler started")
        except Exception as e:
            logger.critical(f"Failed to start BOM scheduler: {e}", exc_info=True)
            raise

    def stop(self):
        if not self.is_running:
            return
        try:
            self.scheduler.shutdown(wait=True)
            self.is_running = False
            logger.info("BOM maintenance scheduler stopped")
        except RuntimeError as e:
            logger.warning(f"Scheduler already stopped: {e}")

    async def _recovery_task(self):
        db = next(get_db())
        service = build_consumption_service(db)
        try:
            report = await BOMRecoveryService(service).recover_stalled_deductions()
            if report.errors:
                logger.warning(f"BOM recovery finished with {len(report.errors)} errors")
        except sqlalchemy.exc.SQLAlchemyError as e:
            logger.error(f"Database error during BOM recovery: {e}")
            db.rollback()
        except Exception as e:
            # Don't re-raise, the job must stay scheduled
            logger.critical(f"Unexpected BOM recovery failure: {e}", exc_info=True)
        finally:
            await service.close()
            db.close()

    async def _inventory_sync_task(self):
        logger.info("Starting scheduled BOM inventory sync")
        db = next(get_db())
        service = build_consumption_service(db)
        try:
            start_time = datetime.utcnow()
            account_ids = [
                row[0] for row in db.query(CommerceStoreCredentials.account_id).filter(
                    CommerceStoreCredentials.is_active.is_(True)
                ).all()
            ]
            for account_id in account_ids:
                try:
                    await service.inventory_sync.sync_all_bom_products(account_id)
                except Exception as e:
                    logger.error(f"BOM inventory sync failed for account {account_id}: {e}", exc_info=True)
            duration = (datetime.utcnow() - start_time).total_seconds()
            logger.info(f"BOM inventory sync finished for {len(account_ids)} accounts in {duration:.2f}s")
        except sqlalchemy.exc.SQLAlchemyError as e:
            logger.error(f"Database error during BOM inventory sync: {e}")
            db.rollback()
        finally:
            await service.close()
            db.close()


# Global scheduler instance
bom_scheduler = BOMMaintenanceScheduler()


# FastAPI startup/shutdown events
async def start_bom_scheduler():
    """Start the BOM scheduler on application startup"""
    try:
        bom_scheduler.start()
    except Exception as e:
        # Startup continues without the sweep
        logger.error(f"Failed to start BOM scheduler: {e}", exc_info=True)


async def stop_bom_scheduler():
    """Stop the BOM scheduler on application shutdown"""
    try:
        bom_scheduler.stop()
    except Exception as e:
        logger.error(f"Error stopping BOM scheduler: {e}", exc_info=True)
