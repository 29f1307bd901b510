"""
Background tasks for the approvals module
"""
from app.core.celery import celery_app
from app.core.registry import build_approval_handlers
from app.database.database import SessionLocal
from app.modules.approvals.service import ApprovalService
import logging

logger = logging.getLogger(__name__)


def run_expiry_sweep(db) -> int:
    service = ApprovalService(db, handlers=build_approval_handlers())
    return service.expire_overdue_requests()


@celery_app.task(bind=True)
def expire_approval_requests(self):
    """
    Periodic task moving overdue pending approval requests to expired
    """
    db = SessionLocal()
    try:
        expired = run_expiry_sweep(db)
        logger.info(f"Approval expiry sweep finished: {expired} expired")
        return {"status": "completed", "expired": expired}
    except Exception as e:
        logger.error(f"Approval expiry sweep failed: {str(e)}", exc_info=True)
        raise self.retry(exc=e, countdown=60, max_retries=3)
    finally:
        db.close()
