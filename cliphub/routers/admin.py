"""
Operator endpoints:
  POST /admin/reconcile  — recount derived counters

  {"entity": "post", "id": "<post id>"}   one entity
  {}                                      full sweep in keyset batches
"""
import logging

from fastapi import APIRouter, Depends

from cliphub.auth import require_admin
from cliphub.dependencies import Services, get_services
from cliphub.errors import ValidationError
from cliphub.schemas import ReconcileRequest, ReconcileResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    body: ReconcileRequest,
    admin: str = Depends(require_admin),
    services: Services = Depends(get_services),
):
    if bool(body.entity) != bool(body.id):
        raise ValidationError("Give both entity and id, or neither for a full sweep")
    if body.entity:
        logger.info("Reconciliation of %s %s requested by %s", body.entity, body.id, admin)
        report = await services.reconciler.reconcile(body.entity, body.id)
    else:
        logger.info("Reconciliation sweep requested by %s", admin)
        report = await services.reconciler.sweep(
            body.batch_size or services.settings.reconcile_batch_size
        )
    return report.to_dict()
