"""
Admin endpoints (settings, reconciliation, audit trail)
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends

from .dependencies import get_actor, get_back_office_dep, http_error, require_any_permission
from .schemas import UpdateSettingsRequest
from ..errors import ForexError
from ..rbac import Actor, Permission
from ..system import BackOffice


router = APIRouter()


@router.get("/settings")
async def get_settings(
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
) -> Dict[str, Any]:
    """Rates and thresholds in force, readable by any identified caller"""
    return system.settings.current().to_dict()


@router.put("/settings")
async def update_settings(
    request: UpdateSettingsRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
) -> Dict[str, Any]:
    try:
        snapshot = system.update_settings(actor, **request.model_dump(exclude_none=True))
        return snapshot.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.get("/settings/history")
async def get_settings_history(
    limit: int = 50,
    changed_by: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
) -> Dict[str, Any]:
    require_any_permission(actor, Permission.MANAGE_SETTINGS, Permission.VIEW_CASH_ACCOUNTS)
    history = system.settings.get_history(limit=limit, changed_by=changed_by)
    return {"history": [snapshot.to_dict() for snapshot in history]}


@router.post("/reconciliation")
async def run_reconciliation(
    sync_commissions: bool = True,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
) -> Dict[str, Any]:
    """Backfill commissions, refresh pools and report remaining drift"""
    try:
        return system.run_reconciliation(actor, sync_commissions=sync_commissions)
    except ForexError as e:
        raise http_error(e)


@router.get("/audit/{entity_type}/{entity_id}")
async def get_audit_events(
    entity_type: str,
    entity_id: str,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
) -> Dict[str, Any]:
    require_any_permission(actor, Permission.VIEW_CASH_ACCOUNTS)
    events = system.audit_trail.get_events_for_entity(entity_type, entity_id)
    return {"events": [event.to_dict() for event in events]}


@router.get("/audit/verify")
async def verify_audit_integrity(
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
) -> Dict[str, Any]:
    """Verify the hash chain of the audit trail"""
    require_any_permission(actor, Permission.RUN_RECONCILIATION)
    return system.verify_audit_integrity()
