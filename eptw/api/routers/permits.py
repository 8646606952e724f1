"""Permit lifecycle API endpoints."""

from typing import Any, Dict, List, Optional
from uuid import UUID
from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from eptw.api.deps import get_actor_id, get_permit_service
from eptw.core.permit.service import PermitService
from eptw.core.permit.states import PermitStatus

router = APIRouter(prefix="/permits", tags=["permits"])


# Schemas
class RequiredApprovalResponse(BaseModel):
    sequence: int
    role: str
    sequential: bool
    decision: str
    actor_id: Optional[UUID]
    decided_at: Optional[datetime]
    comment: Optional[str]

    class Config:
        from_attributes = True


class ExtensionResponse(BaseModel):
    id: UUID
    requested_by: UUID
    requested_at: datetime
    original_valid_to: datetime
    new_valid_to: datetime
    reason: Optional[str]
    status: str
    decided_by: Optional[UUID]
    decided_at: Optional[datetime]

    class Config:
        from_attributes = True


class PermitResponse(BaseModel):
    id: UUID
    serial: str
    permit_type: str
    site_id: UUID
    requester_id: UUID
    status: str
    fields: Dict[str, Any]
    risk_attributes: Dict[str, Any]
    requested_start: Optional[datetime]
    requested_end: Optional[datetime]
    valid_from: Optional[datetime]
    valid_to: Optional[datetime]
    suspended_by: Optional[UUID]
    suspension_reason: Optional[str]
    closure_reason: Optional[str]
    version: int
    required_approvals: List[RequiredApprovalResponse] = []
    extensions: List[ExtensionResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AuditEntryResponse(BaseModel):
    sequence: int
    from_status: Optional[str]
    to_status: str
    trigger: str
    actor_id: Optional[UUID]
    role_at_action: Optional[str]
    comment: Optional[str]
    extra_data: Dict[str, Any]
    timestamp: datetime

    class Config:
        from_attributes = True


class PermitCreate(BaseModel):
    site_id: UUID
    permit_type: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    risk_attributes: Dict[str, Any] = Field(default_factory=dict)


class DecisionRequest(BaseModel):
    role: str
    approve: bool
    comment: Optional[str] = None


class SuspendRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class CommentRequest(BaseModel):
    comment: Optional[str] = None


class ExtensionRequest(BaseModel):
    new_valid_to: datetime
    reason: Optional[str] = None


class ExtensionDecisionRequest(BaseModel):
    approve: bool
    comment: Optional[str] = None


class AvailableActionsResponse(BaseModel):
    permit_id: UUID
    status: str
    triggers: List[str]


# Endpoints
@router.post("", response_model=PermitResponse, status_code=status.HTTP_201_CREATED)
def create_permit(
    data: PermitCreate,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    """Create a Draft permit requested by the acting user."""
    return service.create_permit(actor_id, data.site_id, data.permit_type, data.fields, data.risk_attributes)


@router.get("", response_model=List[PermitResponse])
def list_permits(
    status: Optional[PermitStatus] = None,
    site_id: Optional[UUID] = None,
    service: PermitService = Depends(get_permit_service),
):
    """List permits, optionally filtered by status or site."""
    return service.list_permits(status=status, site_id=site_id)


@router.get("/pending-decisions", response_model=List[PermitResponse])
def list_pending_decisions(
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    """Permits waiting on an approval the acting user can give now."""
    return service.pending_decisions(actor_id)


@router.get("/pending-extensions", response_model=List[PermitResponse])
def list_pending_extensions(
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    """Permits with an extension request the acting user may decide."""
    return service.pending_extensions(actor_id)


@router.get("/{permit_id}", response_model=PermitResponse)
def get_permit(permit_id: UUID, service: PermitService = Depends(get_permit_service)):
    return service.get_permit(permit_id)


@router.get("/{permit_id}/history", response_model=List[AuditEntryResponse])
def get_history(permit_id: UUID, service: PermitService = Depends(get_permit_service)):
    """Every transition of the permit, oldest first."""
    return list(service.get_history(permit_id))


@router.get("/{permit_id}/actions", response_model=AvailableActionsResponse)
def get_available_actions(
    permit_id: UUID,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    """Triggers the acting user may perform right now."""
    permit = service.get_permit(permit_id)
    triggers = service.available_triggers(permit_id, actor_id)
    return AvailableActionsResponse(
        permit_id=permit.id, status=permit.status, triggers=[t.value for t in triggers]
    )


@router.post("/{permit_id}/submit", response_model=PermitResponse)
def submit_permit(
    permit_id: UUID,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    return service.submit_permit(permit_id, actor_id)


@router.post("/{permit_id}/decisions", response_model=PermitResponse)
def decide(
    permit_id: UUID,
    data: DecisionRequest,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    """Approve or reject on behalf of one required role."""
    return service.decide(permit_id, data.role, actor_id, data.approve, data.comment)


@router.post("/{permit_id}/suspend", response_model=PermitResponse)
def suspend(
    permit_id: UUID,
    data: SuspendRequest,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    return service.suspend(permit_id, actor_id, data.reason)


@router.post("/{permit_id}/resume", response_model=PermitResponse)
def resume(
    permit_id: UUID,
    data: Optional[CommentRequest] = None,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    return service.resume(permit_id, actor_id, data.comment if data else None)


@router.post("/{permit_id}/extensions", response_model=PermitResponse)
def request_extension(
    permit_id: UUID,
    data: ExtensionRequest,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    return service.request_extension(permit_id, actor_id, data.new_valid_to, data.reason)


@router.post("/{permit_id}/extensions/decision", response_model=PermitResponse)
def decide_extension(
    permit_id: UUID,
    data: ExtensionDecisionRequest,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    return service.decide_extension(permit_id, actor_id, data.approve, data.comment)


@router.post("/{permit_id}/close", response_model=PermitResponse)
def close(
    permit_id: UUID,
    data: Optional[CommentRequest] = None,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    return service.close(permit_id, actor_id, data.comment if data else None)


@router.post("/{permit_id}/cancel", response_model=PermitResponse)
def cancel(
    permit_id: UUID,
    data: Optional[CommentRequest] = None,
    actor_id: UUID = Depends(get_actor_id),
    service: PermitService = Depends(get_permit_service),
):
    return service.cancel(permit_id, actor_id, data.comment if data else None)
