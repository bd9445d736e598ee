"""Automation event endpoints (called by the CRM when leads are created)."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from navi.core.deps import get_db, verify_internal_secret
from navi.schemas.automation import EnrollmentResponse, NewLeadEvent, NewLeadResponse
from navi.services import enrollment_service

router = APIRouter(
    prefix="/automation",
    tags=["automation"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.post("/new-lead", response_model=NewLeadResponse)
def new_lead_added(event: NewLeadEvent, db: Session = Depends(get_db)):
    """Enroll a newly added contact into the tenant's new-lead sequences."""
    enrollments = enrollment_service.handle_new_lead_added(db, event.user_id, event.contact_id)
    return NewLeadResponse(
        enrolled=[EnrollmentResponse.model_validate(e) for e in enrollments]
    )
