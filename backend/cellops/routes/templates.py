from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import models, schemas
from ..auth import get_current_user
from ..database import get_db
from ..repository import commit
from ..services import processes
from ..services.errors import ProcessEngineError
from .errors import to_http_exception

router = APIRouter(prefix="/api/templates", tags=["templates"])


@router.post("", response_model=schemas.TemplateOut, status_code=status.HTTP_201_CREATED)
def create_template(
    payload: schemas.TemplateCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        template = processes.create_template(db, payload, user)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    db.refresh(template)
    return template


@router.get("", response_model=list[schemas.TemplateOut])
def list_templates(
    template_code: str | None = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return processes.list_templates(
        db, template_code=template_code, active_only=not include_inactive
    )


@router.get("/{template_id}", response_model=schemas.TemplateOut)
def get_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    template = db.get(models.ProcessTemplate, template_id)
    if not template:
        raise HTTPException(status_code=404, detail=f"ProcessTemplate {template_id} not found")
    return template
