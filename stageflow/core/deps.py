"""FastAPI dependencies for tenant scoping and database access."""

from typing import Generator
from uuid import UUID

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from stageflow.db.session import SessionLocal

# Every API request is scoped to one organization
ORG_HEADER = "X-Org-Id"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_org_id(
    x_org_id: str | None = Header(default=None, alias=ORG_HEADER),
    db: Session = Depends(get_db),
) -> UUID:
    """
    Resolve the organization a request acts on.

    Raises:
        HTTPException 400: header missing or malformed
        HTTPException 404: unknown organization
    """
    from stageflow.services import entity_service

    if not x_org_id:
        raise HTTPException(status_code=400, detail=f"{ORG_HEADER} header is required")
    try:
        org_id = UUID(x_org_id)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {ORG_HEADER} header")

    if not entity_service.get_org_by_id(db, org_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    return org_id
