"""Entity service - tenants, pipeline stages and the tracked entity mirror."""

from datetime import date
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from stageflow.core.errors import ConfigurationError, NotFoundError
from stageflow.db.enums import EntityKind
from stageflow.db.models import Organization, PipelineStage, TrackedEntity, User
from stageflow.utils.normalization import normalize_email, normalize_name, normalize_phone
from stageflow.utils.time import get_zone, is_valid_timezone

_UNSET = object()


def get_org_by_id(db: Session, org_id: UUID) -> Organization | None:
    """Get organization by ID."""
    return db.query(Organization).filter(Organization.id == org_id).first()


def create_org(db: Session, name: str, slug: str, timezone: str = "America/New_York") -> Organization:
    """
    Create a new organization.

    Raises:
        ConfigurationError: If timezone is not a valid IANA zone
        IntegrityError: If slug already exists
    """
    if not is_valid_timezone(timezone):
        raise ConfigurationError(f"Unknown timezone: {timezone}")
    org = Organization(name=name, slug=slug.lower(), timezone=timezone)
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


def get_org_zone(db: Session, org_id: UUID) -> ZoneInfo:
    """Tenant timezone used for calendar-day delays and drip send times."""
    org = get_org_by_id(db, org_id)
    return get_zone(org.timezone if org else None)


# =============================================================================
# Pipeline stages
# =============================================================================


def get_stage(db: Session, org_id: UUID, stage_id: UUID) -> PipelineStage | None:
    return (
        db.query(PipelineStage)
        .filter(PipelineStage.id == stage_id, PipelineStage.organization_id == org_id)
        .first()
    )


def list_stages(db: Session, org_id: UUID) -> list[PipelineStage]:
    return (
        db.query(PipelineStage)
        .filter(PipelineStage.organization_id == org_id)
        .order_by(PipelineStage.order_index, PipelineStage.name)
        .all()
    )


def upsert_stage(
    db: Session,
    org_id: UUID,
    name: str,
    order_index: int = 0,
    stage_id: UUID | None = None,
) -> PipelineStage:
    """Create or update a stage mirrored from the upstream pipeline."""
    stage = get_stage(db, org_id, stage_id) if stage_id else None
    if stage is None:
        stage = (
            db.query(PipelineStage)
            .filter(PipelineStage.organization_id == org_id, PipelineStage.name == name)
            .first()
        )
    if stage is None:
        stage = PipelineStage(organization_id=org_id, name=name, order_index=order_index)
        if stage_id:
            stage.id = stage_id
        db.add(stage)
    else:
        stage.name = name
        stage.order_index = order_index
    db.commit()
    db.refresh(stage)
    return stage


def require_stage(db: Session, org_id: UUID, stage_id: UUID | None) -> None:
    """
    Raises:
        ConfigurationError: If the stage does not exist in the organization
    """
    if stage_id and not get_stage(db, org_id, stage_id):
        raise ConfigurationError(f"Stage {stage_id} not found")


# =============================================================================
# Owning users
# =============================================================================


def create_user(
    db: Session,
    org_id: UUID,
    email: str,
    display_name: str,
    phone: str | None = None,
) -> User:
    user = User(
        organization_id=org_id,
        email=normalize_email(email),
        display_name=display_name,
        phone=normalize_phone(phone),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user(db: Session, org_id: UUID, user_id: UUID) -> User | None:
    return db.query(User).filter(User.id == user_id, User.organization_id == org_id).first()


# =============================================================================
# Tracked entities
# =============================================================================


def get_entity(db: Session, org_id: UUID, entity_id: UUID) -> TrackedEntity | None:
    """Get an entity scoped to org."""
    return (
        db.query(TrackedEntity)
        .filter(TrackedEntity.id == entity_id, TrackedEntity.organization_id == org_id)
        .first()
    )


def get_entity_or_raise(db: Session, org_id: UUID, entity_id: UUID) -> TrackedEntity:
    entity = get_entity(db, org_id, entity_id)
    if not entity:
        raise NotFoundError(f"Entity {entity_id} not found")
    return entity


def require_entity_id_available(db: Session, org_id: UUID, entity_id: UUID) -> None:
    """
    Raises:
        ConfigurationError: If the id is already mirrored for another organization
    """
    other = db.get(TrackedEntity, entity_id)
    if other is not None and other.organization_id != org_id:
        raise ConfigurationError(f"Entity {entity_id} belongs to another organization")


def upsert_entity(
    db: Session,
    org_id: UUID,
    entity_id: UUID,
    *,
    entity_kind: EntityKind | None = None,
    project_type=_UNSET,
    first_name=_UNSET,
    last_name=_UNSET,
    email=_UNSET,
    phone=_UNSET,
    email_opt_in: bool | None = None,
    sms_opt_in: bool | None = None,
    event_date: date | None | object = _UNSET,
    owner_user_id=_UNSET,
    is_active: bool | None = None,
) -> TrackedEntity:
    """
    Create or update the scheduling mirror of an upstream entity.

    Stage position is not writable here; it only moves through
    stage-change events so every transition is recorded.

    Raises:
        ValueError: If phone is not a valid number
        ConfigurationError: If the id belongs to another organization
    """
    entity = get_entity(db, org_id, entity_id)
    if entity is None:
        require_entity_id_available(db, org_id, entity_id)
        entity = TrackedEntity(id=entity_id, organization_id=org_id)
        db.add(entity)

    if entity_kind is not None:
        entity.entity_kind = entity_kind.value
    if project_type is not _UNSET:
        entity.project_type = project_type
    if first_name is not _UNSET:
        entity.first_name = normalize_name(first_name)
    if last_name is not _UNSET:
        entity.last_name = normalize_name(last_name)
    if email is not _UNSET:
        entity.email = normalize_email(email)
    if phone is not _UNSET:
        entity.phone = normalize_phone(phone)
    if email_opt_in is not None:
        entity.email_opt_in = email_opt_in
    if sms_opt_in is not None:
        entity.sms_opt_in = sms_opt_in
    if event_date is not _UNSET:
        entity.event_date = event_date
    if owner_user_id is not _UNSET:
        entity.owner_user_id = owner_user_id
    if is_active is not None:
        entity.is_active = is_active

    db.commit()
    db.refresh(entity)
    return entity
