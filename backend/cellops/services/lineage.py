"""Container lineage operations: passage (split), bank/freeze (vials) and thaw."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from .. import audit, models, schemas
from ..eventlog import record_container_event, record_culture_event
from ..logging_config import bind_log_context
from ..metrics import count_on_commit, lineage_operations_total
from ..repository import flush, get_or_404, lock_culture
from ..states import BankType, ContainerStatus, CultureStatus, QualityHold
from .errors import ConflictError, ReferenceNotFound, ValidationError

logger = logging.getLogger(__name__)

# purpose: append-only lineage mutations; sources are terminalized and new container rows are created
# status: active
# depends_on: backend.cellops.models.Container, backend.cellops.models.Culture, backend.cellops.eventlog

_SPLIT_RATIO = re.compile(r"^\s*1\s*:\s*(\d+)\s*$")
MAX_SPLIT = 100

_UNUSABLE_CULTURE_STATUSES = (CultureStatus.DISPOSED.value, CultureStatus.CONTAMINATED.value)


@dataclass
class LineageOutcome:
    operation: str
    culture: models.Culture
    created: list[models.Container] = field(default_factory=list)
    sources: list[models.Container] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_split_ratio(ratio: str) -> int:
    """Return R for a ``"1:R"`` split ratio."""

    match = _SPLIT_RATIO.match(ratio or "")
    if not match:
        raise ValidationError(f"malformed split ratio {ratio!r}; expected 1:R")
    factor = int(match.group(1))
    if factor < 1 or factor > MAX_SPLIT:
        raise ValidationError(f"split ratio {ratio!r} out of range 1:1 .. 1:{MAX_SPLIT}")
    return factor


def _ensure_usable(culture: models.Culture, operation: str) -> None:
    if culture.status in _UNUSABLE_CULTURE_STATUSES:
        raise ConflictError(f"Culture {culture.culture_code} is {culture.status}; cannot {operation}")


def _load_sources(
    db: Session,
    culture: models.Culture,
    container_ids: Iterable[UUID],
    allowed_status: str,
    operation: str,
) -> list[models.Container]:
    ids = list(container_ids)
    if len(set(ids)) != len(ids):
        raise ValidationError(f"duplicate source containers for {operation}")
    rows = (
        db.query(models.Container)
        .filter(models.Container.id.in_(ids))
        .populate_existing()
        .with_for_update()
        .all()
    )
    by_id = {row.id: row for row in rows}
    sources = []
    for container_id in ids:
        container = by_id.get(container_id)
        if container is None:
            raise ReferenceNotFound("Container", container_id)
        if container.culture_id != culture.id:
            raise ValidationError(
                f"Container {container.container_code} does not belong to culture {culture.culture_code}"
            )
        if container.status != allowed_status:
            raise ConflictError(
                f"Container {container.container_code} is {container.status}; {operation} requires {allowed_status}"
            )
        if container.quality_hold != QualityHold.NONE.value:
            raise ConflictError(
                f"Container {container.container_code} is under {container.quality_hold} quality hold"
            )
        sources.append(container)
    return sources


def _containers_at_passage(db: Session, culture: models.Culture, passage: int) -> int:
    return (
        db.query(models.Container)
        .filter(
            models.Container.culture_id == culture.id,
            models.Container.passage_number == passage,
        )
        .count()
    )


def _vessel_code(culture: models.Culture, passage: int, index: int) -> str:
    return f"{culture.culture_code}-P{passage}-{index:02d}"


def _vial_code(culture: models.Culture, bank_type: str, index: int) -> str:
    return f"{culture.culture_code}-{bank_type.upper()}-{index:03d}"


def _finish(
    db: Session,
    outcome: LineageOutcome,
    actor: models.User,
    details: dict,
) -> LineageOutcome:
    flush(db)
    audit.log_action(
        db,
        actor.id,
        f"culture.{outcome.operation}",
        "culture",
        outcome.culture.id,
        {
            "culture_code": outcome.culture.culture_code,
            "sources": [c.container_code for c in outcome.sources],
            "created": [c.container_code for c in outcome.created],
            **details,
        },
    )
    count_on_commit(db, lineage_operations_total, outcome.operation)
    logger.info(
        "%s on culture %s: %d source(s) -> %d new container(s)",
        outcome.operation,
        outcome.culture.culture_code,
        len(outcome.sources),
        len(outcome.created),
    )
    return outcome


def passage(
    db: Session,
    culture_id: UUID,
    payload: schemas.PassageRequest,
    actor: models.User,
    *,
    now: Optional[datetime] = None,
) -> LineageOutcome:
    """Split each active source into R new containers at the next passage.

    The culture's passage counter moves by exactly one however many sources
    were split.
    """

    now = now or _utcnow()
    factor = parse_split_ratio(payload.split_ratio)
    culture = lock_culture(db, culture_id)
    bind_log_context(culture=culture.culture_code)
    _ensure_usable(culture, "passage")
    sources = _load_sources(
        db, culture, payload.source_container_ids, ContainerStatus.ACTIVE.value, "passage"
    )

    old_passage = culture.current_passage
    new_passage = old_passage + 1
    index = _containers_at_passage(db, culture, new_passage)
    outcome = LineageOutcome(operation="passage", culture=culture, sources=sources)

    for source in sources:
        children = []
        for split_index in range(1, factor + 1):
            index += 1
            child = models.Container(
                id=uuid.uuid4(),
                container_code=_vessel_code(culture, new_passage, index),
                culture_id=culture.id,
                container_type_id=source.container_type_id,
                location_id=source.location_id,
                parent_container_id=source.id,
                passage_number=new_passage,
                split_index=split_index,
                status=ContainerStatus.ACTIVE.value,
                quality_hold=QualityHold.NONE.value,
                created_by=actor.id,
                created_at=now,
            )
            db.add(child)
            record_container_event(
                db,
                child,
                "passage_created",
                f"Split {split_index}/{factor} from {source.container_code} at P{new_passage}",
                {"parent": source.container_code, "split_ratio": f"1:{factor}"},
                actor,
            )
            children.append(child)
        source.status = ContainerStatus.DISPOSED.value
        source.volume_ml = 0
        source.disposed_at = now
        record_container_event(
            db,
            source,
            "passage",
            f"Passage P{old_passage} -> P{new_passage}, split 1:{factor}",
            {
                "old_status": ContainerStatus.ACTIVE.value,
                "new_status": ContainerStatus.DISPOSED.value,
                "split_ratio": f"1:{factor}",
                "children": [c.container_code for c in children],
                "notes": payload.notes,
            },
            actor,
        )
        outcome.created.extend(children)

    culture.current_passage = new_passage
    record_culture_event(
        db,
        culture,
        "passage",
        f"P{old_passage} -> P{new_passage}, created {len(outcome.created)} containers",
        {"current_passage": old_passage},
        {
            "current_passage": new_passage,
            "containers": len(outcome.created),
            "split_ratio": f"1:{factor}",
        },
        actor,
    )
    return _finish(db, outcome, actor, {"split_ratio": f"1:{factor}", "passage": new_passage})


def bank(
    db: Session,
    culture_id: UUID,
    payload: schemas.BankRequest,
    actor: models.User,
    *,
    now: Optional[datetime] = None,
) -> LineageOutcome:
    """Pool active sources into ``vial_count`` frozen cryovials at the current passage."""

    now = now or _utcnow()
    bank_type = BankType(payload.bank_type).value
    culture = lock_culture(db, culture_id)
    bind_log_context(culture=culture.culture_code)
    _ensure_usable(culture, "bank")
    sources = _load_sources(
        db, culture, payload.source_container_ids, ContainerStatus.ACTIVE.value, "banking"
    )
    if payload.container_type_id is not None:
        get_or_404(db, models.ContainerType, payload.container_type_id)
    if payload.location_id is not None:
        get_or_404(db, models.Location, payload.location_id)

    banked_before = (
        db.query(models.Container)
        .filter(
            models.Container.culture_id == culture.id,
            models.Container.bank_type.isnot(None),
        )
        .count()
    )
    if bank_type == BankType.MCB.value and banked_before:
        raise ConflictError(
            f"Culture {culture.culture_code} has been banked before; a master cell bank can only be created once"
        )
    vial_index = (
        db.query(models.Container)
        .filter(
            models.Container.culture_id == culture.id,
            models.Container.bank_type == bank_type,
        )
        .count()
    )

    cryo = {
        "bank_type": bank_type,
        "cryopreservation_media": payload.cryopreservation_media,
        "freezing_rate": payload.freezing_rate,
        "storage_temperature": payload.storage_temperature,
    }
    outcome = LineageOutcome(operation="bank", culture=culture, sources=sources)
    for i in range(1, payload.vial_count + 1):
        vial = models.Container(
            id=uuid.uuid4(),
            container_code=_vial_code(culture, bank_type, vial_index + i),
            culture_id=culture.id,
            container_type_id=payload.container_type_id,
            location_id=payload.location_id,
            parent_container_id=sources[0].id,
            passage_number=culture.current_passage,
            split_index=i,
            status=ContainerStatus.FROZEN.value,
            quality_hold=QualityHold.NONE.value,
            frozen_at=now,
            created_by=actor.id,
            created_at=now,
            **cryo,
        )
        db.add(vial)
        record_container_event(
            db,
            vial,
            "bank_created",
            f"{bank_type.upper()} vial {i}/{payload.vial_count} at P{culture.current_passage}",
            {"sources": [s.container_code for s in sources], **cryo},
            actor,
        )
        outcome.created.append(vial)

    for source in sources:
        source.status = ContainerStatus.FROZEN.value
        source.volume_ml = 0
        source.frozen_at = now
        record_container_event(
            db,
            source,
            "freeze",
            f"Banked {bank_type.upper()}, {payload.vial_count} cryovials"
            + (f", {payload.cryopreservation_media}" if payload.cryopreservation_media else "")
            + (f", {payload.freezing_rate}" if payload.freezing_rate else ""),
            {
                "old_status": ContainerStatus.ACTIVE.value,
                "new_status": ContainerStatus.FROZEN.value,
                "vial_count": payload.vial_count,
                "notes": payload.notes,
                **cryo,
            },
            actor,
        )

    source_ids = [s.id for s in sources]
    remaining_active = (
        db.query(models.Container)
        .filter(
            models.Container.culture_id == culture.id,
            models.Container.status == ContainerStatus.ACTIVE.value,
            models.Container.id.notin_(source_ids),
        )
        .count()
    )
    old_status = culture.status
    if remaining_active == 0:
        culture.status = CultureStatus.FROZEN.value
    record_culture_event(
        db,
        culture,
        "bank",
        f"Created {payload.vial_count} {bank_type.upper()} cryovials from P{culture.current_passage}",
        {"status": old_status},
        {"status": culture.status, "bank_type": bank_type, "vial_count": payload.vial_count},
        actor,
    )
    return _finish(db, outcome, actor, {"bank_type": bank_type, "vial_count": payload.vial_count})


def thaw(
    db: Session,
    culture_id: UUID,
    payload: schemas.ThawRequest,
    actor: models.User,
    *,
    now: Optional[datetime] = None,
) -> LineageOutcome:
    """Revive each frozen source into one active container; the vial is spent."""

    now = now or _utcnow()
    culture = lock_culture(db, culture_id)
    bind_log_context(culture=culture.culture_code)
    _ensure_usable(culture, "thaw")
    sources = _load_sources(
        db, culture, payload.source_container_ids, ContainerStatus.FROZEN.value, "thaw"
    )
    if payload.location_id is not None:
        get_or_404(db, models.Location, payload.location_id)

    passage_number = culture.current_passage
    index = _containers_at_passage(db, culture, passage_number)
    thaw_details = {
        "thaw_method": payload.thaw_method,
        "thaw_duration_minutes": payload.thaw_duration_minutes,
        "viability_post_thaw": payload.viability_post_thaw,
    }
    outcome = LineageOutcome(operation="thaw", culture=culture, sources=sources)
    for source in sources:
        index += 1
        child = models.Container(
            id=uuid.uuid4(),
            container_code=_vessel_code(culture, passage_number, index),
            culture_id=culture.id,
            container_type_id=source.container_type_id,
            location_id=payload.location_id or source.location_id,
            parent_container_id=source.id,
            passage_number=passage_number,
            split_index=1,
            status=ContainerStatus.ACTIVE.value,
            quality_hold=QualityHold.NONE.value,
            viability_percent=payload.viability_post_thaw,
            created_by=actor.id,
            created_at=now,
        )
        db.add(child)
        record_container_event(
            db,
            child,
            "thaw_created",
            f"Revived from {source.container_code} at P{passage_number}",
            {"parent": source.container_code, **thaw_details},
            actor,
        )
        source.status = ContainerStatus.THAWED.value
        source.volume_ml = 0
        source.thawed_at = now
        source.thaw_method = payload.thaw_method
        source.thaw_duration_minutes = payload.thaw_duration_minutes
        source.viability_post_thaw = payload.viability_post_thaw
        record_container_event(
            db,
            source,
            "thaw",
            f"Thawed ({payload.thaw_method or 'method not recorded'}), viability "
            + (f"{payload.viability_post_thaw:g}%" if payload.viability_post_thaw is not None else "N/A"),
            {
                "old_status": ContainerStatus.FROZEN.value,
                "new_status": ContainerStatus.THAWED.value,
                "child": child.container_code,
                "notes": payload.notes,
                **thaw_details,
            },
            actor,
        )
        outcome.created.append(child)

    old_status = culture.status
    if culture.status == CultureStatus.FROZEN.value:
        culture.status = CultureStatus.ACTIVE.value
    record_culture_event(
        db,
        culture,
        "thaw",
        f"Thawed {len(sources)} cryovials, created {len(outcome.created)} active containers",
        {"status": old_status},
        {"status": culture.status, "thawed_count": len(sources)},
        actor,
    )
    return _finish(db, outcome, actor, thaw_details)


def list_containers(
    db: Session,
    culture_id: UUID,
    *,
    status: Optional[str] = None,
) -> list[models.Container]:
    get_or_404(db, models.Culture, culture_id)
    query = db.query(models.Container).filter(models.Container.culture_id == culture_id)
    if status:
        query = query.filter(models.Container.status == status)
    return query.order_by(models.Container.passage_number, models.Container.container_code).all()


def culture_history(db: Session, culture_id: UUID) -> list[models.CultureHistory]:
    get_or_404(db, models.Culture, culture_id)
    return (
        db.query(models.CultureHistory)
        .filter(models.CultureHistory.culture_id == culture_id)
        .order_by(models.CultureHistory.performed_at)
        .all()
    )
