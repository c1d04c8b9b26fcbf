import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
    Float,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String)
    # operator | qp | admin
    role = Column(String, nullable=False, default="operator")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Location(Base):
    __tablename__ = "locations"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    location_type = Column(String, default="incubator")
    parent_id = Column(UUID(as_uuid=True), ForeignKey("locations.id"))
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    parent = relationship("Location", remote_side=[id])


class ContainerType(Base):
    __tablename__ = "container_types"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, unique=True, nullable=False)
    # flask | plate | cryovial | bag | bioreactor
    category = Column(String, nullable=False, default="flask")
    working_volume_ml = Column(Float)


class ProcessTemplate(Base):
    __tablename__ = "process_templates"
    # purpose: versioned manufacturing procedure definitions; rows are never edited once published
    # status: active
    # depends_on: users
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_code = Column(String, nullable=False)
    name = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    description = Column(Text)
    applicable_cell_types = Column(JSON, default=list)
    is_active = Column(Boolean, default=True)
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    steps = relationship(
        "ProcessTemplateStep",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="ProcessTemplateStep.step_number",
    )

    __table_args__ = (
        sa.UniqueConstraint("template_code", "version", name="uq_process_template_code_version"),
    )


class ProcessTemplateStep(Base):
    __tablename__ = "process_template_steps"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id = Column(
        UUID(as_uuid=True),
        ForeignKey("process_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_number = Column(Integer, nullable=False)
    step_name = Column(String, nullable=False)
    step_type = Column(String, nullable=False)
    description = Column(Text)
    is_critical = Column(Boolean, default=False, nullable=False)
    expected_duration_minutes = Column(Integer)
    requires_equipment_scan = Column(Boolean, default=False, nullable=False)
    requires_sop_confirmation = Column(Boolean, default=False, nullable=False)
    sop_reference = Column(String)
    # list of {parameter, min, max, expected, severity}
    cca_rules = Column(JSON, default=list)

    template = relationship("ProcessTemplate", back_populates="steps")

    __table_args__ = (
        sa.UniqueConstraint("template_id", "step_number", name="uq_template_step_number"),
    )


class Culture(Base):
    __tablename__ = "cultures"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    culture_code = Column(String, unique=True, nullable=False)
    cell_type = Column(String, nullable=False)
    # primary | passage | mcb | wcb
    culture_type = Column(String, default="primary")
    current_passage = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="active")
    risk_flag = Column(String, nullable=False, default="none")
    risk_flag_reason = Column(Text)
    risk_flag_set_at = Column(DateTime(timezone=True))
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version = Column(Integer, nullable=False, default=1)

    containers = relationship(
        "Container",
        back_populates="culture",
        order_by="Container.created_at",
    )

    __mapper_args__ = {"version_id_col": version}


class Container(Base):
    __tablename__ = "containers"
    # purpose: one physical vessel in a culture's append-only lineage graph
    # status: active
    # depends_on: cultures, container_types, locations, users
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    container_code = Column(String, unique=True, nullable=False)
    culture_id = Column(UUID(as_uuid=True), ForeignKey("cultures.id"), nullable=False)
    container_type_id = Column(UUID(as_uuid=True), ForeignKey("container_types.id"))
    location_id = Column(UUID(as_uuid=True), ForeignKey("locations.id"))
    parent_container_id = Column(UUID(as_uuid=True), ForeignKey("containers.id"))
    passage_number = Column(Integer, nullable=False, default=0)
    split_index = Column(Integer)
    status = Column(String, nullable=False, default="active")
    quality_hold = Column(String, nullable=False, default="none")
    hold_reason = Column(Text)
    hold_set_at = Column(DateTime(timezone=True))
    volume_ml = Column(Float)
    cell_concentration = Column(Float)
    viability_percent = Column(Float)
    total_cells = Column(Float)
    # banking
    bank_type = Column(String)
    cryopreservation_media = Column(String)
    freezing_rate = Column(String)
    storage_temperature = Column(Float)
    frozen_at = Column(DateTime(timezone=True))
    # thaw
    thaw_method = Column(String)
    thaw_duration_minutes = Column(Integer)
    viability_post_thaw = Column(Float)
    thawed_at = Column(DateTime(timezone=True))
    disposed_at = Column(DateTime(timezone=True))
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version = Column(Integer, nullable=False, default=1)

    culture = relationship("Culture", back_populates="containers")
    container_type = relationship("ContainerType")
    location = relationship("Location")
    parent = relationship("Container", remote_side=[id])
    history = relationship(
        "ContainerHistory",
        back_populates="container",
        cascade="all, delete-orphan",
        order_by="ContainerHistory.performed_at",
    )

    __mapper_args__ = {"version_id_col": version}


class ExecutedProcess(Base):
    __tablename__ = "executed_processes"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    process_code = Column(String, unique=True, nullable=False)
    template_id = Column(UUID(as_uuid=True), ForeignKey("process_templates.id"), nullable=False)
    culture_id = Column(UUID(as_uuid=True), ForeignKey("cultures.id"), nullable=False)
    status = Column(String, nullable=False, default="in_progress")
    hold_reason = Column(Text)
    # set only while paused_quality_hold; no FK since deviations already reference executed_steps
    held_deviation_id = Column(UUID(as_uuid=True))
    started_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True))
    started_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version = Column(Integer, nullable=False, default=1)

    template = relationship("ProcessTemplate")
    culture = relationship("Culture")
    steps = relationship(
        "ExecutedStep",
        back_populates="process",
        cascade="all, delete-orphan",
        order_by="ExecutedStep.sequence",
    )

    __mapper_args__ = {"version_id_col": version}


class ExecutedStep(Base):
    __tablename__ = "executed_steps"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    process_id = Column(
        UUID(as_uuid=True),
        ForeignKey("executed_processes.id", ondelete="CASCADE"),
        nullable=False,
    )
    template_step_id = Column(UUID(as_uuid=True), ForeignKey("process_template_steps.id"), nullable=False)
    # creation order; mirrors the template's step_number
    sequence = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending")
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    executed_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    container_id = Column(UUID(as_uuid=True), ForeignKey("containers.id"))
    recorded_parameters = Column(JSON, default=dict)
    notes = Column(Text)
    cca_passed = Column(Boolean)
    cca_results = Column(JSON)
    equipment_reference = Column(String)
    sop_confirmed_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=1)

    process = relationship("ExecutedProcess", back_populates="steps")
    template_step = relationship("ProcessTemplateStep")
    container = relationship("Container")

    __table_args__ = (
        sa.UniqueConstraint("process_id", "sequence", name="uq_executed_step_sequence"),
    )
    __mapper_args__ = {"version_id_col": version}

    def elapsed_seconds(self, now: datetime | None = None) -> float | None:
        if self.started_at is None:
            return None
        started = self.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        end = self.completed_at or now or _utcnow()
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        return (end - started).total_seconds()


class Deviation(Base):
    __tablename__ = "deviations"
    # purpose: quality non-conformance awaiting (or carrying) a QP adjudication
    # status: active
    # depends_on: cultures, containers, executed_steps, users
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deviation_code = Column(String, unique=True, nullable=False)
    deviation_type = Column(String, nullable=False, default="cca_fail")
    severity = Column(String, nullable=False)
    title = Column(String)
    description = Column(Text)
    status = Column(String, nullable=False, default="open")
    qp_review_required = Column(Boolean, default=True, nullable=False)
    qp_decision = Column(String)
    qp_comments = Column(Text)
    qp_reviewed_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    qp_reviewed_at = Column(DateTime(timezone=True))
    culture_id = Column(UUID(as_uuid=True), ForeignKey("cultures.id"))
    container_id = Column(UUID(as_uuid=True), ForeignKey("containers.id"))
    executed_step_id = Column(UUID(as_uuid=True), ForeignKey("executed_steps.id"))
    detected_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    detected_at = Column(DateTime(timezone=True), default=_utcnow)
    resolved_at = Column(DateTime(timezone=True))
    idempotency_key = Column(String, unique=True)

    culture = relationship("Culture")
    container = relationship("Container")
    executed_step = relationship("ExecutedStep")
    tasks = relationship("Task", back_populates="deviation", order_by="Task.created_at")


class Task(Base):
    __tablename__ = "tasks"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    task_code = Column(String, unique=True, nullable=False)
    task_type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text)
    priority = Column(String, nullable=False, default="medium")
    assigned_to_role = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    culture_id = Column(UUID(as_uuid=True), ForeignKey("cultures.id"))
    container_id = Column(UUID(as_uuid=True), ForeignKey("containers.id"))
    deviation_id = Column(UUID(as_uuid=True), ForeignKey("deviations.id"))
    executed_step_id = Column(UUID(as_uuid=True), ForeignKey("executed_steps.id"))
    idempotency_key = Column(String, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True))

    deviation = relationship("Deviation", back_populates="tasks")


class ContainerHistory(Base):
    __tablename__ = "container_history"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    container_id = Column(
        UUID(as_uuid=True),
        ForeignKey("containers.id", ondelete="CASCADE"),
        nullable=False,
    )
    operation = Column(String, nullable=False)
    description = Column(Text)
    details = Column(JSON, default=dict)
    performed_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    performed_at = Column(DateTime(timezone=True), default=_utcnow)

    container = relationship("Container", back_populates="history")


class CultureHistory(Base):
    __tablename__ = "culture_history"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    culture_id = Column(
        UUID(as_uuid=True),
        ForeignKey("cultures.id", ondelete="CASCADE"),
        nullable=False,
    )
    action = Column(String, nullable=False)
    description = Column(Text)
    old_values = Column(JSON, default=dict)
    new_values = Column(JSON, default=dict)
    performed_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    performed_at = Column(DateTime(timezone=True), default=_utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    action = Column(String, nullable=False)
    target_type = Column(String)
    target_id = Column(UUID(as_uuid=True))
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class CodeSequence(Base):
    __tablename__ = "code_sequences"
    prefix = Column(String, primary_key=True)
    year = Column(Integer, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)
