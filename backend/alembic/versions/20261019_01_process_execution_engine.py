from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: str | Sequence[str] | None = None
branch_labels = None
depends_on = None


def _uuid(name: str, *fk, nullable: bool = True, **kwargs) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), *fk, nullable=nullable, **kwargs)


def upgrade() -> None:
    op.create_table(
        "users",
        _uuid("id", nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="operator"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_table(
        "locations",
        _uuid("id", nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("location_type", sa.String(), nullable=True),
        _uuid("parent_id", sa.ForeignKey("locations.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "container_types",
        _uuid("id", nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False, server_default="flask"),
        sa.Column("working_volume_ml", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_table(
        "process_templates",
        _uuid("id", nullable=False),
        sa.Column("template_code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("applicable_cell_types", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        _uuid("created_by", sa.ForeignKey("users.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_code", "version", name="uq_process_template_code_version"),
    )
    op.create_table(
        "process_template_steps",
        _uuid("id", nullable=False),
        _uuid("template_id", sa.ForeignKey("process_templates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("step_name", sa.String(), nullable=False),
        sa.Column("step_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expected_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("requires_equipment_scan", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_sop_confirmation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sop_reference", sa.String(), nullable=True),
        sa.Column("cca_rules", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_id", "step_number", name="uq_template_step_number"),
    )
    op.create_table(
        "cultures",
        _uuid("id", nullable=False),
        sa.Column("culture_code", sa.String(), nullable=False),
        sa.Column("cell_type", sa.String(), nullable=False),
        sa.Column("culture_type", sa.String(length=16), nullable=True),
        sa.Column("current_passage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("risk_flag", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("risk_flag_reason", sa.Text(), nullable=True),
        sa.Column("risk_flag_set_at", sa.DateTime(timezone=True), nullable=True),
        _uuid("created_by", sa.ForeignKey("users.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("culture_code"),
    )
    op.create_table(
        "containers",
        _uuid("id", nullable=False),
        sa.Column("container_code", sa.String(), nullable=False),
        _uuid("culture_id", sa.ForeignKey("cultures.id"), nullable=False),
        _uuid("container_type_id", sa.ForeignKey("container_types.id")),
        _uuid("location_id", sa.ForeignKey("locations.id")),
        _uuid("parent_container_id", sa.ForeignKey("containers.id")),
        sa.Column("passage_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("split_index", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("quality_hold", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("hold_reason", sa.Text(), nullable=True),
        sa.Column("hold_set_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("volume_ml", sa.Float(), nullable=True),
        sa.Column("cell_concentration", sa.Float(), nullable=True),
        sa.Column("viability_percent", sa.Float(), nullable=True),
        sa.Column("total_cells", sa.Float(), nullable=True),
        sa.Column("bank_type", sa.String(length=8), nullable=True),
        sa.Column("cryopreservation_media", sa.String(), nullable=True),
        sa.Column("freezing_rate", sa.String(), nullable=True),
        sa.Column("storage_temperature", sa.Float(), nullable=True),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("thaw_method", sa.String(), nullable=True),
        sa.Column("thaw_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("viability_post_thaw", sa.Float(), nullable=True),
        sa.Column("thawed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disposed_at", sa.DateTime(timezone=True), nullable=True),
        _uuid("created_by", sa.ForeignKey("users.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("container_code"),
    )
    op.create_index("ix_containers_culture_status", "containers", ["culture_id", "status"])
    op.create_index("ix_containers_parent", "containers", ["parent_container_id"])
    op.create_table(
        "executed_processes",
        _uuid("id", nullable=False),
        sa.Column("process_code", sa.String(), nullable=False),
        _uuid("template_id", sa.ForeignKey("process_templates.id"), nullable=False),
        _uuid("culture_id", sa.ForeignKey("cultures.id"), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="in_progress"),
        sa.Column("hold_reason", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _uuid("started_by", sa.ForeignKey("users.id")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("process_code"),
    )
    op.create_index(
        "ix_executed_processes_culture_status", "executed_processes", ["culture_id", "status"]
    )
    op.create_table(
        "executed_steps",
        _uuid("id", nullable=False),
        _uuid("process_id", sa.ForeignKey("executed_processes.id", ondelete="CASCADE"), nullable=False),
        _uuid("template_step_id", sa.ForeignKey("process_template_steps.id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _uuid("executed_by", sa.ForeignKey("users.id")),
        _uuid("container_id", sa.ForeignKey("containers.id")),
        sa.Column("recorded_parameters", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("cca_passed", sa.Boolean(), nullable=True),
        sa.Column("cca_results", sa.JSON(), nullable=True),
        sa.Column("equipment_reference", sa.String(), nullable=True),
        sa.Column("sop_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("process_id", "sequence", name="uq_executed_step_sequence"),
    )
    op.create_table(
        "deviations",
        _uuid("id", nullable=False),
        sa.Column("deviation_code", sa.String(), nullable=False),
        sa.Column("deviation_type", sa.String(length=32), nullable=False, server_default="cca_fail"),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("qp_review_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("qp_decision", sa.String(length=16), nullable=True),
        sa.Column("qp_comments", sa.Text(), nullable=True),
        _uuid("qp_reviewed_by", sa.ForeignKey("users.id")),
        sa.Column("qp_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        _uuid("culture_id", sa.ForeignKey("cultures.id")),
        _uuid("container_id", sa.ForeignKey("containers.id")),
        _uuid("executed_step_id", sa.ForeignKey("executed_steps.id")),
        _uuid("detected_by", sa.ForeignKey("users.id")),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deviation_code"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_table(
        "tasks",
        _uuid("id", nullable=False),
        sa.Column("task_code", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("assigned_to_role", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        _uuid("culture_id", sa.ForeignKey("cultures.id")),
        _uuid("container_id", sa.ForeignKey("containers.id")),
        _uuid("deviation_id", sa.ForeignKey("deviations.id")),
        _uuid("executed_step_id", sa.ForeignKey("executed_steps.id")),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_code"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_tasks_role_status", "tasks", ["assigned_to_role", "status"])
    op.create_table(
        "container_history",
        _uuid("id", nullable=False),
        _uuid("container_id", sa.ForeignKey("containers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("operation", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        _uuid("performed_by", sa.ForeignKey("users.id")),
        sa.Column("performed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "culture_history",
        _uuid("id", nullable=False),
        _uuid("culture_id", sa.ForeignKey("cultures.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        _uuid("performed_by", sa.ForeignKey("users.id")),
        sa.Column("performed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "audit_logs",
        _uuid("id", nullable=False),
        _uuid("user_id", sa.ForeignKey("users.id")),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=True),
        _uuid("target_id"),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "code_sequences",
        sa.Column("prefix", sa.String(length=16), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("prefix", "year"),
    )


def downgrade() -> None:
    op.drop_table("code_sequences")
    op.drop_table("audit_logs")
    op.drop_table("culture_history")
    op.drop_table("container_history")
    op.drop_index("ix_tasks_role_status", table_name="tasks")
    op.drop_table("tasks")
    op.drop_table("deviations")
    op.drop_table("executed_steps")
    op.drop_index("ix_executed_processes_culture_status", table_name="executed_processes")
    op.drop_table("executed_processes")
    op.drop_index("ix_containers_parent", table_name="containers")
    op.drop_index("ix_containers_culture_status", table_name="containers")
    op.drop_table("containers")
    op.drop_table("cultures")
    op.drop_table("process_template_steps")
    op.drop_table("process_templates")
    op.drop_table("container_types")
    op.drop_table("locations")
    op.drop_table("users")
