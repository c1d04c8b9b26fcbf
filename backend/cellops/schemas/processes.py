"""Pydantic schemas for process templates, executed processes and typed step results."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..states import BankType, StepType
from .quality import CCARule, DeviationOut

# purpose: request/response contracts for the process execution engine
# status: active
# depends_on: backend.cellops.services.processes, backend.cellops.services.step_machine


class StepResult(BaseModel):
    """Common shape for recorded parameters; extra keys are kept for custom rules."""

    model_config = ConfigDict(extra="allow")

    viability_percent: Optional[float] = Field(default=None, ge=0, le=100)
    cell_concentration: Optional[float] = Field(default=None, ge=0)


class CellCountingResult(StepResult):
    total_cells: Optional[float] = Field(default=None, ge=0)
    volume_ml: Optional[float] = Field(default=None, ge=0)
    counting_method: Optional[str] = None


class MediaChangeResult(StepResult):
    media_batch: Optional[str] = None
    media_type: Optional[str] = None
    volume_ml: Optional[float] = Field(default=None, ge=0)


class PassageResult(StepResult):
    split_ratio: Optional[str] = None
    confluence_percent: Optional[float] = Field(default=None, ge=0, le=100)
    dissociation_reagent: Optional[str] = None


class BankingResult(StepResult):
    bank_type: Optional[BankType] = None
    vial_count: Optional[int] = Field(default=None, ge=1)
    cryopreservation_media: Optional[str] = None
    freezing_rate: Optional[str] = None
    storage_temperature: Optional[float] = None


class ObservationResult(StepResult):
    confluence_percent: Optional[float] = Field(default=None, ge=0, le=100)
    morphology: Optional[str] = None
    contamination_observed: Optional[bool] = None


class ManipulationResult(StepResult):
    reagent: Optional[str] = None
    reagent_lot: Optional[str] = None


class MeasurementResult(StepResult):
    instrument: Optional[str] = None


class IncubationResult(StepResult):
    temperature_c: Optional[float] = None
    co2_percent: Optional[float] = Field(default=None, ge=0, le=100)
    duration_hours: Optional[float] = Field(default=None, ge=0)


STEP_RESULT_MODELS: dict[StepType, type[StepResult]] = {
    StepType.CELL_COUNTING: CellCountingResult,
    StepType.MEDIA_CHANGE: MediaChangeResult,
    StepType.PASSAGE: PassageResult,
    StepType.BANKING: BankingResult,
    StepType.OBSERVATION: ObservationResult,
    StepType.MANIPULATION: ManipulationResult,
    StepType.MEASUREMENT: MeasurementResult,
    StepType.INCUBATION: IncubationResult,
}


class TemplateStepCreate(BaseModel):
    step_number: int = Field(ge=1)
    step_name: str = Field(min_length=1)
    step_type: StepType
    description: Optional[str] = None
    is_critical: bool = False
    expected_duration_minutes: Optional[int] = Field(default=None, ge=0)
    requires_equipment_scan: bool = False
    requires_sop_confirmation: bool = False
    sop_reference: Optional[str] = None
    cca_rules: list[CCARule] = Field(default_factory=list)


class TemplateCreate(BaseModel):
    template_code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    applicable_cell_types: list[str] = Field(default_factory=list)
    steps: list[TemplateStepCreate] = Field(min_length=1)

    @field_validator("steps")
    @classmethod
    def _unique_step_numbers(cls, steps: list[TemplateStepCreate]):
        numbers = [step.step_number for step in steps]
        if len(numbers) != len(set(numbers)):
            raise ValueError("step_number values must be unique within a template")
        return steps


class TemplateStepOut(BaseModel):
    id: UUID
    step_number: int
    step_name: str
    step_type: str
    description: Optional[str] = None
    is_critical: bool
    expected_duration_minutes: Optional[int] = None
    requires_equipment_scan: bool
    requires_sop_confirmation: bool
    sop_reference: Optional[str] = None
    cca_rules: Any = None

    model_config = ConfigDict(from_attributes=True)


class TemplateOut(BaseModel):
    id: UUID
    template_code: str
    name: str
    version: int
    description: Optional[str] = None
    applicable_cell_types: list[str] = Field(default_factory=list)
    is_active: bool
    created_at: datetime
    steps: list[TemplateStepOut] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ProcessStart(BaseModel):
    template_id: UUID
    culture_id: UUID


class StepCompleteRequest(BaseModel):
    recorded_parameters: dict[str, Any] = Field(default_factory=dict)
    equipment_reference: Optional[str] = None
    sop_confirmed: bool = False
    container_id: Optional[UUID] = None
    notes: Optional[str] = None


class ProcessControl(BaseModel):
    reason: Optional[str] = None


class ExecutedStepOut(BaseModel):
    id: UUID
    sequence: int
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    elapsed_seconds: Optional[float] = None
    executed_by: Optional[UUID] = None
    container_id: Optional[UUID] = None
    recorded_parameters: dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    cca_passed: Optional[bool] = None
    cca_results: Optional[dict[str, Any]] = None
    equipment_reference: Optional[str] = None
    sop_confirmed_at: Optional[datetime] = None
    template_step: TemplateStepOut


class ExecutedProcessOut(BaseModel):
    id: UUID
    process_code: str
    template_id: UUID
    template_code: str
    template_version: int
    culture_id: UUID
    status: str
    hold_reason: Optional[str] = None
    held_deviation_id: Optional[UUID] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    started_by: Optional[UUID] = None
    current_step_id: Optional[UUID] = None
    steps: list[ExecutedStepOut] = Field(default_factory=list)


class StepTransitionOut(BaseModel):
    process: ExecutedProcessOut
    step: ExecutedStepOut
    deviation: Optional[DeviationOut] = None
