"""Pydantic schemas for CCA rules, evaluations, deviations and remediation tasks."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..states import DeviationSeverity, QPDecision


class CCARule(BaseModel):
    parameter: str = Field(min_length=1)
    min: Optional[float] = None
    max: Optional[float] = None
    expected: Optional[Union[float, str]] = None
    severity: Optional[DeviationSeverity] = None

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"rule for {self.parameter}: min {self.min} exceeds max {self.max}")
        return self


class CCACheck(BaseModel):
    parameter: str
    passed: bool
    value: float
    min: Optional[float] = None
    max: Optional[float] = None
    expected: Optional[Union[float, str]] = None
    severity: Optional[DeviationSeverity] = None


class CCAEvaluation(BaseModel):
    passed: bool
    message: str
    checks: list[CCACheck] = Field(default_factory=list)

    def results_payload(self) -> dict[str, Any]:
        """Structured verdict persisted on the executed step."""

        return {
            "passed": self.passed,
            "message": self.message,
            "checks": [check.model_dump(mode="json") for check in self.checks],
        }


class QPDecisionRequest(BaseModel):
    decision: QPDecision
    comments: Optional[str] = None


class TaskOut(BaseModel):
    id: UUID
    task_code: str
    task_type: str
    title: str
    description: Optional[str] = None
    priority: str
    assigned_to_role: str
    status: str
    culture_id: Optional[UUID] = None
    container_id: Optional[UUID] = None
    deviation_id: Optional[UUID] = None
    executed_step_id: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeviationOut(BaseModel):
    id: UUID
    deviation_code: str
    deviation_type: str
    severity: str
    title: Optional[str] = None
    description: Optional[str] = None
    status: str
    qp_review_required: bool
    qp_decision: Optional[str] = None
    qp_comments: Optional[str] = None
    qp_reviewed_by: Optional[UUID] = None
    qp_reviewed_at: Optional[datetime] = None
    culture_id: Optional[UUID] = None
    container_id: Optional[UUID] = None
    executed_step_id: Optional[UUID] = None
    detected_by: Optional[UUID] = None
    detected_at: datetime
    resolved_at: Optional[datetime] = None
    tasks: list[TaskOut] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
