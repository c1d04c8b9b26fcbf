"""Pydantic schemas consolidating the process engine API contracts."""

# purpose: aggregate request and response schemas for FastAPI surfaces and services
# status: active

from .lineage import (
    BankRequest,
    ContainerHistoryOut,
    ContainerOut,
    CultureHistoryOut,
    CultureOut,
    LineageResult,
    PassageRequest,
    ThawRequest,
)
from .processes import (
    STEP_RESULT_MODELS,
    BankingResult,
    CellCountingResult,
    ExecutedProcessOut,
    ExecutedStepOut,
    IncubationResult,
    ManipulationResult,
    MeasurementResult,
    MediaChangeResult,
    ObservationResult,
    PassageResult,
    ProcessControl,
    ProcessStart,
    StepCompleteRequest,
    StepTransitionOut,
    StepResult,
    TemplateCreate,
    TemplateOut,
    TemplateStepCreate,
    TemplateStepOut,
)
from .quality import (
    CCACheck,
    CCAEvaluation,
    CCARule,
    DeviationOut,
    QPDecisionRequest,
    TaskOut,
)
