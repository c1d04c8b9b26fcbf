"""Pydantic schemas for culture lineage operations (passage, bank, thaw)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..states import BankType


class PassageRequest(BaseModel):
    source_container_ids: list[UUID] = Field(min_length=1)
    split_ratio: str = "1:2"
    notes: Optional[str] = None


class BankRequest(BaseModel):
    source_container_ids: list[UUID] = Field(min_length=1)
    vial_count: int = Field(ge=1, le=500)
    bank_type: BankType
    cryopreservation_media: Optional[str] = None
    freezing_rate: Optional[str] = None
    storage_temperature: Optional[float] = None
    container_type_id: Optional[UUID] = None
    location_id: Optional[UUID] = None
    notes: Optional[str] = None


class ThawRequest(BaseModel):
    source_container_ids: list[UUID] = Field(min_length=1)
    thaw_method: Optional[str] = None
    thaw_duration_minutes: Optional[int] = Field(default=None, ge=0)
    viability_post_thaw: Optional[float] = Field(default=None, ge=0, le=100)
    location_id: Optional[UUID] = None
    notes: Optional[str] = None


class ContainerOut(BaseModel):
    id: UUID
    container_code: str
    culture_id: UUID
    container_type_id: Optional[UUID] = None
    location_id: Optional[UUID] = None
    parent_container_id: Optional[UUID] = None
    passage_number: int
    split_index: Optional[int] = None
    status: str
    quality_hold: str
    volume_ml: Optional[float] = None
    cell_concentration: Optional[float] = None
    viability_percent: Optional[float] = None
    bank_type: Optional[str] = None
    cryopreservation_media: Optional[str] = None
    freezing_rate: Optional[str] = None
    storage_temperature: Optional[float] = None
    frozen_at: Optional[datetime] = None
    thaw_method: Optional[str] = None
    thaw_duration_minutes: Optional[int] = None
    viability_post_thaw: Optional[float] = None
    thawed_at: Optional[datetime] = None
    disposed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CultureOut(BaseModel):
    id: UUID
    culture_code: str
    cell_type: str
    culture_type: Optional[str] = None
    current_passage: int
    status: str
    risk_flag: str
    risk_flag_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ContainerHistoryOut(BaseModel):
    id: UUID
    container_id: UUID
    operation: str
    description: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    performed_by: Optional[UUID] = None
    performed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CultureHistoryOut(BaseModel):
    id: UUID
    culture_id: UUID
    action: str
    description: Optional[str] = None
    old_values: dict[str, Any] = Field(default_factory=dict)
    new_values: dict[str, Any] = Field(default_factory=dict)
    performed_by: Optional[UUID] = None
    performed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LineageResult(BaseModel):
    operation: str
    culture: CultureOut
    created: list[ContainerOut] = Field(default_factory=list)
    sources: list[ContainerOut] = Field(default_factory=list)
