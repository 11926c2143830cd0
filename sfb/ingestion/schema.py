import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import pandas as pd
from pydantic import BaseModel, Field, validator


class ClassLabel(str, Enum):
    LOW = "low"
    HIGH = "high"


def _require_id(v):
    # DataFrame rows carry NaN/None for missing cells; never let them become "nan"
    if v is None or (isinstance(v, float) and math.isnan(v)):
        raise ValueError("identifier is missing")
    v = str(v).strip()
    if not v:
        raise ValueError("identifier is empty")
    return v


def _normalize_label(v):
    if isinstance(v, str):
        return v.strip().lower()
    return v


class Visit(BaseModel):
    # --- 1. REQUIRED FIELDS ---
    # A row missing any of these is a MalformedRecord: the loader drops it.

    device_id: str
    location_id: str
    layer: str
    timestamp: datetime
    class_label: ClassLabel

    # --- 2. EVERYTHING ELSE ---
    # Upstream stop detection may attach duration, location class, etc.
    # Those ride along untouched.

    class Config:
        frozen = True
        extra = "allow"

    # --- 3. DATA CLEANING (VALIDATORS) ---

    @validator("device_id", "location_id", pre=True)
    def force_string_id(cls, v):
        return _require_id(v)

    @validator("layer", pre=True)
    def layer_must_be_present(cls, v):
        return _require_id(v).lower()

    @validator("class_label", pre=True)
    def class_label_lowercase(cls, v):
        return _normalize_label(v)

    @validator("timestamp", pre=True)
    def timestamp_must_be_present(cls, v):
        if v is None or v is pd.NaT:
            raise ValueError("timestamp is missing")
        if isinstance(v, float) and math.isnan(v):
            raise ValueError("timestamp is missing")
        return v

    @validator("timestamp")
    def timestamp_to_naive_utc(cls, v):
        if isinstance(v, pd.Timestamp):
            v = v.to_pydatetime()
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class Device(BaseModel):
    """
    One record per unique device_id.

    Extra covariates (ses_quintile, mobility_type, ...) are allowed and are
    carried into the score table unchanged.
    """

    device_id: str
    class_label: ClassLabel
    outcome_label: Optional[float] = None
    visit_volume: Optional[int] = Field(None, ge=0)

    class Config:
        frozen = True
        extra = "allow"

    @validator("device_id", pre=True)
    def force_string_id(cls, v):
        return _require_id(v)

    @validator("class_label", pre=True)
    def class_label_lowercase(cls, v):
        return _normalize_label(v)

    @validator("outcome_label", "visit_volume", pre=True)
    def missing_covariate_is_none(cls, v):
        if isinstance(v, float) and math.isnan(v):
            return None
        return v
