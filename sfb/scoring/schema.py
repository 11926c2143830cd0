from typing import Optional

from pydantic import BaseModel, Field, validator


class SFBScore(BaseModel):
    """
    Functional bandwidth of one device.

    score is None exactly when neighbor_count == 0: an undefined score is a
    state of its own, never 0 and never NaN.
    """

    device_id: str
    neighbor_count: int = Field(..., ge=0)
    total_contact_count: int = Field(..., ge=0, description="Sum of shared_layer_count over neighbors")
    # Declared last so the validator below sees neighbor_count
    score: Optional[float] = Field(None, gt=0.0, le=1.0)

    class Config:
        frozen = True

    @validator("score", always=True)
    def score_defined_iff_neighbors(cls, v, values):
        n = values.get("neighbor_count")
        if n is None:
            return v
        if n == 0 and v is not None:
            raise ValueError("a device without neighbors has an undefined score")
        if n > 0 and v is None:
            raise ValueError("a device with neighbors must have a score")
        return v

    @property
    def is_defined(self) -> bool:
        return self.score is not None
