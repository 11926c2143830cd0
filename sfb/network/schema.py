"""
Strict definitions of what the network stages emit.

CoPresenceEdge (one per layer builder hit):
• device_i (String): the low-class device.
• device_j (String): the high-class device.
• layer (String): the layer in which they were co-present.
Directed low -> high only; the reverse edge never exists.

DyadSummary (one per ordered pair after aggregation):
• shared_layer_count (Int): distinct layers with at least one edge, in [1, L].
"""

from pydantic import BaseModel, Field, validator


class CoPresenceEdge(BaseModel):
    """Existence of co-presence for one ordered pair in one layer."""

    device_i: str = Field(..., description="Low-class device (source)")
    device_j: str = Field(..., description="High-class device (target)")
    layer: str

    class Config:
        frozen = True

    @validator("device_j")
    def no_self_pairs(cls, v, values):
        if v == values.get("device_i"):
            raise ValueError("self-pairs are not co-presence edges")
        return v


class DyadSummary(BaseModel):
    device_i: str
    device_j: str
    shared_layer_count: int = Field(..., ge=1, description="Distinct layers shared, bounded by L")

    class Config:
        frozen = True
