"""
Co-presence network
===================

- copresence.py: per-layer sort-and-sweep edge builder (fan-out over layers)
- aggregation.py: union of layer edge sets into shared-layer counts (fan-in)
- time_utils.py: integer time axis and the two-pointer window sweep
"""
