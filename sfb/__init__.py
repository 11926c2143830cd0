"""
Spatial Functional Bandwidth (SFB)
==================================

This package builds multiplex co-presence networks from categorized
location visits and scores how many institutional layers a low-class
device shares with its high-class contacts:

- Visit Store: validated, immutable visit records indexed by layer/location
- Layer Builder: sort-and-sweep co-presence join, one task per layer
- Aggregator: distinct shared layers per directed dyad
- Scorer: bounded diversity score per device, in [1/L, 1]
- Outcome models: nested logits (volume vs. score) and breakpoint detection

Data flows strictly forward through these stages.
"""

__version__ = "1.0.0"
__status__ = "Production"
