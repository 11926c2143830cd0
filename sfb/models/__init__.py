"""
Outcome models
==============

- outcome.py: synthetic mobility outcome and nested logistic models
  (baseline, volume-only, score-only, score + volume) on one shared sample
- threshold.py: quantile-bin view plus profile-likelihood breakpoint search

Only devices with a defined SFB score ever reach these models.
"""
