"""
Test suite for the outcome models.

Tests:
- test_outcome_models.py: simulator and nested logit comparison
- test_threshold_detector.py: bin patterns, breakpoint recovery, linear null
"""

__all__ = ['test_outcome_models', 'test_threshold_detector']
