"""
Named failures surfaced to callers.

Row-level problems (malformed visits) are not exceptions: those rows are
dropped and counted by the batch loader. Everything here stops the run.
"""


class SFBError(Exception):
    """Base class for pipeline failures."""


class InvalidConfiguration(SFBError, ValueError):
    """Configuration that makes the whole run meaningless (raised before any stage runs)."""


class ModelFitFailure(SFBError):
    """
    A degenerate logistic fit: single-class outcome, singular design,
    perfect separation or non-finite standard errors.

    This reflects a data problem, so it is never retried.
    """

    def __init__(self, model_name: str, reason: str):
        self.model_name = model_name
        self.reason = reason
        super().__init__(f"Model '{model_name}' could not be fitted: {reason}")
