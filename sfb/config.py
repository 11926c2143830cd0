"""
Configuration management using Pydantic Settings.
Loads from environment variables or .env file.
"""
from pydantic import validator
from pydantic_settings import BaseSettings
from typing import List, Optional

from sfb.errors import InvalidConfiguration


DEFAULT_LAYERS = ["labor", "educational", "cultural", "consumption"]
THRESHOLD_CRITERIA = ("bic", "bootstrap")


class Settings(BaseSettings):
    """
    Pipeline configuration loaded from environment variables.

    Usage:
        # .env file
        PROXIMITY_WINDOW_MIN=30
        LAYERS='["labor", "educational", "cultural", "consumption"]'
        N_QUANTILES=5

        # In code
        from sfb.config import settings
        print(settings.PROXIMITY_WINDOW_MIN)
    """
    # Inputs / outputs
    VISITS_PATH: str = "data/synthetic_visits.csv"
    DEVICES_PATH: Optional[str] = "data/synthetic_devices.csv"
    OUTPUT_DB_PATH: Optional[str] = "data/sfb_scores.duckdb"
    OUTPUT_CSV_PATH: Optional[str] = "data/sfb_scores.csv"

    # Co-presence network
    PROXIMITY_WINDOW_MIN: float = 30.0
    LAYERS: List[str] = list(DEFAULT_LAYERS)
    MAX_WORKERS: Optional[int] = None  # None -> min(L, cpu_count())

    # Threshold detection
    N_QUANTILES: int = 5
    BREAKPOINT_GRID_STEP: float = 0.01
    BREAKPOINT_TRIM: float = 0.10
    THRESHOLD_CRITERION: str = "bic"
    N_BOOTSTRAP: int = 199
    ALPHA: float = 0.05

    # Reproducibility of synthetic outcomes
    RANDOM_SEED: int = 42

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @validator("LAYERS")
    def layer_names_lowercase(cls, v):
        # Visit rows are matched on lowercased layer names
        return [str(layer).strip().lower() for layer in v]

    @property
    def n_layers(self) -> int:
        return len(self.LAYERS)


def validate_settings(config: Settings) -> None:
    """
    Fail fast on configuration that would make any partial run meaningless.

    Raises:
        InvalidConfiguration: window <= 0, empty/duplicated layer set,
            fewer than 2 quantiles, bad breakpoint grid or criterion
    """
    if config.PROXIMITY_WINDOW_MIN <= 0:
        raise InvalidConfiguration(
            f"PROXIMITY_WINDOW_MIN must be > 0, got {config.PROXIMITY_WINDOW_MIN}"
        )

    if not config.LAYERS:
        raise InvalidConfiguration("LAYERS must contain at least one layer")

    if len(set(config.LAYERS)) != len(config.LAYERS):
        raise InvalidConfiguration(f"LAYERS contains duplicates: {config.LAYERS}")

    if config.N_QUANTILES < 2:
        raise InvalidConfiguration(f"N_QUANTILES must be >= 2, got {config.N_QUANTILES}")

    if not 0 < config.BREAKPOINT_GRID_STEP < 1:
        raise InvalidConfiguration(
            f"BREAKPOINT_GRID_STEP must be in (0, 1), got {config.BREAKPOINT_GRID_STEP}"
        )

    if not 0 <= config.BREAKPOINT_TRIM < 0.5:
        raise InvalidConfiguration(
            f"BREAKPOINT_TRIM must be in [0, 0.5), got {config.BREAKPOINT_TRIM}"
        )

    if config.THRESHOLD_CRITERION not in THRESHOLD_CRITERIA:
        raise InvalidConfiguration(
            f"THRESHOLD_CRITERION must be one of {THRESHOLD_CRITERIA}, "
            f"got '{config.THRESHOLD_CRITERION}'"
        )

    if config.MAX_WORKERS is not None and config.MAX_WORKERS < 1:
        raise InvalidConfiguration(f"MAX_WORKERS must be >= 1, got {config.MAX_WORKERS}")


# Global settings instance
settings = Settings()
