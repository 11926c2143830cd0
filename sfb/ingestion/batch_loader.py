import logging
from collections import Counter
from pathlib import Path
from typing import List, Optional, Tuple

import duckdb
import pandas as pd
from pydantic import BaseModel, ValidationError

from sfb.ingestion.schema import Device, Visit

logger = logging.getLogger(__name__)

# Log the first few drops individually, then only the totals
MAX_LOGGED_DROPS = 20


class IngestionReport(BaseModel):
    """How many rows came in, how many survived, and why the rest were dropped."""

    rows_read: int = 0
    rows_accepted: int = 0
    drops_by_reason: dict = {}

    @property
    def rows_dropped(self) -> int:
        return sum(self.drops_by_reason.values())


def load_table(path: str, table: str = "visits") -> pd.DataFrame:
    """
    Reads a raw table from DuckDB (``.duckdb``/``.db``) or CSV.
    """
    suffix = Path(path).suffix.lower()

    if suffix in (".duckdb", ".db"):
        logger.info(f"Connecting to {path}...")
        con = duckdb.connect(path, read_only=True)
        df = con.execute(f"SELECT * FROM {table}").df()
        con.close()
    elif suffix == ".csv":
        df = pd.read_csv(path, low_memory=False)
    else:
        raise ValueError(f"Unsupported input format '{suffix}' for {path} (expected .duckdb, .db or .csv)")

    logger.info(f"Loaded {len(df)} rows from {path}.")
    return df


def _drop_reason(error: ValidationError) -> str:
    # First failing field names the reason: "timestamp", "class_label", ...
    first = error.errors()[0]
    loc = first.get("loc") or ("record",)
    return f"invalid_{loc[0]}"


def validate_and_convert(df: pd.DataFrame) -> Tuple[List[Visit], IngestionReport]:
    """
    Converts a raw DataFrame into a list of strict Visit objects.

    Malformed rows (missing ids, unparseable timestamps, unknown class
    labels) are dropped with a warning and counted; they never stop the run.
    """
    raw_records = df.to_dict(orient="records")

    visits: List[Visit] = []
    drops: Counter = Counter()

    for i, record in enumerate(raw_records):
        try:
            visits.append(Visit(**record))
        except ValidationError as e:
            reason = _drop_reason(e)
            drops[reason] += 1
            if sum(drops.values()) <= MAX_LOGGED_DROPS:
                logger.warning(f"Dropping visit row {i} ({reason}): {e.errors()[0].get('msg')}")

    report = IngestionReport(
        rows_read=len(raw_records),
        rows_accepted=len(visits),
        drops_by_reason=dict(drops),
    )

    if report.rows_dropped:
        logger.warning(
            f"Dropped {report.rows_dropped} of {report.rows_read} visit rows: {report.drops_by_reason}"
        )
    logger.info(f"Successfully validated {len(visits)} visits.")

    return visits, report


def load_devices(df: pd.DataFrame) -> List[Device]:
    """
    Converts a device table into Device records.

    Device tables are reference data: an invalid row is a hard error,
    unlike visit rows.
    """
    devices = []
    seen = set()
    for record in df.to_dict(orient="records"):
        device = Device(**record)
        if device.device_id in seen:
            raise ValueError(f"Duplicate device_id in device table: {device.device_id}")
        seen.add(device.device_id)
        devices.append(device)
    return devices


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    DB_PATH = "data/synthetic_visits.csv"

    # 1. Load raw data
    df = load_table(DB_PATH, table="visits").head(1000)

    # 2. Validate
    visits, report = validate_and_convert(df)

    # 3. Prove it worked
    print(f"\nSample Visit 0:")
    print(visits[0])
    print(report)
