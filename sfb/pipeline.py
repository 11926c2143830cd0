"""
SFB Pipeline

Visit Store -> Co-presence layers (fan-out, one task per layer)
            -> Multi-layer aggregation (fan-in)
            -> SFB scores (+ device covariates)
            -> Nested outcome models + threshold detector (when an outcome exists)

Stateless between runs: everything comes from the inputs and the Settings
object, everything goes to the returned dict (and optionally DuckDB/CSV).
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Union

import duckdb
import pandas as pd

from sfb.config import Settings, settings, validate_settings
from sfb.errors import ModelFitFailure
from sfb.ingestion.batch_loader import load_devices, load_table
from sfb.ingestion.visit_store import VisitStore
from sfb.models.outcome import OutcomeSpec, fit_nested_models, simulate_mobility_outcome
from sfb.models.threshold import detect_threshold_frame
from sfb.network.aggregation import aggregate_layers
from sfb.network.copresence import build_all_layers, edge_counts_by_layer
from sfb.scoring.sfb_score import compute_sfb_scores, score_table, summarize_scores

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SCORE_TABLE = 'sfb_scores'


def configure_logging(config: Settings = None) -> None:
    if config is None:
        config = settings

    handlers = [logging.StreamHandler()]
    if config.LOG_FILE:
        Path(config.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.LOG_FILE))

    logging.basicConfig(level=config.LOG_LEVEL, format=LOG_FORMAT, handlers=handlers)


def save_scores(
    score_df: pd.DataFrame,
    db_path: Optional[str] = None,
    csv_path: Optional[str] = None,
    table: str = SCORE_TABLE,
) -> Dict[str, str]:
    """
    Persist the score table to DuckDB (replacing `table`) and/or CSV.

    Returns:
        {'duckdb': path, 'csv': path} for the targets actually written
    """
    written = {}

    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        con = duckdb.connect(db_path)
        try:
            con.register('score_df', score_df)
            con.execute(f"CREATE OR REPLACE TABLE {table} AS SELECT * FROM score_df")
            n = con.execute(f"SELECT count(*) FROM {table}").fetchone()[0]
        finally:
            con.close()
        logger.info(f"Saved {n} scores to {db_path}::{table}")
        written['duckdb'] = str(db_path)

    if csv_path:
        Path(csv_path).parent.mkdir(parents=True, exist_ok=True)
        score_df.to_csv(csv_path, index=False)
        logger.info(f"Saved {len(score_df)} scores to {csv_path}")
        written['csv'] = str(csv_path)

    return written


def _as_frame(source: Union[str, pd.DataFrame], table: str) -> pd.DataFrame:
    if isinstance(source, pd.DataFrame):
        return source
    return load_table(str(source), table=table)


def run_pipeline(
    visits: Union[str, pd.DataFrame],
    devices: Optional[Union[str, pd.DataFrame]] = None,
    config: Optional[Settings] = None,
    outcome_col: Optional[str] = None,
    outcome_spec: Optional[OutcomeSpec] = None,
    save: bool = False,
    verbose: bool = True,
) -> Dict:
    """
    Run the full SFB pipeline.

    Args:
        visits: Visit table (DataFrame, CSV path or DuckDB path with a `visits` table)
        devices: Optional device table; derived from the visits when omitted
        config: Settings (defaults to the global settings)
        outcome_col: Existing binary outcome column in the device table
        outcome_spec: Simulate the outcome instead (column 'mobile' unless outcome_col is given)
        save: Write the score table to OUTPUT_DB_PATH / OUTPUT_CSV_PATH
        verbose: Print step-by-step progress

    Returns:
        Dict with per-step sections plus 'score_table', 'model_report' and
        'threshold' objects (the last two are None without an outcome)

    Raises:
        InvalidConfiguration: Before any work, on a bad window or layer set
        ModelFitFailure: When an outcome model is degenerate
    """
    if config is None:
        config = settings

    # Fail fast: nothing runs on an invalid configuration
    validate_settings(config)

    results = {
        'timestamp': datetime.now().isoformat(),
        'config': config.model_dump(),
    }

    if verbose:
        print(f"\n{'='*70}")
        print(f"SPATIAL FUNCTIONAL BANDWIDTH PIPELINE")
        print(f"Layers: {', '.join(config.LAYERS)} (L={config.n_layers}) | W={config.PROXIMITY_WINDOW_MIN} min")
        print(f"{'='*70}\n")

    # ========================================================================
    # STEP 1: Ingest
    # ========================================================================
    if verbose:
        print(f"📂 STEP 1: Loading and validating visits...")

    visits_df = _as_frame(visits, table='visits')
    store = VisitStore.from_frame(visits_df, layers=config.LAYERS)

    if devices is not None:
        device_records = load_devices(_as_frame(devices, table='devices'))
        store.check_devices(device_records)
    else:
        device_records = store.derive_devices()

    report = store.report
    results['ingestion'] = report.model_dump()
    results['ingestion']['n_devices'] = len(device_records)

    if verbose:
        print(f"   ✅ {report.rows_accepted:,} of {report.rows_read:,} visits accepted")
        if report.rows_dropped:
            print(f"   ⚠️  Dropped: {report.drops_by_reason}")
        print(f"   Devices: {len(device_records):,}\n")

    # ========================================================================
    # STEP 2: Co-presence layers (parallel)
    # ========================================================================
    if verbose:
        print(f"🔗 STEP 2: Building co-presence layers...")

    layer_edges = build_all_layers(
        store,
        window_minutes=config.PROXIMITY_WINDOW_MIN,
        layers=config.LAYERS,
        max_workers=config.MAX_WORKERS,
    )
    edge_counts = edge_counts_by_layer(layer_edges)
    results['network'] = {
        'edges_by_layer': edge_counts.to_dict(orient='records'),
        'total_edges': int(edge_counts['n_edges'].sum()),
    }

    if verbose:
        for row in edge_counts.itertuples(index=False):
            print(f"   {row.layer:15s} {row.n_edges:>8,} edges  ({row.pct}%)")
        print()

    # ========================================================================
    # STEP 3: Aggregate + score
    # ========================================================================
    if verbose:
        print(f"📊 STEP 3: Aggregating layers and scoring...")

    dyads = aggregate_layers(layer_edges, config.LAYERS)
    scoring = compute_sfb_scores(dyads, config.n_layers, devices=device_records)
    score_df = score_table(scoring, devices=device_records)

    summary = summarize_scores(score_df, config.n_layers)
    results['network']['n_dyads'] = len(dyads)
    results['scoring'] = dict(summary, n_undefined=len(scoring.undefined))

    if verbose:
        print(f"   Devices with at least one cross-class contact: {summary['n_devices']:,}")
        print(f"   Undefined scores (no cross-class neighbor):    {len(scoring.undefined):,}")
        if summary['n_devices']:
            print(f"   Mean SFB: {summary['mean']:.3f}  (min {summary['min']:.3f}  max {summary['max']:.3f})")
            print(f"   Single-layer baseline (1/L): {summary['baseline']:.3f}")
        print()

    # ========================================================================
    # STEP 4: Outcome models (optional)
    # ========================================================================
    model_report = None
    threshold = None

    if outcome_spec is not None:
        outcome_col = outcome_col or 'mobile'
        if score_df.empty:
            raise ModelFitFailure('outcome', 'no device has a defined score')
        score_df = simulate_mobility_outcome(
            score_df, outcome_spec, seed=config.RANDOM_SEED, outcome_col=outcome_col
        )
    elif outcome_col is not None and outcome_col not in score_df.columns:
        raise ValueError(f"Outcome column '{outcome_col}' not found in the score table")

    if outcome_col is not None:
        if verbose:
            print(f"🤖 STEP 4: Fitting nested outcome models...")

        model_report = fit_nested_models(score_df, outcome_col=outcome_col, verbose=verbose)
        results['models'] = model_report.comparison_table().to_dict(orient='records')

        if verbose:
            print(f"🎯 STEP 5: Threshold detection...")

        threshold = detect_threshold_frame(
            score_df,
            outcome_col=outcome_col,
            n_quantiles=config.N_QUANTILES,
            grid_step=config.BREAKPOINT_GRID_STEP,
            trim=config.BREAKPOINT_TRIM,
            criterion=config.THRESHOLD_CRITERION,
            n_bootstrap=config.N_BOOTSTRAP,
            alpha=config.ALPHA,
            seed=config.RANDOM_SEED,
            verbose=verbose,
        )
        results['threshold'] = {
            'verdict': threshold.verdict,
            'breakpoint': threshold.breakpoint,
            'lr_statistic': threshold.lr_statistic,
            'p_value': threshold.p_value,
            'bin_pattern': threshold.bin_pattern,
        }

    # ========================================================================
    # STEP 6: Persist
    # ========================================================================
    results['artifacts'] = {}
    if save:
        results['artifacts'] = save_scores(score_df, config.OUTPUT_DB_PATH, config.OUTPUT_CSV_PATH)

    results['score_table'] = score_df
    results['model_report'] = model_report
    results['threshold_result'] = threshold

    if verbose:
        print(f"{'='*70}")
        print(f"🎉 PIPELINE COMPLETE")
        print(f"{'='*70}")
        print(f"  Scored devices: {summary['n_devices']:,}")
        if threshold is not None:
            print(f"  Threshold:      {threshold.describe()}")
        for target, path in results['artifacts'].items():
            print(f"  Saved ({target}): {path}")
        print(f"{'='*70}\n")

    return results


if __name__ == "__main__":
    configure_logging(settings)
    run_pipeline(settings.VISITS_PATH, settings.DEVICES_PATH, save=True)
