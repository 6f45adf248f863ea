#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
01_fit_and_generate_curves.py

Feature matrix -> Cox model -> synthetic-cohort survival curves.

  • Loads feature_matrix.csv written by 00_build_feature_matrix.py
  • Fits the proportional-hazards model on every retained covariate
  • Writes coefficients.csv (coef + hazard ratio) and baseline_survival.csv ("average user")
  • For each configured sweep, writes sweep_<covariate>.csv (one column per value)
  • Writes comparison.csv (each listed covariate moved 0 -> offset, others at mean)

Run:
  python scripts/01_fit_and_generate_curves.py --config config/config.yaml
"""

# ───────────────────────────────────────────────────────────
# Section 0 — Imports & paths
# ───────────────────────────────────────────────────────────
import os
import sys
import argparse
import logging
import pandas as pd

HERE = os.path.dirname(__file__)
REPO_ROOT = os.path.abspath(os.path.join(HERE, ".."))
sys.path.insert(0, os.path.join(REPO_ROOT, "scripts"))

from lapse_lib import (
    feature_columns,
    fit_hazard_model,
    hazard_ratio_table,
    baseline_survival_curve,
    value_sweep_curves,
    compare_covariate_curves,
    load_config,
    load_csv,
    save_csv,
)

# ───────────────────────────────────────────────────────────
# Section 1 — CLI parsing
# ───────────────────────────────────────────────────────────
def parse_args():
    ap = argparse.ArgumentParser(description="Fit the lapse hazard model and build synthetic-cohort curves.")
    ap.add_argument("--config",
                    default=os.path.join(REPO_ROOT, "config", "config.yaml"),
                    help="Path to config.yaml.")
    ap.add_argument("--matrix-path", default="",
                    help="Override the feature matrix path (defaults to <processed_dir>/feature_matrix.csv).")
    ap.add_argument("--penalizer", type=float, default=None,
                    help="Override model.penalizer.")
    ap.add_argument("--offset", type=float, default=None,
                    help="Override comparison.offset.")
    return ap.parse_args()

# ───────────────────────────────────────────────────────────
# Section 2 — Helpers
# ───────────────────────────────────────────────────────────
def flatten_columns(curves: pd.DataFrame) -> pd.DataFrame:
    """CSV-friendly column labels: (2.0, 'mall_pageview') -> 'mall_pageview+2.0'."""
    out = curves.copy()
    if isinstance(out.columns, pd.MultiIndex):
        out.columns = [f"{name}+{offset}" for offset, name in out.columns]
    else:
        prefix = out.columns.name or "value"
        out.columns = [f"{prefix}={v}" for v in out.columns]
    return out

# ───────────────────────────────────────────────────────────
# Section 3 — Main
# ───────────────────────────────────────────────────────────
def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = parse_args()
    cfg = load_config(args.config)
    paths = cfg.get("paths", {})
    model_cfg = cfg.get("model", {})
    sweeps = cfg.get("sweeps", []) or []
    comparison = cfg.get("comparison", {}) or {}

    processed_dir = os.path.join(REPO_ROOT, paths.get("processed_dir", "data/processed"))
    matrix_path = args.matrix_path or os.path.join(processed_dir, "feature_matrix.csv")
    penalizer = args.penalizer if args.penalizer is not None else float(model_cfg.get("penalizer", 0.0))

    # 1) Load matrix
    print(f"[i] Loading feature matrix: {matrix_path}")
    rows = load_csv(matrix_path, parse_dates=["first_activity_date", "last_activity_date"])
    if rows.empty:
        print(f"[warn] No feature matrix at {matrix_path}; run 00_build_feature_matrix.py first.")
        sys.exit(1)
    covariates = feature_columns(rows)
    print(f"[i] users={len(rows):,} covariates={len(covariates)}")

    # 2) Fit
    print(f"[i] Fitting Cox model (penalizer={penalizer}) ...")
    model = fit_hazard_model(rows, covariates, penalizer=penalizer)
    hr = hazard_ratio_table(model)
    out_coef = save_csv(hr, os.path.join(processed_dir, "coefficients.csv"))
    print(f"[save] coefficients -> {out_coef}")
    print(hr.to_string(index=False))

    # 3) Average-user curve
    base = baseline_survival_curve(model, rows)
    out_base = save_csv(base, os.path.join(processed_dir, "baseline_survival.csv"), index=True)
    print(f"[save] baseline_survival -> {out_base} (rows={len(base):,})")

    # 4) Value sweeps
    for sweep in sweeps:
        name = sweep["covariate"]
        values = sweep["values"]
        print(f"\n[i] Sweep {name} over {values}")
        curves = value_sweep_curves(model, rows, name, values)
        out_sweep = save_csv(flatten_columns(curves), os.path.join(processed_dir, f"sweep_{name}.csv"), index=True)
        print(f"[save] sweep -> {out_sweep}")

    # 5) Multi-covariate comparison
    if comparison.get("covariates"):
        offset = args.offset if args.offset is not None else float(comparison.get("offset", 1.0))
        print(f"\n[i] Comparing {comparison['covariates']} at offset={offset}")
        curves = compare_covariate_curves(model, rows, comparison["covariates"], offset)
        out_cmp = save_csv(flatten_columns(curves), os.path.join(processed_dir, "comparison.csv"), index=True)
        print(f"[save] comparison -> {out_cmp}")
    else:
        print("\n[i] No comparison.covariates configured; skipping comparison.csv.")

    print("\n[i] Fit + curve generation complete.\n")


if __name__ == "__main__":
    main()
