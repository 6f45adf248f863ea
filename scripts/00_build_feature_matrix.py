#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
00_build_feature_matrix.py

Event-count export -> model-ready feature matrix.

  • Loads the long (user, category, event_type, count, first/last activity) export
  • Pivots it to one row per user (missing combinations = 0)
  • Labels lapsed vs censored users and their observation interval (days)
  • Drops covariates that are zero for every user
  • Writes feature_matrix.csv and audit_trail.csv

Run:
  python scripts/00_build_feature_matrix.py \
      --config config/config.yaml \
      --analysis-end 2024-06-30 \
      --cutoff 2024-05-31
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
    AuditTracker,
    build_wide_features,
    label_censoring,
    filter_zero_features,
    resolve_cutoff_date,
    load_config,
    load_csv,
    save_csv,
)

# ───────────────────────────────────────────────────────────
# Section 1 — CLI parsing (flags override config.yaml)
# ───────────────────────────────────────────────────────────
def parse_args():
    ap = argparse.ArgumentParser(description="Build the lapse feature matrix from long event-count records.")
    ap.add_argument("--config",
                    default=os.path.join(REPO_ROOT, "config", "config.yaml"),
                    help="Path to config.yaml.")
    ap.add_argument("--records-path", default="",
                    help="Override paths.records (long event-count CSV).")
    ap.add_argument("--analysis-end", default="",
                    help="Override censoring.analysis_end_date (YYYY-MM-DD).")
    ap.add_argument("--cutoff", default="",
                    help="Override censoring.cutoff_date (YYYY-MM-DD).")
    ap.add_argument("--on-duplicate", default="",
                    choices=["", "raise", "mean", "sum"],
                    help="Override features.on_duplicate.")
    return ap.parse_args()

# ───────────────────────────────────────────────────────────
# Section 2 — Main
# ───────────────────────────────────────────────────────────
def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = parse_args()
    cfg = load_config(args.config)
    paths = cfg.get("paths", {})
    cens = cfg.get("censoring", {})
    feats = cfg.get("features", {})

    records_path = args.records_path or os.path.join(REPO_ROOT, paths.get("records", "data/event_counts.csv"))
    processed_dir = os.path.join(REPO_ROOT, paths.get("processed_dir", "data/processed"))
    analysis_end = pd.to_datetime(args.analysis_end or cens["analysis_end_date"])
    cutoff = resolve_cutoff_date(
        analysis_end,
        cutoff_date=args.cutoff or cens.get("cutoff_date"),
        lapse_window_months=cens.get("lapse_window_months"),
    )
    on_duplicate = args.on_duplicate or feats.get("on_duplicate", "raise")
    fill_value = feats.get("fill_value", 0)

    # 1) Load the long records
    print(f"[i] Loading records: {records_path}")
    records = load_csv(records_path, parse_dates=["first_activity_date", "last_activity_date"])
    if records.empty:
        print(f"[warn] No records found at {records_path}; nothing to build.")
        sys.exit(1)
    print(f"[i] rows={len(records):,} users={records['user_id'].nunique():,}")

    audit = AuditTracker()

    # 2) Long -> wide
    wide = build_wide_features(records, fill_value=fill_value, on_duplicate=on_duplicate, audit=audit)
    print(f"[i] Wide matrix: users={len(wide):,} columns={wide.shape[1]:,}")

    # 3) Censoring labels
    print(f"[i] Labeling (cutoff={cutoff.date()}, analysis_end={analysis_end.date()})")
    labeled = label_censoring(wide, cutoff_date=cutoff, analysis_end_date=analysis_end, audit=audit)
    print(f"[i] lapsed={int(labeled['lapsed'].sum()):,} censored={int((~labeled['lapsed']).sum()):,}")

    # 4) Drop all-zero covariates
    filtered, retained = filter_zero_features(labeled, audit=audit)
    if not retained:
        print("[warn] Every covariate was all-zero; the fit step will refuse this matrix.")
    print(f"[i] Retained covariates: {len(retained)}")

    out_matrix = save_csv(filtered, os.path.join(processed_dir, "feature_matrix.csv"))
    print(f"[save] feature_matrix -> {out_matrix} (rows={len(filtered):,})")

    out_audit = save_csv(audit.to_frame(), os.path.join(processed_dir, "audit_trail.csv"))
    print(f"[save] audit_trail -> {out_audit}")
    print(audit.to_frame().to_string(index=False))

    print("\n[i] Feature matrix build complete.\n")


if __name__ == "__main__":
    main()
