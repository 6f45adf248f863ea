# ============================================================
# lapse_lib.py
# ============================================================
# Implementations for:
# - build_wide_features(records, fill_value, on_duplicate)
# - label_censoring(rows, cutoff_date, analysis_end_date)
# - filter_zero_features(rows)
# - fit_hazard_model(rows, covariates, penalizer)
# - baseline_survival_curve(model, rows)
# - value_sweep_curves(model, rows, covariate, values)
# - compare_covariate_curves(model, rows, covariates, offset)
#
# The numbered scripts import these.

from __future__ import annotations
import logging
import os
import pandas as pd
import numpy as np
import yaml
from dataclasses import dataclass, field
from dateutil.relativedelta import relativedelta
from typing import Dict, Optional, Iterable, Sequence, Tuple
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError

logger = logging.getLogger(__name__)

# -----------------------
# Project defaults
# -----------------------
RECORD_COLS = ["user_id", "category", "event_type", "count", "first_activity_date", "last_activity_date"]
META_COLS = ["user_id", "first_activity_date", "last_activity_date"]
LABEL_COLS = ["lapsed", "interval_length"]
DUPLICATE_POLICIES = {"raise", "mean", "sum"}


# -----------------------
# Errors
# -----------------------

class LapseModelError(Exception):
    """Base class for every pipeline failure raised by lapse_lib."""


class DuplicateKeyError(LapseModelError, KeyError):
    pass


class InvalidDateRangeError(LapseModelError, ValueError):
    pass


class CovariateMismatchError(LapseModelError, ValueError):
    pass


class SingularDesignError(LapseModelError, ValueError):
    pass


class DuplicateValueError(LapseModelError, ValueError):
    pass


class UnknownCovariateError(LapseModelError, KeyError):
    pass


class EmptyCovariateListError(LapseModelError, ValueError):
    pass


class EmptyValueListError(LapseModelError, ValueError):
    pass


# ------------------------------------------------------------
# Audit helpers: collect row/user counts at each pipeline stage
# ------------------------------------------------------------

@dataclass
class AuditEvent:
    # Human-friendly stage name, e.g. "PIVOT: long->wide"
    stage: str
    rows_before: int
    rows_after: int
    users_before: Optional[int] = None
    users_after: Optional[int] = None
    note: str = ""

@dataclass
class AuditTracker:
    events: list[AuditEvent] = field(default_factory=list)

    def add(self, stage: str, df_before: pd.DataFrame, df_after: pd.DataFrame, note: str = ""):
        users_before = df_before["user_id"].nunique() if "user_id" in df_before.columns else None
        users_after  = df_after["user_id"].nunique()  if "user_id" in df_after.columns  else None
        self.events.append(
            AuditEvent(stage=stage, rows_before=len(df_before), rows_after=len(df_after),
                       users_before=users_before, users_after=users_after, note=note)
        )

    def to_frame(self) -> pd.DataFrame:
        cols = ["stage","rows_before","rows_after","delta_rows","users_before","users_after","delta_users","note"]
        if not self.events:
            return pd.DataFrame(columns=cols)
        df = pd.DataFrame([e.__dict__ for e in self.events])
        df["delta_rows"]  = df["rows_after"] - df["rows_before"]
        df["delta_users"] = df["users_after"] - df["users_before"] if df["users_before"].notna().any() else np.nan
        return df[cols]


# -----------------------
# Utilities
# -----------------------

def load_config(path: str) -> dict:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_csv(path: str, parse_dates=None) -> pd.DataFrame:
    # Missing files come back as an empty frame so callers can report and stop.
    if os.path.exists(path):
        return pd.read_csv(path, parse_dates=parse_dates)
    return pd.DataFrame()


def save_csv(df: pd.DataFrame, path: str, index: bool = False) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    df.to_csv(path, index=index)
    return path


def feature_columns(frame: pd.DataFrame) -> list[str]:
    """Covariate columns of a feature frame, in frame order."""
    skip = set(META_COLS) | set(LABEL_COLS)
    return [c for c in frame.columns if c not in skip]


def covariate_name(category, event_type) -> str:
    return f"{category}_{event_type}"


def _to_naive(values) -> pd.Series:
    # Force tz-naive UTC so exported offsets compare against naive cutoffs.
    s = pd.to_datetime(values)
    if isinstance(s.dtype, pd.DatetimeTZDtype):
        s = s.dt.tz_convert("UTC").dt.tz_localize(None)
    return s


def _to_naive_stamp(value) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


def _to_day(values) -> pd.Series:
    # Only calendar days matter for interval lengths.
    return _to_naive(values).dt.normalize()


# ------------------------------------------------------------
# Long -> wide feature matrix
# ------------------------------------------------------------

def build_wide_features(
    records: pd.DataFrame,
    fill_value: float = 0,
    on_duplicate: str = "raise",
    audit: Optional[AuditTracker] = None,
    stage_label: str = "PIVOT: records->wide",
) -> pd.DataFrame:
    """
    Pivot long (user, category, event_type, count) records into one row per user.

    Two passes:
      1) discover the full (category, event_type) namespace across ALL records,
         in order of first appearance;
      2) materialise every user against that namespace, filling absent pairs
         with `fill_value`.

    Duplicate (user, category, event_type) rows raise DuplicateKeyError unless
    `on_duplicate` is "mean" (legacy averaging) or "sum".

    Output columns: ['user_id','first_activity_date','last_activity_date', <covariates...>]
    """
    if on_duplicate not in DUPLICATE_POLICIES:
        raise ValueError(f"[lapse_lib] on_duplicate must be one of {sorted(DUPLICATE_POLICIES)}, got {on_duplicate!r}")
    missing = [c for c in RECORD_COLS if c not in records.columns]
    if missing:
        raise KeyError(f"[lapse_lib] Event records are missing columns: {missing}")

    r = records[RECORD_COLS].copy()
    r["first_activity_date"] = _to_naive(r["first_activity_date"])
    r["last_activity_date"]  = _to_naive(r["last_activity_date"])

    no_user = r["user_id"].isna()
    if no_user.any():
        raise ValueError(f"[lapse_lib] {int(no_user.sum())} event records have no user_id")

    r["covariate"] = [covariate_name(c, e) for c, e in zip(r["category"], r["event_type"])]

    dup_mask = r.duplicated(subset=["user_id", "category", "event_type"], keep=False)
    if dup_mask.any() and on_duplicate == "raise":
        dups = r.loc[dup_mask, ["user_id", "category", "event_type"]].drop_duplicates()
        sample = [tuple(x) for x in dups.head(5).itertuples(index=False)]
        raise DuplicateKeyError(f"[lapse_lib] {len(dups)} duplicated (user, category, event_type) keys, e.g. {sample}")

    if r.empty:
        out = pd.DataFrame(columns=META_COLS)
        if audit is not None:
            audit.add(stage_label, records, out, note="no records")
        return out

    # Pass 1: namespace
    namespace = list(dict.fromkeys(r["covariate"]))
    pairs = r[["category", "event_type"]].drop_duplicates()
    if len(pairs) != len(namespace):
        raise DuplicateKeyError(
            f"[lapse_lib] Distinct (category, event_type) pairs collapse onto the same column name "
            f"({len(pairs)} pairs -> {len(namespace)} names)"
        )

    # Pass 2: fixed-schema rows
    counts = (
        r.groupby(["user_id", "covariate"])["count"]
         .agg("sum" if on_duplicate == "sum" else "mean")
         .unstack("covariate")
         .reindex(columns=namespace)
         .fillna(fill_value)
    )
    dates = r.groupby("user_id").agg(
        first_activity_date=("first_activity_date", "min"),
        last_activity_date=("last_activity_date", "max"),
    )
    out = dates.join(counts).reset_index()
    out.columns.name = None
    out = out[META_COLS + namespace].sort_values("user_id").reset_index(drop=True)

    if audit is not None:
        audit.add(stage_label, records, out,
                  note=f"covariates={len(namespace)}; on_duplicate={on_duplicate}; duplicates={int(dup_mask.sum())}")
    return out


# ------------------------------------------------------------
# Censoring labels and observation intervals
# ------------------------------------------------------------

def resolve_cutoff_date(
    analysis_end_date,
    cutoff_date=None,
    lapse_window_months: Optional[int] = None,
) -> pd.Timestamp:
    """Explicit cutoff wins; otherwise step back `lapse_window_months` from the analysis end."""
    if cutoff_date is not None:
        return pd.to_datetime(cutoff_date)
    if lapse_window_months is None:
        raise ValueError("[lapse_lib] Need either cutoff_date or lapse_window_months.")
    return pd.to_datetime(analysis_end_date) - relativedelta(months=int(lapse_window_months))


def label_censoring(
    rows: pd.DataFrame,
    cutoff_date,
    analysis_end_date,
    audit: Optional[AuditTracker] = None,
    stage_label: str = "LABEL: censoring",
) -> pd.DataFrame:
    """
    Add `lapsed` and `interval_length` (days) to each user row.

    - lapsed = last_activity_date < cutoff_date
    - lapsed users:   interval = last - first + 1
    - censored users: interval = analysis_end - first + 1

    Row order is preserved. Raises InvalidDateRangeError for cutoff > analysis end,
    missing activity dates, first > last, or any interval below one day.
    """
    cutoff = _to_naive_stamp(cutoff_date).normalize()
    end = _to_naive_stamp(analysis_end_date).normalize()
    if cutoff > end:
        raise InvalidDateRangeError(f"[lapse_lib] cutoff_date {cutoff.date()} is after analysis_end_date {end.date()}")

    d = rows.copy()
    first = _to_day(d["first_activity_date"])
    last  = _to_day(d["last_activity_date"])

    missing = first.isna() | last.isna()
    if missing.any():
        bad = d.loc[missing, "user_id"].tolist()
        raise InvalidDateRangeError(f"[lapse_lib] Missing first/last activity date for users {bad[:10]}")

    backwards = first > last
    if backwards.any():
        bad = d.loc[backwards, "user_id"].tolist()
        raise InvalidDateRangeError(f"[lapse_lib] first_activity_date after last_activity_date for users {bad[:10]}")

    lapsed = last < cutoff
    stop = last.where(lapsed, end)
    interval = (stop - first).dt.days + 1

    too_short = interval < 1
    if too_short.any():
        bad = d.loc[too_short, "user_id"].tolist()
        raise InvalidDateRangeError(f"[lapse_lib] interval_length < 1 for users {bad[:10]} (analysis end {end.date()})")

    d["lapsed"] = lapsed.astype(bool)
    d["interval_length"] = interval.astype(int)

    if audit is not None:
        audit.add(stage_label, rows, d,
                  note=f"cutoff={cutoff.date()}; end={end.date()}; lapsed={int(lapsed.sum())}; censored={int((~lapsed).sum())}")
    return d


# ------------------------------------------------------------
# Degenerate feature filter
# ------------------------------------------------------------

def filter_zero_features(
    rows: pd.DataFrame,
    audit: Optional[AuditTracker] = None,
    stage_label: str = "FILTER: all-zero covariates",
) -> Tuple[pd.DataFrame, list[str]]:
    """
    Drop covariates that are exactly zero for every row.
    Returns (filtered_rows, retained_covariates); retained keep their original order.
    """
    covariates = feature_columns(rows)
    if rows.empty:
        retained = []
    else:
        retained = [c for c in covariates if (rows[c] != 0).any()]
    dropped = [c for c in covariates if c not in retained]

    if not retained:
        logger.warning("No informative covariates remain (rows=%d, candidates=%d)", len(rows), len(covariates))

    out = rows.drop(columns=dropped)
    if audit is not None:
        audit.add(stage_label, rows, out, note=f"retained={len(retained)}; dropped={len(dropped)}")
    return out, retained


# ------------------------------------------------------------
# Proportional-hazards fit (lifelines adapter)
# ------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class FittedModel:
    coefficients: pd.Series
    baseline_survival: pd.DataFrame
    covariates: Tuple[str, ...]
    estimator: CoxPHFitter = field(repr=False, compare=False)

    def predict_survival(self, frame: pd.DataFrame) -> pd.DataFrame:
        """One survival curve per row of `frame`, all on the model's shared timeline."""
        X = frame.loc[:, list(self.covariates)].astype(float).reset_index(drop=True)
        curves = self.estimator.predict_survival_function(X)
        curves.index = curves.index.astype(float)
        curves.index.name = "time"
        return _with_origin(curves)


def _with_origin(curves: pd.DataFrame) -> pd.DataFrame:
    # S(0) = 1 by convention when the timeline does not already start at zero.
    if 0.0 in curves.index:
        return curves
    origin = pd.DataFrame(1.0, index=pd.Index([0.0], name=curves.index.name), columns=curves.columns)
    return pd.concat([origin, curves])


def fit_hazard_model(
    rows: pd.DataFrame,
    covariates: Sequence[str],
    penalizer: float = 0.0,
) -> FittedModel:
    """
    Fit a Cox model of `interval_length`/`lapsed` on exactly `covariates`.

    The covariate list must match the feature columns of `rows` one-for-one.
    Zero covariates, rank-deficient designs and non-converging fits raise
    SingularDesignError.
    """
    covariates = list(covariates)
    present = feature_columns(rows)
    if sorted(covariates) != sorted(present) or len(set(covariates)) != len(covariates):
        raise CovariateMismatchError(
            f"[lapse_lib] Covariates {covariates} do not match feature columns {present}"
        )
    missing_labels = [c for c in LABEL_COLS if c not in rows.columns]
    if missing_labels:
        raise KeyError(f"[lapse_lib] Rows are missing label columns {missing_labels}; run label_censoring first.")
    if not covariates:
        raise SingularDesignError("[lapse_lib] Cannot fit a hazard model on zero covariates.")

    X = rows[covariates].astype(float)
    centered = X.to_numpy() - X.to_numpy().mean(axis=0)
    rank = np.linalg.matrix_rank(centered) if len(X) > 0 else 0
    if rank < len(covariates):
        raise SingularDesignError(
            f"[lapse_lib] Design matrix is rank deficient (rank {rank} < {len(covariates)} covariates); "
            "check for constant or collinear covariates."
        )

    data = X.copy()
    data["interval_length"] = rows["interval_length"].astype(int)
    data["lapsed"] = rows["lapsed"].astype(bool)

    cph = CoxPHFitter(penalizer=penalizer)
    try:
        cph.fit(data, duration_col="interval_length", event_col="lapsed")
    except ConvergenceError as exc:
        raise SingularDesignError(f"[lapse_lib] Hazard model did not converge: {exc}") from exc

    baseline = cph.baseline_survival_.copy()
    baseline.columns = ["baseline_survival"]
    baseline.index = baseline.index.astype(float)
    baseline.index.name = "time"

    return FittedModel(
        coefficients=cph.params_.reindex(covariates).copy(),
        baseline_survival=baseline,
        covariates=tuple(covariates),
        estimator=cph,
    )


def hazard_ratio_table(model: FittedModel) -> pd.DataFrame:
    out = pd.DataFrame({
        "covariate": list(model.coefficients.index),
        "coef": model.coefficients.to_numpy(),
        "exp(coef)": np.exp(model.coefficients.to_numpy()),
    })
    return out.sort_values("exp(coef)", ascending=False).reset_index(drop=True)


# ------------------------------------------------------------
# Synthetic cohorts: hold everything else at the population mean
# ------------------------------------------------------------

def covariate_means(model: FittedModel, rows: pd.DataFrame) -> pd.Series:
    return rows.loc[:, list(model.covariates)].astype(float).mean()


def make_synthetic_row(means: pd.Series, overrides: Dict[str, float]) -> pd.Series:
    """Fresh covariate vector: the mean vector with `overrides` applied. `means` is left untouched."""
    row = means.copy()
    for name, value in overrides.items():
        row[name] = float(value)
    return row


def _require_covariates(model: FittedModel, names: Iterable[str]) -> None:
    unknown = [n for n in names if n not in model.covariates]
    if unknown:
        raise UnknownCovariateError(f"[lapse_lib] Unknown covariates {unknown}; model has {list(model.covariates)}")


def baseline_survival_curve(model: FittedModel, rows: pd.DataFrame) -> pd.DataFrame:
    """Survival of the synthetic 'average user' (every covariate at its sample mean)."""
    avg = make_synthetic_row(covariate_means(model, rows), {})
    curve = model.predict_survival(avg.to_frame().T)
    curve.columns = ["baseline"]
    return curve


def value_sweep_curves(
    model: FittedModel,
    rows: pd.DataFrame,
    covariate: str,
    values: Sequence[float],
) -> pd.DataFrame:
    """
    One curve per candidate value of `covariate`, everything else at its mean.
    Columns are the candidate values, in the order given.
    """
    values = list(values)
    if not values:
        raise EmptyValueListError("[lapse_lib] value_sweep_curves needs at least one candidate value.")
    if len(set(values)) != len(values):
        raise DuplicateValueError(f"[lapse_lib] Candidate values must be distinct: {values}")
    _require_covariates(model, [covariate])

    means = covariate_means(model, rows)
    synthetic = pd.DataFrame([make_synthetic_row(means, {covariate: v}) for v in values])

    curves = model.predict_survival(synthetic)
    curves.columns = pd.Index(values, name=covariate)
    return curves


def compare_covariate_curves(
    model: FittedModel,
    rows: pd.DataFrame,
    covariates: Sequence[str],
    offset: float,
) -> pd.DataFrame:
    """
    One curve per covariate: that covariate moved from 0 to `offset`,
    all others held at the population mean (not at zero).
    Columns are (offset, covariate) pairs.
    """
    covariates = list(covariates)
    if not covariates:
        raise EmptyCovariateListError("[lapse_lib] compare_covariate_curves needs at least one covariate.")
    _require_covariates(model, covariates)
    if len(set(covariates)) != len(covariates):
        raise DuplicateValueError(f"[lapse_lib] Covariates must be distinct: {covariates}")

    means = covariate_means(model, rows)
    # zero the target, then apply the offset
    synthetic = pd.DataFrame([make_synthetic_row(means, {name: 0.0 + offset}) for name in covariates])

    curves = model.predict_survival(synthetic)
    curves.columns = pd.MultiIndex.from_tuples(
        [(offset, name) for name in covariates], names=["offset", "covariate"]
    )
    return curves
