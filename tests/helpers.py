import numpy as np
import pandas as pd

DAY0 = pd.Timestamp("2024-01-01")


def day(n: int) -> pd.Timestamp:
    return DAY0 + pd.Timedelta(days=n)


def record(user, category, event_type, count, first=0, last=10) -> dict:
    return {
        "user_id": user,
        "category": category,
        "event_type": event_type,
        "count": count,
        "first_activity_date": day(first),
        "last_activity_date": day(last),
    }


def simulated_labeled_rows(n: int = 600, seed: int = 7, horizon: int = 60) -> pd.DataFrame:
    """Labeled rows with two informative covariates and exponential lapse times."""
    rng = np.random.default_rng(seed)
    a = rng.poisson(3.0, size=n).astype(float)
    b = rng.poisson(1.5, size=n).astype(float)
    rate = 0.02 * np.exp(-0.3 * a + 0.2 * b)
    t = np.maximum(1, np.ceil(rng.exponential(1.0 / rate))).astype(int)
    lapsed = t <= horizon
    interval = np.where(lapsed, t, horizon + 1)
    first = pd.Series([DAY0] * n)
    last = first + pd.to_timedelta(np.where(lapsed, interval - 1, horizon), unit="D")
    return pd.DataFrame({
        "user_id": [f"u{i:04d}" for i in range(n)],
        "first_activity_date": first,
        "last_activity_date": last,
        "mall_pageview": a,
        "nearby_pageview": b,
        "lapsed": lapsed,
        "interval_length": interval.astype(int),
    })
