import pandas as pd
import numpy as np

from ..events import EventType
from ..reports import GlobalStats

BOUNCE_MAX_EVENTS = 2  # a session with this few events never really engaged


def session_table(df: pd.DataFrame) -> pd.DataFrame:
    """One row per sessionId: event count, summed durations, completed/abandoned flags."""
    if df.empty:
        return pd.DataFrame(columns=["events", "duration_ms", "completed", "abandoned"])
    g = df.groupby("session_id", sort=True)
    out = pd.DataFrame({
        "events": g.size(),
        "duration_ms": g["duration"].sum(min_count=1).fillna(0.0),
        "completed": g["type"].agg(lambda s: bool((s == EventType.SUBMIT.value).any())),
        "abandoned": g["type"].agg(lambda s: bool((s == EventType.ABANDON.value).any())),
    })
    return out


def global_stats(df: pd.DataFrame, window_days: int = 7) -> GlobalStats:
    if df.empty:
        return GlobalStats(window_days=window_days)

    sess = session_table(df)
    n = len(sess)
    completed = int(sess["completed"].sum())
    bounced = int((sess["events"] <= BOUNCE_MAX_EVENTS).sum())

    return GlobalStats(
        total_events=int(len(df)),
        unique_sessions=n,
        submits=int((df["type"] == EventType.SUBMIT.value).sum()),
        abandons=int((df["type"] == EventType.ABANDON.value).sum()),
        window_days=window_days,
        avg_session_duration=round(float(np.mean(sess["duration_ms"])), 1),
        completion_rate=round(completed / max(n, 1) * 100.0, 1),
        bounce_rate=round(bounced / max(n, 1) * 100.0, 1),
    )
