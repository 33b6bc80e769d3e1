from __future__ import annotations
from typing import Iterable, List

import numpy as np
import pandas as pd

from ..events import Event, EventType, PAGE_FIELD, UNKNOWN_FIELD, events_to_records
from ..reports import FieldMetric

COLUMNS = ["project_id", "session_id", "type", "field_name", "duration", "occurred_at"]
TYPES = [t.value for t in EventType]

METRIC_COLUMNS = [
    "field_name", "visits", "abandons", "abandonment_rate", "avg_duration",
    "focus_count", "blur_count", "input_count", "skip_rate", "hesitation_score",
]

# --- hesitation score ---
# tuning heuristic, not a fitted model: dwell saturates at 20s
DURATION_SATURATION_MS = 20_000.0
W_DWELL = 0.6
W_STALL = 0.4


def events_frame(events: Iterable[Event]) -> pd.DataFrame:
    df = pd.DataFrame(events_to_records(events), columns=COLUMNS)
    df["duration"] = pd.to_numeric(df["duration"], errors="coerce")
    names = df["field_name"].astype("object")
    named = names.notna() & (names.astype(str).str.strip() != "")
    df["field_name"] = names.where(named, UNKNOWN_FIELD)
    return df


def field_level(df: pd.DataFrame) -> pd.DataFrame:
    # submits and the page-level abandon describe the form, not a field
    form_level = (df["type"] == EventType.SUBMIT.value) | (
        (df["type"] == EventType.ABANDON.value) & (df["field_name"] == PAGE_FIELD))
    return df[~form_level]


def hesitation_score(avg_duration, visits, inputs) -> np.ndarray:
    """Blend of normalized dwell time and the share of visits that never produced input.

    Always within [0, 1] for any non-negative inputs (inf included).
    """
    avg = np.nan_to_num(np.asarray(avg_duration, dtype=float), nan=0.0, posinf=DURATION_SATURATION_MS)
    dwell = np.clip(avg / DURATION_SATURATION_MS, 0.0, 1.0)

    visits = np.asarray(visits, dtype=float)
    inputs = np.asarray(inputs, dtype=float)
    with np.errstate(invalid="ignore"):
        stall = np.where(visits > 0, 1.0 - inputs / np.maximum(visits, 1.0), 0.0)
    stall = np.clip(np.nan_to_num(stall, nan=0.0), 0.0, 1.0)

    return np.clip(W_DWELL * dwell + W_STALL * stall, 0.0, 1.0)


def compute_field_metrics(df: pd.DataFrame) -> pd.DataFrame:
    fe = field_level(df)
    if fe.empty:
        return pd.DataFrame(columns=METRIC_COLUMNS)

    counts = pd.crosstab(fe["field_name"], fe["type"]).reindex(columns=TYPES, fill_value=0)
    timed = fe.dropna(subset=["duration"])
    dur = (timed.groupby("field_name")["duration"].agg(["sum", "count"])
           .reindex(counts.index, fill_value=0))

    visits = counts[EventType.FOCUS.value].astype(int)
    abandons = counts[EventType.ABANDON.value].astype(int)
    blurs = counts[EventType.BLUR.value].astype(int)
    inputs = counts[EventType.INPUT.value].astype(int)

    out = pd.DataFrame(index=counts.index)
    out["visits"] = visits
    out["abandons"] = abandons
    # abandons can outnumber visits when deliveries duplicate; the rate stays a rate
    out["abandonment_rate"] = np.where(visits > 0, np.clip(abandons / np.maximum(visits, 1), 0.0, 1.0), 0.0)
    # divide only by events that actually carried a duration
    out["avg_duration"] = np.where(dur["count"] > 0, dur["sum"] / dur["count"].clip(lower=1), 0.0)
    out["focus_count"] = visits
    out["blur_count"] = blurs
    out["input_count"] = inputs
    skipped = (visits > 0) & (inputs == 0) & (blurs > 0)
    out["skip_rate"] = np.where(skipped, np.clip(blurs / np.maximum(visits, 1), 0.0, 1.0), 0.0)
    out["hesitation_score"] = hesitation_score(out["avg_duration"], visits, inputs)

    out = out.reset_index()
    out.columns.name = None
    out = out.sort_values(["abandonment_rate", "field_name"], ascending=[False, True], kind="mergesort")
    return out[METRIC_COLUMNS].reset_index(drop=True)


def to_field_metrics(table: pd.DataFrame) -> List[FieldMetric]:
    return [
        FieldMetric(
            field_name=str(row.field_name),
            visits=int(row.visits),
            abandons=int(row.abandons),
            abandonment_rate=round(float(row.abandonment_rate), 4),
            avg_duration=round(float(row.avg_duration)),
            focus_count=int(row.focus_count),
            blur_count=int(row.blur_count),
            input_count=int(row.input_count),
            skip_rate=round(float(row.skip_rate), 4),
            hesitation_score=round(float(row.hesitation_score), 4),
        )
        for row in table.itertuples(index=False)
    ]
