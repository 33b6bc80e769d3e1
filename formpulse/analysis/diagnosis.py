"""
Rule-based diagnosis over aggregated field metrics.

All rules are evaluated independently and every qualifying rule contributes tips,
in this presentation order:
  1. killer field       worst abandonment among fields with enough traffic
  2. high hesitation    average focus time above HESITATION_THRESHOLD_MS
  3. silently skipped   looked at (focus + blur) but never typed into
  4. no conversions     abandons recorded, zero submits
  5. all clear          nothing above fired

Messages come from fixed templates so the same metrics always read the same.
"""
from __future__ import annotations
import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

import pandas as pd

from ..events import utcnow
from ..reports import FieldMetric, GlobalStats, InsightReport, KillerField, Tip
from ..store import EventStore
from ..workers.metrics import compute_field_metrics, events_frame, to_field_metrics
from ..workers.sessionize import global_stats

logger = logging.getLogger(__name__)

# Arbitrary tuning choices, not derived from traffic; calibrate before
# relying on them for product decisions.
MIN_FIELD_VISITS = 5
HESITATION_THRESHOLD_MS = 10_000

SEVERITY_CUTS = ((0.5, "critical"), (0.3, "high"), (0.15, "medium"))

KILLER_TEMPLATE = ('{pct}% of visitors who reach "{field}" abandon the form there. '
                   'Make it optional, add inline help, or split it into smaller steps.')
HESITATION_TEMPLATE = ('Visitors spend {secs}s on average on "{field}". '
                       'Simplify this field or show an example of the expected format.')
SKIPPED_TEMPLATE = ('Users look at "{field}" but don\'t fill it in ({visits} visits, no input). '
                    'Check whether it is needed, or explain why you ask for it.')
NO_CONVERSIONS_TEMPLATE = ('{abandons} abandon events and no submits in the last {days} days. '
                           'Check your submit flow: the button, validation errors, and the confirmation step.')
ALL_CLEAR_TEMPLATE = 'No blockers detected across {sessions} sessions in the last {days} days. Keep it up!'


def percent(rate: float) -> int:
    # half-up, so 0.125 reads as 13%
    return int(math.floor(rate * 100.0 + 0.5))


def seconds(ms: float) -> int:
    return int(math.floor(ms / 1000.0 + 0.5))


def severity(rate: float) -> str:
    for cut, label in SEVERITY_CUTS:
        if rate > cut:
            return label
    return "low"


def select_killer_field(table: pd.DataFrame) -> Optional[KillerField]:
    """Highest abandonment rate among fields with >= MIN_FIELD_VISITS visits.

    Ties go to the alphabetically first field name. None only when no field
    has enough traffic.
    """
    if table.empty:
        return None
    eligible = table[table["visits"] >= MIN_FIELD_VISITS]
    if eligible.empty:
        return None
    best = eligible.sort_values(["abandonment_rate", "field_name"],
                                ascending=[False, True], kind="mergesort").iloc[0]
    rate = float(best["abandonment_rate"])
    return KillerField(
        field_name=str(best["field_name"]),
        visits=int(best["visits"]),
        abandons=int(best["abandons"]),
        abandonment_rate=round(rate, 4),
        severity=severity(rate),
    )


def generate_tips(metrics: List[FieldMetric], stats: GlobalStats,
                  killer: Optional[KillerField] = None) -> List[Tip]:
    tips: List[Tip] = []

    if killer is not None:
        tips.append(Tip(
            rule="killer_field", field_name=killer.field_name, priority="high",
            message=KILLER_TEMPLATE.format(pct=percent(killer.abandonment_rate), field=killer.field_name),
        ))

    slow = sorted((m for m in metrics if m.avg_duration > HESITATION_THRESHOLD_MS),
                  key=lambda m: (-m.avg_duration, m.field_name))
    for m in slow:
        tips.append(Tip(
            rule="high_hesitation", field_name=m.field_name, priority="medium",
            message=HESITATION_TEMPLATE.format(secs=seconds(m.avg_duration), field=m.field_name),
        ))

    skipped = sorted((m for m in metrics
                      if m.visits >= MIN_FIELD_VISITS and m.input_count == 0 and m.blur_count >= 1),
                     key=lambda m: (-m.visits, m.field_name))
    for m in skipped:
        tips.append(Tip(
            rule="silently_skipped", field_name=m.field_name, priority="medium",
            message=SKIPPED_TEMPLATE.format(field=m.field_name, visits=m.visits),
        ))

    if stats.submits == 0 and stats.abandons > 0:
        tips.append(Tip(
            rule="no_conversions", priority="high",
            message=NO_CONVERSIONS_TEMPLATE.format(abandons=stats.abandons, days=stats.window_days),
        ))

    if not tips:
        tips.append(Tip(
            rule="all_clear", priority="low",
            message=ALL_CLEAR_TEMPLATE.format(sessions=stats.unique_sessions, days=stats.window_days),
        ))
    return tips


def build_report(store: EventStore, project_id: str, window_days: int = 7,
                 now: Optional[datetime] = None) -> InsightReport:
    """Read the window from the store and diagnose it.

    Store failures propagate (StoreUnavailable) so callers never mistake an
    outage for an empty project.
    """
    now = now or utcnow()
    since = now - timedelta(days=window_days)
    events = store.select(project_id, since)
    logger.info("insights for %s: %d events since %s", project_id, len(events), since.isoformat())

    df = events_frame(events)
    table = compute_field_metrics(df)
    metrics = to_field_metrics(table)
    stats = global_stats(df, window_days=window_days)
    killer = select_killer_field(table)

    return InsightReport(
        killer_field=killer,
        tips=generate_tips(metrics, stats, killer),
        stats=stats,
        field_metrics=metrics,
    )
