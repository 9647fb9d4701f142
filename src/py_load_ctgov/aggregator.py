# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Aggregates a protocol corpus into hierarchical benchmark statistics.

Every record contributes to each grouping level it qualifies for: the global
group, its phase, its therapeutic area, and, where known, its indication and
subtype within that area. A group is materialized only when it holds at
least the minimum sample size configured for its level.
"""

import logging
import math
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from .config import DEFAULT_MIN_GROUP_SIZES
from .models import (
    BenchmarkGroup,
    BenchmarkIndex,
    CanonicalRecord,
    CorpusDataset,
    DatasetMetadata,
    GroupLevel,
    MetricStatistics,
)
from .utils import count_by, round_half_up

logger = logging.getLogger(__name__)

GLOBAL_KEY = "all"


def _positive(value: Any) -> Any:
    return value if isinstance(value, (int, float)) and value > 0 else None


# Metric name -> extractor. Extractors return None for values that should
# not enter the distribution.
METRICS: dict[str, Callable[[CanonicalRecord], Any]] = {
    "enrollment": lambda r: r.enrollment_count,
    "duration": lambda r: r.duration_months,
    "eligibility_criteria_count": lambda r: _positive(r.eligibility_criteria_count),
    "endpoint_count": lambda r: _positive(r.endpoint_count),
    "complexity_score": lambda r: _positive(r.complexity_score),
}


def percentile(sorted_values: Sequence[float], p: float) -> int:
    """Linear-interpolation percentile of pre-sorted values, rounded half up."""
    if not sorted_values:
        return 0
    index = p / 100 * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return round_half_up(sorted_values[lower])
    weight = index - lower
    value = sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight
    return round_half_up(value)


def _is_usable(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def compute_statistics(values: Iterable[Any]) -> MetricStatistics:
    """Summarizes a sample; unusable values are discarded first.

    Every figure goes through the same half-up rounding, so the ordering
    ``min <= p25 <= median <= p75 <= p90 <= p95 <= max`` holds for float
    samples too.
    """
    data = sorted(v for v in values if _is_usable(v))
    if not data:
        return MetricStatistics()
    return MetricStatistics(
        count=len(data),
        min=round_half_up(data[0]),
        max=round_half_up(data[-1]),
        mean=round_half_up(sum(data) / len(data)),
        median=percentile(data, 50),
        p25=percentile(data, 25),
        p75=percentile(data, 75),
        p90=percentile(data, 90),
        p95=percentile(data, 95),
    )


def area_key(area: str) -> str:
    return f"area={area}"


def indication_key(area: str, indication: str) -> str:
    return f"{area_key(area)}.indication={indication}"


def subtype_key(area: str, indication: str, subtype: str) -> str:
    return f"{indication_key(area, indication)}.subtype={subtype}"


def phase_key(phase: str) -> str:
    return f"phase={phase}"


def group_keys(record: CanonicalRecord) -> list[tuple[str, GroupLevel]]:
    """Every group a record contributes to, coarsest first."""
    area = record.therapeutic_area.value
    keys = [
        (GLOBAL_KEY, GroupLevel.GLOBAL),
        (phase_key(record.phase.value), GroupLevel.PHASE),
        (area_key(area), GroupLevel.AREA),
    ]
    if record.indication:
        keys.append((indication_key(area, record.indication), GroupLevel.INDICATION))
        if record.subtype:
            keys.append(
                (subtype_key(area, record.indication, record.subtype), GroupLevel.SUBTYPE),
            )
    return keys


def build_group(
    group_key: str, level: GroupLevel, records: Sequence[CanonicalRecord],
) -> BenchmarkGroup:
    metrics: dict[str, MetricStatistics] = {}
    for name, extract in METRICS.items():
        try:
            metrics[name] = compute_statistics(extract(r) for r in records)
        except (TypeError, ValueError, OverflowError) as e:
            logger.warning("Metric %s of group %s degraded to zero: %s", name, group_key, e)
            metrics[name] = MetricStatistics()
    return BenchmarkGroup(
        group_key=group_key, level=level, sample_count=len(records), metrics=metrics,
    )


def build_index(
    corpus: Iterable[CanonicalRecord],
    min_group_sizes: Mapping[str, int] | None = None,
    built_at: datetime | None = None,
) -> BenchmarkIndex:
    """Builds a fresh benchmark index from a corpus.

    Args:
        corpus: The deduplicated records.
        min_group_sizes: Per-level minimum sample sizes; levels not given
            keep their defaults.
        built_at: Timestamp to stamp on the index; defaults to now.
    """
    thresholds = dict(DEFAULT_MIN_GROUP_SIZES)
    thresholds.update(min_group_sizes or {})

    members: dict[str, list[CanonicalRecord]] = defaultdict(list)
    levels: dict[str, GroupLevel] = {}
    record_count = 0
    for record in corpus:
        record_count += 1
        for key, level in group_keys(record):
            members[key].append(record)
            levels[key] = level

    groups: dict[str, BenchmarkGroup] = {}
    for key, records in members.items():
        level = levels[key]
        if len(records) < thresholds[level.value]:
            logger.debug(
                "Suppressing group %s: %d records below minimum %d",
                key, len(records), thresholds[level.value],
            )
            continue
        groups[key] = build_group(key, level, records)

    logger.info(
        "Built benchmark index with %d groups from %d records", len(groups), record_count,
    )
    return BenchmarkIndex(
        groups=groups,
        record_count=record_count,
        built_at=built_at or datetime.now(timezone.utc),
        min_group_sizes=thresholds,
    )


def build_metadata(
    records: Sequence[CanonicalRecord],
    run_state: str | None = None,
    collection_date: datetime | None = None,
    extra: Mapping[str, Any] | None = None,
) -> DatasetMetadata:
    """Provenance and distribution summary for a consolidated dataset."""
    return DatasetMetadata(
        collection_date=collection_date or datetime.now(timezone.utc),
        total_records=len(records),
        total_studies=len({r.study_id for r in records}),
        run_state=run_state,
        phase_distribution=count_by(r.phase.value for r in records),
        therapeutic_area_distribution=count_by(r.therapeutic_area.value for r in records),
        year_distribution=count_by(
            str(r.start_date.year) for r in records if r.start_date is not None
        ),
        extra=dict(extra or {}),
    )


def build_dataset(
    records: Sequence[CanonicalRecord],
    min_group_sizes: Mapping[str, int] | None = None,
    run_state: str | None = None,
    extra: Mapping[str, Any] | None = None,
) -> CorpusDataset:
    now = datetime.now(timezone.utc)
    return CorpusDataset(
        metadata=build_metadata(records, run_state=run_state, collection_date=now, extra=extra),
        records=list(records),
        benchmark_index=build_index(records, min_group_sizes, built_at=now),
    )
