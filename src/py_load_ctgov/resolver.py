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
"""Resolves the most specific available benchmark for a protocol selection."""

import logging
import re

from .aggregator import GLOBAL_KEY, area_key, indication_key, subtype_key
from .models import (
    BenchmarkGroup,
    BenchmarkIndex,
    GroupLevel,
    MetricStatistics,
    ResolvedBenchmark,
    Specificity,
)

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MONTHS = 24

# Aggregated per-area figures used when the index holds no group for an
# area: protocol count, median complexity and median sample size.
AREA_DEFAULTS: dict[str, dict[str, int]] = {
    "oncology": {"protocol_count": 89, "complexity": 68, "enrollment": 78},
    "cardiology": {"protocol_count": 67, "complexity": 52, "enrollment": 189},
    "neurology": {"protocol_count": 45, "complexity": 71, "enrollment": 134},
    "infectious_disease": {"protocol_count": 34, "complexity": 48, "enrollment": 96},
    "endocrinology": {"protocol_count": 78, "complexity": 53, "enrollment": 201},
    "psychiatry": {"protocol_count": 42, "complexity": 59, "enrollment": 167},
}

# Pooled over the six area defaults.
GLOBAL_DEFAULTS: dict[str, int] = {"protocol_count": 355, "complexity": 59, "enrollment": 144}

_NON_WORD = re.compile(r"[^\w]")


def normalize_key(value: str) -> str:
    return "_".join(value.strip().lower().split())


def normalize_subtype_key(value: str) -> str:
    """Normalizes free-form subtype names, e.g. 'HER2+' -> 'her2_positive'."""
    key = value.strip().lower().replace("+", "_positive").replace("-", "_negative")
    key = "_".join(key.split())
    return _NON_WORD.sub("", key)


def _constant_group(group_key: str, level: GroupLevel, figures: dict[str, int]) -> BenchmarkGroup:
    count = figures["protocol_count"]
    return BenchmarkGroup(
        group_key=group_key,
        level=level,
        sample_count=count,
        metrics={
            "enrollment": MetricStatistics.constant(figures["enrollment"], count),
            "duration": MetricStatistics.constant(DEFAULT_DURATION_MONTHS, count),
            "eligibility_criteria_count": MetricStatistics(),
            "endpoint_count": MetricStatistics(),
            "complexity_score": MetricStatistics.constant(figures["complexity"], count),
        },
    )


class BenchmarkResolver:
    """Answers benchmark lookups against one immutable index.

    Lookups walk from the most specific key to the least specific one and
    always produce an answer: subtype, indication, area, the area's fixed
    defaults, the index's global group and finally fixed global figures.
    """

    def __init__(self, index: BenchmarkIndex) -> None:
        self.index = index

    def resolve(
        self, area: str, indication: str | None = None, subtype: str | None = None,
    ) -> ResolvedBenchmark:
        area_name = normalize_key(area or "")

        candidates: list[tuple[str, Specificity]] = []
        if indication:
            indication_name = normalize_key(indication)
            if subtype:
                # Already snake-cased names such as 'triple_negative' are
                # tried verbatim as well.
                for subtype_name in dict.fromkeys(
                    (normalize_subtype_key(subtype), normalize_key(subtype)),
                ):
                    candidates.append(
                        (
                            subtype_key(area_name, indication_name, subtype_name),
                            Specificity.SUBTYPE,
                        ),
                    )
            candidates.append((indication_key(area_name, indication_name), Specificity.INDICATION))
        candidates.append((area_key(area_name), Specificity.AREA))

        for key, specificity in candidates:
            group = self.index.get(key)
            if group is not None:
                return self._resolved(group, specificity, area_name)
            logger.debug("No benchmark group for %s", key)

        if area_name in AREA_DEFAULTS:
            group = _constant_group(area_key(area_name), GroupLevel.AREA, AREA_DEFAULTS[area_name])
            return self._resolved(group, Specificity.AREA_DEFAULT, area_name)

        group = self.index.get(GLOBAL_KEY)
        if group is None:
            group = _constant_group(GLOBAL_KEY, GroupLevel.GLOBAL, GLOBAL_DEFAULTS)
        return self._resolved(group, Specificity.GLOBAL, area_name)

    @staticmethod
    def _resolved(
        group: BenchmarkGroup, specificity: Specificity, area_name: str,
    ) -> ResolvedBenchmark:
        return ResolvedBenchmark(
            group=group,
            matched_specificity=specificity,
            sample_count=group.sample_count,
            area=area_name,
        )
