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
"""Defines the Pydantic data models for the application."""

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Records travel as camelCase JSON, the shape the downstream scorers read.
_WIRE_CONFIG = ConfigDict(
    frozen=True,
    populate_by_name=True,
    alias_generator=to_camel,
)


class Phase(str, Enum):
    PHASE1 = "Phase1"
    PHASE2 = "Phase2"
    PHASE3 = "Phase3"
    PHASE4 = "Phase4"
    EARLY_PHASE1 = "EarlyPhase1"
    NOT_APPLICABLE = "NotApplicable"


class TherapeuticArea(str, Enum):
    ONCOLOGY = "oncology"
    CARDIOLOGY = "cardiology"
    NEUROLOGY = "neurology"
    ENDOCRINOLOGY = "endocrinology"
    INFECTIOUS_DISEASE = "infectious_disease"
    PSYCHIATRY = "psychiatry"
    OTHER = "other"


class GroupLevel(str, Enum):
    """Grouping levels of the knowledge base, coarsest first."""

    GLOBAL = "global"
    PHASE = "phase"
    AREA = "area"
    INDICATION = "indication"
    SUBTYPE = "subtype"


class Specificity(str, Enum):
    """Which lookup step produced a resolved benchmark."""

    SUBTYPE = "subtype"
    INDICATION = "indication"
    AREA = "area"
    AREA_DEFAULT = "area_default"
    GLOBAL = "global"


class CanonicalRecord(BaseModel):
    """One protocol document belonging to one registry study.

    Created once by the normalizer and never mutated afterwards. The pair
    ``(study_id, document_id)`` identifies the record inside a corpus.
    """

    model_config = _WIRE_CONFIG

    study_id: str = Field(..., min_length=1, description="Registry identifier (NCT number).")
    document_id: str = Field(..., min_length=1, description="Document filename, unique within a study.")
    document_label: str | None = None
    brief_title: str | None = None

    phase: Phase = Phase.NOT_APPLICABLE
    phase_count: int = Field(default=0, ge=0)
    enrollment_count: int | None = Field(default=None, gt=0, lt=100000)

    therapeutic_area: TherapeuticArea = TherapeuticArea.OTHER
    indication: str | None = None
    subtype: str | None = None
    conditions: tuple[str, ...] = ()

    start_date: date | None = None
    completion_date: date | None = None
    duration_months: int | None = Field(default=None, gt=0, le=120)

    inclusion_criteria_count: int = Field(default=0, ge=0)
    exclusion_criteria_count: int = Field(default=0, ge=0)
    eligibility_criteria_count: int = Field(default=0, ge=0)
    primary_endpoint_count: int = Field(default=0, ge=0)
    secondary_endpoint_count: int = Field(default=0, ge=0)
    other_endpoint_count: int = Field(default=0, ge=0)

    is_randomized: bool = False
    is_masked: bool = False
    complexity_score: int = Field(default=0, ge=0, le=100)
    complexity_category: str = "Simple"

    collected_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.study_id, self.document_id)

    @property
    def endpoint_count(self) -> int:
        return self.primary_endpoint_count + self.secondary_endpoint_count


class CollectionProgress(BaseModel):
    """Snapshot handed to the progress callback during a run."""

    model_config = ConfigDict(frozen=True)

    strategy_name: str
    pages_processed: int = 0
    records_collected: int = 0
    records_target: int
    duplicates_skipped: int = 0


class MetricStatistics(BaseModel):
    """Distribution summary of one metric inside one group."""

    model_config = ConfigDict(frozen=True)

    count: int = 0
    min: float = 0
    max: float = 0
    mean: float = 0
    median: float = 0
    p25: float = 0
    p75: float = 0
    p90: float = 0
    p95: float = 0

    @classmethod
    def constant(cls, value: float, count: int) -> "MetricStatistics":
        """A degenerate distribution where every statistic equals ``value``."""
        return cls(
            count=count, min=value, max=value, mean=value, median=value,
            p25=value, p75=value, p90=value, p95=value,
        )


class BenchmarkGroup(BaseModel):
    """Statistics for one aggregation key."""

    model_config = _WIRE_CONFIG

    group_key: str
    level: GroupLevel
    sample_count: int = Field(..., ge=0)
    metrics: dict[str, MetricStatistics] = Field(default_factory=dict)

    def metric(self, name: str) -> MetricStatistics:
        """Statistics for ``name``, zeroed when the metric was not tracked."""
        return self.metrics.get(name) or MetricStatistics()


class BenchmarkIndex(BaseModel):
    """All materialized groups of one aggregator run.

    Treated as read-only once built; a rebuild produces a new index.
    """

    model_config = _WIRE_CONFIG

    groups: dict[str, BenchmarkGroup] = Field(default_factory=dict)
    record_count: int = 0
    built_at: datetime
    min_group_sizes: dict[str, int] = Field(default_factory=dict)

    def get(self, group_key: str) -> BenchmarkGroup | None:
        return self.groups.get(group_key)

    def __contains__(self, group_key: object) -> bool:
        return group_key in self.groups


class ResolvedBenchmark(BaseModel):
    """Answer of the resolver, annotated with the specificity that produced it."""

    model_config = _WIRE_CONFIG

    group: BenchmarkGroup
    matched_specificity: Specificity
    sample_count: int
    area: str

    @property
    def is_fallback(self) -> bool:
        return self.matched_specificity in (Specificity.AREA_DEFAULT, Specificity.GLOBAL)

    @property
    def summary(self) -> str:
        if self.is_fallback:
            scope = self.area.replace("_", " ") if self.area else "therapeutic area"
            return f"Based on broader {scope} data"
        return f"Based on {self.sample_count} similar protocols"


class DatasetMetadata(BaseModel):
    """Provenance block of the consolidated dataset file."""

    model_config = _WIRE_CONFIG

    collection_date: datetime
    data_source: str = "ClinicalTrials.gov API v2"
    methodology: str = "Multi-strategy sweep of studies with protocol documents"
    total_records: int = 0
    total_studies: int = 0
    run_state: str | None = None
    phase_distribution: dict[str, int] = Field(default_factory=dict)
    therapeutic_area_distribution: dict[str, int] = Field(default_factory=dict)
    year_distribution: dict[str, int] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)


class CorpusDataset(BaseModel):
    """The consolidated dataset: metadata, records and the benchmark index."""

    model_config = _WIRE_CONFIG

    metadata: DatasetMetadata
    records: list[CanonicalRecord] = Field(default_factory=list)
    benchmark_index: BenchmarkIndex
