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
"""Collection strategies: complementary ways of querying the registry."""

import abc
from collections.abc import Iterator, Sequence
from datetime import date

from .config import Settings
from .extractor import RegistryQuery

DEFAULT_CONDITIONS: tuple[str, ...] = (
    "cancer", "diabetes", "hypertension", "depression", "asthma", "COPD",
    "heart failure", "stroke", "alzheimer", "parkinson", "epilepsy",
    "migraine", "arthritis", "osteoporosis", "kidney disease",
    "liver disease", "obesity", "HIV", "hepatitis", "pneumonia",
    "influenza", "COVID-19", "vaccine", "immunotherapy", "chemotherapy",
    "radiation", "surgery", "anesthesia", "pain", "addiction", "anxiety",
    "bipolar", "schizophrenia", "autism", "ADHD", "dementia",
    "multiple sclerosis", "ALS", "muscular dystrophy", "cystic fibrosis",
    "sickle cell", "hemophilia", "leukemia", "lymphoma", "melanoma",
    "breast cancer", "lung cancer", "prostate cancer", "colon cancer",
    "brain tumor", "thyroid", "pregnancy", "fertility", "contraception",
    "menopause", "osteoarthritis", "rheumatoid arthritis", "lupus",
    "psoriasis", "eczema", "acne", "wound healing", "burns", "trauma",
    "sepsis", "shock", "arrhythmia", "angina", "myocardial infarction",
    "atrial fibrillation", "heart valve", "aneurysm", "thrombosis",
    "embolism",
)

DOMAIN_TERMS: tuple[str, ...] = (
    "treatment", "therapy", "drug", "intervention", "prevention",
    "screening", "biomarker", "genetic", "molecular", "cellular", "tissue",
    "organ", "system", "function", "structure", "development", "aging",
    "regeneration",
)

REGISTRY_PHASES: tuple[str, ...] = (
    "EARLY_PHASE1", "PHASE1", "PHASE2", "PHASE3", "PHASE4", "NA",
)


class CollectionStrategy(abc.ABC):
    """An ordered, finite sequence of registry queries."""

    name: str

    @abc.abstractmethod
    def queries(self) -> Iterator[RegistryQuery]:
        raise NotImplementedError


class TemporalSweep(CollectionStrategy):
    """One query per calendar year of first posting, most recent first."""

    name = "temporal"

    def __init__(self, start_year: int, end_year: int) -> None:
        if start_year > end_year:
            msg = f"start_year {start_year} is after end_year {end_year}"
            raise ValueError(msg)
        self.start_year = start_year
        self.end_year = end_year

    def queries(self) -> Iterator[RegistryQuery]:
        for year in range(self.end_year, self.start_year - 1, -1):
            yield RegistryQuery.date_range(date(year, 1, 1), date(year, 12, 31))


class ConditionSweep(CollectionStrategy):
    name = "condition"

    def __init__(self, conditions: Sequence[str] = DEFAULT_CONDITIONS) -> None:
        self.conditions = tuple(conditions)

    def queries(self) -> Iterator[RegistryQuery]:
        for condition in self.conditions:
            yield RegistryQuery.condition(condition)


class LexicalSweep(CollectionStrategy):
    """Single letters A to Z, then broad domain terms."""

    name = "lexical"

    def __init__(self, extra_terms: Sequence[str] = DOMAIN_TERMS) -> None:
        letters = [chr(code) for code in range(ord("A"), ord("Z") + 1)]
        self.terms = tuple(letters) + tuple(extra_terms)

    def queries(self) -> Iterator[RegistryQuery]:
        for term in self.terms:
            yield RegistryQuery.term(term)


class PhaseSweep(CollectionStrategy):
    name = "phase"

    def __init__(self, phases: Sequence[str] = REGISTRY_PHASES) -> None:
        self.phases = tuple(phases)

    def queries(self) -> Iterator[RegistryQuery]:
        for phase in self.phases:
            yield RegistryQuery.phase(phase)


def build_strategies(settings: Settings) -> list[CollectionStrategy]:
    """Instantiates the configured strategies in their configured order."""
    factories = {
        "temporal": lambda: TemporalSweep(settings.start_year, settings.end_year),
        "condition": ConditionSweep,
        "lexical": LexicalSweep,
        "phase": PhaseSweep,
    }
    return [factories[name]() for name in settings.strategies]
