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

"""Turns raw registry study payloads into canonical protocol records.

All derived fields are computed here, deterministically, from the study
payload: eligibility criteria counts, endpoint counts, study duration,
therapeutic area (with indication and subtype where recognizable) and the
composite complexity score used later by the aggregator.
"""

import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timezone
from typing import Any

from pydantic import ValidationError

from .exceptions import ParseFailed
from .models import CanonicalRecord, Phase, TherapeuticArea
from .utils import get_nested, parse_partial_date, round_half_up

PROTOCOL_TYPE_CODES = frozenset({"Prot", "Prot_SAP", "Prot_ICF", "Prot_SAP_ICF"})

DAYS_PER_MONTH = 30.44
MAX_DURATION_MONTHS = 120
MAX_ENROLLMENT = 100000

_REGISTRY_PHASES = {
    "EARLY_PHASE1": Phase.EARLY_PHASE1,
    "PHASE1": Phase.PHASE1,
    "PHASE2": Phase.PHASE2,
    "PHASE3": Phase.PHASE3,
    "PHASE4": Phase.PHASE4,
    "NA": Phase.NOT_APPLICABLE,
}

_INCLUSION_HEADER = re.compile(r"\binclusion\b", re.IGNORECASE)
_EXCLUSION_HEADER = re.compile(r"\bexclusion\b", re.IGNORECASE)
_NUMBERED_ITEM = re.compile(r"^[ \t]*\d+\.\s", re.MULTILINE)
_BULLET_ITEM = re.compile(r"^[ \t]*[•\-*]\s", re.MULTILINE)

# Checked in order; the first area with a matching keyword wins.
AREA_KEYWORDS: tuple[tuple[TherapeuticArea, re.Pattern[str]], ...] = (
    (
        TherapeuticArea.ONCOLOGY,
        re.compile(
            r"cancer|tumou?r|oncolog|carcinoma|lymphoma|leuka?emia|melanoma|"
            r"sarcoma|glioma|myeloma|neoplasm|metastatic",
        ),
    ),
    (
        TherapeuticArea.CARDIOLOGY,
        re.compile(
            r"heart|cardiac|cardiovascular|myocardial|coronary|"
            r"atrial fibrillation|arrhythmia|hypertension|angina",
        ),
    ),
    (
        TherapeuticArea.NEUROLOGY,
        re.compile(
            r"neurolog|alzheimer|parkinson|stroke|epilep|multiple sclerosis|"
            r"migraine|dementia|seizure",
        ),
    ),
    (
        TherapeuticArea.ENDOCRINOLOGY,
        re.compile(r"diabet|thyroid|hormone|endocrin|insulin|obesity"),
    ),
    (
        TherapeuticArea.INFECTIOUS_DISEASE,
        re.compile(
            r"infection|infectious|antimicrobial|antibiotic|bacterial|viral|"
            r"virus|\bhiv\b|hepatitis|covid|influenza|vaccin|sepsis|tuberculosis",
        ),
    ),
    (
        TherapeuticArea.PSYCHIATRY,
        re.compile(
            r"depress|anxiety|psychiatr|\bmental\b|bipolar|schizophren|\bptsd\b",
        ),
    ),
)

INDICATION_PATTERNS: dict[TherapeuticArea, tuple[tuple[str, re.Pattern[str]], ...]] = {
    TherapeuticArea.ONCOLOGY: (
        ("lung_cancer", re.compile(r"lung.*(cancer|carcinoma)|\bnsclc\b|\bsclc\b|non-small cell")),
        ("breast_cancer", re.compile(r"breast.*(cancer|carcinoma|neoplasm)")),
        ("hematologic", re.compile(r"leuka?emia|lymphoma|myeloma|myelodysplastic|\baml\b")),
        ("prostate_cancer", re.compile(r"prostate.*(cancer|carcinoma)")),
        ("colorectal_cancer", re.compile(r"colorectal|colon.*cancer|rectal.*cancer")),
        ("melanoma", re.compile(r"melanoma")),
    ),
    TherapeuticArea.CARDIOLOGY: (
        ("heart_failure", re.compile(r"heart.*failure|cardiac.*failure")),
        ("atrial_fibrillation", re.compile(r"atrial fibrillation")),
        ("coronary_artery_disease", re.compile(r"coronary|myocardial infarction|angina")),
        ("hypertension", re.compile(r"hypertension")),
    ),
    TherapeuticArea.NEUROLOGY: (
        ("alzheimers_disease", re.compile(r"alzheimer")),
        ("parkinsons_disease", re.compile(r"parkinson")),
        ("multiple_sclerosis", re.compile(r"multiple sclerosis")),
        ("epilepsy", re.compile(r"epilep|seizure")),
        ("stroke", re.compile(r"stroke")),
        ("migraine", re.compile(r"migraine")),
    ),
    TherapeuticArea.ENDOCRINOLOGY: (
        ("diabetes", re.compile(r"diabet")),
        ("obesity", re.compile(r"obesity")),
        ("thyroid", re.compile(r"thyroid")),
    ),
    TherapeuticArea.INFECTIOUS_DISEASE: (
        ("bacterial_infections", re.compile(r"bacter|\bmrsa\b|staphylococc|pneumonia")),
        ("hiv", re.compile(r"\bhiv\b")),
        ("covid_19", re.compile(r"covid|sars-cov-2")),
        ("hepatitis", re.compile(r"hepatitis")),
        ("influenza", re.compile(r"influenza")),
    ),
    TherapeuticArea.PSYCHIATRY: (
        ("depression", re.compile(r"depress")),
        ("schizophrenia", re.compile(r"schizophren")),
        ("bipolar_disorder", re.compile(r"bipolar")),
        ("anxiety", re.compile(r"anxiety")),
    ),
}

SUBTYPE_PATTERNS: dict[str, tuple[tuple[str, re.Pattern[str]], ...]] = {
    "lung_cancer": (("nsclc_egfr", re.compile(r"\begfr\b")),),
    "breast_cancer": (
        ("her2_positive", re.compile(r"her2[\s-]*(positive|\+)|her2\+")),
        ("triple_negative", re.compile(r"triple[\s-]*negative|\btnbc\b")),
    ),
    "hematologic": (("aml", re.compile(r"acute myeloid|\baml\b")),),
    "heart_failure": (
        ("hfref", re.compile(r"\bhfref\b|reduced ejection fraction")),
        ("hfpef", re.compile(r"\bhfpef\b|preserved ejection fraction")),
    ),
    "atrial_fibrillation": (("rate_control", re.compile(r"rate control")),),
    "alzheimers_disease": (
        ("mild_cognitive_impairment", re.compile(r"mild cognitive impairment|\bmci\b")),
    ),
    "bacterial_infections": (("mrsa", re.compile(r"\bmrsa\b|methicillin-resistant")),),
    "diabetes": (
        ("type_2", re.compile(r"type 2|type ii\b|\bt2dm\b")),
        ("type_1", re.compile(r"type 1|type i\b|\bt1dm\b")),
    ),
}


def is_protocol_document(document: Mapping[str, Any]) -> bool:
    """Whether a registry document entry is a study protocol."""
    if document.get("hasProtocol") is True:
        return True
    if document.get("typeAbbrev") in PROTOCOL_TYPE_CODES:
        return True
    label = document.get("label")
    return isinstance(label, str) and "protocol" in label.lower()


def protocol_documents(study: Mapping[str, Any]) -> list[dict[str, Any]]:
    """All protocol-type document entries attached to a study."""
    documents = get_nested(study, "documentSection", "largeDocumentModule", "largeDocs")
    if not isinstance(documents, list):
        return []
    return [d for d in documents if isinstance(d, dict) and is_protocol_document(d)]


def has_document_section(study: Mapping[str, Any]) -> bool:
    return isinstance(get_nested(study, "documentSection"), dict)


def _count_items(section: str) -> int:
    numbered = len(_NUMBERED_ITEM.findall(section))
    bullets = len(_BULLET_ITEM.findall(section))
    return max(numbered, bullets, 1)


def count_eligibility_criteria(text: str | None) -> tuple[int, int]:
    """Counts inclusion and exclusion criteria in free-text eligibility.

    Each section starts at the first occurrence of its header word and runs
    to the other section's header, or to the end of the text. A section that
    exists but has no list markers counts as one criterion.
    """
    if not text:
        return 0, 0

    inclusion = _INCLUSION_HEADER.search(text)
    exclusion = _EXCLUSION_HEADER.search(text)

    inclusion_count = 0
    if inclusion:
        end = len(text)
        if exclusion and exclusion.start() > inclusion.start():
            end = exclusion.start()
        inclusion_count = _count_items(text[inclusion.start():end])

    exclusion_count = 0
    if exclusion:
        end = len(text)
        if inclusion and inclusion.start() > exclusion.start():
            end = inclusion.start()
        exclusion_count = _count_items(text[exclusion.start():end])

    return inclusion_count, exclusion_count


def duration_months(start: date | None, completion: date | None) -> int | None:
    """Study duration in whole months, or None when implausible."""
    if start is None or completion is None:
        return None
    months = (completion - start).days / DAYS_PER_MONTH
    if not 0 < months < MAX_DURATION_MONTHS:
        return None
    return round_half_up(months) or None


def normalize_enrollment(value: Any) -> int | None:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return None
    return count if 0 < count < MAX_ENROLLMENT else None


def normalize_phase(phases: Any) -> Phase:
    if not isinstance(phases, list) or not phases:
        return Phase.NOT_APPLICABLE
    return _REGISTRY_PHASES.get(str(phases[0]).upper(), Phase.NOT_APPLICABLE)


def _search_text(texts: Iterable[str | None]) -> str:
    return " ".join(t for t in texts if isinstance(t, str)).lower()


def infer_therapeutic_area(texts: Iterable[str | None]) -> TherapeuticArea:
    text = _search_text(texts)
    if not text:
        return TherapeuticArea.OTHER
    for area, pattern in AREA_KEYWORDS:
        if pattern.search(text):
            return area
    return TherapeuticArea.OTHER


def infer_indication(area: TherapeuticArea, texts: Iterable[str | None]) -> str | None:
    text = _search_text(texts)
    for indication, pattern in INDICATION_PATTERNS.get(area, ()):
        if pattern.search(text):
            return indication
    return None


def infer_subtype(indication: str | None, texts: Iterable[str | None]) -> str | None:
    if not indication:
        return None
    text = _search_text(texts)
    for subtype, pattern in SUBTYPE_PATTERNS.get(indication, ()):
        if pattern.search(text):
            return subtype
    return None


def complexity_score(
    inclusion_count: int,
    exclusion_count: int,
    primary_endpoints: int,
    secondary_endpoints: int,
    other_endpoints: int,
    is_randomized: bool,
    is_masked: bool,
    phase_count: int,
) -> int:
    """Weighted protocol complexity, clamped to [0, 100]."""
    score = 2 * (inclusion_count + exclusion_count)
    score += 10 * primary_endpoints + 5 * secondary_endpoints + 2 * other_endpoints
    if is_randomized:
        score += 10
    if is_masked:
        score += 15
    if phase_count > 1:
        score += 5 * phase_count
    return max(0, min(100, score))


def complexity_category(score: int) -> str:
    if score <= 25:
        return "Simple"
    if score <= 50:
        return "Moderate"
    if score <= 75:
        return "Complex"
    return "Highly Complex"


def _list_len(value: Any) -> int:
    return len(value) if isinstance(value, list) else 0


def _section(parent: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = parent.get(name)
    return value if isinstance(value, dict) else {}


def _strings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def normalize(
    raw_study: Any,
    raw_document: Any,
    collected_at: datetime | None = None,
) -> CanonicalRecord | None:
    """Maps one study payload and one of its documents to a record.

    Returns None when the study has no identifier or the document is not a
    protocol. Raises ParseFailed for malformed input.
    """
    if not isinstance(raw_study, Mapping) or not isinstance(raw_document, Mapping):
        msg = "Study and document payloads must be JSON objects"
        raise ParseFailed(msg)

    study_id = get_nested(raw_study, "protocolSection", "identificationModule", "nctId")
    if not study_id or not isinstance(study_id, str):
        return None
    if not is_protocol_document(raw_document):
        return None

    document_id = raw_document.get("filename") or raw_document.get("label")
    if not document_id:
        msg = f"Protocol document of {study_id} has neither filename nor label"
        raise ParseFailed(msg, study_id=study_id)

    protocol = raw_study["protocolSection"]
    identification = _section(protocol, "identificationModule")
    status = _section(protocol, "statusModule")
    design = _section(protocol, "designModule")
    eligibility = _section(protocol, "eligibilityModule")
    outcomes = _section(protocol, "outcomesModule")
    conditions_module = _section(protocol, "conditionsModule")

    conditions = _strings(conditions_module.get("conditions"))
    keywords = _strings(conditions_module.get("keywords"))
    titles = [identification.get("briefTitle"), identification.get("officialTitle")]
    criteria_text = eligibility.get("eligibilityCriteria")

    area = infer_therapeutic_area(conditions + keywords)
    if area is TherapeuticArea.OTHER:
        area = infer_therapeutic_area(titles)
    indication = infer_indication(area, conditions + keywords + titles)
    subtype = infer_subtype(indication, conditions + keywords + titles + [criteria_text])

    inclusion_count, exclusion_count = count_eligibility_criteria(
        criteria_text if isinstance(criteria_text, str) else None,
    )
    primary = _list_len(outcomes.get("primaryOutcomes"))
    secondary = _list_len(outcomes.get("secondaryOutcomes"))
    other = _list_len(outcomes.get("otherOutcomes"))

    phases = design.get("phases")
    phase_count = _list_len(phases)
    design_info = _section(design, "designInfo")
    masking = get_nested(design_info, "maskingInfo", "masking")
    is_randomized = design_info.get("allocation") == "RANDOMIZED"
    is_masked = isinstance(masking, str) and masking.upper() != "NONE"

    score = complexity_score(
        inclusion_count, exclusion_count, primary, secondary, other,
        is_randomized, is_masked, phase_count,
    )

    start = parse_partial_date(get_nested(status, "startDateStruct", "date"))
    completion = parse_partial_date(get_nested(status, "completionDateStruct", "date"))

    try:
        return CanonicalRecord(
            study_id=study_id,
            document_id=str(document_id),
            document_label=raw_document.get("label"),
            brief_title=identification.get("briefTitle"),
            phase=normalize_phase(phases),
            phase_count=phase_count,
            enrollment_count=normalize_enrollment(
                get_nested(design, "enrollmentInfo", "count"),
            ),
            therapeutic_area=area,
            indication=indication,
            subtype=subtype,
            conditions=tuple(conditions),
            start_date=start,
            completion_date=completion,
            duration_months=duration_months(start, completion),
            inclusion_criteria_count=inclusion_count,
            exclusion_criteria_count=exclusion_count,
            eligibility_criteria_count=inclusion_count + exclusion_count,
            primary_endpoint_count=primary,
            secondary_endpoint_count=secondary,
            other_endpoint_count=other,
            is_randomized=is_randomized,
            is_masked=is_masked,
            complexity_score=score,
            complexity_category=complexity_category(score),
            collected_at=collected_at or datetime.now(timezone.utc),
        )
    except (ValidationError, AttributeError, TypeError) as e:
        msg = f"Study {study_id} could not be normalized: {e}"
        raise ParseFailed(msg, study_id=study_id) from e
