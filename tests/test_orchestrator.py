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

import asyncio

import pytest

from factories import make_study
from py_load_ctgov.exceptions import FetchFailed, RegistryUnavailable
from py_load_ctgov.extractor import RegistryPage
from py_load_ctgov.orchestrator import CollectionOrchestrator, RunState
from py_load_ctgov.strategies import ConditionSweep, LexicalSweep


class FakeFetcher:
    """Serves canned pages per query label; a page may be an exception to raise."""

    def __init__(self, pages, studies=None):
        self.pages = pages
        self.studies = studies or {}
        self.page_calls = []
        self.study_calls = []

    async def fetch_page(self, query, cursor=None):
        self.page_calls.append((query.value, cursor))
        index = cursor or 0
        page = self.pages[query.value][index]
        if isinstance(page, Exception):
            raise page
        has_more = index + 1 < len(self.pages[query.value])
        return RegistryPage(studies=page, next_cursor=index + 1 if has_more else None)

    async def fetch_study(self, study_id):
        self.study_calls.append(study_id)
        return self.studies[study_id]


def studies(*ids, **kwargs):
    return [make_study(nct_id=f"NCT{i:08d}", **kwargs) for i in ids]


def orchestrator(fetcher, conditions, records_target=100, **kwargs):
    kwargs.setdefault("batch_delay", 0)
    return CollectionOrchestrator(
        fetcher, [ConditionSweep(conditions)], records_target=records_target, **kwargs,
    )


@pytest.mark.asyncio
async def test_overlapping_queries_yield_unique_records():
    """Tests that studies seen by several queries are kept once and counted as duplicates."""
    fetcher = FakeFetcher(
        {
            "cancer": [studies(1, 2, 3), studies(4)],
            "tumor": [studies(2, 3, 5)],
        },
    )
    result = await orchestrator(fetcher, ["cancer", "tumor"], concurrency=2).run()

    keys = [r.key for r in result.records]
    assert len(keys) == len(set(keys)) == 5
    assert result.duplicates_skipped == 2
    assert result.state is RunState.STRATEGIES_EXHAUSTED
    assert result.pages_processed == 3
    assert result.studies_examined == 7


@pytest.mark.asyncio
async def test_studies_shared_across_strategies_are_kept_once():
    """Tests dedup across the boundary between two strategies."""
    pages = {chr(code): [[]] for code in range(ord("A"), ord("Z") + 1)}
    pages["cancer"] = [studies(1, 2, 3)]
    pages["oncology"] = [studies(2, 3, 4)]
    fetcher = FakeFetcher(pages)
    strategies = [ConditionSweep(["cancer"]), LexicalSweep(["oncology"])]

    result = await CollectionOrchestrator(
        fetcher, strategies, records_target=100, batch_delay=0,
    ).run()

    assert sorted(r.study_id for r in result.records) == [
        "NCT00000001", "NCT00000002", "NCT00000003", "NCT00000004",
    ]
    assert result.duplicates_skipped == 2
    assert result.state is RunState.STRATEGIES_EXHAUSTED
    assert fetcher.page_calls[0] == ("cancer", None)
    assert fetcher.page_calls[-1] == ("oncology", None)


@pytest.mark.asyncio
async def test_run_stops_mid_page_at_target():
    """Tests that the run stops inside a page with exactly the target collected."""
    fetcher = FakeFetcher(
        {"cancer": [studies(*range(10)), studies(10, 11)], "tumor": [studies(20)]},
    )
    result = await orchestrator(fetcher, ["cancer", "tumor"], records_target=3, concurrency=2).run()

    assert result.state is RunState.TARGET_REACHED
    assert result.records_collected == 3
    assert fetcher.page_calls == [("cancer", None)]
    # Two full groups of two were started; nothing beyond them.
    assert result.studies_examined == 4


@pytest.mark.asyncio
async def test_first_fetch_failure_is_fatal():
    """Tests that a registry failing on the first request aborts the run."""
    fetcher = FakeFetcher({"cancer": [FetchFailed("HTTP 503")]})
    with pytest.raises(RegistryUnavailable):
        await orchestrator(fetcher, ["cancer"]).run()


@pytest.mark.asyncio
async def test_later_page_failure_abandons_only_that_query():
    """Tests that a failed page is counted and the next query still runs."""
    fetcher = FakeFetcher(
        {
            "cancer": [studies(1, 2), FetchFailed("HTTP 500")],
            "tumor": [FetchFailed("timeout")],
            "diabetes": [studies(3)],
        },
    )
    result = await orchestrator(fetcher, ["cancer", "tumor", "diabetes"]).run()

    assert result.failed_pages == 2
    assert result.records_collected == 3
    assert result.state is RunState.STRATEGIES_EXHAUSTED


@pytest.mark.asyncio
async def test_unparseable_documents_are_skipped():
    """Tests that a malformed document is counted without affecting the others."""
    broken = make_study(nct_id="NCT99999999", documents=[{"typeAbbrev": "Prot"}])
    fetcher = FakeFetcher({"cancer": [[broken, *studies(1)]]})
    result = await orchestrator(fetcher, ["cancer"]).run()

    assert result.failed_studies == 1
    assert [r.study_id for r in result.records] == ["NCT00000001"]


@pytest.mark.asyncio
async def test_study_with_several_protocols_yields_several_records():
    """Tests that each protocol document of a study becomes its own record."""
    study = make_study(
        documents=[
            {"typeAbbrev": "Prot", "filename": "Prot_000.pdf"},
            {"typeAbbrev": "Prot_SAP", "filename": "Prot_SAP_001.pdf"},
            {"typeAbbrev": "ICF", "filename": "ICF_002.pdf"},
        ],
    )
    fetcher = FakeFetcher({"cancer": [[study]]})
    result = await orchestrator(fetcher, ["cancer"]).run()

    assert [r.document_id for r in result.records] == ["Prot_000.pdf", "Prot_SAP_001.pdf"]


@pytest.mark.asyncio
async def test_missing_document_section_is_fetched_when_enabled():
    """Tests the per-study metadata fetch for pages without document sections."""
    bare = make_study(nct_id="NCT00000007", with_documents=False)
    full = make_study(nct_id="NCT00000007")
    fetcher = FakeFetcher({"cancer": [[bare]]}, studies={"NCT00000007": full})

    result = await orchestrator(fetcher, ["cancer"], fetch_missing_documents=True).run()

    assert fetcher.study_calls == ["NCT00000007"]
    assert result.records_collected == 1


@pytest.mark.asyncio
async def test_missing_document_section_is_not_fetched_by_default():
    """Tests that no extra requests are made unless enabled."""
    bare = make_study(with_documents=False)
    fetcher = FakeFetcher({"cancer": [[bare]]})
    result = await orchestrator(fetcher, ["cancer"]).run()

    assert fetcher.study_calls == []
    assert result.records_collected == 0


@pytest.mark.asyncio
async def test_per_query_cap_stops_paging():
    """Tests that a query stops paging once its record cap is reached."""
    fetcher = FakeFetcher(
        {"cancer": [studies(1, 2), studies(3, 4)], "tumor": [studies(5)]},
    )
    result = await orchestrator(fetcher, ["cancer", "tumor"], max_records_per_query=2).run()

    assert ("cancer", 1) not in fetcher.page_calls
    assert result.records_collected == 3


@pytest.mark.asyncio
async def test_cancel_event_stops_the_run():
    """Tests that setting the cancel event ends the run in the cancelled state."""
    cancel = asyncio.Event()
    seen = []

    def on_progress(progress):
        seen.append(progress)
        cancel.set()

    fetcher = FakeFetcher({"cancer": [studies(1), studies(2)]})
    result = await orchestrator(
        fetcher, ["cancer"], progress_callback=on_progress, cancel_event=cancel,
    ).run()

    assert result.state is RunState.CANCELLED
    assert result.records_collected == 1
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_progress_reports_each_record_and_duplicate():
    """Tests the progress snapshots handed to the callback."""
    seen = []
    fetcher = FakeFetcher({"cancer": [studies(1, 1, 2)]})
    await orchestrator(fetcher, ["cancer"], concurrency=1, progress_callback=seen.append).run()

    assert [p.records_collected for p in seen] == [1, 1, 2]
    assert [p.duplicates_skipped for p in seen] == [0, 1, 1]
    assert {p.strategy_name for p in seen} == {"condition"}
    assert all(p.records_target == 100 for p in seen)


@pytest.mark.asyncio
async def test_orchestrator_runs_once():
    """Tests that a finished orchestrator cannot be rerun."""
    runner = orchestrator(FakeFetcher({"cancer": [studies(1)]}), ["cancer"])
    await runner.run()
    with pytest.raises(RuntimeError):
        await runner.run()


def test_invalid_arguments_are_rejected():
    """Tests constructor validation of target and concurrency."""
    with pytest.raises(ValueError):
        orchestrator(FakeFetcher({}), [], records_target=0)
    with pytest.raises(ValueError):
        orchestrator(FakeFetcher({}), [], concurrency=0)
