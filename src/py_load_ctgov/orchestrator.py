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
"""Drives collection strategies over the fetcher into a deduplicated corpus.

The orchestrator runs one strategy at a time and, inside a page, fans the
page's studies out into fixed-size concurrency groups. Each group is joined
before the next starts, and the inter-batch delay is applied at that join.
All corpus state is mutated only from ``_accept``, under a single lock.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from .config import Settings
from .exceptions import FetchFailed, ParseFailed, RegistryUnavailable
from .extractor import CtgovFetcher, RegistryQuery
from .models import CanonicalRecord, CollectionProgress
from .normalizer import has_document_section, normalize, protocol_documents
from .strategies import CollectionStrategy
from .utils import chunked, get_nested

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[CollectionProgress], None]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TARGET_REACHED = "target_reached"
    STRATEGIES_EXHAUSTED = "strategies_exhausted"
    CANCELLED = "cancelled"


class CollectionResult(BaseModel):
    """Outcome of one orchestrator run."""

    model_config = ConfigDict(frozen=True)

    state: RunState
    records: list[CanonicalRecord]
    records_target: int
    pages_processed: int = 0
    studies_examined: int = 0
    duplicates_skipped: int = 0
    failed_pages: int = 0
    failed_studies: int = 0
    started_at: datetime
    finished_at: datetime

    @property
    def records_collected(self) -> int:
        return len(self.records)


class CollectionOrchestrator:
    """Builds a corpus of unique protocol records from ordered strategies."""

    def __init__(
        self,
        fetcher: CtgovFetcher,
        strategies: Sequence[CollectionStrategy],
        records_target: int,
        concurrency: int = 15,
        batch_delay: float = 0.1,
        max_records_per_query: int | None = None,
        fetch_missing_documents: bool = False,
        progress_callback: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if records_target < 1:
            raise ValueError("records_target must be at least 1")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.fetcher = fetcher
        self.strategies = list(strategies)
        self.records_target = records_target
        self.concurrency = concurrency
        self.batch_delay = batch_delay
        self.max_records_per_query = max_records_per_query
        self.fetch_missing_documents = fetch_missing_documents
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event

        self.state = RunState.IDLE
        self.records: list[CanonicalRecord] = []
        self._seen: set[tuple[str, str]] = set()
        self._lock = asyncio.Lock()
        self._strategy_name = ""
        self._first_fetch_done = False

        self.pages_processed = 0
        self.studies_examined = 0
        self.duplicates_skipped = 0
        self.failed_pages = 0
        self.failed_studies = 0

    @classmethod
    def from_settings(
        cls,
        fetcher: CtgovFetcher,
        strategies: Sequence[CollectionStrategy],
        settings: Settings,
        **kwargs: Any,
    ) -> "CollectionOrchestrator":
        return cls(
            fetcher,
            strategies,
            records_target=settings.records_target,
            concurrency=settings.concurrency,
            batch_delay=settings.batch_delay,
            max_records_per_query=settings.max_records_per_query,
            fetch_missing_documents=settings.fetch_missing_documents,
            **kwargs,
        )

    @property
    def records_collected(self) -> int:
        return len(self.records)

    def _stopped(self) -> bool:
        if self.state is RunState.RUNNING and self.cancel_event and self.cancel_event.is_set():
            logger.info("Collection cancelled with %d records", len(self.records))
            self.state = RunState.CANCELLED
        return self.state in (RunState.TARGET_REACHED, RunState.CANCELLED)

    async def run(self) -> CollectionResult:
        """Runs every strategy in order until the target is reached.

        Raises:
            RegistryUnavailable: If the very first page fetch of the run fails.
        """
        if self.state is not RunState.IDLE:
            raise RuntimeError("An orchestrator can only be run once")

        started_at = datetime.now(timezone.utc)
        self.state = RunState.RUNNING
        logger.info(
            "Starting collection: target=%d, strategies=%s",
            self.records_target, [s.name for s in self.strategies],
        )

        for strategy in self.strategies:
            if self._stopped():
                break
            self._strategy_name = strategy.name
            logger.info("Running strategy '%s'", strategy.name)
            for query in strategy.queries():
                if self._stopped():
                    break
                await self._collect_query(query)
            logger.info(
                "Strategy '%s' finished with %d records collected",
                strategy.name, len(self.records),
            )

        if self.state is RunState.RUNNING:
            self.state = RunState.STRATEGIES_EXHAUSTED

        logger.info(
            "Collection finished in state %s: %d records, %d duplicates, "
            "%d failed pages, %d failed studies",
            self.state.value, len(self.records), self.duplicates_skipped,
            self.failed_pages, self.failed_studies,
        )
        return CollectionResult(
            state=self.state,
            records=list(self.records),
            records_target=self.records_target,
            pages_processed=self.pages_processed,
            studies_examined=self.studies_examined,
            duplicates_skipped=self.duplicates_skipped,
            failed_pages=self.failed_pages,
            failed_studies=self.failed_studies,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    async def _collect_query(self, query: RegistryQuery) -> None:
        cursor = None
        collected = 0
        while not self._stopped():
            try:
                page = await self.fetcher.fetch_page(query, cursor)
            except FetchFailed as e:
                if not self._first_fetch_done:
                    msg = f"Registry unreachable on first request: {e}"
                    raise RegistryUnavailable(msg) from e
                self.failed_pages += 1
                logger.warning("Abandoning query %s: %s", query.label, e)
                return
            self._first_fetch_done = True
            self.pages_processed += 1

            collected += await self._process_page(page.studies)

            if self.max_records_per_query and collected >= self.max_records_per_query:
                logger.info(
                    "Query %s reached its cap of %d records",
                    query.label, self.max_records_per_query,
                )
                return
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    async def _process_page(self, studies: list[dict[str, Any]]) -> int:
        """Processes a page group by group; returns the records accepted."""
        before = len(self.records)
        for group in chunked(studies, self.concurrency):
            if self._stopped():
                break
            await asyncio.gather(*(self._process_study(study) for study in group))
            if self._stopped():
                break
            await asyncio.sleep(self.batch_delay)
        return len(self.records) - before

    async def _process_study(self, study: dict[str, Any]) -> None:
        self.studies_examined += 1
        study_id = get_nested(study, "protocolSection", "identificationModule", "nctId")

        if self.fetch_missing_documents and study_id and not has_document_section(study):
            try:
                study = await self.fetcher.fetch_study(study_id)
            except FetchFailed as e:
                self.failed_studies += 1
                logger.warning("Skipping study %s: %s", study_id, e)
                return

        collected_at = datetime.now(timezone.utc)
        for document in protocol_documents(study):
            try:
                record = normalize(study, document, collected_at=collected_at)
            except ParseFailed as e:
                self.failed_studies += 1
                logger.warning("Skipping document of study %s: %s", study_id, e)
                continue
            if record is not None:
                await self._accept(record)

    async def _accept(self, record: CanonicalRecord) -> bool:
        async with self._lock:
            if self._stopped():
                return False
            if record.key in self._seen:
                self.duplicates_skipped += 1
                self._report_progress()
                return False

            self._seen.add(record.key)
            self.records.append(record)
            self._report_progress()
            if len(self.records) >= self.records_target:
                logger.info("Reached target of %d records", self.records_target)
                self.state = RunState.TARGET_REACHED
            return True

    def _report_progress(self) -> None:
        if self.progress_callback is None:
            return
        self.progress_callback(
            CollectionProgress(
                strategy_name=self._strategy_name,
                pages_processed=self.pages_processed,
                records_collected=len(self.records),
                records_target=self.records_target,
                duplicates_skipped=self.duplicates_skipped,
            ),
        )
