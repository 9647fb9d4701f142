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
"""Provides a rate-limited page fetcher for the ClinicalTrials.gov v2 API."""

import asyncio
import logging
from datetime import date
from enum import Enum
from typing import Any, NamedTuple, Union

import httpx
from pydantic import BaseModel, ConfigDict

from .config import Settings
from .exceptions import FetchFailed

logger = logging.getLogger(__name__)

# An opaque continuation token, or a 1-based page index for registries
# that paginate by index.
Cursor = Union[str, int]


class QueryKind(str, Enum):
    DATE_RANGE = "date_range"
    CONDITION = "condition"
    TERM = "term"
    PHASE = "phase"


class RegistryQuery(BaseModel):
    """One parameterization of a collection strategy."""

    model_config = ConfigDict(frozen=True)

    kind: QueryKind
    value: str
    start: date | None = None
    end: date | None = None

    @classmethod
    def date_range(cls, start: date, end: date) -> "RegistryQuery":
        return cls(
            kind=QueryKind.DATE_RANGE,
            value=f"{start.isoformat()},{end.isoformat()}",
            start=start,
            end=end,
        )

    @classmethod
    def condition(cls, term: str) -> "RegistryQuery":
        return cls(kind=QueryKind.CONDITION, value=term)

    @classmethod
    def term(cls, term: str) -> "RegistryQuery":
        return cls(kind=QueryKind.TERM, value=term)

    @classmethod
    def phase(cls, registry_phase: str) -> "RegistryQuery":
        return cls(kind=QueryKind.PHASE, value=registry_phase)

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.value}"

    def to_params(self) -> dict[str, str]:
        """Translate the query into registry search parameters."""
        if self.kind is QueryKind.DATE_RANGE:
            return {
                "filter.advanced": (
                    f"AREA[StudyFirstPostDate]RANGE[{self.start.isoformat()},"
                    f"{self.end.isoformat()}]"
                ),
            }
        if self.kind is QueryKind.CONDITION:
            return {"query.cond": self.value}
        if self.kind is QueryKind.TERM:
            return {"query.term": self.value}
        return {"filter.advanced": f"AREA[Phase]{self.value}"}


class RegistryPage(NamedTuple):
    studies: list[dict[str, Any]]
    next_cursor: Cursor | None


class CtgovFetcher:
    """Fetches pages of raw study payloads from ClinicalTrials.gov.

    Every call issues exactly one request after a fixed courtesy delay.
    There are no retries: a failed call raises ``FetchFailed`` and the
    caller decides what to abandon.
    """

    def __init__(
        self, settings: Settings, client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the fetcher with settings and an optional HTTP client."""
        self.settings = settings
        self.page_size = settings.page_size
        self.rate_limit_delay = settings.rate_limit_delay
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            headers={"User-Agent": settings.user_agent},
            follow_redirects=True,
            timeout=settings.request_timeout,
        )

    async def __aenter__(self) -> "CtgovFetcher":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        await asyncio.sleep(self.rate_limit_delay)
        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            msg = f"Registry returned HTTP {e.response.status_code}"
            raise FetchFailed(msg, url=url) from e
        except httpx.HTTPError as e:
            msg = f"Request to registry failed: {e!r}"
            raise FetchFailed(msg, url=url) from e

        try:
            return response.json()
        except ValueError as e:
            msg = "Registry returned a body that is not JSON"
            raise FetchFailed(msg, url=url) from e

    async def fetch_page(
        self, query: RegistryQuery, cursor: Cursor | None = None,
    ) -> RegistryPage:
        """Fetch a single page of search results for ``query``.

        A page that comes back exactly full is taken to mean more pages
        remain; the registry's total count is not consulted.
        """
        params: dict[str, Any] = {"format": "json", "pageSize": self.page_size}
        params.update(query.to_params())
        if isinstance(cursor, int):
            params["page"] = cursor
        elif cursor:
            params["pageToken"] = cursor

        url = self.settings.studies_url
        body = await self._get_json(url, params=params)
        if not isinstance(body, dict) or not isinstance(body.get("studies"), list):
            msg = f"Malformed search response for {query.label}"
            raise FetchFailed(msg, url=url)

        raw_studies = body["studies"]
        studies = [s for s in raw_studies if isinstance(s, dict)]
        next_cursor: Cursor | None = None
        if len(raw_studies) == self.page_size:
            token = body.get("nextPageToken")
            if token:
                next_cursor = token
            else:
                next_cursor = (cursor if isinstance(cursor, int) else 1) + 1

        logger.debug(
            "Fetched %d studies for %s (cursor=%r, next=%r)",
            len(studies), query.label, cursor, next_cursor,
        )
        return RegistryPage(studies=studies, next_cursor=next_cursor)

    async def fetch_study(self, study_id: str) -> dict[str, Any]:
        """Fetch the full record for a single study."""
        url = f"{self.settings.studies_url}/{study_id}"
        body = await self._get_json(url, params={"format": "json"})
        if not isinstance(body, dict):
            msg = f"Malformed study response for {study_id}"
            raise FetchFailed(msg, url=url)
        return body
