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

from datetime import date

import httpx
import pytest
from pytest_httpx import HTTPXMock

from py_load_ctgov.config import Settings
from py_load_ctgov.exceptions import FetchFailed
from py_load_ctgov.extractor import CtgovFetcher, RegistryQuery

STUDIES_URL = "https://clinicaltrials.gov/api/v2/studies"

STUDY_1 = {"protocolSection": {"identificationModule": {"nctId": "NCT00000001"}}}
STUDY_2 = {"protocolSection": {"identificationModule": {"nctId": "NCT00000002"}}}


def fetcher_with(settings: Settings, handler) -> CtgovFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CtgovFetcher(settings, client=client)


@pytest.mark.asyncio
async def test_fetch_page_full_page_uses_next_page_token(settings: Settings):
    """Tests request parameters and token pagination on a full page."""
    requests = []

    def handler(request: httpx.Request):
        requests.append(request)
        return httpx.Response(200, json={"studies": [STUDY_1, STUDY_2], "nextPageToken": "tok-2"})

    fetcher = fetcher_with(settings, handler)
    page = await fetcher.fetch_page(RegistryQuery.condition("asthma"))

    assert len(page.studies) == 2
    assert page.next_cursor == "tok-2"
    params = requests[0].url.params
    assert str(requests[0].url).startswith(STUDIES_URL)
    assert params["format"] == "json"
    assert params["pageSize"] == "2"
    assert params["query.cond"] == "asthma"
    assert "pageToken" not in params


@pytest.mark.asyncio
async def test_fetch_page_sends_cursor(settings: Settings):
    """Tests that opaque and integer cursors map to their parameters."""
    requests = []

    def handler(request: httpx.Request):
        requests.append(request)
        return httpx.Response(200, json={"studies": [STUDY_1, STUDY_2]})

    fetcher = fetcher_with(settings, handler)
    token_page = await fetcher.fetch_page(RegistryQuery.term("A"), "tok-2")
    index_page = await fetcher.fetch_page(RegistryQuery.term("A"), 2)

    assert requests[0].url.params["pageToken"] == "tok-2"
    assert requests[1].url.params["page"] == "2"
    assert requests[1].url.params["query.term"] == "A"
    # Full pages without a token continue by page index.
    assert token_page.next_cursor == 2
    assert index_page.next_cursor == 3


@pytest.mark.asyncio
async def test_fetch_page_partial_page_is_last(settings: Settings):
    """Tests that a page shorter than the page size ends the query."""
    fetcher = fetcher_with(
        settings,
        lambda request: httpx.Response(200, json={"studies": [STUDY_1], "nextPageToken": "x"}),
    )
    page = await fetcher.fetch_page(RegistryQuery.condition("asthma"))

    assert page.next_cursor is None


@pytest.mark.asyncio
async def test_fetch_page_date_range_filter(settings: Settings):
    """Tests the first-post date range filter of temporal queries."""
    requests = []

    def handler(request: httpx.Request):
        requests.append(request)
        return httpx.Response(200, json={"studies": []})

    fetcher = fetcher_with(settings, handler)
    query = RegistryQuery.date_range(date(2023, 1, 1), date(2023, 12, 31))
    page = await fetcher.fetch_page(query)

    assert page.studies == []
    assert requests[0].url.params["filter.advanced"] == (
        "AREA[StudyFirstPostDate]RANGE[2023-01-01,2023-12-31]"
    )


@pytest.mark.asyncio
async def test_fetch_page_http_error(settings: Settings, httpx_mock: HTTPXMock):
    """Tests that a non-2xx response raises FetchFailed."""
    httpx_mock.add_response(status_code=503)

    async with CtgovFetcher(settings) as fetcher:
        with pytest.raises(FetchFailed, match="HTTP 503") as excinfo:
            await fetcher.fetch_page(RegistryQuery.condition("asthma"))

    assert excinfo.value.url == STUDIES_URL


@pytest.mark.asyncio
async def test_fetch_page_transport_error(settings: Settings, httpx_mock: HTTPXMock):
    """Tests that timeouts and connection errors raise FetchFailed."""
    httpx_mock.add_exception(httpx.ReadTimeout("timed out"))

    async with CtgovFetcher(settings) as fetcher:
        with pytest.raises(FetchFailed):
            await fetcher.fetch_page(RegistryQuery.condition("asthma"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json={"totalCount": 0}),
        httpx.Response(200, json=[1, 2, 3]),
    ],
)
async def test_fetch_page_malformed_body(settings: Settings, response):
    """Tests that non-JSON bodies and bodies without a studies list are rejected."""
    fetcher = fetcher_with(settings, lambda request: response)
    with pytest.raises(FetchFailed):
        await fetcher.fetch_page(RegistryQuery.condition("asthma"))


@pytest.mark.asyncio
async def test_fetch_page_drops_non_object_studies(settings: Settings):
    """Tests that junk entries are dropped but still count towards page fullness."""
    fetcher = fetcher_with(
        settings, lambda request: httpx.Response(200, json={"studies": [STUDY_1, "junk"]}),
    )
    page = await fetcher.fetch_page(RegistryQuery.condition("asthma"))

    assert page.studies == [STUDY_1]
    assert page.next_cursor == 2


@pytest.mark.asyncio
async def test_fetch_study(settings: Settings, httpx_mock: HTTPXMock):
    """Tests the single-study lookup."""
    httpx_mock.add_response(url=f"{STUDIES_URL}/NCT00000001?format=json", json=STUDY_1)

    async with CtgovFetcher(settings) as fetcher:
        study = await fetcher.fetch_study("NCT00000001")

    assert study == STUDY_1


@pytest.mark.asyncio
async def test_owned_client_is_closed(settings: Settings):
    """Tests that the fetcher closes only the client it created."""
    async with CtgovFetcher(settings) as fetcher:
        owned = fetcher.client
    assert owned.is_closed

    external = httpx.AsyncClient()
    async with CtgovFetcher(settings, client=external):
        pass
    assert not external.is_closed
    await external.aclose()
