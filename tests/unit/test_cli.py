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

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from typer.testing import CliRunner

from factories import make_record
from py_load_ctgov.cli import app
from py_load_ctgov.exceptions import RegistryUnavailable
from py_load_ctgov.loader.json_store import JsonCorpusLoader
from py_load_ctgov.orchestrator import CollectionResult, RunState

pytestmark = pytest.mark.unit

runner = CliRunner()


def collection_result(records) -> CollectionResult:
    now = datetime.now(timezone.utc)
    return CollectionResult(
        state=RunState.TARGET_REACHED,
        records=records,
        records_target=len(records),
        pages_processed=1,
        studies_examined=len(records),
        started_at=now,
        finished_at=now,
    )


def test_collect_writes_records_and_dataset(tmp_path, mocker):
    """Tests that collect persists each record and the consolidated dataset."""
    records = [make_record(), make_record(study_id="NCT00000002")]
    mock_run = mocker.patch(
        "py_load_ctgov.cli.arun_collection", new=AsyncMock(return_value=collection_result(records)),
    )

    result = runner.invoke(
        app,
        ["collect", "--records-target", "2", "--strategy", "lexical", "--output-dir", str(tmp_path)],
    )

    assert result.exit_code == 0, result.output
    settings = mock_run.call_args[0][0]
    assert settings.records_target == 2
    assert settings.strategies == ["lexical"]

    assert len(list((tmp_path / "records").glob("*_protocol_data.json"))) == 2
    dataset = JsonCorpusLoader(tmp_path).read_dataset()
    assert dataset.metadata.total_records == 2
    assert dataset.metadata.run_state == "target_reached"
    assert dataset.metadata.extra["strategies"] == ["lexical"]


def test_collect_loads_postgres_when_dsn_given(tmp_path, mocker):
    """Tests that a DSN adds the PostgreSQL sink."""
    mocker.patch(
        "py_load_ctgov.cli.arun_collection",
        new=AsyncMock(return_value=collection_result([make_record()])),
    )
    mock_pg = mocker.patch("py_load_ctgov.cli.PostgresLoader")

    result = runner.invoke(
        app, ["collect", "--output-dir", str(tmp_path), "--db-dsn", "dbname=test"],
    )

    assert result.exit_code == 0, result.output
    mock_pg.assert_called_once_with("dbname=test", schema="ctgov")
    mock_pg.return_value.__enter__.return_value.write_dataset.assert_called_once()


def test_collect_propagates_fatal_errors(tmp_path, mocker):
    """Tests that an unreachable registry fails the command."""
    mocker.patch(
        "py_load_ctgov.cli.arun_collection",
        new=AsyncMock(side_effect=RegistryUnavailable("down")),
    )

    result = runner.invoke(app, ["collect", "--output-dir", str(tmp_path)])

    assert result.exit_code != 0
    assert isinstance(result.exception, RegistryUnavailable)
    assert not (tmp_path / "benchmark_dataset.json").exists()


def test_build_rebuilds_dataset_from_saved_records(tmp_path):
    """Tests that build re-reads record files and writes a fresh dataset."""
    with JsonCorpusLoader(tmp_path) as loader:
        loader.write_records([make_record(), make_record(study_id="NCT00000002")])

    result = runner.invoke(app, ["build", "--output-dir", str(tmp_path)])

    assert result.exit_code == 0, result.output
    dataset = JsonCorpusLoader(tmp_path).read_dataset()
    assert dataset.metadata.total_records == 2
    assert dataset.metadata.extra == {"rebuilt": True}
    assert dataset.benchmark_index.record_count == 2


def test_resolve_prints_fallback_benchmark(tmp_path):
    """Tests that resolve prints the resolved benchmark and its summary."""
    with JsonCorpusLoader(tmp_path) as loader:
        loader.write_records([make_record()])
    runner.invoke(app, ["build", "--output-dir", str(tmp_path)])

    result = runner.invoke(
        app, ["resolve", "Oncology", "--indication", "breast cancer", "--output-dir", str(tmp_path)],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["matchedSpecificity"] == "area_default"
    assert payload["sampleCount"] == 89
    assert payload["summary"] == "Based on broader oncology data"
