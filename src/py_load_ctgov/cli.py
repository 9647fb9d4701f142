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
"""Command-line entry points for collecting, rebuilding and querying benchmarks."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import typer

from .aggregator import build_dataset
from .config import Settings, build_settings
from .extractor import CtgovFetcher
from .loader import JsonCorpusLoader, PostgresLoader
from .models import CollectionProgress, CorpusDataset
from .orchestrator import CollectionOrchestrator, CollectionResult
from .resolver import BenchmarkResolver
from .strategies import build_strategies

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 100

app = typer.Typer(help="Harvest ClinicalTrials.gov protocols and build benchmarks.")


def _log_progress(progress: CollectionProgress) -> None:
    if progress.records_collected and progress.records_collected % PROGRESS_LOG_EVERY == 0:
        logger.info(
            "[%s] %d/%d records after %d pages (%d duplicates skipped)",
            progress.strategy_name, progress.records_collected, progress.records_target,
            progress.pages_processed, progress.duplicates_skipped,
        )


async def arun_collection(settings: Settings) -> CollectionResult:
    """Runs the configured strategies against the registry."""
    async with CtgovFetcher(settings) as fetcher:
        orchestrator = CollectionOrchestrator.from_settings(
            fetcher,
            build_strategies(settings),
            settings,
            progress_callback=_log_progress,
        )
        return await orchestrator.run()


def _persist(settings: Settings, dataset: CorpusDataset) -> None:
    with JsonCorpusLoader(settings.output_dir) as loader:
        loader.write_records(dataset.records)
        loader.write_dataset(dataset)

    if settings.db_dsn:
        logger.info("Loading dataset into PostgreSQL schema %s", settings.db_schema)
        with PostgresLoader(settings.db_dsn, schema=settings.db_schema) as pg_loader:
            pg_loader.write_dataset(dataset)


@app.command()
def collect(
    config_file: str = typer.Option(None, help="Path to YAML config file."),
    records_target: int = typer.Option(None, help="Stop once this many records are collected."),
    strategies: list[str] = typer.Option(
        None, "--strategy", help="Strategy to run, in order. Repeatable.",
    ),
    output_dir: Path = typer.Option(None, help="Directory for the JSON corpus."),
    db_dsn: str = typer.Option(None, help="Also load the dataset into this PostgreSQL DSN."),
) -> None:
    """Collect protocol records and build the benchmark dataset."""
    start_time = datetime.now(timezone.utc)
    settings = build_settings(
        config_file,
        records_target=records_target,
        strategies=strategies or None,
        output_dir=output_dir,
        db_dsn=db_dsn,
    )

    try:
        result = asyncio.run(arun_collection(settings))
        dataset = build_dataset(
            result.records,
            settings.min_group_sizes,
            run_state=result.state.value,
            extra={
                "strategies": settings.strategies,
                "recordsTarget": result.records_target,
                "pagesProcessed": result.pages_processed,
                "studiesExamined": result.studies_examined,
                "duplicatesSkipped": result.duplicates_skipped,
                "failedPages": result.failed_pages,
                "failedStudies": result.failed_studies,
            },
        )
        _persist(settings, dataset)
    except Exception as e:
        logger.error("Collection failed: %s", e, exc_info=True)
        raise
    finally:
        logger.info("Collection run finished in %s.", datetime.now(timezone.utc) - start_time)

    logger.info(
        "Collected %d records from %d studies; %d benchmark groups built",
        dataset.metadata.total_records,
        dataset.metadata.total_studies,
        len(dataset.benchmark_index.groups),
    )


@app.command()
def build(
    config_file: str = typer.Option(None, help="Path to YAML config file."),
    output_dir: Path = typer.Option(None, help="Directory holding the JSON corpus."),
) -> None:
    """Rebuild the benchmark dataset from saved record files."""
    settings = build_settings(config_file, output_dir=output_dir)
    loader = JsonCorpusLoader(settings.output_dir)
    records = loader.read_records()
    logger.info("Read %d saved records from %s", len(records), loader.records_dir)

    dataset = build_dataset(records, settings.min_group_sizes, extra={"rebuilt": True})
    with loader:
        loader.write_dataset(dataset)


@app.command()
def resolve(
    area: str = typer.Argument(..., help="Therapeutic area, e.g. 'oncology'."),
    indication: str = typer.Option(None, help="Indication within the area."),
    subtype: str = typer.Option(None, help="Subtype within the indication."),
    config_file: str = typer.Option(None, help="Path to YAML config file."),
    output_dir: Path = typer.Option(None, help="Directory holding the JSON corpus."),
) -> None:
    """Print the most specific benchmark available for a selection."""
    settings = build_settings(config_file, output_dir=output_dir)
    dataset = JsonCorpusLoader(settings.output_dir).read_dataset()

    resolved = BenchmarkResolver(dataset.benchmark_index).resolve(area, indication, subtype)
    payload = resolved.model_dump(mode="json", by_alias=True)
    payload["summary"] = resolved.summary
    typer.echo(json.dumps(payload, indent=2))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
