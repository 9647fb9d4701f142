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
"""Provides a PostgreSQL loader using the native COPY command."""

import csv
import importlib.resources
import io
import json
import logging
import types
from collections.abc import Iterable
from typing import IO, Any

import psycopg
from jinja2 import Environment, FileSystemLoader
from psycopg import sql

from ..models import CanonicalRecord, CorpusDataset
from .base import BaseLoader

logger = logging.getLogger(__name__)

RECORD_COLUMNS = [
    "study_id", "document_id", "document_label", "brief_title", "phase",
    "phase_count", "enrollment_count", "therapeutic_area", "indication",
    "subtype", "conditions", "start_date", "completion_date",
    "duration_months", "inclusion_criteria_count", "exclusion_criteria_count",
    "eligibility_criteria_count", "primary_endpoint_count",
    "secondary_endpoint_count", "other_endpoint_count", "is_randomized",
    "is_masked", "complexity_score", "complexity_category", "collected_at",
]

GROUP_COLUMNS = [
    "group_key", "level", "sample_count", "metric", "count", "min", "max",
    "mean", "median", "p25", "p75", "p90", "p95", "built_at",
]

STAGING_TABLE = "protocol_records_staging"


def _rows_to_csv_stream(rows: Iterable[list[Any]]) -> IO[bytes]:
    """Converts rows to an in-memory CSV byte stream without a header."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    for row in rows:
        writer.writerow(row)
    return io.BytesIO(buffer.getvalue().encode("utf-8"))


def _record_row(record: CanonicalRecord) -> list[Any]:
    data = record.model_dump(mode="json")
    data["conditions"] = json.dumps(data["conditions"])
    return [data[column] for column in RECORD_COLUMNS]


class PostgresLoader(BaseLoader):
    """A corpus sink for PostgreSQL that uses the native COPY command."""

    def __init__(self, conn_string: str, schema: str = "ctgov") -> None:
        """Initialize the loader with the database connection string.

        Args:
            conn_string: A libpq connection string (e.g., "dbname=test user=postgres").
            schema: The schema holding the corpus tables.

        """
        self.conn_string = conn_string
        self.schema = schema
        self.conn: psycopg.Connection | None = None
        self.cursor: psycopg.Cursor | None = None
        sql_dir = importlib.resources.files("py_load_ctgov") / "sql"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(sql_dir)),
            autoescape=False,  # SQL is not HTML
        )

    def __enter__(self) -> "PostgresLoader":
        """Establish the database connection and begin a transaction."""
        self.conn = psycopg.connect(self.conn_string, autocommit=False)
        self.cursor = self.conn.cursor()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        """Commit the transaction on success or roll back on error.

        Closes the database connection.
        """
        if not self.conn:
            return

        try:
            if exc_type:
                logger.warning("Rolling back PostgreSQL transaction")
                self.conn.rollback()
            else:
                self.conn.commit()
        finally:
            if self.cursor:
                self.cursor.close()
            self.conn.close()

    def _require_cursor(self) -> "psycopg.Cursor":
        if not self.cursor:
            msg = (
                "Cursor is not available. "
                "The loader must be used as a context manager."
            )
            raise RuntimeError(msg)
        return self.cursor

    def bulk_load_stream(
        self,
        target_table: str,
        data_stream: IO[bytes],
        columns: list[str] | None = None,
        delimiter: str = ",",
    ) -> None:
        """Execute a native bulk load operation using COPY FROM STDIN."""
        cursor = self._require_cursor()

        if columns:
            column_sql = sql.SQL(" ({})").format(
                sql.SQL(", ").join(map(sql.Identifier, columns)),
            )
        else:
            column_sql = sql.SQL("")

        table_parts = target_table.split(".")
        if len(table_parts) == 2:
            table_sql = sql.SQL(".").join(map(sql.Identifier, table_parts))
        else:
            table_sql = sql.Identifier(target_table)

        copy_sql = sql.SQL(
            "COPY {table}{columns} FROM STDIN WITH (FORMAT CSV, DELIMITER %(delim)s)",
        ).format(
            table=table_sql,
            columns=column_sql,
        )

        with cursor.copy(copy_sql, {"delim": delimiter}) as copy:
            while chunk := data_stream.read(8192):
                copy.write(chunk)

    def execute_sql(
        self,
        sql_query: Any,
        params: Iterable[Any] | None = None,
        fetch: str | None = None,
    ) -> Any:
        """Execute an arbitrary SQL command."""
        cursor = self._require_cursor()
        cursor.execute(sql_query, params)

        if fetch == "one":
            return cursor.fetchone()
        if fetch == "all":
            return cursor.fetchall()
        return None

    def render_template(self, template_name: str, **kwargs: Any) -> str:
        template = self.jinja_env.get_template(template_name)
        return template.render(schema=self.schema, **kwargs)

    def create_tables(self) -> None:
        """Creates the schema and corpus tables if they do not exist."""
        self.execute_sql(self.render_template("create_tables.sql"))

    def write_records(self, records: Iterable[CanonicalRecord]) -> int:
        """Loads records through a staging table; existing keys are kept."""
        rows = [_record_row(record) for record in records]
        if not rows:
            logger.info("No records to load into PostgreSQL")
            return 0

        self.create_tables()
        self.execute_sql(
            sql.SQL(
                "CREATE TEMP TABLE {staging} (LIKE {target}) ON COMMIT DROP",
            ).format(
                staging=sql.Identifier(STAGING_TABLE),
                target=sql.Identifier(self.schema, "protocol_records"),
            ),
        )
        self.bulk_load_stream(STAGING_TABLE, _rows_to_csv_stream(rows), columns=RECORD_COLUMNS)
        self.execute_sql(self.render_template("merge_records.sql", staging_table=STAGING_TABLE))
        logger.info("Loaded %d records into %s.protocol_records", len(rows), self.schema)
        return len(rows)

    def write_dataset(self, dataset: CorpusDataset) -> None:
        """Loads the records and replaces all stored benchmark groups."""
        self.write_records(dataset.records)
        self.create_tables()

        index = dataset.benchmark_index
        built_at = index.built_at.isoformat()
        rows = []
        for group in index.groups.values():
            for name, stats in group.metrics.items():
                rows.append(
                    [
                        group.group_key, group.level.value, group.sample_count, name,
                        stats.count, stats.min, stats.max, stats.mean, stats.median,
                        stats.p25, stats.p75, stats.p90, stats.p95, built_at,
                    ],
                )

        target = f"{self.schema}.benchmark_groups"
        self.execute_sql(
            sql.SQL("DELETE FROM {}").format(sql.Identifier(self.schema, "benchmark_groups")),
        )
        if rows:
            self.bulk_load_stream(target, _rows_to_csv_stream(rows), columns=GROUP_COLUMNS)
        logger.info("Loaded %d benchmark metric rows into %s", len(rows), target)
