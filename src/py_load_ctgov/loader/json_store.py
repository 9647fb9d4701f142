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
"""Provides a filesystem JSON loader for collected corpora."""

import hashlib
import logging
import re
import types
from collections.abc import Iterable, Iterator
from pathlib import Path

from pydantic import ValidationError

from ..models import CanonicalRecord, CorpusDataset
from .base import BaseLoader

logger = logging.getLogger(__name__)

DATASET_FILENAME = "benchmark_dataset.json"
RECORDS_DIRNAME = "records"
RECORD_SUFFIX = "_protocol_data.json"

_UNSAFE_CHARS = re.compile(r"[^\w-]")


def record_filename(record: CanonicalRecord) -> str:
    """File name for one record, e.g. ``NCT01234567_Prot_000_pdf_1a2b3c4d_protocol_data.json``.

    The whole document identifier is kept, sanitized, and followed by a short
    digest of the raw identifier so that distinct documents never share a file.
    """
    label = _UNSAFE_CHARS.sub("_", record.document_id) or "document"
    digest = hashlib.sha1(record.document_id.encode("utf-8")).hexdigest()[:8]
    return f"{record.study_id}_{label}_{digest}{RECORD_SUFFIX}"


class JsonCorpusLoader(BaseLoader):
    """Writes one JSON file per record plus a consolidated dataset file.

    Layout under ``output_dir``::

        records/<studyId>_<document id>_<digest>_protocol_data.json
        benchmark_dataset.json
    """

    def __init__(self, output_dir: str | Path) -> None:
        self.output_dir = Path(output_dir)
        self.records_dir = self.output_dir / RECORDS_DIRNAME
        self.dataset_path = self.output_dir / DATASET_FILENAME

    def __enter__(self) -> "JsonCorpusLoader":
        self.records_dir.mkdir(parents=True, exist_ok=True)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        if exc_type:
            logger.warning("JSON corpus under %s may be incomplete", self.output_dir)

    def write_records(self, records: Iterable[CanonicalRecord]) -> int:
        written = 0
        claimed: dict[str, tuple[str, str]] = {}
        for record in records:
            name = record_filename(record)
            if name in claimed:
                if claimed[name] != record.key:
                    logger.warning(
                        "Not writing %s/%s: file %s already holds %s/%s",
                        *record.key, name, *claimed[name],
                    )
                continue
            claimed[name] = record.key
            path = self.records_dir / name
            path.write_text(record.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
            written += 1
        logger.info("Wrote %d record files to %s", written, self.records_dir)
        return written

    def write_dataset(self, dataset: CorpusDataset) -> None:
        self.dataset_path.write_text(
            dataset.model_dump_json(by_alias=True, indent=2), encoding="utf-8",
        )
        logger.info(
            "Wrote dataset with %d records to %s", len(dataset.records), self.dataset_path,
        )

    def iter_records(self) -> Iterator[CanonicalRecord]:
        """Yields saved records, skipping files that cannot be read back."""
        if not self.records_dir.is_dir():
            logger.warning("No records directory at %s", self.records_dir)
            return
        for path in sorted(self.records_dir.glob(f"*{RECORD_SUFFIX}")):
            try:
                yield CanonicalRecord.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as e:
                logger.warning("Skipping unreadable record file %s: %s", path.name, e)

    def read_records(self) -> list[CanonicalRecord]:
        """Reads saved records back, keeping the first file seen per key."""
        records: dict[tuple[str, str], CanonicalRecord] = {}
        for record in self.iter_records():
            records.setdefault(record.key, record)
        return list(records.values())

    def read_dataset(self) -> CorpusDataset:
        """Reads the consolidated dataset.

        Raises:
            FileNotFoundError: If no dataset has been written yet.
            pydantic.ValidationError: If the file does not hold a dataset.
        """
        return CorpusDataset.model_validate_json(self.dataset_path.read_text(encoding="utf-8"))
