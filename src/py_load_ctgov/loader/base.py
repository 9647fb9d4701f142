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
"""Defines the abstract base class for corpus loaders."""

import abc
import types
from collections.abc import Iterable

from ..models import CanonicalRecord, CorpusDataset


class BaseLoader(abc.ABC):
    """Abstract Base Class for all corpus sinks.

    Every sink is a context manager: entering it acquires whatever the sink
    needs (a directory, a connection and transaction), and leaving it
    releases it, committing only when the block finished without error.
    """

    @abc.abstractmethod
    def __enter__(self) -> "BaseLoader":
        """Prepare the sink for writing.

        Returns:
            The loader instance.

        """
        raise NotImplementedError

    @abc.abstractmethod
    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        """Finalize writes on success or discard them on error."""
        raise NotImplementedError

    @abc.abstractmethod
    def write_records(self, records: Iterable[CanonicalRecord]) -> int:
        """Persist individual protocol records.

        Args:
            records: The records to write, unique by key.

        Returns:
            The number of records handed to the sink.

        """
        raise NotImplementedError

    @abc.abstractmethod
    def write_dataset(self, dataset: CorpusDataset) -> None:
        """Persist a consolidated dataset, replacing any previous one."""
        raise NotImplementedError
