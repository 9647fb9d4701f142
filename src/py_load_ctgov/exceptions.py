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
"""Error taxonomy for harvesting runs.

Harvesting errors are scoped: a ``FetchFailed`` costs one page (or one
study), a ``ParseFailed`` costs one record. Only ``RegistryUnavailable``
ends a run.
"""


class CtgovError(Exception):
    """Base class for all errors raised by this package."""


class FetchFailed(CtgovError):
    """A registry request failed or returned an unusable body."""

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class ParseFailed(CtgovError):
    """A raw study or document could not be turned into a record."""

    def __init__(self, message: str, study_id: str | None = None) -> None:
        super().__init__(message)
        self.study_id = study_id


class RegistryUnavailable(CtgovError):
    """The registry could not be reached on the first call of a run."""
