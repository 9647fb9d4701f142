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

import pytest

from py_load_ctgov.config import Settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with all delays disabled and output under a temp directory."""
    return Settings(
        rate_limit_delay=0,
        batch_delay=0,
        page_size=2,
        output_dir=tmp_path / "protocols",
    )
