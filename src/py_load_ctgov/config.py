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
"""Manages the application's configuration using Pydantic."""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_MIN_GROUP_SIZES: dict[str, int] = {
    "global": 50,
    "phase": 50,
    "area": 50,
    "indication": 20,
    "subtype": 10,
}

KNOWN_STRATEGIES = ("temporal", "condition", "lexical", "phase")


class Settings(BaseSettings):
    """Manages configuration for the application.

    Reads settings from environment variables with the prefix 'CTGOV_'.
    """

    model_config = SettingsConfigDict(env_prefix="CTGOV_")

    # Registry connection
    base_url: str = "https://clinicaltrials.gov/api/v2"
    user_agent: str = "py-load-ctgov/0.1.0"
    request_timeout: float = Field(default=30.0, gt=0)
    page_size: int = Field(default=100, ge=1, le=1000)

    # Politeness and fan-out
    rate_limit_delay: float = Field(default=0.1, ge=0)
    batch_delay: float = Field(default=0.1, ge=0)
    concurrency: int = Field(default=15, ge=1)

    # Run shape
    records_target: int = Field(default=10000, ge=1)
    max_records_per_query: int = Field(default=3000, ge=1)
    fetch_missing_documents: bool = False
    strategies: list[str] = Field(
        default_factory=lambda: ["temporal", "condition", "lexical"],
    )
    start_year: int = 2019
    end_year: int = 2024

    # Knowledge base
    min_group_sizes: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_MIN_GROUP_SIZES),
    )

    # Outputs
    output_dir: Path = Path("data") / "protocols"
    db_dsn: str | None = None
    db_schema: str = "ctgov"

    @field_validator("strategies")
    @classmethod
    def _known_strategies(cls, value: list[str]) -> list[str]:
        unknown = [name for name in value if name not in KNOWN_STRATEGIES]
        if unknown:
            msg = f"Unknown collection strategies: {', '.join(unknown)}"
            raise ValueError(msg)
        return value

    @field_validator("min_group_sizes")
    @classmethod
    def _merge_group_sizes(cls, value: dict[str, int]) -> dict[str, int]:
        # Partial overrides keep the defaults for the remaining levels.
        merged = dict(DEFAULT_MIN_GROUP_SIZES)
        merged.update(value)
        return merged

    @computed_field
    @property
    def studies_url(self) -> str:
        """URL of the paginated study search endpoint."""
        return f"{self.base_url.rstrip('/')}/studies"


def load_config(config_file: str | Path | None) -> dict[str, Any]:
    """Loads configuration overrides from a YAML file."""
    if config_file:
        try:
            with open(config_file) as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s", config_file)
    return {}


def build_settings(
    config_file: str | Path | None = None, **overrides: Any,
) -> Settings:
    """Builds settings from a YAML file plus explicit overrides.

    Explicit overrides win over the file, and environment variables fill in
    whatever neither provides.
    """
    values = load_config(config_file)
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)
