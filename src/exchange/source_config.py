from glob import glob
import logging
import os
import re
from typing import Literal, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from core.settings import DEFAULT_FETCH_SIZE, DEFAULT_PARALLELISM
from exchange.domain import VidType
from exchange.errors import InvalidConfigurationError

logger = logging.getLogger(__name__)


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


class DuckDBSourceSpec(StrictBaseModel):
    type: Literal["duckdb"]
    database: str = ":memory:"
    sentence: str
    fetch_size: int = Field(default=DEFAULT_FETCH_SIZE, gt=0)

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if not self.sentence.strip():
            raise ValueError("sentence must not be empty")
        return self


class PartitionSpec(StrictBaseModel):
    partition_count: int = Field(gt=0)
    vid_type: VidType = Field(default=VidType.STRING, strict=False)
    vid_field: str


class ExtractionSpec(StrictBaseModel):
    name: str

    source: DuckDBSourceSpec

    parallel: int = Field(default=DEFAULT_PARALLELISM, gt=0)
    check_point_path: str | None = None
    page_size: int | None = Field(default=None, gt=0)

    partition: PartitionSpec

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        # name becomes part of checkpoint file names: <root>/<name>.<worker>
        if not re.match(r"^[A-Za-z0-9_][A-Za-z0-9_\-]*$", self.name):
            raise ValueError(f"Invalid source name '{self.name}'. Use letters, digits, '_' or '-'.")
        return self


def load_extraction_specs_from_directory(directory_path: str) -> list[ExtractionSpec]:
    file_paths = sorted(glob(os.path.join(directory_path, "*.yaml")))

    specs: dict[str, ExtractionSpec] = {}
    for file_path in file_paths:
        with open(file_path, "r") as file:
            spec_yaml = yaml.safe_load(file)

        try:
            spec = ExtractionSpec.model_validate(spec_yaml)
        except ValidationError as e:
            raise InvalidConfigurationError(f"Error loading extraction spec from {file_path}: {e}") from e

        if spec.name in specs:
            raise InvalidConfigurationError(f"Duplicate extraction spec name '{spec.name}' found in file: {file_path}")

        specs[spec.name] = spec

    if not specs:
        logger.warning(f"No extraction spec files found in directory: {directory_path}")

    return list(specs.values())
