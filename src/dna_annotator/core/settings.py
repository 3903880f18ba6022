from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Tuple

from pydantic import BaseModel, Field

from dna_annotator.constants import APP_SLUG, CLINVAR_DIR_ENV, CONFIG_FILENAME


class AnnotatorSettings(BaseModel):
    clinvar_dir: str
    batch_size: int = Field(default=100, ge=1)
    cache_high_water: int = Field(default=10000, ge=1)
    cache_evict_fraction: float = Field(default=0.1, gt=0, le=1)
    summary_record_cap: int = Field(default=10000, ge=1)
    worker_init_timeout: float = 30.0
    worker_request_timeout: float = 60.0
    compressed_window: int = 10
    uncompressed_window: int = 25
    parse_chunk_size: int = Field(default=1000, ge=1)
    assembly: str = "GRCh37"


def get_config_dir() -> Path:
    return Path.home() / f".{APP_SLUG}"


def get_config_path() -> Path:
    return get_config_dir() / CONFIG_FILENAME


def default_clinvar_dir() -> Path:
    return get_config_dir() / "clinvar"


def default_log_dir() -> Path:
    return get_config_dir() / "logs"


def resolve_clinvar_dir(settings: AnnotatorSettings) -> Path:
    env_value = os.environ.get(CLINVAR_DIR_ENV)
    if env_value:
        return Path(env_value).expanduser().resolve()
    return Path(settings.clinvar_dir).expanduser().resolve()


def load_settings() -> Tuple[AnnotatorSettings, bool]:
    config_path = get_config_path()
    if config_path.exists():
        data = json.loads(config_path.read_text())
        settings = AnnotatorSettings(**data)
        return settings, False

    settings = AnnotatorSettings(clinvar_dir=str(default_clinvar_dir()))
    return settings, True


def save_settings(settings: AnnotatorSettings) -> None:
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = get_config_path()
    config_path.write_text(settings.model_dump_json(indent=2))
