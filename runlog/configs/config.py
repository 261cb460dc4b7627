"""Pipeline configuration loader for the run log pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from runlog.configs.settings import Settings, get_settings

DEFAULT_TASK_NAME = "runlog.release_enrichment"


@dataclass(frozen=True)
class PipelineOptions:
    """Runtime options for batch processing and release enrichment."""

    enrichment_enabled: bool = True
    cache_window_hours: float = 4.0
    backfill_row_limit: int = 10000
    task_name: str = DEFAULT_TASK_NAME
    max_background_workers: int = 1

    @classmethod
    def from_config(cls, config: dict[str, Any], settings: Settings | None = None) -> PipelineOptions:
        """
        Build options from the parsed pipeline.yaml.

        The ENRICHMENT_ENABLED setting can only switch enrichment off; a
        disabled toggle in either place wins.
        """
        enrichment = config.get("enrichment") or {}
        enabled = bool(enrichment.get("enabled", True))
        if settings is not None and not settings.ENRICHMENT_ENABLED:
            enabled = False

        return cls(
            enrichment_enabled=enabled,
            cache_window_hours=float(enrichment.get("cache_window_hours", 4.0)),
            backfill_row_limit=int(enrichment.get("backfill_row_limit", 10000)),
            task_name=enrichment.get("task_name") or DEFAULT_TASK_NAME,
            max_background_workers=int(enrichment.get("max_background_workers", 1)),
        )


class Config:
    """Configuration for the run log pipeline."""

    CONFIG_DIR = Path(__file__).parent.resolve()
    DEFAULT_PIPELINE_CONFIG_PATH = CONFIG_DIR / "pipeline.yaml"

    @classmethod
    def load_pipeline_config(
        cls,
        path: Path | None = None,
        settings: Settings | None = None,
    ) -> dict:
        """Load the YAML configuration for the pipeline."""
        settings = settings or get_settings()
        config_path = Path(path or settings.PIPELINE_CONFIG_PATH)
        if not config_path.exists():
            raise FileNotFoundError(f"Missing config at {config_path}")

        with open(config_path, encoding="utf-8") as f:
            content = f.read()

        # Substitute ${SETTING} placeholders from settings
        for key, value in settings.model_dump().items():
            placeholder = f"${{{key}}}"
            if placeholder in content:
                val_str = (
                    value.get_secret_value()
                    if hasattr(value, "get_secret_value")
                    else str(value)
                )
                content = content.replace(placeholder, val_str)

        return yaml.safe_load(content) or {}

    @classmethod
    def load_pipeline_options(
        cls,
        path: Path | None = None,
        settings: Settings | None = None,
    ) -> PipelineOptions:
        """Load pipeline.yaml and turn it into PipelineOptions."""
        settings = settings or get_settings()
        return PipelineOptions.from_config(cls.load_pipeline_config(path, settings), settings)
