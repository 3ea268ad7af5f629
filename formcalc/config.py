"""Engine settings: localized aggregation labels and display defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


DEFAULT_AGGREGATION_LABELS = {
    'SUM': '求和',
    'AVG': '平均值',
    'COUNT': '计数',
    'MAX': '最大值',
    'MIN': '最小值',
}

MAX_PRECISION = 6


class EngineSettings(BaseModel):
    aggregation_labels: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_AGGREGATION_LABELS))
    all_placeholder: str = '全部'
    default_precision: int = 2
    max_sort_keys: int = 3

    @field_validator('aggregation_labels')
    @classmethod
    def _merge_labels(cls, labels):
        # Partial overrides keep the defaults for the functions they omit
        merged = dict(DEFAULT_AGGREGATION_LABELS)
        merged.update({k.upper(): v for k, v in labels.items()})
        return merged

    @field_validator('default_precision')
    @classmethod
    def _clamp_precision(cls, value):
        return clamp_precision(value)

    def aggregation_label(self, function: str) -> str:
        func = (function or '').upper()
        return self.aggregation_labels.get(func, func)

    def aggregate_column(self, field_name: str, function: str) -> str:
        """Output column key for an aggregate: ``{fieldName}_{label}``."""
        return f"{field_name}_{self.aggregation_label(function)}"


DEFAULT_SETTINGS = EngineSettings()


def clamp_precision(value, default=2):
    try:
        value = int(value)
    except (TypeError, ValueError):
        return default
    return max(0, min(MAX_PRECISION, value))


def load_settings(path) -> EngineSettings:
    """
    Load settings from a YAML or JSON file.

    Keys mirror EngineSettings attributes; omitted keys keep their defaults.
    """
    path = Path(path)
    text = path.read_text(encoding='utf-8')
    if path.suffix.lower() == '.json':
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    return EngineSettings.model_validate(data or {})


def resolve_settings(settings: Optional[EngineSettings]) -> EngineSettings:
    return settings if settings is not None else DEFAULT_SETTINGS
