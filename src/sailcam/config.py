"""Scan configuration with environment overrides."""

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional


@dataclass
class ScanConfig:
    """All tunables for one detection pipeline.

    Environment variables (see ``from_env``) override the defaults.
    """

    # OCR service
    ocr_endpoint: Optional[str] = None
    ocr_key: Optional[str] = None
    request_timeout: float = 30.0

    # Polling budget: up to max_attempts * poll_interval seconds per image
    poll_interval: float = 1.0
    max_attempts: int = 60
    max_outstanding: int = 2

    # Extraction
    min_digits: int = 2
    max_digits: int = 6
    min_value: int = 10
    max_value: int = 999999
    reversed_confidence_scale: float = 1.0

    # Grouping / ranking
    adjacency_factor: float = 1.5
    min_confidence: float = 0.6

    # Variants run concurrently when > 1
    max_workers: int = 1

    ENV_PREFIX = "SAILCAM_"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "ScanConfig":
        """Build a config from ``SAILCAM_*`` environment variables.

        Every field can be set as ``SAILCAM_<FIELD_NAME_UPPER>``, e.g.
        ``SAILCAM_OCR_ENDPOINT`` or ``SAILCAM_MIN_CONFIDENCE``. Keyword
        ``overrides`` win over the environment.

        Raises:
            ValueError: A variable does not parse as the field's type.
        """
        env = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = env.get(cls.ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            default = f.default
            try:
                if isinstance(default, bool):
                    values[f.name] = raw.lower() in ("1", "true", "yes", "on")
                elif isinstance(default, int):
                    values[f.name] = int(raw)
                elif isinstance(default, float):
                    values[f.name] = float(raw)
                else:
                    values[f.name] = raw
            except ValueError as e:
                raise ValueError(f"{cls.ENV_PREFIX}{f.name.upper()}={raw!r}: {e}") from e
        values.update(overrides)
        return cls(**values)
