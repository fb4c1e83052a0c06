from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd
import pytest

from ftndscore._rules import DEFAULT_CONFIG, FTNDConfig, TobaccoType


def raw_row(
    *,
    config: FTNDConfig = DEFAULT_CONFIG,
    pid: str = "P0001",
    ever: Any = np.nan,
    thresholds: dict[TobaccoType, Any] | None = None,
    peaks: dict[TobaccoType, Any] | None = None,
    components: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """One raw respondent. Thresholds default to "no" (2), everything else absent."""
    thresholds = thresholds or {}
    peaks = peaks or {}
    components = components or {}

    row: dict[str, Any] = {config.respondent_id_field: pid, config.lifetime_smoking_field: ever}
    for t in config.type_priority:
        row[config.threshold_fields[t]] = thresholds.get(t, 2)
        row[config.peak_frequency_fields[t]] = peaks.get(t, np.nan)
    for name, col in config.component_fields.items():
        row[col] = components.get(name, np.nan)
    return row


def raw_frame(*rows: dict[str, Any]) -> pd.DataFrame:
    return pd.DataFrame(list(rows))


@pytest.fixture(scope="session")
def config() -> FTNDConfig:
    return DEFAULT_CONFIG


@pytest.fixture(scope="session")
def row_factory():
    return raw_row


@pytest.fixture(scope="session")
def frame_factory():
    return raw_frame
