from __future__ import annotations

import pandas as pd
import pytest

from ftndscore._rules import build_config
from ftndscore.simulate import simulate_ftnd_df

pytestmark = pytest.mark.unit


def test_columns_follow_config() -> None:
    cfg = build_config(component_fields={"ill": "q_ill"})
    df = simulate_ftnd_df(20, config=cfg, seed=1)
    assert set(df.columns) == {cfg.respondent_id_field, *cfg.raw_fields().values()}
    assert "q_ill" in df.columns


def test_peak_items_follow_threshold_routing(config) -> None:
    df = simulate_ftnd_df(300, missing_rate=0.0, seed=3)
    for t in config.type_priority:
        yes = df[config.threshold_fields[t]] == 1
        peaks = df[config.peak_frequency_fields[t]]
        assert peaks[yes].notna().all()
        assert peaks[~yes].isna().all()


def test_seed_is_reproducible() -> None:
    pd.testing.assert_frame_equal(
        simulate_ftnd_df(50, malformed_rate=0.1, seed=11),
        simulate_ftnd_df(50, malformed_rate=0.1, seed=11),
    )


def test_respondent_key_never_missing(config) -> None:
    df = simulate_ftnd_df(200, missing_rate=1.0, seed=5)
    assert df[config.respondent_id_field].notna().all()
    assert df[config.component_fields["ill"]].isna().all()


@pytest.mark.parametrize(
    "kwargs",
    [{"sample": 0}, {"malformed_rate": 1.5}, {"threshold_yes_rate": -0.1}, {"missing_rate": 2.0}],
)
def test_invalid_arguments(kwargs) -> None:
    with pytest.raises(ValueError):
        simulate_ftnd_df(**{"sample": 10, **kwargs})
