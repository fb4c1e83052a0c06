from __future__ import annotations

from typing import Mapping

import numpy as np
import pandas as pd

from ._rules import DEFAULT_CONFIG, FTNDConfig, TYPE_AGNOSTIC_COMPONENTS


# share of respondents answering "yes" to each threshold item
DEFAULT_THRESHOLD_YES_RATE: float = 0.35

# raw codes a respondent may give, per item kind
BINARY_CODES: list[int] = [1, 2]
ORDINAL_CODES: list[int] = [1, 2, 3, 4]

# codes that are neither valid nor declared missing under the default config
MALFORMED_CODES: list[object] = [0, 5, 9, 77, "x", "1.5"]


def simulate_ftnd_df(
    sample: int = 1000,
    *,
    config: FTNDConfig | None = None,
    include_nonresponse: bool = False,
    missing_rate: float | Mapping[str, float] | None = None,
    malformed_rate: float = 0.0,
    threshold_yes_rate: float = DEFAULT_THRESHOLD_YES_RATE,
    seed: int | None = None,
) -> pd.DataFrame:
    """Simulate a raw FTND questionnaire table.

    Columns follow ``config`` (default ``DEFAULT_CONFIG``). Peak frequency items
    are only filled in where the matching threshold item is "yes" (code 1),
    mirroring the questionnaire routing. The lifetime smoking item is "yes"
    whenever any threshold item is, so inconsistencies only come from
    missingness or malformed codes.

    Args:
        sample: Number of respondents.
        config: Column mapping to simulate for.
        include_nonresponse: Replace some answers with the config's missing codes.
        missing_rate: Global or per-column probability of an absent answer.
            Defaults to 0.05. The respondent key is never blanked.
        malformed_rate: Probability of replacing an answer with a garbage code.
        threshold_yes_rate: Probability of "yes" for each threshold item.
        seed: Optional RNG seed for reproducibility.

    Returns:
        Simulated dataframe, one row per respondent.

    Raises:
        ValueError: If sample < 1 or a rate is outside [0, 1].
    """
    if sample < 1:
        raise ValueError("sample must be >= 1")
    for name, rate in (("malformed_rate", malformed_rate), ("threshold_yes_rate", threshold_yes_rate)):
        if not 0 <= rate <= 1:
            raise ValueError(f"{name} must be in [0, 1]")

    cfg = DEFAULT_CONFIG if config is None else config
    rng = np.random.default_rng(seed)

    out: dict[str, pd.Series] = {
        cfg.respondent_id_field: pd.Series([_random_token(rng, 7) for _ in range(sample)], dtype="object"),
    }

    any_yes = np.zeros(sample, dtype=bool)
    for t in cfg.type_priority:
        yes = rng.random(sample) < threshold_yes_rate
        any_yes |= yes
        out[cfg.threshold_fields[t]] = pd.Series(np.where(yes, 1, 2).astype(float))
        peak = rng.choice(ORDINAL_CODES, size=sample).astype(float)
        out[cfg.peak_frequency_fields[t]] = pd.Series(np.where(yes, peak, np.nan))

    if cfg.lifetime_smoking_field:
        ever = np.where(any_yes, 1, rng.choice(BINARY_CODES, size=sample))
        out[cfg.lifetime_smoking_field] = pd.Series(ever.astype(float))

    for name in TYPE_AGNOSTIC_COMPONENTS:
        codes = ORDINAL_CODES if cfg.component_encodings[name].startswith("ordinal") else BINARY_CODES
        out[cfg.component_fields[name]] = pd.Series(rng.choice(codes, size=sample).astype(float))

    for col in list(out):
        if col == cfg.respondent_id_field:
            continue
        s = _apply_missingness(out[col], field=col, missing_rate=missing_rate, rng=rng)
        if include_nonresponse and cfg.missing_codes:
            s = _apply_codes(s, list(cfg.missing_codes), rate=0.03, rng=rng)
        if malformed_rate > 0:
            s = _apply_codes(s, MALFORMED_CODES, rate=malformed_rate, rng=rng)
        out[col] = s

    return pd.DataFrame(out)


def _apply_missingness(
    col: pd.Series,
    *,
    field: str,
    missing_rate: float | Mapping[str, float] | None,
    rng: np.random.Generator,
) -> pd.Series:
    miss_p = _resolve_missing_rate(field=field, missing_rate=missing_rate)
    if miss_p <= 0:
        return col

    mask = rng.random(len(col)) < miss_p
    out = col.astype("object").copy()
    out.loc[mask] = np.nan
    return out


def _apply_codes(col: pd.Series, codes: list, *, rate: float, rng: np.random.Generator) -> pd.Series:
    """Overwrite answered cells with codes drawn from ``codes`` at the given rate."""
    out = col.astype("object").copy()
    answered = out.notna().to_numpy()
    mask = (rng.random(len(out)) < rate) & answered
    if mask.any():
        picks = rng.integers(0, len(codes), size=int(mask.sum()))
        out.loc[mask] = [codes[i] for i in picks]
    return out


def _resolve_missing_rate(field: str, missing_rate: float | Mapping[str, float] | None) -> float:
    if missing_rate is None:
        return 0.05

    if isinstance(missing_rate, Mapping):
        value = float(missing_rate.get(field, 0.05))
    else:
        value = float(missing_rate)

    if value < 0 or value > 1:
        raise ValueError("missing_rate values must be in [0, 1]")
    return value


def _random_token(rng: np.random.Generator, size: int) -> str:
    alphabet = np.array(list("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"))
    return "".join(rng.choice(alphabet, size=size, replace=True).tolist())
