# _filter_funcs.py
from typing import List, Optional
import pandas as pd
import numpy as np
import logging

from ._rules import (
    DEFAULT_CONFIG,
    FLAG_SEP,
    FLAG_IMPUTED,
    FLAG_INCONSISTENT_SMOKING,
    FLAG_INSUFFICIENT,
    FLAG_INTERNAL_CONSISTENCY,
    FLAG_MALFORMED_INPUT,
    FLAG_NOT_ELIGIBLE,
    FLAG_ORDER,
    FTND_MAX_SCORE,
    COL_ELIGIBLE,
    COL_FLAGS,
    COL_MALFORMED,
    COL_N_MISSING,
    COL_PRIMARY_TYPE,
    COL_SCORE,
    COL_SMOKE_EVER,
    FTNDConfig,
    TobaccoType,
)

logger = logging.getLogger(__name__)


class ScoreRangeError(AssertionError):
    """An FTND score fell outside [0, 10]; weights or recoding are misconfigured."""


def check_score_range(
    df: pd.DataFrame,
    *,
    score_col: str = COL_SCORE,
    lo: float = 0.0,
    hi: float = float(FTND_MAX_SCORE),
) -> pd.DataFrame:
    """
    Raise ScoreRangeError if any defined score lies outside [lo, hi].
    NA scores are ignored. Returns df unchanged so it can be chained.
    """
    if score_col not in df.columns:
        logger.debug("check_score_range: skipped (no %s column)", score_col)
        return df
    s = pd.to_numeric(df[score_col], errors="coerce").astype("Float64")
    bad = s.notna() & ~s.between(lo, hi, inclusive="both").fillna(False)
    if bad.any():
        examples = s[bad].head(5).tolist()
        raise ScoreRangeError(
            f"{int(bad.sum())} score(s) in {score_col} outside [{lo}, {hi}], e.g. {examples}"
        )
    return df


def inconsistent_smoking_status(df: pd.DataFrame) -> pd.Series:
    """
    Boolean mask of respondents whose lifetime smoking answer disagrees with the
    threshold gate: never-smokers who passed it, ever-smokers who did not.
    Missing lifetime status is never inconsistent.
    """
    if COL_SMOKE_EVER not in df.columns:
        return pd.Series(False, index=df.index)
    ever = df[COL_SMOKE_EVER]
    eligible = df[COL_ELIGIBLE].astype(bool)
    mask = (ever.eq(0) & eligible) | (ever.eq(1) & ~eligible)
    return mask.fillna(False).astype(bool)


def ftnd_qc_flags(df: pd.DataFrame, *, config: FTNDConfig = DEFAULT_CONFIG) -> pd.DataFrame:
    """
    Derive 'derived.ftnd_flags': pipe-joined reasons explaining each respondent's
    score (or its absence). Tokens appear in FLAG_ORDER; empty string when clean.
    """
    eligible = df[COL_ELIGIBLE].astype(bool)
    n_missing = df[COL_N_MISSING]
    has_score = df[COL_SCORE].notna()

    masks = {
        FLAG_MALFORMED_INPUT: df[COL_MALFORMED].fillna("").astype(str).ne(""),
        FLAG_NOT_ELIGIBLE: ~eligible,
        FLAG_INSUFFICIENT: (eligible & n_missing.gt(config.max_missing)).fillna(False).astype(bool),
        FLAG_IMPUTED: (has_score & n_missing.gt(0)).fillna(False).astype(bool),
        FLAG_INTERNAL_CONSISTENCY: eligible & df[COL_PRIMARY_TYPE].astype(str).eq(TobaccoType.NONE.value),
        FLAG_INCONSISTENT_SMOKING: inconsistent_smoking_status(df),
    }

    for flag in (FLAG_MALFORMED_INPUT, FLAG_INTERNAL_CONSISTENCY, FLAG_INCONSISTENT_SMOKING):
        n = int(masks[flag].sum())
        if n:
            logger.info("ftnd_qc_flags: %d respondent(s) flagged %s", n, flag)

    arr = np.column_stack([masks[f].to_numpy(dtype=bool) for f in FLAG_ORDER])
    flags: List[str] = [FLAG_SEP.join(f for f, hit in zip(FLAG_ORDER, row) if hit) for row in arr]

    df = df.copy()
    df[COL_FLAGS] = pd.Series(flags, index=df.index, dtype="object")
    return df


def split_flags(cell: Optional[str]) -> List[str]:
    """'malformed_input|imputed' -> ['malformed_input', 'imputed']."""
    if cell is None or (isinstance(cell, float) and np.isnan(cell)):
        return []
    return [tok for tok in str(cell).split(FLAG_SEP) if tok]
