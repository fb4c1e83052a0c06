# ftndscore/calculate.py

import logging
import numpy as np
import pandas as pd
from typing import Dict, Iterable, Optional

from ._rules import (
    FLAG_ORDER,
    COL_ELIGIBLE,
    COL_FLAGS,
    COL_PRIMARY_TYPE,
    COL_SCORE,
)
from ._filter_funcs import split_flags

logger = logging.getLogger(__name__)


def get_flag_counts(df: pd.DataFrame, flags: Optional[Iterable[str]] = None) -> Dict[str, int]:
    """Number of respondents carrying each flag in 'derived.ftnd_flags'."""
    if COL_FLAGS not in df.columns:
        raise KeyError(f"{COL_FLAGS} not found in DataFrame (run ftnd_fields first)")
    flags = list(FLAG_ORDER if flags is None else flags)
    exploded = df[COL_FLAGS].map(split_flags).explode()
    counts = exploded.value_counts()
    return {f: int(counts.get(f, 0)) for f in flags}


def qc_summary(df: pd.DataFrame, *, round_decimals: int = 2) -> pd.DataFrame:
    """
    Validation report for a scored table.

    One row per check with columns: section, item, n, percent (of all
    respondents). Sections: 'respondents', 'primary_tobacco_type', 'flag'.
    """
    need = {COL_ELIGIBLE, COL_PRIMARY_TYPE, COL_SCORE, COL_FLAGS}
    missing = need - set(df.columns)
    if missing:
        raise KeyError(f"qc_summary: missing columns {sorted(missing)}")

    n_total = len(df)
    eligible = df[COL_ELIGIBLE].astype(bool)
    scored = df[COL_SCORE].notna()

    rows = [
        {"section": "respondents", "item": "total", "n": n_total},
        {"section": "respondents", "item": "threshold_eligible", "n": int(eligible.sum())},
        {"section": "respondents", "item": "scored", "n": int(scored.sum())},
        {"section": "respondents", "item": "eligible_unscored", "n": int((eligible & ~scored).sum())},
    ]

    type_counts = df.loc[eligible, COL_PRIMARY_TYPE].astype(str).value_counts()
    for t, n in type_counts.items():
        rows.append({"section": "primary_tobacco_type", "item": t, "n": int(n)})

    for flag, n in get_flag_counts(df).items():
        rows.append({"section": "flag", "item": flag, "n": n})

    out = pd.DataFrame(rows, columns=["section", "item", "n"])
    with np.errstate(divide="ignore", invalid="ignore"):
        pct = out["n"] / n_total * 100.0 if n_total else pd.Series(np.nan, index=out.index)
    out["percent"] = pd.to_numeric(pct, errors="coerce").round(round_decimals)

    logger.info("qc_summary: %s respondents, %s scored", n_total, int(scored.sum()))
    return out
