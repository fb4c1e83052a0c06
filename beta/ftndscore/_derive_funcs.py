import logging
import numpy as np
import pandas as pd
from typing import Callable, Optional, Iterable, List, Dict, TypedDict, Tuple

from ._rules import (
    DEFAULT_CONFIG,
    DEFAULT_MISSING_CODES,
    ENCODINGS,
    FTND_COMPONENTS,
    FTND_MAX_SCORE,
    FLAG_SEP,
    LIFETIME_SMOKING_ENCODING,
    PEAK_FREQUENCY_ENCODING,
    THRESHOLD_ENCODING,
    TYPE_AGNOSTIC_COMPONENTS,
    COL_ELIGIBLE,
    COL_MALFORMED,
    COL_N_MISSING,
    COL_PRIMARY_TYPE,
    COL_RESOLVED_CPD,
    COL_SCORE,
    COL_SMOKE_EVER,
    FTNDConfig,
    TobaccoType,
    component_col,
    peak_frequency_col,
    threshold_col,
)
from ._filter_funcs import check_score_range, ftnd_qc_flags

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------------
# Derive registry types
# ------------------------------------------------------------------------------------

class DeriveSpec(TypedDict, total=False):
    fn: Callable[..., pd.DataFrame]
    all_of: Optional[List[str]]
    any_of: Optional[List[str]]


# ------------------------------------------------------------------------------------
# Recoding utilities
# ------------------------------------------------------------------------------------

def _to_int_safe(x):
    """Robust conversion to int or None."""
    try:
        if pd.isna(x):
            return None
    except Exception:
        pass
    if isinstance(x, (int, np.integer)):
        return int(x)
    s = str(x).strip()
    if s == "":
        return None
    try:
        if "." in s:
            f = float(s)
            if f.is_integer():
                return int(f)
        return int(s)
    except Exception:
        return None


def _is_absent(x) -> bool:
    if x is None:
        return True
    try:
        return bool(pd.isna(x))
    except (TypeError, ValueError):
        # list-like cells are never "absent", they are malformed
        return False


def _recode_one(
    x,
    table: Dict[int, int],
    missing_codes: Iterable[int],
    blank_is_missing: bool,
) -> Tuple[Optional[int], bool]:
    """Return (native value or None, malformed?) for one raw cell."""
    if _is_absent(x):
        return None, False
    if isinstance(x, str) and x.strip() == "":
        return None, not blank_is_missing
    code = _to_int_safe(x)
    if code is None:
        return None, True
    if code in missing_codes:
        return None, False
    if code in table:
        return table[code], False
    return None, True


def _encoding_table(encoding: str) -> Dict[int, int]:
    try:
        return ENCODINGS[encoding]
    except KeyError:
        raise ValueError(f"Unknown encoding {encoding!r}. Known: {list(ENCODINGS)}") from None


def recode_value(
    x,
    encoding: str,
    *,
    missing_codes: Iterable[int] = DEFAULT_MISSING_CODES,
    blank_is_missing: bool = True,
) -> Optional[int]:
    """
    Map one raw questionnaire code onto the FTND native scale.

    Every input maps to a native value or None; nothing is passed through on its
    raw scale and nothing raises (apart from an unknown encoding name).
    """
    value, _ = _recode_one(x, _encoding_table(encoding), set(missing_codes), blank_is_missing)
    return value


def recode_series(
    s: pd.Series,
    encoding: str,
    *,
    missing_codes: Iterable[int] = DEFAULT_MISSING_CODES,
    blank_is_missing: bool = True,
) -> Tuple[pd.Series, pd.Series]:
    """
    Recode a raw column.

    Returns:
        (recoded Int64 series, boolean series marking malformed raw values).
    """
    table = _encoding_table(encoding)
    codes = set(missing_codes)
    pairs = [_recode_one(x, table, codes, blank_is_missing) for x in s.tolist()]
    values = pd.Series([p[0] for p in pairs], index=s.index, dtype="Int64")
    malformed = pd.Series([p[1] for p in pairs], index=s.index, dtype=bool)
    return values, malformed


def _is_yes(s: pd.Series) -> pd.Series:
    return s.eq(1).fillna(False).astype(bool)


# ------------------------------------------------------------------------------------
# Stage 1: Recoder
# ------------------------------------------------------------------------------------

def ftnd_recode(df: pd.DataFrame, *, config: FTNDConfig = DEFAULT_CONFIG) -> pd.DataFrame:
    """
    Recode every raw FTND input onto its native scale.

    Writes derived.threshold_<type>, derived.peak_freq_<type>, the five
    type-agnostic derived.ftnd_<component> columns, derived.smoke_ever, and
    derived.ftnd_malformed_fields (pipe-joined raw columns that held neither a
    valid code nor a declared missing sentinel).

    A configured column absent from df is treated as all-missing.
    """
    targets: List[Tuple[str, str, str]] = []   # (raw col, out col, encoding)
    if config.lifetime_smoking_field:
        targets.append((config.lifetime_smoking_field, COL_SMOKE_EVER, LIFETIME_SMOKING_ENCODING))
    for t in config.type_priority:
        targets.append((config.threshold_fields[t], threshold_col(t), THRESHOLD_ENCODING))
        targets.append((config.peak_frequency_fields[t], peak_frequency_col(t), PEAK_FREQUENCY_ENCODING))
    for name in TYPE_AGNOSTIC_COMPONENTS:
        targets.append((config.component_fields[name], component_col(name), config.component_encodings[name]))

    df = df.copy()
    if not config.lifetime_smoking_field:
        df[COL_SMOKE_EVER] = pd.Series(pd.NA, index=df.index, dtype="Int64")

    malformed: Dict[str, pd.Series] = {}
    for raw_col, out_col, encoding in targets:
        if raw_col not in df.columns:
            logger.info("ftnd_recode: %s absent, treated as missing.", raw_col)
            df[out_col] = pd.Series(pd.NA, index=df.index, dtype="Int64")
            continue
        values, bad = recode_series(
            df[raw_col],
            encoding,
            missing_codes=config.missing_codes,
            blank_is_missing=config.blank_is_missing,
        )
        df[out_col] = values
        n_bad = int(bad.sum())
        if n_bad:
            logger.warning("ftnd_recode: %d malformed value(s) in %s coerced to missing.", n_bad, raw_col)
            malformed[raw_col] = bad

    names = list(malformed)
    if names:
        arr = np.column_stack([malformed[n].to_numpy() for n in names])
        joined = [FLAG_SEP.join(n for n, hit in zip(names, row) if hit) for row in arr]
    else:
        joined = [""] * len(df)
    df[COL_MALFORMED] = pd.Series(joined, index=df.index, dtype="object")
    return df


# ------------------------------------------------------------------------------------
# Stage 2: Eligibility Gate
# ------------------------------------------------------------------------------------

def threshold_eligible(df: pd.DataFrame, *, config: FTNDConfig = DEFAULT_CONFIG) -> pd.DataFrame:
    """
    Derive 'derived.is_threshold_eligible': True iff any recoded threshold
    indicator equals 1. Lifetime smoking status is deliberately not consulted.
    """
    cols = [threshold_col(t) for t in config.type_priority]
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise KeyError(f"threshold_eligible: missing recoded columns {missing} (run ftnd_recode first)")

    eligible = pd.Series(False, index=df.index)
    for c in cols:
        eligible |= _is_yes(df[c])

    df = df.copy()
    df[COL_ELIGIBLE] = eligible.astype(bool)
    return df


# ------------------------------------------------------------------------------------
# Stage 3: Tobacco-Type Resolver
# ------------------------------------------------------------------------------------

def primary_tobacco_type(df: pd.DataFrame, *, config: FTNDConfig = DEFAULT_CONFIG) -> pd.DataFrame:
    """
    Derive 'derived.primary_tobacco_type' and 'derived.resolved_cpd_item'.

    The first qualifying type in config.type_priority wins. The resolved CPD
    item is that type's recoded peak frequency, left missing when the item was
    not answered (no fallback to a lower-priority type).
    """
    eligible = df[COL_ELIGIBLE].astype(bool)

    ptype = pd.Series(TobaccoType.NONE.value, index=df.index, dtype="object")
    resolved = pd.Series(pd.NA, index=df.index, dtype="Int64")
    remaining = eligible.copy()

    for t in config.type_priority:
        hit = remaining & _is_yes(df[threshold_col(t)])
        if not hit.any():
            continue
        ptype.loc[hit] = t.value
        resolved.loc[hit] = df.loc[hit, peak_frequency_col(t)]
        remaining &= ~hit

    n_orphan = int(remaining.sum())
    if n_orphan:
        logger.error(
            "primary_tobacco_type: %d eligible respondent(s) without a qualifying tobacco type; scores withheld.",
            n_orphan,
        )

    df = df.copy()
    categories = [t.value for t in TobaccoType]
    df[COL_PRIMARY_TYPE] = ptype.astype(pd.CategoricalDtype(categories=categories))
    df[COL_RESOLVED_CPD] = resolved
    return df


# ------------------------------------------------------------------------------------
# Stage 4: Score Aggregator
# ------------------------------------------------------------------------------------

def ftnd_components(df: pd.DataFrame, *, config: FTNDConfig = DEFAULT_CONFIG) -> pd.DataFrame:
    """
    Assemble the six FTND components (resolved CPD + five type-agnostic items)
    and count missing components for eligible respondents.
    """
    df = df.copy()
    df[component_col("cpd")] = df[COL_RESOLVED_CPD].astype("Int64")

    comp = df[[component_col(n) for n in FTND_COMPONENTS]]
    n_missing = comp.isna().sum(axis=1).astype("Int64")
    n_missing = n_missing.where(df[COL_ELIGIBLE].astype(bool), pd.NA)
    df[COL_N_MISSING] = n_missing
    return df


def ftnd_sum_score(df: pd.DataFrame, *, config: FTNDConfig = DEFAULT_CONFIG) -> pd.DataFrame:
    """
    Derive 'derived.ftnd_sum_score' (nullable float in [0, 10]).

    - no missing component: plain sum of component values
    - 1..max_missing missing: observed sum rescaled by 10 / observed maximum points
    - more missing, not threshold eligible, or no resolved tobacco type: NA
    Rounded to config.score_decimals when set.
    """
    names = list(FTND_COMPONENTS)
    comp = df[[component_col(n) for n in names]]
    observed = comp.notna().to_numpy()
    values = comp.fillna(0).to_numpy(dtype=float)
    weights = np.array([config.weights[n] for n in names], dtype=float)

    observed_sum = values.sum(axis=1)
    observed_weight = (observed * weights).sum(axis=1)
    n_missing = (~observed).sum(axis=1)

    with np.errstate(divide="ignore", invalid="ignore"):
        imputed = observed_sum * FTND_MAX_SCORE / observed_weight
    raw = np.where(n_missing == 0, observed_sum, imputed)

    resolved_type = df[COL_PRIMARY_TYPE].astype(str).ne(TobaccoType.NONE.value).to_numpy()
    scorable = df[COL_ELIGIBLE].astype(bool).to_numpy() & resolved_type & (n_missing <= config.max_missing)
    score = pd.Series(np.where(scorable, raw, np.nan), index=df.index, dtype="Float64")
    if config.score_decimals is not None:
        score = score.round(config.score_decimals)

    df = df.copy()
    df[COL_SCORE] = score
    check_score_range(df)
    return df


# ------------------------------------------------------------------------------------
# Registry (ordered: stages run in this order)
# ------------------------------------------------------------------------------------

DERIVE_REGISTRY: Dict[str, DeriveSpec] = {
    "ftnd_recode": {
        "fn": ftnd_recode,
    },
    "threshold_eligible": {
        "fn": threshold_eligible,
        "all_of": [COL_MALFORMED],
    },
    "primary_tobacco_type": {
        "fn": primary_tobacco_type,
        "all_of": [COL_ELIGIBLE],
    },
    "ftnd_components": {
        "fn": ftnd_components,
        "all_of": [COL_ELIGIBLE, COL_RESOLVED_CPD] + [component_col(n) for n in TYPE_AGNOSTIC_COMPONENTS],
    },
    "ftnd_sum_score": {
        "fn": ftnd_sum_score,
        "all_of": [COL_ELIGIBLE, COL_PRIMARY_TYPE, COL_N_MISSING] + [component_col(n) for n in FTND_COMPONENTS],
    },
    "ftnd_qc_flags": {
        "fn": ftnd_qc_flags,
        "all_of": [COL_ELIGIBLE, COL_PRIMARY_TYPE, COL_N_MISSING, COL_SCORE, COL_MALFORMED],
    },
}
