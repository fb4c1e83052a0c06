import logging
import pandas as pd
from pathlib import Path
from functools import partial
from typing import Any, Dict, Iterator, List, Literal, Optional, Union

from pyspark.sql import functions as F
from pyspark.sql import DataFrame as SparkDataFrame
from pyspark.sql import types as T

# project imports
from ._rules import (
    DEFAULT_CONFIG,
    FTND_COMPONENTS,
    COL_ELIGIBLE,
    COL_FLAGS,
    COL_MALFORMED,
    COL_N_MISSING,
    COL_PRIMARY_TYPE,
    COL_RESOLVED_CPD,
    COL_SCORE,
    COL_SMOKE_EVER,
    FTNDConfig,
    component_col,
    load_config,
    peak_frequency_col,
    threshold_col,
)
from ._derive_funcs import DERIVE_REGISTRY as DEFAULT_DERIVE_REGISTRY, DeriveSpec
from .utils import load_file, write_file

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DeriveSelection = Union[bool, List[str], Literal["all", "auto"]]

# derived columns every scored table carries, in output order
OUTPUT_COLUMNS: List[str] = (
    [COL_SMOKE_EVER, COL_ELIGIBLE, COL_PRIMARY_TYPE, COL_RESOLVED_CPD]
    + [component_col(n) for n in FTND_COMPONENTS]
    + [COL_N_MISSING, COL_SCORE, COL_FLAGS, COL_MALFORMED]
)


# ------------------------------------------------------------------------------------
# Core I/O + small helpers
# ------------------------------------------------------------------------------------

def load_input(input_data):
    if isinstance(input_data, (str, Path)):
        input_path = Path(input_data)
        logger.info("Reading input file: %s", input_path)
        df = load_file(input_path)
        if not isinstance(df, pd.DataFrame):
            raise ValueError(f"Input file did not load as a table: {input_path}")
        return df
    elif isinstance(input_data, pd.DataFrame):
        logger.info("Using input DataFrame with %s rows", len(input_data))
        return input_data.copy()
    else:
        raise ValueError("input_data must be a file path or a pandas DataFrame")


def _resolve_config(config: Union[FTNDConfig, str, Path, None]) -> FTNDConfig:
    if config is None:
        return DEFAULT_CONFIG
    if isinstance(config, FTNDConfig):
        return config
    if isinstance(config, (str, Path)):
        return load_config(config)
    raise ValueError("config must be an FTNDConfig, a path to a JSON config, or None")


def _require_inputs(df: pd.DataFrame, name: str, *, all_of: Optional[List[str]], any_of: Optional[List[str]]) -> None:
    """Strictly enforce input presence for a selected derivation."""
    cols = set(df.columns)
    if all_of:
        missing = set(all_of) - cols
        if missing:
            raise KeyError(f"{name}: missing required columns {sorted(missing)}")
    if any_of:
        if not any(c in cols for c in any_of):
            raise KeyError(f"{name}: requires at least one of {any_of}, but none are present")


# ------------------------------------------------------------------------------------
# Stage selection and execution
# ------------------------------------------------------------------------------------

def _spec_ready(df: pd.DataFrame, spec: Dict[str, Any]) -> bool:
    """
    Is this stage runnable given what's in df *right now*?
    - all_of: must all be present
    - any_of: at least one present
    """
    cols = set(df.columns)
    all_of = spec.get("all_of")
    any_of = spec.get("any_of")
    if all_of and not set(all_of).issubset(cols):
        return False
    if any_of and not any(c in cols for c in any_of):
        return False
    return True


def _run_derivations_auto(
    df: pd.DataFrame,
    selected: List[str],
    registry: Dict[str, DeriveSpec],
) -> pd.DataFrame:
    """
    Opportunistic execution:
      - repeatedly run any stages that are "ready" (inputs present),
        updating df each time; stop when no progress is possible.
      - never raises for missing inputs; simply skips unready stages.
    """
    remaining = list(selected)
    made_progress = True
    out = df
    while remaining and made_progress:
        made_progress = False
        next_remaining: List[str] = []
        for name in remaining:
            spec = registry[name]
            if _spec_ready(out, spec):  # type: ignore[arg-type]
                out = spec["fn"](out)
                logger.info("Applied %s (auto)", name)
                made_progress = True
            else:
                next_remaining.append(name)
        remaining = next_remaining
    if remaining:
        logger.info("Auto-derive skipped (unready inputs): %s", remaining)
    return out


def _run_derivations_strict(
    df: pd.DataFrame,
    selected: List[str],
    registry: Dict[str, DeriveSpec],
) -> pd.DataFrame:
    """
    Strict execution:
      - raises KeyError when a selected stage is missing required inputs.
    """
    out = df
    for name in selected:
        spec = registry[name]
        _require_inputs(out, name, all_of=spec.get("all_of"), any_of=spec.get("any_of"))
        out = spec["fn"](out)
        logger.info("Applied %s (strict)", name)
    return out


def _resolve_selected_derives(
    *,
    derive: DeriveSelection,
    registry: Dict[str, DeriveSpec],
) -> List[str]:
    """
    Selection semantics:
      - derive=False or None         -> []
      - derive=True, "all" or "auto" -> every stage in the registry
      - derive=[...]                 -> explicit subset, run in registry order
    """
    if derive is False or derive is None:
        return []
    if derive is True or (isinstance(derive, str) and derive.lower() in ("all", "auto")):
        return list(registry.keys())
    if isinstance(derive, (list, tuple, set)):
        unknown = [name for name in derive if name not in registry]
        if unknown:
            raise ValueError(f"Unknown derive names: {unknown}. Known: {list(registry.keys())}")
        wanted = set(derive)
        return [name for name in registry if name in wanted]
    raise ValueError("`derive` must be False/None, True/'all', 'auto', or a list of names.")


def _bind_config(registry: Dict[str, DeriveSpec], config: FTNDConfig) -> Dict[str, DeriveSpec]:
    """Copy the registry with every stage fn bound to config (never mutates the global)."""
    bound: Dict[str, DeriveSpec] = {}
    for name, spec in registry.items():
        spec = dict(spec)  # type: ignore[assignment]
        spec["fn"] = partial(spec["fn"], config=config)
        bound[name] = spec  # type: ignore[assignment]
    return bound


def _intermediate_columns(config: FTNDConfig) -> List[str]:
    cols: List[str] = []
    for t in config.type_priority:
        cols += [threshold_col(t), peak_frequency_col(t)]
    return cols


# ------------------------------------------------------------------------------------
# Public entry points
# ------------------------------------------------------------------------------------

def ftnd_fields(
    input_data,
    *,
    config: Union[FTNDConfig, str, Path, None] = None,
    derive: DeriveSelection = "all",
    derive_registry: Optional[Dict[str, DeriveSpec]] = None,
    keep_intermediate: bool = False,
) -> pd.DataFrame:
    """
    Load → recode → gate → resolve tobacco type → aggregate score → QC flags.

    Args:
        input_data: pandas DataFrame or path to a CSV/TSV/Parquet/XLSX file.
        config: FTNDConfig, path to a JSON config, or None for DEFAULT_CONFIG.
        derive: "all" (strict, every stage), "auto" (run whatever is ready),
            a list of stage names, or False to only load.
        derive_registry: Replacement stage registry.
        keep_intermediate: Keep the per-type recoded threshold and peak
            frequency columns.

    Returns:
        A new DataFrame with one row per input row and derived.* columns appended.

    Raises:
        KeyError: A strictly selected stage is missing its inputs.
        ValueError: Unknown stage names or invalid input type.
        ScoreRangeError: A score fell outside [0, 10].
    """
    cfg = _resolve_config(config)
    df = load_input(input_data)

    registry = DEFAULT_DERIVE_REGISTRY if derive_registry is None else derive_registry
    selected = _resolve_selected_derives(derive=derive, registry=registry)
    bound = _bind_config(registry, cfg)

    if isinstance(derive, str) and derive.lower() == "auto":
        df = _run_derivations_auto(df, selected, bound)
    else:
        df = _run_derivations_strict(df, selected, bound)

    if not keep_intermediate:
        df = df.drop(columns=[c for c in _intermediate_columns(cfg) if c in df.columns])

    if COL_SCORE in df.columns:
        n_scored = int(df[COL_SCORE].notna().sum())
        logger.info("FTND scored %s of %s respondents", n_scored, len(df))
    return df


def run_batch(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    *,
    config: Union[FTNDConfig, str, Path, None] = None,
) -> pd.DataFrame:
    """Read a respondent table, score it, and write the scored table to output_path."""
    df = ftnd_fields(input_path, config=config)
    write_file(df, output_path)
    logger.info("Wrote %s rows to %s", len(df), output_path)
    return df


# ------------------------------------------------------------------------------------
# Spark
# ------------------------------------------------------------------------------------

def _is_spark_df(obj: Any) -> bool:
    """Return True if the object looks like a Spark DataFrame."""
    return hasattr(obj, "sparkSession") and hasattr(obj, "schema")


def _spark_output_schema(id_field: T.StructField) -> T.StructType:
    long_cols = [COL_SMOKE_EVER, COL_RESOLVED_CPD] + [component_col(n) for n in FTND_COMPONENTS] + [COL_N_MISSING]
    fields = [id_field]
    for c in OUTPUT_COLUMNS:
        if c in long_cols:
            dtype: T.DataType = T.LongType()
        elif c == COL_ELIGIBLE:
            dtype = T.BooleanType()
        elif c == COL_SCORE:
            dtype = T.DoubleType()
        else:
            dtype = T.StringType()
        fields.append(T.StructField(c, dtype, True))
    return T.StructType(fields)


def _to_arrow_friendly(pdf: pd.DataFrame, id_col: str) -> pd.DataFrame:
    """Nullable pandas dtypes -> plain objects with None, so Arrow casts to the Spark schema."""
    out = pd.DataFrame(index=pdf.index)
    out[id_col] = pdf[id_col]
    for c in OUTPUT_COLUMNS:
        s = pdf[c]
        if c == COL_ELIGIBLE:
            out[c] = s.astype(bool)
        elif c == COL_PRIMARY_TYPE:
            out[c] = s.astype(str)
        else:
            out[c] = s.astype(object).where(s.notna(), None)
    return out


def ftnd_fields_spark(sdf: SparkDataFrame, *, config: Union[FTNDConfig, str, Path, None] = None) -> SparkDataFrame:
    """
    Score a Spark DataFrame partition by partition with mapInPandas.

    Returns the respondent key plus the derived columns (join back on the key
    if the raw columns are needed).
    """
    cfg = _resolve_config(config)
    id_col = cfg.respondent_id_field
    if id_col not in sdf.columns:
        raise KeyError(f"Respondent key {id_col} not found in Spark DataFrame")

    raw_cols = [id_col] + [c for c in cfg.raw_fields().values() if c in sdf.columns]
    raw_cols = list(dict.fromkeys(raw_cols))
    selected = sdf.select(*[F.col(f"`{c}`") for c in raw_cols])
    schema = _spark_output_schema(sdf.schema[id_col])

    def _score_batches(batches: Iterator[pd.DataFrame]) -> Iterator[pd.DataFrame]:
        for pdf in batches:
            scored = ftnd_fields(pdf, config=cfg)
            yield _to_arrow_friendly(scored, id_col)

    return selected.mapInPandas(_score_batches, schema=schema)


def score_any(df_or_sdf, *args, **kwargs):
    """Dispatch to the pandas or Spark pipeline based on input type."""
    if _is_spark_df(df_or_sdf):
        # pandas-only args
        kwargs.pop("derive", None)
        kwargs.pop("derive_registry", None)
        kwargs.pop("keep_intermediate", None)
        return ftnd_fields_spark(df_or_sdf, *args, **kwargs)
    return ftnd_fields(df_or_sdf, *args, **kwargs)
