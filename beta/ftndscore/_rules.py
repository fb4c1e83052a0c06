"""Default FTND scoring rules and the immutable scoring configuration.

Edit DEFAULT_* below when a cohort uses different column names or sentinels,
or build a separate FTNDConfig with build_config() so several configurations
can live side by side in one process.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .utils import load_file

logger = logging.getLogger(__name__)


class TobaccoType(str, Enum):
    CIGARETTE = "cigarette"
    E_CIGARETTE = "e_cigarette"
    CIGAR = "cigar"
    CIGARILLO = "cigarillo"
    PIPE = "pipe"
    NONE = "none"


TOBACCO_TYPES: Tuple[TobaccoType, ...] = (
    TobaccoType.CIGARETTE,
    TobaccoType.E_CIGARETTE,
    TobaccoType.CIGAR,
    TobaccoType.CIGARILLO,
    TobaccoType.PIPE,
)

# Questionnaire design: cigarette use dominates scoring when present.
DEFAULT_TYPE_PRIORITY: Tuple[TobaccoType, ...] = TOBACCO_TYPES


# ------------------------------------------------------------------------------------
# Encodings (raw code -> native FTND value)
# ------------------------------------------------------------------------------------

ENCODINGS: Dict[str, Dict[int, int]] = {
    "binary_direct": {1: 1, 2: 0},
    "binary_reversed": {1: 0, 2: 1},
    "ordinal_direct": {1: 0, 2: 1, 3: 2, 4: 3},
    "ordinal_reversed": {1: 3, 2: 2, 3: 1, 4: 0},
}

# ordered as the components appear in the questionnaire
FTND_COMPONENTS: Tuple[str, ...] = ("time_to_first", "cpd", "refrain", "hardest", "morning", "ill")
TYPE_AGNOSTIC_COMPONENTS: Tuple[str, ...] = ("time_to_first", "refrain", "hardest", "morning", "ill")

DEFAULT_WEIGHTS: Dict[str, int] = {
    "time_to_first": 3,
    "cpd": 3,
    "refrain": 1,
    "hardest": 1,
    "morning": 1,
    "ill": 1,
}

FTND_MAX_SCORE = 10

DEFAULT_COMPONENT_ENCODINGS: Dict[str, str] = {
    "time_to_first": "ordinal_reversed",
    "refrain": "binary_direct",
    "hardest": "binary_direct",
    "morning": "binary_direct",
    "ill": "binary_direct",
}
THRESHOLD_ENCODING = "binary_direct"
PEAK_FREQUENCY_ENCODING = "ordinal_direct"
LIFETIME_SMOKING_ENCODING = "binary_direct"


# ------------------------------------------------------------------------------------
# Default column names
# ------------------------------------------------------------------------------------

DEFAULT_RESPONDENT_ID_FIELD = "participant.pid"
DEFAULT_LIFETIME_SMOKING_FIELD = "questionnaire.smoke_ever_1_1"

DEFAULT_THRESHOLD_FIELDS: Dict[TobaccoType, str] = {
    TobaccoType.CIGARETTE: "questionnaire.smoke_reg_cig_1_1",
    TobaccoType.E_CIGARETTE: "questionnaire.smoke_reg_ecig_1_1",
    TobaccoType.CIGAR: "questionnaire.smoke_reg_cigar_1_1",
    TobaccoType.CIGARILLO: "questionnaire.smoke_reg_cigarillo_1_1",
    TobaccoType.PIPE: "questionnaire.smoke_reg_pipe_1_1",
}

DEFAULT_PEAK_FREQUENCY_FIELDS: Dict[TobaccoType, str] = {
    TobaccoType.CIGARETTE: "questionnaire.smoke_peak_cig_1_1",
    TobaccoType.E_CIGARETTE: "questionnaire.smoke_peak_ecig_1_1",
    TobaccoType.CIGAR: "questionnaire.smoke_peak_cigar_1_1",
    TobaccoType.CIGARILLO: "questionnaire.smoke_peak_cigarillo_1_1",
    TobaccoType.PIPE: "questionnaire.smoke_peak_pipe_1_1",
}

DEFAULT_COMPONENT_FIELDS: Dict[str, str] = {
    "time_to_first": "questionnaire.ftnd_first_use_1_1",
    "refrain": "questionnaire.ftnd_refrain_1_1",
    "hardest": "questionnaire.ftnd_hardest_1_1",
    "morning": "questionnaire.ftnd_morning_1_1",
    "ill": "questionnaire.ftnd_ill_1_1",
}

# -1 do not know, -3 prefer not to answer, -818 prefer not to answer (v2), -999 not asked
DEFAULT_MISSING_CODES: Tuple[int, ...] = (-1, -3, -818, -999)


# ------------------------------------------------------------------------------------
# Derived column names
# ------------------------------------------------------------------------------------

COL_SMOKE_EVER = "derived.smoke_ever"
COL_ELIGIBLE = "derived.is_threshold_eligible"
COL_PRIMARY_TYPE = "derived.primary_tobacco_type"
COL_RESOLVED_CPD = "derived.resolved_cpd_item"
COL_N_MISSING = "derived.ftnd_n_missing"
COL_SCORE = "derived.ftnd_sum_score"
COL_FLAGS = "derived.ftnd_flags"
COL_MALFORMED = "derived.ftnd_malformed_fields"

FLAG_SEP = "|"


def threshold_col(tobacco_type: TobaccoType) -> str:
    return f"derived.threshold_{TobaccoType(tobacco_type).value}"


def peak_frequency_col(tobacco_type: TobaccoType) -> str:
    return f"derived.peak_freq_{TobaccoType(tobacco_type).value}"


def component_col(name: str) -> str:
    return f"derived.ftnd_{name}"


# machine-readable reasons attached to each respondent
FLAG_MALFORMED_INPUT = "malformed_input"
FLAG_NOT_ELIGIBLE = "not_threshold_eligible"
FLAG_INSUFFICIENT = "insufficient_components"
FLAG_IMPUTED = "imputed"
FLAG_INTERNAL_CONSISTENCY = "internal_consistency_violation"
FLAG_INCONSISTENT_SMOKING = "inconsistent_smoking_status"

FLAG_ORDER: Tuple[str, ...] = (
    FLAG_MALFORMED_INPUT,
    FLAG_NOT_ELIGIBLE,
    FLAG_INSUFFICIENT,
    FLAG_IMPUTED,
    FLAG_INTERNAL_CONSISTENCY,
    FLAG_INCONSISTENT_SMOKING,
)


# ------------------------------------------------------------------------------------
# Configuration object
# ------------------------------------------------------------------------------------

def _frozen(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


def _as_type_map(mapping: Mapping[Any, str]) -> Dict[TobaccoType, str]:
    return {TobaccoType(k): str(v) for k, v in mapping.items()}


@dataclass(frozen=True)
class FTNDConfig:
    """Column mapping, weights and missing-data policy for one cohort.

    Args:
        respondent_id_field: Opaque respondent key, carried through untouched.
        lifetime_smoking_field: Ever-smoked item, only used for QC.
        threshold_fields: Tobacco type -> "used regularly at heaviest" column.
        peak_frequency_fields: Tobacco type -> peak amount-per-day column.
        component_fields: Type-agnostic FTND item -> column.
        component_encodings: Type-agnostic FTND item -> encoding name.
        weights: Component -> maximum points; must total 10.
        type_priority: Tie-break order when several types qualify.
        missing_codes: Raw codes that mean "no answer" (never flagged malformed).
        blank_is_missing: Treat blank strings as declared missing.
        max_missing: Largest number of missing components that is still imputed.
        score_decimals: Rounding applied to the final score; None keeps full precision.
    """

    respondent_id_field: str = DEFAULT_RESPONDENT_ID_FIELD
    lifetime_smoking_field: Optional[str] = DEFAULT_LIFETIME_SMOKING_FIELD
    threshold_fields: Mapping[TobaccoType, str] = field(default_factory=lambda: dict(DEFAULT_THRESHOLD_FIELDS))
    peak_frequency_fields: Mapping[TobaccoType, str] = field(default_factory=lambda: dict(DEFAULT_PEAK_FREQUENCY_FIELDS))
    component_fields: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_COMPONENT_FIELDS))
    component_encodings: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_COMPONENT_ENCODINGS))
    weights: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    type_priority: Tuple[TobaccoType, ...] = DEFAULT_TYPE_PRIORITY
    missing_codes: Tuple[int, ...] = DEFAULT_MISSING_CODES
    blank_is_missing: bool = True
    max_missing: int = 2
    score_decimals: Optional[int] = 2

    def __post_init__(self):
        # normalize, then freeze every mapping so the config cannot drift after validation
        object.__setattr__(self, "threshold_fields", _frozen(_as_type_map(self.threshold_fields)))
        object.__setattr__(self, "peak_frequency_fields", _frozen(_as_type_map(self.peak_frequency_fields)))
        object.__setattr__(self, "component_fields", _frozen(self.component_fields))
        object.__setattr__(self, "component_encodings", _frozen(self.component_encodings))
        object.__setattr__(self, "weights", _frozen({k: int(v) for k, v in self.weights.items()}))
        object.__setattr__(self, "type_priority", tuple(TobaccoType(t) for t in self.type_priority))
        object.__setattr__(self, "missing_codes", tuple(int(c) for c in self.missing_codes))
        self._validate()

    def _validate(self) -> None:
        types = set(self.threshold_fields)
        if TobaccoType.NONE in types:
            raise ValueError("'none' cannot be configured as a tobacco type")
        if not types:
            raise ValueError("at least one tobacco type must be configured")
        missing_peak = types - set(self.peak_frequency_fields)
        if missing_peak:
            raise KeyError(f"peak_frequency_fields missing tobacco types: {sorted(t.value for t in missing_peak)}")
        extra_peak = set(self.peak_frequency_fields) - types
        if extra_peak:
            raise KeyError(f"peak_frequency_fields has types without a threshold field: {sorted(t.value for t in extra_peak)}")

        if len(set(self.type_priority)) != len(self.type_priority) or set(self.type_priority) != types:
            raise ValueError(
                "type_priority must list every configured tobacco type exactly once; "
                f"got {[t.value for t in self.type_priority]}"
            )

        missing_comp = set(TYPE_AGNOSTIC_COMPONENTS) - set(self.component_fields)
        if missing_comp:
            raise KeyError(f"component_fields missing components: {sorted(missing_comp)}")
        for name in TYPE_AGNOSTIC_COMPONENTS:
            enc = self.component_encodings.get(name)
            if enc not in ENCODINGS:
                raise ValueError(f"Unknown encoding for component {name!r}: {enc!r}. Known: {list(ENCODINGS)}")

        if set(self.weights) != set(FTND_COMPONENTS):
            raise KeyError(f"weights must cover exactly {list(FTND_COMPONENTS)}; got {sorted(self.weights)}")
        if any(w <= 0 for w in self.weights.values()):
            raise ValueError("weights must be positive")
        if sum(self.weights.values()) != FTND_MAX_SCORE:
            raise ValueError(f"weights must sum to {FTND_MAX_SCORE}; got {sum(self.weights.values())}")
        # a weight is the component's maximum native value
        for name in FTND_COMPONENTS:
            enc = PEAK_FREQUENCY_ENCODING if name == "cpd" else self.component_encodings[name]
            top = max(ENCODINGS[enc].values())
            if self.weights[name] != top:
                raise ValueError(
                    f"weight for {name!r} is {self.weights[name]} but its encoding {enc!r} tops out at {top}"
                )

        # at least one component must be observed for a score to exist
        if not 0 <= self.max_missing < len(FTND_COMPONENTS):
            raise ValueError(f"max_missing must be in [0, {len(FTND_COMPONENTS) - 1}]")
        if self.score_decimals is not None and self.score_decimals < 0:
            raise ValueError("score_decimals must be >= 0 or None")

    def raw_fields(self) -> Dict[str, str]:
        """All raw columns the engine reads, keyed by a canonical field name."""
        out: Dict[str, str] = {}
        if self.lifetime_smoking_field:
            out["lifetime_smoking"] = self.lifetime_smoking_field
        for t in self.type_priority:
            out[f"threshold.{t.value}"] = self.threshold_fields[t]
            out[f"peak_frequency.{t.value}"] = self.peak_frequency_fields[t]
        for name in TYPE_AGNOSTIC_COMPONENTS:
            out[f"component.{name}"] = self.component_fields[name]
        return out

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "FTNDConfig":
        """Build a config from a JSON-style dict (tobacco types given as strings)."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise KeyError(f"Unknown config keys: {sorted(unknown)}")
        kwargs = dict(data)
        if "type_priority" in kwargs:
            kwargs["type_priority"] = tuple(kwargs["type_priority"])
        if "missing_codes" in kwargs:
            kwargs["missing_codes"] = tuple(kwargs["missing_codes"])
        return cls(**kwargs)

    def __reduce__(self):
        # mappingproxy fields can't be pickled; ship the plain mapping to Spark workers
        return (self.__class__.from_mapping, (self.to_mapping(),))

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "respondent_id_field": self.respondent_id_field,
            "lifetime_smoking_field": self.lifetime_smoking_field,
            "threshold_fields": {t.value: c for t, c in self.threshold_fields.items()},
            "peak_frequency_fields": {t.value: c for t, c in self.peak_frequency_fields.items()},
            "component_fields": dict(self.component_fields),
            "component_encodings": dict(self.component_encodings),
            "weights": dict(self.weights),
            "type_priority": [t.value for t in self.type_priority],
            "missing_codes": list(self.missing_codes),
            "blank_is_missing": self.blank_is_missing,
            "max_missing": self.max_missing,
            "score_decimals": self.score_decimals,
        }


DEFAULT_CONFIG = FTNDConfig()


def build_config(overrides: Optional[Mapping[str, Any]] = None,
                 base: Optional[FTNDConfig] = None,
                 **kwargs) -> FTNDConfig:
    """Combine a base config (default DEFAULT_CONFIG) with overrides.

    Mapping-valued overrides (threshold_fields, component_fields, ...) are merged
    key-by-key into the base mapping; everything else replaces the base value.

    Args:
        overrides: Field name -> new value.
        base: Config to start from.
        **kwargs: Same as overrides, merged after them.

    Returns:
        A new validated FTNDConfig.

    Raises:
        KeyError: If an override names an unknown config field.
    """
    base = DEFAULT_CONFIG if base is None else base
    merged: Dict[str, Any] = dict(overrides or {})
    merged.update(kwargs)

    known = {f.name for f in fields(FTNDConfig)}
    unknown = set(merged) - known
    if unknown:
        raise KeyError(f"Unknown config keys: {sorted(unknown)}")

    changes: Dict[str, Any] = {}
    for key, value in merged.items():
        current = getattr(base, key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            if key in ("threshold_fields", "peak_frequency_fields"):
                value = {**current, **_as_type_map(value)}
            else:
                value = {**current, **value}
        changes[key] = value
    return replace(base, **changes)


def load_config(path: Union[str, Path]) -> FTNDConfig:
    """Read an FTNDConfig from a JSON file; missing keys fall back to the defaults."""
    data = load_file(path)
    if not isinstance(data, Mapping):
        raise ValueError(f"Config file must contain a JSON object: {path}")
    logger.info("Loaded FTND config from %s", path)
    return FTNDConfig.from_mapping(data)
