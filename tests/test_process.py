from __future__ import annotations

import json

import pandas as pd
import pytest

from ftndscore._filter_funcs import ScoreRangeError, check_score_range, split_flags
from ftndscore._rules import (
    COL_ELIGIBLE,
    COL_FLAGS,
    COL_MALFORMED,
    COL_N_MISSING,
    COL_PRIMARY_TYPE,
    COL_SCORE,
    TobaccoType,
    build_config,
    threshold_col,
)
from ftndscore.calculate import get_flag_counts, qc_summary
from ftndscore.process import OUTPUT_COLUMNS, _is_spark_df, ftnd_fields, run_batch, score_any
from ftndscore.simulate import simulate_ftnd_df

pytestmark = pytest.mark.unit

CIG = TobaccoType.CIGARETTE
FULL = {"time_to_first": 1, "refrain": 1, "hardest": 1, "morning": 1, "ill": 1}


@pytest.fixture(scope="module")
def simulated() -> pd.DataFrame:
    return simulate_ftnd_df(
        400,
        include_nonresponse=True,
        missing_rate=0.15,
        malformed_rate=0.02,
        seed=7,
    )


# ------------------------------------------------------------------------------------
# Pipeline shape
# ------------------------------------------------------------------------------------

def test_every_input_row_gets_an_output_row(simulated) -> None:
    out = ftnd_fields(simulated)
    assert len(out) == len(simulated)
    assert out.index.equals(simulated.index)
    for col in OUTPUT_COLUMNS:
        assert col in out.columns
    # raw columns are carried through untouched
    pd.testing.assert_frame_equal(out[simulated.columns], simulated)


def test_intermediate_columns_are_dropped_by_default(simulated) -> None:
    assert threshold_col(CIG) not in ftnd_fields(simulated).columns
    assert threshold_col(CIG) in ftnd_fields(simulated, keep_intermediate=True).columns


def test_pipeline_is_idempotent(simulated) -> None:
    first = ftnd_fields(simulated)
    second = ftnd_fields(simulated)
    pd.testing.assert_frame_equal(first, second)
    # re-running over an already-scored table reproduces the derived fields
    again = ftnd_fields(first)
    pd.testing.assert_frame_equal(again[OUTPUT_COLUMNS], first[OUTPUT_COLUMNS])


def test_scores_stay_in_range(simulated) -> None:
    out = ftnd_fields(simulated)
    scores = out[COL_SCORE].dropna()
    assert len(scores) > 0
    assert ((scores >= 0) & (scores <= 10)).all()


def test_score_defined_iff_eligible_and_enough_components(simulated) -> None:
    out = ftnd_fields(simulated)
    eligible = out[COL_ELIGIBLE].astype(bool)
    enough = out[COL_N_MISSING].le(2).fillna(False).astype(bool)
    assert out[COL_SCORE].notna().tolist() == (eligible & enough).tolist()
    assert (out.loc[~eligible, COL_PRIMARY_TYPE].astype(str) == "none").all()
    assert (out.loc[eligible, COL_PRIMARY_TYPE].astype(str) != "none").all()


def test_auto_and_strict_agree(simulated) -> None:
    pd.testing.assert_frame_equal(ftnd_fields(simulated, derive="auto"), ftnd_fields(simulated))


def test_partial_stage_selection(simulated) -> None:
    out = ftnd_fields(simulated, derive=["threshold_eligible", "ftnd_recode"])
    assert COL_ELIGIBLE in out.columns
    assert COL_SCORE not in out.columns


def test_strict_stage_without_inputs_raises(simulated) -> None:
    with pytest.raises(KeyError):
        ftnd_fields(simulated, derive=["ftnd_sum_score"])


def test_unknown_stage_raises(simulated) -> None:
    with pytest.raises(ValueError):
        ftnd_fields(simulated, derive=["bmi"])


def test_bad_input_type_raises() -> None:
    with pytest.raises(ValueError):
        ftnd_fields([1, 2, 3])


def test_unsupported_input_file_raises(tmp_path) -> None:
    path = tmp_path / "respondents.txt"
    path.write_text("participant.pid\nP0001\n")
    with pytest.raises(ValueError):
        ftnd_fields(path)


# ------------------------------------------------------------------------------------
# Flags and QC
# ------------------------------------------------------------------------------------

def test_flags_explain_missing_scores(row_factory, frame_factory) -> None:
    df = frame_factory(
        row_factory(pid="complete", ever=1, thresholds={CIG: 1}, peaks={CIG: 4}, components=FULL),
        row_factory(pid="imputed", ever=1, thresholds={CIG: 1}, peaks={CIG: 4},
                    components={"refrain": 1, "hardest": 1, "morning": 1}),
        row_factory(pid="sparse", ever=1, thresholds={CIG: 1}, peaks={CIG: 4}, components={"ill": 1}),
        row_factory(pid="never", ever=2, components=FULL),
        row_factory(pid="garbage", ever=1, thresholds={CIG: 9, TobaccoType.CIGAR: 1},
                    peaks={TobaccoType.CIGAR: 2}, components=FULL),
        row_factory(pid="mismatch", ever=2, thresholds={CIG: 1}, peaks={CIG: 2}, components=FULL),
    )
    out = ftnd_fields(df).set_index("participant.pid")
    flags = {pid: split_flags(v) for pid, v in out[COL_FLAGS].items()}

    assert flags["complete"] == []
    assert flags["imputed"] == ["imputed"]
    assert flags["sparse"] == ["insufficient_components"]
    assert flags["never"] == ["not_threshold_eligible"]
    assert flags["garbage"] == ["malformed_input"]
    assert flags["mismatch"] == ["inconsistent_smoking_status"]

    assert out.loc["garbage", COL_MALFORMED] == "questionnaire.smoke_reg_cig_1_1"
    assert out.loc["garbage", COL_PRIMARY_TYPE] == "cigar"
    assert pd.notna(out.loc["garbage", COL_SCORE])
    # QC flag does not change the score
    assert out.loc["mismatch", COL_SCORE] == 8.0


def test_ever_smoker_failing_gate_is_inconsistent(row_factory, frame_factory) -> None:
    out = ftnd_fields(frame_factory(row_factory(ever=1)))
    assert split_flags(out.loc[0, COL_FLAGS]) == ["not_threshold_eligible", "inconsistent_smoking_status"]


def test_qc_summary_counts(row_factory, frame_factory) -> None:
    df = frame_factory(
        row_factory(pid="a", thresholds={CIG: 1}, peaks={CIG: 4}, components=FULL),
        row_factory(pid="b", thresholds={TobaccoType.PIPE: 1}, peaks={TobaccoType.PIPE: 1}, components=FULL),
        row_factory(pid="c"),
        row_factory(pid="d", thresholds={CIG: 1}),
    )
    summary = qc_summary(ftnd_fields(df)).set_index(["section", "item"])
    assert summary.loc[("respondents", "total"), "n"] == 4
    assert summary.loc[("respondents", "threshold_eligible"), "n"] == 3
    assert summary.loc[("respondents", "scored"), "n"] == 2
    assert summary.loc[("respondents", "eligible_unscored"), "n"] == 1
    assert summary.loc[("primary_tobacco_type", "cigarette"), "n"] == 2
    assert summary.loc[("primary_tobacco_type", "pipe"), "n"] == 1
    assert summary.loc[("flag", "not_threshold_eligible"), "percent"] == 25.0


def test_flag_counts_require_scored_table(simulated) -> None:
    with pytest.raises(KeyError):
        get_flag_counts(simulated)
    counts = get_flag_counts(ftnd_fields(simulated))
    assert counts["malformed_input"] > 0
    assert counts["not_threshold_eligible"] > 0


def test_out_of_range_score_fails_loudly() -> None:
    df = pd.DataFrame({COL_SCORE: pd.array([3.0, None, 10.5], dtype="Float64")})
    with pytest.raises(ScoreRangeError):
        check_score_range(df)
    assert issubclass(ScoreRangeError, AssertionError)
    ok = pd.DataFrame({COL_SCORE: pd.array([0.0, None, 10.0], dtype="Float64")})
    assert check_score_range(ok) is ok


# ------------------------------------------------------------------------------------
# Driver, config files, dispatch
# ------------------------------------------------------------------------------------

def test_run_batch_csv_round_trip(tmp_path, simulated) -> None:
    src = tmp_path / "raw.csv"
    dst = tmp_path / "out" / "scored.csv"
    simulated.to_csv(src, index=False)

    out = run_batch(src, dst)
    assert dst.exists()
    assert len(out) == len(simulated)

    in_memory = ftnd_fields(simulated)
    assert out[COL_SCORE].tolist() == in_memory[COL_SCORE].tolist()
    assert out[COL_FLAGS].tolist() == in_memory[COL_FLAGS].tolist()

    written = pd.read_csv(dst)
    assert len(written) == len(simulated)


def test_run_batch_parquet(tmp_path, simulated) -> None:
    src = tmp_path / "raw.parquet"
    dst = tmp_path / "scored.parquet"
    simulated.astype(str).replace({"nan": None}).to_parquet(src, index=False)
    run_batch(src, dst)
    back = pd.read_parquet(dst)
    assert len(back) == len(simulated)
    assert COL_SCORE in back.columns


def test_config_from_json_file(tmp_path, row_factory, frame_factory) -> None:
    cfg = build_config(
        threshold_fields={"cigarette": "cig_regular"},
        peak_frequency_fields={"cigarette": "cig_peak"},
        score_decimals=1,
    )
    path = tmp_path / "ftnd.json"
    path.write_text(json.dumps(cfg.to_mapping()))

    df = frame_factory(row_factory(config=cfg, thresholds={CIG: 1}, peaks={CIG: 2},
                                   components={"time_to_first": 3, "refrain": 2, "hardest": 1, "ill": 1}))
    assert "cig_regular" in df.columns
    out = ftnd_fields(df, config=path)
    assert out.loc[0, COL_SCORE] == 4.4


def test_score_any_uses_pandas_for_pandas_frames(simulated) -> None:
    assert not _is_spark_df(simulated)
    pd.testing.assert_frame_equal(score_any(simulated, derive="all"), ftnd_fields(simulated))
