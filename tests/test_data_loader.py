"""Tests for the file / URL boundary adapters."""

from datetime import date

import pandas as pd
import pytest
import requests

from gender_gap_tracker.core import data_loader
from gender_gap_tracker.core.data_loader import (
    load_respondent_pool,
    normalize_na_tokens,
    read_trend_table,
    save_waves,
    wave_frame,
    write_trend_table,
)
from gender_gap_tracker.core.errors import DataLoaderError, PoolValidationError
from gender_gap_tracker.core.gap_analyzer import GapRecord
from gender_gap_tracker.core.partitioner import partition_into_waves
from gender_gap_tracker.core.trend import TrendSeries


class _FakeResponse:
    def __init__(self, status_code, text):
        self.status_code = status_code
        self.text = text


class _FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if self.exc is not None:
            raise self.exc
        return self.response


RAW_CSV = (
    "id,wt,gender,age,soc_respect\n"
    "001,1.2,male,18_TO_24,Agree\n"
    "002,0.8,female,25_TO_34,Don't know\n"
    "003,1.0,prefer_not_to_say,45_TO_54,dk\n"
)


class TestLoadPool:
    def test_csv_with_custom_columns(self, tmp_path):
        path = tmp_path / "pool.csv"
        path.write_text(RAW_CSV)

        pool = load_respondent_pool(path, weight_col="wt", id_col="id")

        assert {"respondent_id", "weight"} <= set(pool.columns)
        assert list(pool["respondent_id"]) == ["001", "002", "003"]
        assert pool["weight"].tolist() == pytest.approx([1.2, 0.8, 1.0])
        assert pool.loc[0, "soc_respect"] == "Agree"
        assert pd.isna(pool.loc[1, "soc_respect"])
        assert pd.isna(pool.loc[2, "soc_respect"])
        assert pd.isna(pool.loc[2, "gender"])

    def test_duplicate_ids_rejected(self, tmp_path):
        path = tmp_path / "pool.csv"
        path.write_text("respondent_id,weight\na,1\na,2\n")
        with pytest.raises(PoolValidationError):
            load_respondent_pool(path)

    def test_validation_can_be_skipped(self, tmp_path):
        path = tmp_path / "pool.csv"
        path.write_text("respondent_id,weight\na,1\na,2\n")
        assert len(load_respondent_pool(path, validate=False)) == 2

    def test_excel_pool(self, tmp_path):
        path = tmp_path / "pool.xlsx"
        pd.DataFrame({"respondent_id": ["a", "b"], "weight": [1.0, 2.0], "q1": ["Agree", "dk"]}).to_excel(
            path, index=False
        )
        pool = load_respondent_pool(path)
        assert list(pool["respondent_id"]) == ["a", "b"]
        assert pd.isna(pool.loc[1, "q1"])

    def test_missing_file(self, tmp_path):
        with pytest.raises(DataLoaderError, match="not found"):
            load_respondent_pool(tmp_path / "nope.csv")

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "pool.json"
        path.write_text("{}")
        with pytest.raises(DataLoaderError, match="Unsupported"):
            load_respondent_pool(path)

    def test_no_source_configured(self, monkeypatch):
        monkeypatch.setattr(data_loader, "RESPONDENT_POOL_URL", "")
        with pytest.raises(DataLoaderError):
            load_respondent_pool()


class TestRemotePool:
    def test_fetch_from_url(self, monkeypatch):
        session = _FakeSession(_FakeResponse(200, RAW_CSV))
        monkeypatch.setattr(data_loader, "_get_session", lambda: session)

        pool = load_respondent_pool("https://example.org/pool.csv", weight_col="wt", id_col="id", timeout_seconds=5)

        assert len(pool) == 3
        assert session.calls == [("https://example.org/pool.csv", 5)]

    def test_falls_back_to_configured_url(self, monkeypatch):
        session = _FakeSession(_FakeResponse(200, "respondent_id,weight\na,1\n"))
        monkeypatch.setattr(data_loader, "_get_session", lambda: session)
        monkeypatch.setattr(data_loader, "RESPONDENT_POOL_URL", "https://example.org/default.csv")

        assert len(load_respondent_pool()) == 1
        assert session.calls[0][0] == "https://example.org/default.csv"

    def test_http_status_error(self, monkeypatch):
        session = _FakeSession(_FakeResponse(503, "unavailable"))
        monkeypatch.setattr(data_loader, "_get_session", lambda: session)
        with pytest.raises(DataLoaderError, match="503"):
            load_respondent_pool("https://example.org/pool.csv")

    def test_connection_error(self, monkeypatch):
        session = _FakeSession(exc=requests.ConnectionError("refused"))
        monkeypatch.setattr(data_loader, "_get_session", lambda: session)
        with pytest.raises(DataLoaderError, match="HTTP error"):
            load_respondent_pool("https://example.org/pool.csv")


def test_normalize_na_tokens_leaves_numbers_alone():
    df = pd.DataFrame({"x": [1, 2], "q": ["no_answer", "Agree"]})
    out = normalize_na_tokens(df)
    assert out["x"].tolist() == [1, 2]
    assert pd.isna(out.loc[0, "q"])
    assert out.loc[1, "q"] == "Agree"


class TestWaveFiles:
    def test_wave_frame_tags_rows(self, pool):
        waves, _ = partition_into_waves(pool, [300, 400])
        frame = wave_frame(pool, waves[0])

        assert len(frame) == 300
        assert set(frame["survey_wave"]) == {"May_2024"}
        assert set(frame["wave_number"]) == {1}
        assert frame["survey_date"].between("2024-05-01", "2024-05-28").all()

    def test_save_waves(self, pool, tmp_path):
        waves, _ = partition_into_waves(pool, [300, 400])
        written = save_waves(pool, waves, tmp_path)

        assert written["May_2024"].name == "wave_1_May_2024.csv"
        assert written["June_2024"].name == "wave_2_June_2024.csv"
        combined = pd.read_csv(written["combined"])
        assert len(combined) == 700
        assert combined["respondent_id"].is_unique


class TestTrendTable:
    def _record(self, gap):
        return GapRecord(
            scale="social_conservatism", dimension="age", cohort="18_TO_24",
            mean_male=0.55, mean_female=0.55 - gap, gap=gap, se=0.02,
            ci_low=gap - 0.04, ci_high=gap + 0.04, p_value=0.01, significant=True,
            n_male=240.0, n_female=250.0,
        )

    def test_write_then_read(self, tmp_path):
        trend = TrendSeries()
        trend.append([self._record(0.10)], "May_2024", date(2024, 5, 1))
        trend.append([self._record(0.12)], "June_2024", date(2024, 6, 1))
        path = write_trend_table(trend, tmp_path / "out" / "trend.csv")

        restored = read_trend_table(path)

        assert restored.wave_labels() == ["May_2024", "June_2024"]
        entries = restored.series("social_conservatism", "18_TO_24")
        assert entries[0].wave_date == date(2024, 5, 1)
        assert entries[1].record.gap == pytest.approx(0.12)
        assert entries[1].record.significant is True

    def test_missing_table_is_empty_history(self, tmp_path):
        assert len(read_trend_table(tmp_path / "none.csv")) == 0

    def test_missing_value_cohort_survives_reload(self, tmp_path):
        # missing values in the cohort dimension form the level "NA"
        record = self._record(0.10)
        record.cohort = "NA"
        trend = TrendSeries().append([record], "May_2024", date(2024, 5, 1))
        path = write_trend_table(trend, tmp_path / "trend.csv")

        restored = read_trend_table(path)
        later = self._record(0.14)
        later.cohort = "NA"
        restored.append([later], "June_2024", date(2024, 6, 1))

        assert restored.keys() == [("social_conservatism", "age", "NA")]
        delta = restored.latest_delta("social_conservatism", "NA")
        assert delta.wave_start == "May_2024"
        assert delta.delta == pytest.approx(0.04)

    def test_missing_numbers_and_notes_read_back_as_none(self, tmp_path):
        flagged = GapRecord(
            scale="social_conservatism", dimension="age", cohort="65_TO_74",
            mean_male=0.5, mean_female=None, gap=None, se=None, ci_low=None, ci_high=None,
            p_value=None, significant=False, n_male=40.0, n_female=0.0, evaluable=False,
        )
        trend = TrendSeries().append([flagged, self._record(0.1)], "May_2024", date(2024, 5, 1))
        restored = read_trend_table(write_trend_table(trend, tmp_path / "trend.csv"))

        rec = restored.series("social_conservatism", "65_TO_74")[0].record
        assert rec.gap is None and rec.mean_female is None
        assert rec.note is None
        assert rec.evaluable is False
        assert rec.mean_male == pytest.approx(0.5)
