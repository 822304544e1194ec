"""Tests for the scale / vocabulary metadata workbook."""

import pandas as pd
import pytest

from gender_gap_tracker.core import metadata_loader
from gender_gap_tracker.core.errors import ConfigurationError
from gender_gap_tracker.core.metadata_loader import (
    _find_metadata_workbook,
    load_item_vocabulary,
    load_scale_definitions,
)
from gender_gap_tracker.core.scales import AGREE_VOCABULARY, DEFAULT_SCALES


@pytest.fixture
def workbook(tmp_path):
    path = tmp_path / "scale_metadata.xlsx"
    scales = pd.DataFrame(
        {
            "Scale": ["trust", "trust", "trust", "populism", "populism"],
            "Item": ["tr_gov", "tr_media", "tr_courts", "pop_elite", "pop_people"],
            "Inverted": ["no", "no", "no", "yes", None],
            "Lower": [None, None, None, -1, -1],
            "Upper": [None, None, None, 1, 1],
        }
    )
    vocabulary = pd.DataFrame({"position": [2, 1, 3], "label": ["Sometimes", "Never", "Always"]})
    with pd.ExcelWriter(path) as writer:
        scales.to_excel(writer, sheet_name="SCALES", index=False)
        vocabulary.to_excel(writer, sheet_name="VOCABULARY", index=False)
    return path


def test_defaults_without_workbook(monkeypatch):
    monkeypatch.setattr(metadata_loader, "_find_metadata_workbook", lambda: None)
    assert load_scale_definitions() == DEFAULT_SCALES
    assert load_item_vocabulary() == AGREE_VOCABULARY


def test_find_workbook_in_empty_dir(tmp_path):
    assert _find_metadata_workbook(tmp_path) is None


def test_find_workbook_prefers_expected_name(tmp_path, workbook):
    (tmp_path / "aaa_other.xlsx").write_bytes(workbook.read_bytes())
    assert _find_metadata_workbook(tmp_path) == workbook


def test_scale_definitions_from_sheet(workbook):
    scales = {d.name: d for d in load_scale_definitions(workbook)}

    assert list(scales) == ["trust", "populism"]
    assert scales["trust"].items == ("tr_gov", "tr_media", "tr_courts")
    assert not scales["trust"].inverted
    assert scales["trust"].bounds == (0.0, 1.0)
    assert scales["populism"].inverted
    assert scales["populism"].bounds == (-1.0, 1.0)


def test_vocabulary_ordered_by_position(workbook):
    assert load_item_vocabulary(workbook) == ("Never", "Sometimes", "Always")


def test_missing_scales_sheet(tmp_path):
    path = tmp_path / "scale_metadata.xlsx"
    pd.DataFrame({"a": [1]}).to_excel(path, sheet_name="OTHER", index=False)
    with pytest.raises(ConfigurationError, match="SCALES"):
        load_scale_definitions(path)


def test_explicit_missing_path(tmp_path):
    with pytest.raises(ConfigurationError):
        load_scale_definitions(tmp_path / "absent.xlsx")
