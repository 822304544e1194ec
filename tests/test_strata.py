"""Tests for stratification keys and the strata index."""

import pandas as pd
import pytest

from gender_gap_tracker.config import MISSING_CATEGORY, STRATIFICATION_FIELDS
from gender_gap_tracker.core.errors import ConfigurationError
from gender_gap_tracker.core.strata import build_strata_index, strata_frame, strata_keys


class TestStrataIndex:
    def test_counts_sum_to_pool_size(self, pool):
        index = build_strata_index(pool, STRATIFICATION_FIELDS)
        assert sum(len(ids) for ids in index.values()) == len(pool)

    def test_missing_values_form_their_own_category(self, pool):
        index = build_strata_index(pool, STRATIFICATION_FIELDS)
        eth_pos = STRATIFICATION_FIELDS.index("ethnicity")
        missing = [k for k in index if k[eth_pos] == MISSING_CATEGORY]

        assert missing
        n_missing = int(pool["ethnicity"].isna().sum())
        assert sum(len(index[k]) for k in missing) == n_missing

    def test_keys_are_sorted(self, pool):
        keys = list(build_strata_index(pool, STRATIFICATION_FIELDS))
        assert keys == sorted(keys)

    def test_shared_key_iff_all_fields_equal(self):
        df = pd.DataFrame(
            {
                "respondent_id": ["a", "b", "c", "d"],
                "age": ["18_TO_24", "18_TO_24", "18_TO_24", None],
                "gender": ["male", "male", "female", "male"],
            }
        )
        index = build_strata_index(df, ["age", "gender"])

        assert index[("18_TO_24", "male")] == ["a", "b"]
        assert index[("18_TO_24", "female")] == ["c"]
        assert index[(MISSING_CATEGORY, "male")] == ["d"]

    def test_missing_field_raises_configuration_error(self, pool):
        with pytest.raises(ConfigurationError, match="income"):
            build_strata_index(pool, ["age", "income"])

    def test_empty_field_list_rejected(self, pool):
        with pytest.raises(ValueError):
            strata_keys(pool, [])

    def test_strata_frame_largest_first(self, pool):
        index = build_strata_index(pool, ["age", "gender"])
        frame = strata_frame(index, ["age", "gender"])

        assert list(frame.columns) == ["age", "gender", "n"]
        assert frame["n"].is_monotonic_decreasing
        assert frame["n"].sum() == len(pool)
