"""
Shared fixtures: synthetic respondent pools.

All pools are generated from seeded numpy generators so every test sees the
same data on every run.
"""

from typing import List

import numpy as np
import pandas as pd
import pytest

from gender_gap_tracker.core import metadata_loader
from gender_gap_tracker.core.scales import AGREE_VOCABULARY, ECONOMIC_RIGHTISM, SOCIAL_CONSERVATISM

AGES = ["18_TO_24", "25_TO_34", "45_TO_54", "65_TO_74"]
REGIONS = ["london", "north", "scotland"]
ETHNICITIES = ["white", "other"]
EDUCATION = ["low", "mid", "high"]

ITEMS: List[str] = list(SOCIAL_CONSERVATISM.items) + list(ECONOMIC_RIGHTISM.items)


def make_pool(n: int = 2000, seed: int = 7, dont_know_rate: float = 0.05) -> pd.DataFrame:
    """Pool with all five stratification fields, ten attitude items and weights."""
    rng = np.random.default_rng(seed)
    ethnicity = rng.choice(ETHNICITIES, size=n, p=[0.8, 0.2]).astype(object)
    ethnicity[rng.random(n) < 0.03] = None

    pool = pd.DataFrame(
        {
            "respondent_id": [f"R{i:05d}" for i in range(n)],
            "weight": rng.uniform(0.5, 2.0, size=n),
            "age": rng.choice(AGES, size=n),
            "gender": rng.choice(["male", "female"], size=n),
            "region": rng.choice(REGIONS, size=n, p=[0.3, 0.5, 0.2]),
            "ethnicity": ethnicity,
            "education": rng.choice(EDUCATION, size=n),
        }
    )
    for item in ITEMS:
        answers = rng.choice(AGREE_VOCABULARY, size=n).astype(object)
        answers[rng.random(n) < dont_know_rate] = "Don't know"
        pool[item] = answers
    return pool


def make_gap_scenario(n: int = 1000) -> pd.DataFrame:
    """
    1000 respondents, half female, two age buckets of equal size.

    18_TO_24 is bimodal on social conservatism:
      male   -> 0.25 or 0.85 (mean 0.55)
      female -> 0.15 or 0.75 (mean 0.45)
    45_TO_54 is unimodal: mostly 0.5, a few 0.45 / 0.55, for both genders.
    Weights are all 1 so the constructed means hold exactly.
    """
    patterns = {
        0.25: ["Disagree"] * 5,
        0.85: ["Strongly agree"] * 2 + ["Agree"] * 3,
        0.15: ["Strongly disagree"] * 2 + ["Disagree"] * 3,
        0.75: ["Agree"] * 5,
        0.50: ["Neither agree nor disagree"] * 5,
        0.55: ["Neither agree nor disagree"] * 4 + ["Agree"],
        0.45: ["Neither agree nor disagree"] * 4 + ["Disagree"],
    }
    modes = {
        ("18_TO_24", "male"): [0.25, 0.85],
        ("18_TO_24", "female"): [0.15, 0.75],
        ("45_TO_54", "male"): [0.50, 0.50, 0.45, 0.50, 0.50, 0.55],
        ("45_TO_54", "female"): [0.50, 0.50, 0.45, 0.50, 0.50, 0.55],
    }

    per_cell = n // 4
    rows = []
    i = 0
    for (age, gender), values in modes.items():
        for j in range(per_cell):
            value = values[j % len(values)]
            row = {
                "respondent_id": f"S{i:05d}",
                "weight": 1.0,
                "age": age,
                "gender": gender,
                "region": REGIONS[i % len(REGIONS)],
                "ethnicity": "white",
                "education": EDUCATION[i % len(EDUCATION)],
            }
            row.update(dict(zip(SOCIAL_CONSERVATISM.items, patterns[value])))
            row.update({item: "Neither agree nor disagree" for item in ECONOMIC_RIGHTISM.items})
            rows.append(row)
            i += 1
    return pd.DataFrame(rows)


@pytest.fixture
def pool() -> pd.DataFrame:
    return make_pool()


@pytest.fixture
def gap_pool() -> pd.DataFrame:
    return make_gap_scenario()


@pytest.fixture
def two_strata_pool() -> pd.DataFrame:
    """2000 respondents, one field 'group' split exactly 70:30."""
    n = 2000
    groups = ["A"] * 1400 + ["B"] * 600
    rng = np.random.default_rng(3)
    rng.shuffle(groups)
    return pd.DataFrame(
        {
            "respondent_id": [f"T{i:05d}" for i in range(n)],
            "weight": 1.0,
            "group": groups,
        }
    )


@pytest.fixture(autouse=True)
def _clear_metadata_cache():
    metadata_loader.clear_cache()
    yield
    metadata_loader.clear_cache()
