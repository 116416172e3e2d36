"""
Configuration and shared fixtures for unit tests.

Unit tests are fast, isolated tests on small synthetic tables whose
expected values can be worked out by hand.
"""

from pathlib import Path

import polars as pl
import pytest

from pycreel import build_design


def pytest_collection_modifyitems(items):
    """Mark tests in this directory as unit tests."""
    unit_dir = Path(__file__).parent
    for item in items:
        if unit_dir in item.path.parents:
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def single_stratum_data():
    """
    Four observations in one stratum.

    Known values for hand calculation verification:
    - y = [0.8, 1.0, 0.6, 0.9], weight = 1000 for every row
    - weighted totals t = [800, 1000, 600, 900], T = 3300
    - s2 = var(t, ddof=1) = 29,166.67
    - V(T) = n * s2 = 4 * 29,166.67 = 116,666.67
    """
    return pl.DataFrame(
        {
            "obs_id": ["A", "B", "C", "D"],
            "y": [0.8, 1.0, 0.6, 0.9],
            "weight": [1000.0, 1000.0, 1000.0, 1000.0],
        }
    )


@pytest.fixture
def single_stratum_design(single_stratum_data):
    return build_design(single_stratum_data, weights="weight")


@pytest.fixture
def two_stratum_data():
    """
    Two strata with different weights.

    Stratum weekday: y = [0.8, 1.0, 0.6], weight 1000
    - t = [800, 1000, 600], s2 = 40,000, V_h = 3 * 40,000 = 120,000

    Stratum weekend: y = [0.5, 0.9], weight 1500
    - t = [750, 1350], s2 = 180,000, V_h = 2 * 180,000 = 360,000

    Total = 2400 + 2100 = 4500, V = 480,000
    """
    return pl.DataFrame(
        {
            "day_type": ["weekday", "weekday", "weekday", "weekend", "weekend"],
            "y": [0.8, 1.0, 0.6, 0.5, 0.9],
            "weight": [1000.0, 1000.0, 1000.0, 1500.0, 1500.0],
        }
    )


@pytest.fixture
def two_stratum_design(two_stratum_data):
    return build_design(two_stratum_data, strata_vars="day_type", weights="weight")


@pytest.fixture
def interviews():
    """
    Access-point interviews at two locations over four days.

    North: catch [2, 4, 6], hours [1, 2, 3] -> ratio of means 2.0
    South: catch [1, 0, 3], hours [1, 2, 1]
    """
    return pl.DataFrame(
        {
            "date": ["d1", "d1", "d2", "d3", "d3", "d4"],
            "location": ["North", "North", "North", "South", "South", "South"],
            "catch_total": [2.0, 4.0, 6.0, 1.0, 0.0, 3.0],
            "hours_fished": [1.0, 2.0, 3.0, 1.0, 2.0, 1.0],
            "weight": [10.0] * 6,
        }
    )


@pytest.fixture
def interview_design(interviews):
    return build_design(interviews, weights="weight")


@pytest.fixture
def calendar():
    """
    Sampling calendar over 7 days; days with actual_sample = 0 were missed.

    Sampled weekdays d1, d3: target 10, actual 4 -> weight 2.5
    Sampled weekend d6, d7: target 4, actual 4 -> weight 1.0
    """
    return pl.DataFrame(
        {
            "date": ["d1", "d2", "d3", "d4", "d5", "d6", "d7"],
            "day_type": ["weekday"] * 5 + ["weekend"] * 2,
            "target_sample": [5, 5, 5, 5, 5, 2, 2],
            "actual_sample": [2, 0, 2, 0, 0, 2, 2],
        }
    )
