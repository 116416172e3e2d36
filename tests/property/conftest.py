"""
Configuration for property-based tests.

Property-based tests use Hypothesis to generate random survey samples
and verify invariants of the estimators that should hold for all
inputs. Polars warms up on first use, so the per-example deadline is
disabled.
"""

from pathlib import Path

import pytest
from hypothesis import settings

settings.register_profile("creel", max_examples=50, deadline=None)
settings.load_profile("creel")


def pytest_collection_modifyitems(items):
    """Mark tests in this directory as property tests."""
    property_dir = Path(__file__).parent
    for item in items:
        if property_dir in item.path.parents:
            item.add_marker(pytest.mark.property)
