"""
Pytest configuration and shared fixtures.
"""

import pytest

from fakes import FakeAccountStore, FakeDatabase


@pytest.fixture
def store():
    """Accounts A=100 and B=50, plus C=0 for overdraft cases."""
    return FakeAccountStore({1: "100", 2: "50", 3: "0"})


@pytest.fixture
def database(store):
    return FakeDatabase(store)
