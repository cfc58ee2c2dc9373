import pytest

from tests.synthetic import simulate_counts
from tests.synthetic import simulate_gene


@pytest.fixture
def counts():
    return simulate_counts()


@pytest.fixture
def nb_gene():
    return simulate_gene()
