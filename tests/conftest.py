import numpy as np
import pytest

from stackgrad.tensor import manual_seed

@pytest.fixture
def rng():
    return np.random.default_rng(0)

@pytest.fixture(autouse=True)
def _seed_init():
    manual_seed(0)
