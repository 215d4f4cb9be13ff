from __future__ import annotations

import pytest

from beef.chaintracker import StaticChainTracker

from helpers import make_tx, mine


@pytest.fixture
def tracker():
    return StaticChainTracker()


@pytest.fixture
def chain(tracker):
    """T1 mined at height 100, T2 unconfirmed spending T1:0."""
    t1 = make_tx()
    t2 = make_tx(t1)
    (proof,) = mine(tracker, [t1], 100)
    return t1, t2, proof
