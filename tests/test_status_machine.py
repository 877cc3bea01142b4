import pytest

from src.core.errors import InvalidStatusTransition
from src.database.schemas.metadata import ProcessingStatus, transition

P = ProcessingStatus

ALLOWED = {
    (P.PENDING, P.PROCESSING),
    (P.PENDING, P.FAILED),
    (P.PROCESSING, P.COMPLETED),
    (P.PROCESSING, P.FAILED),
    (P.FAILED, P.PROCESSING),
}


@pytest.mark.parametrize("current", list(P))
@pytest.mark.parametrize("target", list(P))
def test_transition_table(current, target):
    if (current, target) in ALLOWED:
        assert transition(current, target) is target
    else:
        with pytest.raises(InvalidStatusTransition):
            transition(current, target)


def test_transition_accepts_raw_strings():
    assert transition("failed", "processing") is P.PROCESSING


def test_completed_is_terminal():
    for target in P:
        with pytest.raises(InvalidStatusTransition):
            transition(P.COMPLETED, target)
