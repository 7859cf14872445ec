from types import SimpleNamespace

import pytest

from app.chat.stages import EpisodeStage, count_filled_fields, next_stage

ORDER = list(EpisodeStage)


def _episode(**fields):
    base = dict(
        severity=None,
        location=None,
        frequency=None,
        triggers=None,
        relievers=None,
        pattern=None,
    )
    base.update(fields)
    return SimpleNamespace(**base)


def test_count_filled_fields_ignores_blank_and_empty_values():
    ep = _episode(severity=4, location="  ", triggers=[], relievers=["rest"], pattern="mornings")
    assert count_filled_fields(ep) == 3


@pytest.mark.parametrize(
    "current, filled, expected",
    [
        ("mentioned", 0, EpisodeStage.MENTIONED),
        ("mentioned", 1, EpisodeStage.EXPLORED),
        ("mentioned", 3, EpisodeStage.CHARACTERIZED),
        ("explored", 2, EpisodeStage.EXPLORED),
        ("explored", 3, EpisodeStage.CHARACTERIZED),
        ("characterized", 0, EpisodeStage.CHARACTERIZED),
        ("linked", 6, EpisodeStage.LINKED),
    ],
)
def test_next_stage(current, filled, expected):
    assert next_stage(current, filled) == expected


def test_next_stage_never_moves_backwards():
    for current in ("mentioned", "explored", "characterized", "linked"):
        for filled in range(7):
            assert ORDER.index(next_stage(current, filled)) >= ORDER.index(EpisodeStage(current))
