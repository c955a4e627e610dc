"""
Provider status-code normalisation.

Providers report fixture state as free-form codes ("2H", "in-progress", 1, ...).
normalize_status() maps them onto EventStatus; unrecognised codes become UNKNOWN.
"""
from __future__ import annotations

from typing import Optional, Union

from shared.models.enums import EventStatus

_LIVE = {
    "1h", "2h", "ht", "et", "bt", "p", "live", "in_play", "inplay", "in-play",
    "in_progress", "in-progress", "inprogress", "q1", "q2", "q3", "q4", "ot", "p1", "p2", "p3", "1",
    # interruptions stay in play
    "int", "interrupted", "susp", "suspended",
}
_FINISHED = {"ft", "aet", "pen", "awd", "wo", "finished", "completed", "final", "ended", "2"}
_CANCELLED = {"canc", "cancelled", "canceled", "abd", "abandoned", "-1"}
_POSTPONED = {"pst", "postponed"}
_PREMATCH = {"ns", "tbd", "scheduled", "upcoming", "not_started", "prematch", "0"}

_TABLE: dict[str, EventStatus] = {}
for _codes, _status in (
    (_LIVE, EventStatus.LIVE),
    (_FINISHED, EventStatus.FINISHED),
    (_CANCELLED, EventStatus.CANCELLED),
    (_POSTPONED, EventStatus.POSTPONED),
    (_PREMATCH, EventStatus.PREMATCH),
):
    for _code in _codes:
        _TABLE[_code] = _status


def normalize_status(code: Optional[Union[str, int]]) -> EventStatus:
    if code is None:
        return EventStatus.UNKNOWN
    return _TABLE.get(str(code).strip().lower(), EventStatus.UNKNOWN)
