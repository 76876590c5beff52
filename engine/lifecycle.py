"""Allowed status transitions for tracked items."""

from engine.errors import Conflict
from engine.models import FetchStatus

_S = FetchStatus

# Pipeline and manual edges. Disabled is reachable from everywhere and is added below.
_EDGES = {
    _S.NOT_FETCHED: {_S.FETCHED, _S.FETCH_ERROR},
    _S.FETCHED: {_S.CATEGORIZED, _S.BRAINZ_ERROR},
    _S.FETCH_ERROR: {_S.NOT_FETCHED},
    _S.BRAINZ_ERROR: {_S.NOT_FETCHED},
    _S.CATEGORIZED: {_S.FETCHED},
    _S.DISABLED: {_S.NOT_FETCHED},
}

# A forced match on an already matched item runs the implicit "-> Fetched" step and
# the match outcome in one commit.
_REMATCH_EDGES = {
    _S.CATEGORIZED: {_S.BRAINZ_ERROR},
    _S.BRAINZ_ERROR: {_S.CATEGORIZED},
}


def allowed_targets(current):
    targets = set(_EDGES.get(current, ()))
    targets |= _REMATCH_EDGES.get(current, set())
    targets.add(_S.DISABLED)
    targets.add(current)
    return targets


def is_allowed(current, target):
    return target in allowed_targets(current)


def check_transition(item_id, current, target):
    if not is_allowed(current, target):
        raise Conflict(
            f"Illegal transition {current.value} -> {target.value}",
            item_id=item_id,
        )
