# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Environment state machine.

Two views of the same machine live here:

* ``TRANSITIONS`` is the strict edge set the lifecycle controller walks.
* ``report_decision`` is the rank-based rule used for host reports, which may
  be retried, duplicated or delivered out of order.
"""

from enum import Enum

from coreason_devenv.errors import InvalidTransitionError
from coreason_devenv.models.environment import EnvironmentStatus as S

TRANSITIONS: dict[S, frozenset[S]] = {
    S.REQUESTED: frozenset({S.BOOTING, S.RESTORING, S.FAILED, S.STOPPING}),
    S.RESTORING: frozenset({S.STARTING, S.BOOTING, S.FAILED, S.STOPPING}),
    S.BOOTING: frozenset({S.CLONING, S.FAILED, S.STOPPING}),
    S.CLONING: frozenset({S.INSTALLING, S.FAILED, S.STOPPING}),
    S.INSTALLING: frozenset({S.STARTING, S.FAILED, S.STOPPING}),
    S.STARTING: frozenset({S.READY, S.FAILED, S.STOPPING}),
    S.READY: frozenset({S.STOPPING, S.FAILED}),
    S.FAILED: frozenset({S.STOPPING}),
    S.STOPPING: frozenset({S.STOPPED, S.FAILED}),
    S.STOPPED: frozenset(),
}

RANKS: dict[S, int] = {
    S.REQUESTED: 0,
    S.RESTORING: 1,
    S.BOOTING: 2,
    S.CLONING: 3,
    S.INSTALLING: 4,
    S.STARTING: 5,
    S.READY: 6,
    S.STOPPING: 7,
    S.STOPPED: 8,
}

PROVISIONING_STATUSES = frozenset({S.REQUESTED, S.RESTORING, S.BOOTING, S.CLONING, S.INSTALLING, S.STARTING})
LIVE_STATUSES = PROVISIONING_STATUSES | {S.READY}


class ReportDecision(str, Enum):
    APPLY = "apply"
    DUPLICATE = "duplicate"
    IGNORE = "ignore"


def can_transition(current: S, new: S) -> bool:
    return new in TRANSITIONS[current]


def check_transition(current: S, new: S) -> None:
    if not can_transition(current, new):
        raise InvalidTransitionError(current.value, new.value)


def report_decision(current: S, reported: S) -> ReportDecision:
    """Decide what a host-reported status does to the recorded one.

    A repeat of the current status is a duplicate. ``failed`` wins over every
    live status. Anything else must move strictly forward; earlier statuses
    and reports against stopped, stopping or failed environments are ignored.
    """
    if reported == current:
        return ReportDecision.DUPLICATE
    if current in (S.FAILED, S.STOPPING, S.STOPPED):
        return ReportDecision.IGNORE
    if reported == S.FAILED:
        return ReportDecision.APPLY
    if reported in (S.STOPPING, S.STOPPED):
        return ReportDecision.IGNORE
    if RANKS[reported] > RANKS[current]:
        return ReportDecision.APPLY
    return ReportDecision.IGNORE
