"""Job lifecycle transitions.

    Running --pause--> Paused --resume--> Running
    Running|Paused --cancel--> Cancelled
    Running --target reached / nothing found after N pages--> Completed
    Running --errors > max_errors--> Failed

Completed, Cancelled and Failed are terminal.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from prospect_miner.models import JobAction, JobStatus


class InvalidTransition(Exception):
    pass


_CONTROL_TRANSITIONS: Dict[Tuple[JobStatus, JobAction], JobStatus] = {
    (JobStatus.RUNNING, JobAction.PAUSE): JobStatus.PAUSED,
    (JobStatus.PAUSED, JobAction.RESUME): JobStatus.RUNNING,
    (JobStatus.RUNNING, JobAction.CANCEL): JobStatus.CANCELLED,
    (JobStatus.PAUSED, JobAction.CANCEL): JobStatus.CANCELLED,
}


def control_target(status: JobStatus, action: JobAction) -> Optional[JobStatus]:
    """Status reached by applying ``action`` in ``status``, or ``None`` if not allowed."""

    return _CONTROL_TRANSITIONS.get((JobStatus(status), JobAction(action)))


def automatic_target(status: JobStatus, target: JobStatus) -> JobStatus:
    """Validate a worker-driven transition out of Running."""

    if JobStatus(status) != JobStatus.RUNNING or target not in (JobStatus.COMPLETED, JobStatus.FAILED):
        raise InvalidTransition(f"{status} -> {target} is not a worker transition")
    return target


def is_exhausted(found_count: int, pages_fetched: int, threshold: int) -> bool:
    """True when the provider has nothing for the filters.

    Checked after an empty page. Only a job that never found a lead is
    exhausted; one with leads keeps paging until its target or a control
    action stops it.
    """

    return found_count == 0 and pages_fetched > threshold


def has_failed(errors: int, max_errors: int) -> bool:
    return errors > max_errors
