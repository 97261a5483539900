"""Roll a set of reports up into a process exit status."""

from __future__ import annotations

from collections.abc import Iterable
from enum import IntEnum

from mitiscan.engine.state import BinaryReport
from mitiscan.rules.base import Verdict


class ExitStatus(IntEnum):
    SUCCESS = 0
    FAILURES = 1
    ERRORS = 2
    CONFIGURATION_ERROR = 3


def summarize_exit_status(reports: Iterable[BinaryReport]) -> ExitStatus:
    """Errors outrank failures; an all-pass (or all not-applicable) run succeeds."""
    failed = False
    for report in reports:
        if report.load_error is not None:
            return ExitStatus.ERRORS
        for result in report.results:
            if result.verdict == Verdict.ERROR:
                return ExitStatus.ERRORS
            if result.verdict == Verdict.FAIL:
                failed = True
    return ExitStatus.FAILURES if failed else ExitStatus.SUCCESS
