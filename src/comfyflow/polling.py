from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import JobFailed, PollTimeout
from .logging import get_logger

ERROR_STATUS = "error"


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PollState(str, Enum):
    SUBMITTED = "submitted"
    NOT_YET_VISIBLE = "not_yet_visible"
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class JobStatus:
    """One observation of a job, derived from a `/history/{id}` response."""

    state: JobState
    visible: bool = True
    outputs: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None


def extract_execution_error(status: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Pull the last `execution_error` payload from `status.messages`, if any."""
    messages = status.get("messages") or []
    if not isinstance(messages, list):
        return None
    for msg in reversed(messages):
        if isinstance(msg, list) and len(msg) >= 2 and msg[0] == "execution_error":
            detail = msg[1] if isinstance(msg[1], dict) else {"raw": msg[1]}
            return {
                "node_id": detail.get("node_id"),
                "node_type": detail.get("node_type"),
                "exception_type": detail.get("exception_type"),
                "exception_message": detail.get("exception_message"),
            }
    return None


def job_status_from_history(history: Dict[str, Any], job_id: str) -> JobStatus:
    entry = history.get(job_id) if isinstance(history, dict) else None
    if not isinstance(entry, dict):
        return JobStatus(JobState.PENDING, visible=False)

    status = entry.get("status")
    if not isinstance(status, dict):
        return JobStatus(JobState.PENDING)

    if not status.get("completed"):
        return JobStatus(JobState.RUNNING, status=status)

    if status.get("status_str") == ERROR_STATUS:
        details = extract_execution_error(status)
        reason = (details or {}).get("exception_message") or "job finished with status 'error'"
        return JobStatus(JobState.FAILED, status=status, reason=str(reason), error_details=details)

    outputs = entry.get("outputs")
    return JobStatus(JobState.COMPLETED, outputs=outputs if isinstance(outputs, dict) else {}, status=status)


HistoryFetcher = Callable[[str], Dict[str, Any]]
Sleeper = Callable[[float], None]


class JobPoller:
    """Wait for a queued job to reach a terminal state.

    The first status check happens after `initial_wait_s`; each later tick
    sleeps `poll_interval_s` and performs one history round-trip. After
    `60 * timeout_minutes` ticks (rounded up) the poller gives up with `PollTimeout`.
    Transport errors from `fetch_history` propagate untouched.
    """

    def __init__(
        self,
        fetch_history: HistoryFetcher,
        *,
        initial_wait_s: float,
        poll_interval_s: float,
        timeout_minutes: float,
        sleep: Sleeper = time.sleep,
        on_tick: Optional[Callable[[int, int, JobStatus], None]] = None,
        label: str = "job",
    ):
        self.log = get_logger()
        self.fetch_history = fetch_history
        self.initial_wait_s = initial_wait_s
        self.poll_interval_s = poll_interval_s
        self.timeout_minutes = timeout_minutes
        self.max_attempts = max(1, math.ceil(60 * timeout_minutes))
        self.sleep = sleep
        self.on_tick = on_tick
        self.label = label

        self.state = PollState.SUBMITTED
        self.attempts = 0
        self.transitions: List[PollState] = [PollState.SUBMITTED]

    def _move(self, state: PollState) -> None:
        if state is not self.state:
            self.log.debug(f"[{self.label}] {self.state.value} -> {state.value}")
            self.state = state
            self.transitions.append(state)

    def wait(self, job_id: str) -> JobStatus:
        self.sleep(self.initial_wait_s)

        while self.attempts < self.max_attempts:
            self.sleep(self.poll_interval_s)
            self.attempts += 1
            self.log.debug(f"[{self.label}] checking status (attempt {self.attempts}/{self.max_attempts})")

            observed = job_status_from_history(self.fetch_history(job_id), job_id)
            if self.on_tick:
                self.on_tick(self.attempts, self.max_attempts, observed)

            if observed.state is JobState.PENDING:
                self._move(PollState.NOT_YET_VISIBLE if not observed.visible else PollState.WAITING)
                continue
            if observed.state is JobState.RUNNING:
                self._move(PollState.RUNNING)
                continue
            if observed.state is JobState.FAILED:
                self._move(PollState.FAILED)
                raise JobFailed(
                    f"[{self.label}] generation failed",
                    description=observed.reason,
                    details=observed.error_details,
                )

            self._move(PollState.COMPLETED)
            self.log.info(f"[{self.label}] generation completed after {self.attempts} status checks")
            return observed

        self._move(PollState.TIMED_OUT)
        raise PollTimeout(
            f"[{self.label}] generation timeout after {self.timeout_minutes:g} minutes",
            description=f"prompt_id={job_id} still unfinished after {self.attempts} status checks",
        )
