"""
jobs.py — Nox Agent job store (MIP-003 job lifecycle)

Every paid action is recorded as a job so purchasers can poll
GET /status?job_id=... regardless of how the work was started.

Job lifecycle:
  AWAITING_PAYMENT → RUNNING → COMPLETED
                             ↘ FAILED
  AWAITING_INPUT (human review) → COMPLETED   via provide_input

State is in-memory and lost on restart. Unpaid jobs are dropped after
unpaid_ttl_s seconds, and at most max_unpaid of them are kept at once
(oldest evicted first), so unauthenticated 402 traffic cannot grow the table.
"""

import threading
import time
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from noxagent.identity import AgentIdentity, content_hash, sign_output


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    AWAITING_INPUT   = "awaiting_input"    # queued for a human
    RUNNING          = "running"
    COMPLETED        = "completed"
    FAILED           = "failed"


TERMINAL = {JobStatus.COMPLETED, JobStatus.FAILED}


@dataclass
class Job:
    job_id: str
    service: str
    tier: str
    input_data: dict
    input_hash: str
    status: JobStatus = JobStatus.AWAITING_PAYMENT
    identifier_from_purchaser: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    result: Optional[Any] = None
    error: Optional[str] = None
    output_hash: Optional[str] = None
    signer_id: Optional[str] = None
    signature: Optional[str] = None
    human_input: Optional[dict] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    def status_view(self) -> dict:
        """Shape returned by GET /status."""
        view = {
            "job_id": self.job_id,
            "status": self.status.value,
            "service": self.service,
            "tier": self.tier,
            "input_hash": self.input_hash,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.status == JobStatus.COMPLETED:
            view["result"] = self.result
            view["output_hash"] = self.output_hash
            view["signer_id"] = self.signer_id
            view["signature"] = self.signature
        elif self.status == JobStatus.FAILED:
            view["error"] = self.error
        return view


class JobStore:
    """Thread-safe in-memory job table."""

    def __init__(
        self,
        identity: Optional[AgentIdentity] = None,
        unpaid_ttl_s: float = 900.0,
        max_unpaid: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if unpaid_ttl_s <= 0:
            raise ValueError("unpaid_ttl_s must be positive")
        if max_unpaid < 1:
            raise ValueError("max_unpaid must be at least 1")
        self.identity = identity
        self.unpaid_ttl_s = unpaid_ttl_s
        self.max_unpaid = max_unpaid
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        # job_id -> clock() at creation, oldest first
        self._unpaid: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.RLock()

    def create(
        self,
        service: str,
        tier: str,
        input_data: dict,
        identifier_from_purchaser: Optional[str] = None,
        status: JobStatus = JobStatus.AWAITING_PAYMENT,
    ) -> Job:
        job = Job(
            job_id=f"job-{uuid.uuid4().hex[:12]}",
            service=service,
            tier=tier,
            input_data=input_data,
            input_hash=content_hash(input_data),
            status=status,
            identifier_from_purchaser=identifier_from_purchaser,
        )
        with self._lock:
            if status == JobStatus.AWAITING_PAYMENT:
                now = self._clock()
                self.expire_unpaid(now)
                while len(self._unpaid) >= self.max_unpaid:
                    oldest, _ = self._unpaid.popitem(last=False)
                    self._jobs.pop(oldest, None)
                self._unpaid[job.job_id] = now
            self._jobs[job.job_id] = job
        return job

    def expire_unpaid(self, now: Optional[float] = None) -> int:
        """Drop awaiting_payment jobs older than unpaid_ttl_s. Returns how many."""
        with self._lock:
            if now is None:
                now = self._clock()
            removed = 0
            while self._unpaid:
                job_id, created = next(iter(self._unpaid.items()))
                if now - created <= self.unpaid_ttl_s:
                    break
                del self._unpaid[job_id]
                self._jobs.pop(job_id, None)
                removed += 1
            return removed

    def unpaid_count(self) -> int:
        with self._lock:
            return len(self._unpaid)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[Job]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def mark_paid(self, job_id: str, next_status: JobStatus = JobStatus.RUNNING) -> Job:
        """Move a job out of awaiting_payment. Only one caller can win."""
        if next_status not in (JobStatus.RUNNING, JobStatus.AWAITING_INPUT):
            raise ValueError(f"Paid jobs move to running or awaiting_input, not {next_status.value}")
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.AWAITING_PAYMENT:
                raise ValueError(f"Job {job_id} is {job.status.value}, not awaiting payment")
            job.status = next_status
            job.updated_at = _now()
            self._unpaid.pop(job_id, None)
            return job

    def mark_running(self, job_id: str) -> Job:
        with self._lock:
            job = self._require(job_id)
            if job.status not in (JobStatus.AWAITING_PAYMENT, JobStatus.RUNNING):
                raise ValueError(f"Job {job_id} is {job.status.value}, cannot start")
            job.status = JobStatus.RUNNING
            job.updated_at = _now()
            self._unpaid.pop(job_id, None)
            return job

    def complete(self, job_id: str, result: Any) -> Job:
        with self._lock:
            job = self._require(job_id)
            if job.status in TERMINAL:
                raise ValueError(f"Job {job_id} is already {job.status.value}")
            job.result = result
            job.status = JobStatus.COMPLETED
            job.updated_at = _now()
            self._unpaid.pop(job_id, None)
            if self.identity:
                signed = sign_output(self.identity, result)
                job.output_hash = signed.output_hash
                job.signer_id = signed.signer_id
                job.signature = signed.signature
            else:
                job.output_hash = content_hash(result)
            return job

    def fail(self, job_id: str, reason: str) -> Job:
        with self._lock:
            job = self._require(job_id)
            if job.status in TERMINAL:
                raise ValueError(f"Job {job_id} is already {job.status.value}")
            job.status = JobStatus.FAILED
            job.error = reason
            job.updated_at = _now()
            self._unpaid.pop(job_id, None)
            return job

    def provide_input(self, job_id: str, human_input: dict) -> Job:
        """Resolve a human review job with the reviewer's answer."""
        if not isinstance(human_input, dict) or not human_input:
            raise ValueError("input_data must be a non-empty object")
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.AWAITING_INPUT:
                raise ValueError(f"Job {job_id} is {job.status.value}, not awaiting input")
            job.human_input = human_input
            return self.complete(job_id, {"review": human_input, "task": job.input_data.get("task")})

    def stats(self) -> dict:
        with self._lock:
            by_status = Counter(j.status.value for j in self._jobs.values())
            by_service = Counter(j.service for j in self._jobs.values())
            total = len(self._jobs)
        return {"total_jobs": total, "by_status": dict(by_status), "by_service": dict(by_service)}

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return job
