import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

from backq.adapters.base import JobId, Pick, PickError, QueueAdapter
from backq.log import component_logger


class ReliabilityError(RuntimeError):
    """Raised when the lease/ack protocol is violated.

    A worker hitting this is not trustworthy anymore; the run loop stops
    instead of leaving a lease wedged.
    """


class WorkOutcome(str, Enum):
    """Decision a worker reports back for a lease."""

    COMMIT = "commit"  # ack success, job deleted
    FAIL = "fail"  # ack failure, job released for retry
    DEFER = "defer"  # no ack, job left untouched


@dataclass(frozen=True)
class Job:
    """A leased job."""

    id: JobId
    payload: Optional[str]


@dataclass
class Lease:
    """One turn of the work loop: a leased job or an empty cycle."""

    job: Optional[Job] = None
    error: Optional[PickError] = None
    outcome: Optional[WorkOutcome] = None

    @property
    def empty(self) -> bool:
        return self.job is None

    @property
    def payload(self) -> Optional[str]:
        return self.job.payload if self.job else None

    def resolve(self, outcome: WorkOutcome) -> None:
        """Record the outcome. A lease accepts exactly one decision."""
        if self.outcome is not None:
            job_id = self.job.id if self.job else None
            raise ReliabilityError(
                f"Lease for job {job_id} already acknowledged with {self.outcome.value}"
            )
        self.outcome = WorkOutcome(outcome)

    @classmethod
    def from_pick(cls, pick: Pick) -> "Lease":
        if pick.ok:
            return cls(job=Job(id=pick.job_id, payload=pick.payload))
        return cls(error=pick.error)


class WorkerRuntime:
    """Lease/acknowledge protocol shared by every worker.

    Subclasses implement consume(), iterating over work() and calling
    acknowledge() exactly once per lease:

        for lease in self.work():
            ...
            self.acknowledge(lease, WorkOutcome.COMMIT)

    The runtime never retries a job on its own; FAIL hands the job back to
    the broker, which decides on redelivery.
    """

    queue_name = "default"
    source = "runtime"

    def __init__(
        self,
        adapter: QueueAdapter,
        queue_name: Optional[str] = None,
        work_timeout: int = 5,
        poll_interval: float = 1.0,
        restart_threshold: int = 0,
        logger=None,
    ) -> None:
        """Initialize the runtime.

        Args:
            adapter: Broker adapter owned by this worker
            queue_name: Queue to lease from (class default when omitted)
            work_timeout: Seconds a lease attempt may wait for a job
            poll_interval: Pause after an empty cycle acknowledged with FAIL
                or a lease attempt that failed without waiting
            restart_threshold: Stop after this many jobs (0 = unlimited)
            logger: Optional structlog logger to bind to
        """
        self.adapter = adapter
        if queue_name:
            self.queue_name = queue_name
        self.work_timeout = work_timeout
        self.poll_interval = poll_interval
        self.restart_threshold = restart_threshold
        self.logger = component_logger(self.source, logger).bind(queue=self.queue_name)
        self.jobs_leased = 0
        self._stop_requested = False

    def start(self) -> bool:
        """Connect and subscribe to the queue."""
        if not self.adapter.connect(timeout=self.work_timeout):
            self.logger.error("worker_connect_failed", adapter=self.adapter.name)
            return False
        if not self.adapter.bind_read(self.queue_name):
            self.logger.error("worker_bind_failed", adapter=self.adapter.name)
            return False
        self.logger.info("worker_connected", adapter=self.adapter.name)
        return True

    def request_stop(self) -> None:
        """Ask the work loop to end after the current lease."""
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def idle_outcome(self) -> WorkOutcome:
        """Outcome for an empty cycle.

        COMMIT when the lease call already waited work_timeout seconds,
        FAIL otherwise so the runtime pauses before polling again.
        """
        return WorkOutcome.COMMIT if self.work_timeout > 0 else WorkOutcome.FAIL

    def pull(self) -> Lease:
        """Attempt one lease."""
        lease = Lease.from_pick(self.adapter.pick_task())

        if lease.error in (PickError.TRANSPORT, PickError.DISCONNECTED):
            if lease.error is PickError.TRANSPORT:
                self.logger.warning("lease_transport_error")
            else:
                self.logger.error("lease_not_connected")
            if self.adapter.ping(reconnect=True):
                self.logger.info("broker_reachable", adapter=self.adapter.name)
            else:
                self.logger.error("broker_unreachable", adapter=self.adapter.name)
        elif lease.job is not None:
            self.jobs_leased += 1
            self.logger.debug("job_leased", job_id=lease.job.id)

        return lease

    def work(self) -> Iterator[Lease]:
        """Yield leases until stopped.

        Raises:
            ReliabilityError: If a yielded lease was not acknowledged
                before the next one is requested
        """
        while not self._stop_requested:
            lease = self.pull()
            yield lease

            if lease.outcome is None:
                job_id = lease.job.id if lease.job else None
                raise ReliabilityError(f"Lease for job {job_id} was never acknowledged")

            if self.restart_threshold > 0 and self.jobs_leased >= self.restart_threshold:
                self.logger.info("restart_threshold_reached", jobs=self.jobs_leased)
                break

    def acknowledge(self, lease: Lease, outcome: WorkOutcome) -> bool:
        """Report the outcome of a lease to the broker.

        Returns:
            True when the broker accepted the acknowledgement (or none was needed)
        """
        lease.resolve(outcome)

        if lease.job is None:
            # Error leases return without waiting on the broker
            backoff = lease.outcome is WorkOutcome.FAIL or lease.error not in (None, PickError.EMPTY)
            if backoff and self.poll_interval > 0:
                time.sleep(self.poll_interval)
            return True

        job_id = lease.job.id
        if lease.outcome is WorkOutcome.DEFER:
            self.logger.debug("job_deferred", job_id=job_id)
            return True

        if lease.outcome is WorkOutcome.COMMIT:
            acked = self.adapter.after_work_success(job_id)
        else:
            acked = self.adapter.after_work_failed(job_id)

        if acked:
            self.logger.debug("job_acknowledged", job_id=job_id, outcome=lease.outcome.value)
        else:
            # The broker releases the job itself once its TTR runs out
            self.logger.warning("job_ack_failed", job_id=job_id, outcome=lease.outcome.value)
        return acked

    def consume(self, work: Iterator[Lease]) -> None:
        raise NotImplementedError

    def finish(self) -> None:
        """Disconnect from the broker."""
        self.adapter.disconnect()
        self.logger.info("worker_finished", jobs=self.jobs_leased)

    def run(self) -> bool:
        """Start, consume leases until stopped, always finish.

        Returns:
            False if the worker could not connect
        """
        connected = self.start()
        self.logger.info("worker_started", connected=connected)
        try:
            if connected:
                self.consume(self.work())
        except ReliabilityError as e:
            self.logger.error("worker_not_reliable", error=str(e))
            raise
        finally:
            self.finish()
        return connected
