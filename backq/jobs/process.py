"""Worker launching ProcessMessage jobs as asynchronous OS processes."""

import os
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from typing import IO, Callable, Iterator, Optional, Union

from backq.jobs.queue import Lease, ReliabilityError, WorkerRuntime, WorkOutcome
from backq.messages import ProcessMessage, decode_message

DEFAULT_PROCESS_TIMEOUT = 60.0


class ProcessTimedOut(RuntimeError):
    """A child ran past its timeout and was stopped."""

    def __init__(self, process: "ManagedProcess") -> None:
        super().__init__(
            f"{process.display_commandline} exceeded timeout of {process.timeout}s"
        )
        self.process = process


class ProcessSignaled(RuntimeError):
    """A child was terminated by a signal."""

    def __init__(self, process: "ManagedProcess", signum: int) -> None:
        super().__init__(f"{process.display_commandline} terminated by signal {signum}")
        self.process = process
        self.signum = signum


@dataclass
class ManagedProcess:
    """A launched child plus the buffers holding its output."""

    process: subprocess.Popen
    commandline: Union[str, list[str]]
    started_at: float
    timeout: Optional[float]
    stdout: IO[bytes]
    stderr: IO[bytes]
    collected: bool = field(default=False, init=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def display_commandline(self) -> str:
        if isinstance(self.commandline, str):
            return self.commandline
        return " ".join(self.commandline)

    def is_running(self) -> bool:
        # poll() waits on the child when it has exited, so no zombie remains
        return self.process.poll() is None

    def check_timeout(self, now: Optional[float] = None) -> None:
        """Stop the child if it ran out of time.

        Raises:
            ProcessTimedOut: If the timeout elapsed
        """
        if self.timeout is None or self.timeout <= 0:
            return
        now = time.monotonic() if now is None else now
        if now - self.started_at > self.timeout and self.is_running():
            self.stop(grace=0)
            raise ProcessTimedOut(self)

    def collect(self) -> Optional[int]:
        """Read the exit status of a finished child.

        Only the first call is authoritative; later calls return None.

        Raises:
            ProcessSignaled: If the child was killed by a signal (first call only)
        """
        if self.collected:
            return None
        returncode = self.process.poll()
        if returncode is None:
            return None
        self.collected = True
        if returncode < 0:
            raise ProcessSignaled(self, -returncode)
        return returncode

    def error_output(self) -> str:
        self.stderr.flush()
        self.stderr.seek(0)
        return self.stderr.read().decode("utf-8", errors="replace").strip()

    def clear_output(self) -> None:
        for buffer in (self.stdout, self.stderr):
            buffer.seek(0)
            buffer.truncate()

    def stop(self, grace: float = 2.0, signum: int = signal.SIGINT) -> Optional[int]:
        """Signal the child's process group, escalating to SIGKILL after the grace window.

        Descendants still alive once the grace window ends are killed too,
        including when the child itself exited early.

        Returns:
            Exit status once the child is gone
        """
        if self.process.poll() is not None:
            return self.process.returncode

        returncode = None
        self._signal_group(signum)
        if grace > 0:
            try:
                returncode = self.process.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                pass
        if returncode is None:
            return self._kill()
        self._signal_group(signal.SIGKILL)
        return returncode

    def _signal_group(self, signum: int) -> None:
        # The child leads its own session, so its pid is the group id
        try:
            os.killpg(self.process.pid, signum)
        except ProcessLookupError:
            pass

    def _kill(self) -> Optional[int]:
        self._signal_group(signal.SIGKILL)
        return self.process.wait()

    def close(self) -> None:
        for buffer in (self.stdout, self.stderr):
            buffer.close()


class ProcessArena:
    """Slot-indexed set of launched processes.

    At most ``zombie_budget`` launches may happen between two reap passes,
    which bounds the number of finished-but-uncollected children to that
    budget beyond the process currently being launched.
    """

    def __init__(self, zombie_budget: int = 1) -> None:
        self.zombie_budget = zombie_budget
        self._slots: dict[int, ManagedProcess] = {}
        self._next_slot = 0
        self._launches_since_reap = 0

    def __len__(self) -> int:
        return len(self._slots)

    def items(self) -> list[tuple[int, ManagedProcess]]:
        return list(self._slots.items())

    def mark_reaped(self) -> None:
        self._launches_since_reap = 0

    def add(self, process: ManagedProcess) -> int:
        """Track a new process.

        Raises:
            ReliabilityError: If the launch budget since the last reap pass is spent
        """
        if self._launches_since_reap >= self.zombie_budget:
            process.stop(grace=0)
            process.close()
            raise ReliabilityError("Launch attempted without a reap pass")
        slot = self._next_slot
        self._next_slot += 1
        self._slots[slot] = process
        self._launches_since_reap += 1
        return slot

    def release(self, slot: int) -> Optional[ManagedProcess]:
        return self._slots.pop(slot, None)


class ProcessSupervisor(WorkerRuntime):
    """Launches commands from the queue without waiting for them.

    A job counts as processed once it was handed to the OS, so every
    dispatched job is acked with success, including launches that failed:
    redelivering would only duplicate a side-effecting command. Children
    are polled on every loop turn and stopped on shutdown.
    """

    queue_name = "process"
    source = "process_supervisor"

    def __init__(
        self,
        adapter,
        queue_name: Optional[str] = None,
        work_timeout: int = 5,
        poll_interval: float = 1.0,
        restart_threshold: int = 0,
        default_timeout: float = DEFAULT_PROCESS_TIMEOUT,
        reap_interval: float = 0.2,
        shutdown_interval: float = 0.1,
        shutdown_grace: float = 2.0,
        logger=None,
    ) -> None:
        super().__init__(
            adapter,
            queue_name=queue_name,
            work_timeout=work_timeout,
            poll_interval=poll_interval,
            restart_threshold=restart_threshold,
            logger=logger,
        )
        self.default_timeout = default_timeout
        self.reap_interval = reap_interval
        self.shutdown_interval = shutdown_interval
        self.shutdown_grace = shutdown_grace
        self.arena = ProcessArena(zombie_budget=1)

    def consume(self, work: Iterator[Lease]) -> None:
        for lease in work:
            launch: Optional[Callable[[], ManagedProcess]] = None
            message = None

            if lease.empty:
                self.logger.debug("idle_cycle", error=lease.error)
            else:
                decoded = decode_message(lease.payload)
                if isinstance(decoded, ProcessMessage):
                    message = decoded
                else:
                    self.logger.warning(
                        "unsupported_payload",
                        job_id=lease.job.id,
                        payload_type=type(decoded).__name__,
                    )

            try:
                if message is not None:
                    now = time.time()
                    if message.is_past_deadline(now):
                        self.logger.info(
                            "job_past_deadline",
                            job_id=lease.job.id,
                            deadline=message.deadline,
                        )
                    elif not message.is_ready(now):
                        self.acknowledge(lease, WorkOutcome.DEFER)
                        continue
                    elif message.is_expired(now):
                        self.logger.info("job_expired", job_id=lease.job.id)
                        self.acknowledge(lease, WorkOutcome.COMMIT)
                        continue
                    else:
                        launch = self.build_launcher(message)

                # Reap before launching so the arena never holds more than
                # one unreaped child beyond the new one
                self.reap()

                if launch is not None:
                    managed = launch()
                    self.arena.add(managed)
                    self.logger.info(
                        "process_launched",
                        job_id=lease.job.id,
                        pid=managed.pid,
                        commandline=managed.display_commandline,
                    )
            except ReliabilityError:
                raise
            except Exception as e:
                self.logger.error(
                    "process_launch_failed",
                    job_id=lease.job.id if lease.job else None,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

            self.acknowledge(lease, self.idle_outcome() if lease.empty else WorkOutcome.COMMIT)

    def build_launcher(self, message: ProcessMessage) -> Callable[[], ManagedProcess]:
        """Prepare, without starting, the launch of a message's command."""

        def launch() -> ManagedProcess:
            commandline = message.commandline
            timeout = message.timeout if message.timeout is not None else self.default_timeout
            env = None
            if message.env is not None:
                env = {**os.environ, **message.env}

            stdin = None
            if message.input is not None:
                stdin = tempfile.TemporaryFile()
                stdin.write(message.input.encode("utf-8"))
                stdin.seek(0)
            stdout = tempfile.TemporaryFile()
            stderr = tempfile.TemporaryFile()

            try:
                process = subprocess.Popen(
                    commandline,
                    shell=isinstance(commandline, str),
                    cwd=message.cwd,
                    env=env,
                    stdin=stdin if stdin is not None else subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                    start_new_session=True,
                )
            except BaseException:
                stdout.close()
                stderr.close()
                raise
            finally:
                if stdin is not None:
                    stdin.close()

            return ManagedProcess(
                process=process,
                commandline=commandline,
                started_at=time.monotonic(),
                timeout=timeout,
                stdout=stdout,
                stderr=stderr,
            )

        return launch

    def reap(self) -> None:
        """Poll tracked children and collect the ones that finished."""
        for slot, managed in self.arena.items():
            try:
                if managed.is_running():
                    managed.check_timeout()
                    if self.reap_interval > 0:
                        time.sleep(self.reap_interval)
                    continue

                exit_code = managed.collect()
                if exit_code:
                    self.logger.warning(
                        "process_failed",
                        pid=managed.pid,
                        commandline=managed.display_commandline,
                        exit_code=exit_code,
                        stderr=managed.error_output(),
                    )
                    managed.clear_output()
                else:
                    self.logger.debug("process_completed", pid=managed.pid)
                self._release(slot, managed)
            except ProcessTimedOut as e:
                self.logger.warning("process_timed_out", pid=managed.pid, error=str(e))
                managed.collected = True
                self._release(slot, managed)
            except ProcessSignaled as e:
                self.logger.warning(
                    "process_signaled",
                    pid=managed.pid,
                    commandline=managed.display_commandline,
                    signal=e.signum,
                )
                self._release(slot, managed)

        self.arena.mark_reaped()

    def _release(self, slot: int, managed: ManagedProcess) -> None:
        self.arena.release(slot)
        managed.close()

    def shutdown(self) -> None:
        """Stop every tracked child, escalating from SIGINT to SIGKILL."""
        for slot, managed in self.arena.items():
            try:
                if managed.is_running():
                    try:
                        managed.check_timeout()
                    except ProcessTimedOut as e:
                        self.logger.warning("process_timed_out", pid=managed.pid, error=str(e))
                    if self.shutdown_interval > 0:
                        time.sleep(self.shutdown_interval)
                    managed.clear_output()
                    exit_code = managed.stop(grace=self.shutdown_grace, signum=signal.SIGINT)
                    self.logger.info(
                        "process_stopped",
                        pid=managed.pid,
                        commandline=managed.display_commandline,
                        exit_code=exit_code,
                    )
                else:
                    managed.collect()
            except (ProcessSignaled, OSError) as e:
                self.logger.debug("process_shutdown_error", pid=managed.pid, error=str(e))
            finally:
                self._release(slot, managed)

    def finish(self) -> None:
        self.shutdown()
        super().finish()
