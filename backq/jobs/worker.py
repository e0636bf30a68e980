import signal

import structlog

from backq.jobs.queue import WorkerRuntime

logger = structlog.get_logger()

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_signal_handlers(worker: WorkerRuntime) -> dict:
    """Make SIGINT/SIGTERM end the work loop after the current lease.

    Returns:
        Previous handlers, to be passed to restore_signal_handlers()
    """

    def _handler(signum, frame):
        logger.info("worker_stop_requested", signal=signal.Signals(signum).name, source="worker")
        worker.request_stop()

    previous = {}
    for sig in STOP_SIGNALS:
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # Not in the main thread; the caller must stop the worker itself
            logger.warning("signal_handler_unavailable", signal=sig.name, source="worker")
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def start_worker(worker: WorkerRuntime) -> bool:
    """Run a worker in the foreground until it is signalled or stops.

    The worker keeps leasing jobs until SIGINT/SIGTERM arrives or its
    restart threshold is reached; a process manager is expected to start
    it again.

    Args:
        worker: Worker built by build_worker()

    Returns:
        False if the worker could not connect to the broker

    Raises:
        ReliabilityError: If the worker broke the lease/ack protocol
    """
    previous = install_signal_handlers(worker)
    logger.info(
        "worker_loop_started",
        worker=type(worker).__name__,
        queue=worker.queue_name,
        work_timeout=worker.work_timeout,
        restart_threshold=worker.restart_threshold,
        source="worker",
    )
    try:
        return worker.run()
    finally:
        restore_signal_handlers(previous)
        logger.info("worker_loop_stopped", jobs=worker.jobs_leased, source="worker")
