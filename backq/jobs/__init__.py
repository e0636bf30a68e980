"""Workers leasing jobs from a broker queue."""

from .queue import Job, Lease, ReliabilityError, WorkerRuntime, WorkOutcome
from .process import ManagedProcess, ProcessArena, ProcessSupervisor
from .serialized import DispatchForwarder
from .processors import build_worker
from .worker import start_worker

__all__ = [
    "DispatchForwarder",
    "Job",
    "Lease",
    "ManagedProcess",
    "ProcessArena",
    "ProcessSupervisor",
    "ReliabilityError",
    "WorkOutcome",
    "WorkerRuntime",
    "build_worker",
    "start_worker",
]
