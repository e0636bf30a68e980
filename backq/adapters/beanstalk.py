"""Beanstalk protocol adapter built on the greenstalk client.

Protocol reference: https://github.com/beanstalkd/beanstalkd/blob/master/doc/protocol.txt
"""

from typing import Optional, Union

import greenstalk

from backq.adapters.base import (
    DEFAULT_PRIORITY,
    JobId,
    Pick,
    PickError,
    QueueAdapter,
    put_params,
)
from backq.log import component_logger

DEFAULT_TUBE = "default"

Address = Union[tuple[str, int], str]

TRANSPORT_ERRORS = (greenstalk.Error, OSError)


class BeanstalkAdapter(QueueAdapter):
    """Queue adapter talking to beanstalkd.

    Bound tubes are remembered so that a reconnect performed by ping()
    restores the same watch/use state on the new socket.
    """

    name = "beanstalk"

    def __init__(
        self,
        address: Address = ("127.0.0.1", 11300),
        timeout: Optional[float] = 1,
        logger=None,
    ) -> None:
        """Initialize the adapter without connecting.

        Args:
            address: (host, port) tuple or unix socket path
            timeout: Default reserve timeout in seconds (None blocks forever)
            logger: Optional structlog logger to bind to
        """
        self.address = address
        self.timeout = timeout
        self.persistent = False
        self.logger = component_logger("beanstalk", logger)
        self._client: Optional[greenstalk.Client] = None
        self._connected = False
        self._watched: list[str] = []
        self._used = DEFAULT_TUBE

    def _open(self) -> greenstalk.Client:
        return greenstalk.Client(
            self.address,
            encoding="utf-8",
            use=self._used,
            watch=self._watched or DEFAULT_TUBE,
        )

    def _error(self, operation: str, error: Exception) -> None:
        self.logger.error(
            "beanstalk_adapter_error",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
            exc_info=True,
        )

    def connect(
        self,
        endpoint: Optional[Address] = None,
        timeout: Optional[float] = None,
        persistent: bool = False,
    ) -> bool:
        if endpoint is not None:
            self.address = endpoint
        if timeout is not None:
            self.timeout = timeout
        self.persistent = persistent

        try:
            self._client = self._open()
            self._connected = True
            self.logger.info(
                "beanstalk_connected",
                address=self.address,
                timeout=self.timeout,
                persistent=persistent,
            )
            return True
        except TRANSPORT_ERRORS as e:
            self._error("connect", e)
        return False

    def has_workers(self, queue: str) -> Optional[int]:
        if not self._connected:
            return None
        try:
            result = self._client.stats_tube(queue)
            if result and "current-workers" in result:
                return int(result["current-workers"])
        except TRANSPORT_ERRORS as e:
            # Missing tube or dropped socket: unknown, not fatal
            self.logger.debug("beanstalk_stats_unavailable", queue=queue, error=str(e))
        return None

    def ping(self, reconnect: bool = True) -> Optional[bool]:
        try:
            if self._client is not None and self._client.stats():
                return True
        except TRANSPORT_ERRORS as e:
            self.logger.warning("beanstalk_ping_failed", error=str(e), reconnect=reconnect)

        if not reconnect:
            return None

        self._close_quietly()
        try:
            self._client = self._open()
            self._connected = True
        except TRANSPORT_ERRORS as e:
            self._connected = False
            self._error("reconnect", e)
            return None

        self.logger.info("beanstalk_reconnected", address=self.address)
        return self.ping(reconnect=False)

    def bind_read(self, queue: str) -> bool:
        if not self._connected:
            return False
        try:
            self._client.watch(queue)
            if queue != DEFAULT_TUBE and DEFAULT_TUBE not in self._watched:
                self._client.ignore(DEFAULT_TUBE)
            if queue not in self._watched:
                self._watched.append(queue)
            return True
        except TRANSPORT_ERRORS as e:
            self._error("bind_read", e)
        return False

    def bind_write(self, queue: str) -> bool:
        if not self._connected:
            return False
        try:
            self._client.use(queue)
            self._used = queue
            return True
        except TRANSPORT_ERRORS as e:
            self._error("bind_write", e)
        return False

    def pick_task(self) -> Pick:
        if not self._connected:
            return Pick.failed(PickError.DISCONNECTED)
        try:
            job = self._client.reserve(timeout=self.timeout)
            return Pick(job_id=job.id, payload=job.body)
        except greenstalk.TimedOutError:
            return Pick.failed(PickError.EMPTY)
        except greenstalk.DeadlineSoonError:
            # Answered at once while a held job is near its TTR
            self.logger.warning("beanstalk_deadline_soon")
            return Pick.failed(PickError.DEADLINE_SOON)
        except TRANSPORT_ERRORS as e:
            self._error("pick_task", e)
        return Pick.failed(PickError.TRANSPORT)

    def put_task(self, payload: str, options: Optional[dict] = None) -> Optional[JobId]:
        if not self._connected:
            return None
        try:
            priority, readywait, jobttr = put_params(options)
            job_id = self._client.put(payload, priority=priority, delay=readywait, ttr=jobttr)
            if job_id:
                return job_id
        except (TRANSPORT_ERRORS + (ValueError, TypeError)) as e:
            self._error("put_task", e)
        return None

    def after_work_failed(self, job_id: JobId) -> bool:
        if not self._connected:
            return False
        try:
            priority = DEFAULT_PRIORITY
            try:
                priority = int(self._client.stats_job(job_id)["pri"])
            except (greenstalk.NotFoundError, KeyError):
                pass
            self._client.release(greenstalk.Job(int(job_id), ""), priority=priority)
            return True
        except TRANSPORT_ERRORS as e:
            self._error("after_work_failed", e)
        return False

    def after_work_success(self, job_id: JobId) -> bool:
        if not self._connected:
            return False
        try:
            self._client.delete(int(job_id))
            return True
        except TRANSPORT_ERRORS as e:
            self._error("after_work_success", e)
        return False

    def disconnect(self) -> bool:
        if not self._connected:
            return False
        try:
            self._client.close()
            return True
        except TRANSPORT_ERRORS as e:
            self._error("disconnect", e)
        finally:
            self._connected = False
            self._client = None
        return False

    def _close_quietly(self) -> None:
        if self._client is None:
            return
        try:
            self._client.close()
        except TRANSPORT_ERRORS:
            pass
        self._client = None
