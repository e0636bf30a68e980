"""Worker forwarding nested messages to their own publisher."""

from typing import Callable, Iterator, Optional

from backq.jobs.queue import Lease, WorkerRuntime, WorkOutcome
from backq.messages import Message, PublisherRef, SerializedMessage, decode_message
from backq.publishers import Publisher, resolve_publisher


class DispatchForwarder(WorkerRuntime):
    """Republishes the message wrapped in a SerializedMessage.

    Unlike process jobs, forwarding is safe to repeat, so any failure to
    publish releases the job back to the broker for another attempt.
    """

    queue_name = "serialized"
    source = "dispatch_forwarder"

    def __init__(
        self,
        adapter,
        queue_name: Optional[str] = None,
        work_timeout: int = 5,
        poll_interval: float = 1.0,
        restart_threshold: int = 0,
        publisher_factory: Callable[[PublisherRef], Publisher] = resolve_publisher,
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
        self.publisher_factory = publisher_factory

    def consume(self, work: Iterator[Lease]) -> None:
        for lease in work:
            if lease.empty:
                self.acknowledge(lease, self.idle_outcome())
                continue

            job_id = lease.job.id
            message = decode_message(lease.payload)
            if not isinstance(message, SerializedMessage):
                self.logger.warning(
                    "unsupported_payload",
                    job_id=job_id,
                    payload_type=type(message).__name__,
                )
                self.acknowledge(lease, WorkOutcome.COMMIT)
                continue

            if message.publisher is None or message.message is None:
                if message.message is None:
                    self.logger.error("missing_original_message", job_id=job_id)
                if message.publisher is None:
                    self.logger.error("missing_original_publisher", job_id=job_id)
                self.acknowledge(lease, WorkOutcome.FAIL)
                continue

            outcome = WorkOutcome.FAIL
            try:
                published_id = self.dispatch(
                    message.publisher,
                    message.message,
                    message.publish_options,
                )
                if published_id:
                    outcome = WorkOutcome.COMMIT
                    self.logger.info(
                        "message_forwarded",
                        job_id=job_id,
                        publisher=message.publisher.target,
                        published_id=published_id,
                    )
                else:
                    self.logger.warning(
                        "message_not_forwarded",
                        job_id=job_id,
                        publisher=message.publisher.target,
                    )
            except Exception as e:
                self.logger.error(
                    "message_forward_failed",
                    job_id=job_id,
                    publisher=message.publisher.target,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

            self.acknowledge(lease, outcome)

    def dispatch(
        self,
        publisher_ref: PublisherRef,
        message: Message,
        publish_options: Optional[dict] = None,
    ) -> Optional[str]:
        """Publish the nested message through its publisher.

        Returns:
            Identifier assigned by the publisher, or None when it did not start
        """
        publisher = self.publisher_factory(publisher_ref)
        try:
            if publisher.start():
                published_id = publisher.publish(message, publish_options or {})
                return str(published_id) if published_id else None
            return None
        finally:
            publisher.finish()
