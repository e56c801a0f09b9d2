"""Exception taxonomy for the resilience layer.

Processor failures and health-check connectivity errors are converted into
results and persisted statuses; only store failures (redis errors) and the
operator-facing errors below ever reach callers.
"""


class ResilienceError(Exception):
    """Base exception for resilience layer errors."""

    pass


class PayloadDecodeError(ResilienceError):
    """Payload envelope could not be decoded at the queue boundary."""

    def __init__(self, detail: str, raw: object = None):
        self.detail = detail
        self.raw = raw
        super().__init__(f"Payload decode failed: {detail}")


class MalformedMessageError(ResilienceError):
    """A stored queue entry is not a valid message record."""

    def __init__(self, queue_name: str, raw: str):
        self.queue_name = queue_name
        self.raw = raw
        super().__init__(f"Malformed message in queue {queue_name}")


class QueueNotRegisteredError(ResilienceError):
    """Operation targets a queue nobody registered."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Queue not found: {queue_name}")
