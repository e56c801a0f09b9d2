# Import logging utilities
from .errors import (
    MalformedMessageError,
    PayloadDecodeError,
    QueueNotRegisteredError,
    ResilienceError,
)
from .health_monitor import ServiceHealthMonitor
from .logging import (
    LogEventType,
    LogLevel,
    clear_context,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)
from .models import (
    DeadLetterEntry,
    FailureLogEntry,
    FailureStats,
    ProcessResult,
    QueueDefinition,
    QueueMetrics,
    QueueStats,
    RecoveryLogEntry,
    RetryableMessage,
    RetryQueueEvent,
    ServiceStatus,
    ServiceStatusRecord,
    StatusChangeEvent,
)
from .payloads import (
    NotificationPayload,
    PaymentPayload,
    WebhookPayload,
    decode_payload,
    typed_processor,
)
from .poller import RetryQueuePoller
from .queue_manager import QueueManager
from .retry_queue import RetryConfig, RetryQueue
from .service_logger import ServiceLogger

# Note: ResilienceOrchestrator is available via queue_resilience.orchestrator
# but not imported at top level to keep settings loading out of library imports

__all__ = [
    # Logging
    "LogEventType",
    "LogLevel",
    "clear_context",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
    # Errors
    "MalformedMessageError",
    "PayloadDecodeError",
    "QueueNotRegisteredError",
    "ResilienceError",
    # Models
    "DeadLetterEntry",
    "FailureLogEntry",
    "FailureStats",
    "ProcessResult",
    "QueueDefinition",
    "QueueMetrics",
    "QueueStats",
    "RecoveryLogEntry",
    "RetryableMessage",
    "RetryQueueEvent",
    "ServiceStatus",
    "ServiceStatusRecord",
    "StatusChangeEvent",
    # Payloads
    "NotificationPayload",
    "PaymentPayload",
    "WebhookPayload",
    "decode_payload",
    "typed_processor",
    # Components
    "QueueManager",
    "RetryConfig",
    "RetryQueue",
    "RetryQueuePoller",
    "ServiceHealthMonitor",
    "ServiceLogger",
]
