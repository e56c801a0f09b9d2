import asyncio
import signal

from dotenv import load_dotenv

from queue_resilience.config.settings import get_settings
from queue_resilience.logging import LogEventType, configure_logging, get_logger
from queue_resilience.metrics import start_metrics_server
from queue_resilience.orchestrator import ResilienceOrchestrator

load_dotenv()

logger = get_logger(__name__)


async def main():
    """Run the resilience worker until SIGINT / SIGTERM."""
    settings = get_settings()
    configure_logging(
        service_name=settings.SERVICE_NAME,
        log_level=settings.LOG_LEVEL,
        json_format=settings.LOG_JSON_FORMAT,
    )

    metrics_server = start_metrics_server(port=settings.METRICS_PORT)
    logger.info("Metrics server started", port=settings.METRICS_PORT)

    orchestrator = ResilienceOrchestrator(settings)
    shutdown_event = asyncio.Event()

    def _signal_handler(*_):
        logger.info("Shutdown signal received", event_type=LogEventType.SHUTDOWN)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _signal_handler)

    try:
        logger.info("Starting resilience worker", event_type=LogEventType.STARTUP)
        orchestrator.start()
        await shutdown_event.wait()
    except asyncio.CancelledError:
        logger.info("Service interrupted", event_type=LogEventType.SHUTDOWN)
    except Exception as e:
        logger.exception(
            "Service encountered an unhandled error",
            event_type=LogEventType.ERROR,
            error=str(e),
        )
    finally:
        logger.info("Closing resources")
        await orchestrator.shutdown()
        metrics_server.shutdown()
        logger.info("Resilience worker shut down", event_type=LogEventType.SHUTDOWN)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
