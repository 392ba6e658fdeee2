import logging
import sys

from opentelemetry._logs import set_logger_provider
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, ConsoleLogRecordExporter


def setup_logging(level: str = "INFO") -> LoggerProvider:
    """Configure OpenTelemetry logging with a Console exporter plus a stdout handler."""

    # 1. Setup OpenTelemetry Logger Provider
    logger_provider = LoggerProvider()

    console_exporter = ConsoleLogRecordExporter()
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(console_exporter))

    set_logger_provider(logger_provider)

    # 2. Attach OTel LoggingHandler to Python's root logger
    handler = LoggingHandler(level=getattr(logging, level), logger_provider=logger_provider)

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)

    # Bootstrap runs are short-lived; the stream handler gives immediate output
    # even when the batch processor has not flushed yet.
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root.addHandler(stream_handler)

    return logger_provider


logger = logging.getLogger("trustboot")
