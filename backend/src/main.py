"""trustboot: bootstrap mutual-TLS trust for one role.

Usage:
    trustboot --role authority
    trustboot --role inheritor --serve-requests
    trustboot --role leaf --validate-only

Exit codes:
    0    validated
    1    fatal bootstrap error (one line on stderr names the step)
    2    usage or configuration error
    130  interrupted while waiting on the exchange channel
"""

import argparse
import logging
import signal
import sys
import threading

from opentelemetry import trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from pydantic import ValidationError

from shared.config import Settings
from shared.logging import setup_logging
from shared.metrics import setup_metrics
from trustboot.domain.models import BootstrapConfig
from trustboot.domain.states import Role
from trustboot.errors import BootstrapCancelled, BootstrapError, ValidationMismatch
from trustboot.services.bootstrapper import RoleBootstrapper
from trustboot.services.issuance import RequestSigner
from trustboot.services.service_config import write_service_config

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def setup_tracing(app_name: str, role: str) -> TracerProvider:
    resource = Resource.create({"service.name": app_name, "trustboot.role": role})
    provider = TracerProvider(resource=resource)

    # Export traces to console; the process is short-lived
    processor = BatchSpanProcessor(ConsoleSpanExporter())
    provider.add_span_processor(processor)

    trace.set_tracer_provider(provider)
    return provider


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trustboot",
        description="Bootstrap mutual-TLS trust for an authority, inheritor or leaf role.",
    )
    parser.add_argument(
        "--role",
        help="authority (gateway/bridge), inheritor (vault/server) or leaf (client); "
        "defaults to $ROLE",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="check the existing store without changing anything",
    )
    parser.add_argument("--debug", action="store_true", help="log at DEBUG level")
    parser.add_argument(
        "--serve-requests",
        action="store_true",
        help="after bootstrap, keep signing client certificate requests until stopped "
        "(authority and inheritor only)",
    )
    return parser


def install_signal_handlers(cancel_event: threading.Event) -> dict:
    """Route SIGTERM/SIGINT to ``cancel_event``. Returns the previous handlers."""

    def _handle(signum, frame):
        logger.warning("shutdown_requested", extra={"signal": signal.Signals(signum).name})
        cancel_event.set()

    previous = {}
    for signum in (signal.SIGTERM, signal.SIGINT):
        previous[signum] = signal.signal(signum, _handle)
    return previous


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as e:
        print(f"trustboot: invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    role_name = args.role or settings.ROLE
    if not role_name:
        print("trustboot: --role is required (or set ROLE)", file=sys.stderr)
        return EXIT_USAGE
    try:
        role = Role.parse(role_name)
    except ValueError:
        print(f"trustboot: unknown role {role_name!r}", file=sys.stderr)
        return EXIT_USAGE

    config = BootstrapConfig.from_settings(settings, role)
    if args.serve_requests or settings.SERVE_REQUESTS:
        serve_requests = True
        if role == Role.LEAF:
            print("trustboot: --serve-requests needs a role that holds the CA key", file=sys.stderr)
            return EXIT_USAGE
    else:
        serve_requests = False

    logger_provider = setup_logging("DEBUG" if args.debug else settings.LOG_LEVEL.upper())
    tracer_provider = setup_tracing(settings.APP_NAME, role.value)
    meter_provider = setup_metrics(settings.APP_NAME, role.value)
    LoggingInstrumentor().instrument(set_logging_format=True)

    cancel_event = threading.Event()
    previous_handlers = install_signal_handlers(cancel_event)
    try:
        if args.validate_only:
            bootstrapper = RoleBootstrapper.from_config(config, cancel_event, prepare=False)
            report = bootstrapper.check()
            if not report.passed:
                raise ValidationMismatch(report, step="validate")
            logger.info("validation_passed", extra={"role": role.value, "checks": report.checked})
            return EXIT_OK

        bootstrapper = RoleBootstrapper.from_config(config, cancel_event)
        bootstrapper.run()
        write_service_config(config)

        if serve_requests:
            signer = RequestSigner(config, bootstrapper.store, bootstrapper.channel)
            signer.serve()
        return EXIT_OK
    except BootstrapCancelled as e:
        print(f"trustboot: {role.value}: {e}", file=sys.stderr)
        return EXIT_CANCELLED
    except BootstrapError as e:
        print(f"trustboot: {role.value}: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
        LoggingInstrumentor().uninstrument()
        tracer_provider.shutdown()
        meter_provider.shutdown()
        logger_provider.shutdown()


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
