"""Signs client certificate requests published on the exchange channel.

A leaf never holds the CA key. It publishes a CSR under ``requests/`` and
waits for ``issued/<name>.crt``; a CA-holding role picks the request up here.
"""

import logging

from opentelemetry import trace

from trustboot.domain.models import BootstrapConfig
from trustboot.errors import BootstrapError
from trustboot.exchange import ISSUED_DIR, REQUESTS_DIR, Artifact, ExchangeChannel, Segment
from trustboot.metrics import trustboot_metrics
from trustboot.services.coordinator import POLICIES
from trustboot.store.base import CertificateStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def issued_for(request: Artifact) -> Artifact:
    """The issued-certificate artifact answering ``request``."""
    stem = request.name.removeprefix(f"{REQUESTS_DIR}/").removesuffix(".csr")
    return Artifact(Segment.PUBLIC, f"{ISSUED_DIR}/{stem}.crt")


class RequestSigner:
    def __init__(self, config: BootstrapConfig, store: CertificateStore, channel: ExchangeChannel):
        if not POLICIES[config.role].holds_ca_key:
            raise ValueError(f"role {config.role.value} cannot sign certificate requests")
        self.config = config
        self.store = store
        self.channel = channel

    def sign_pending(self) -> list[Artifact]:
        """Sign every request that has no issued certificate yet.

        A request that cannot be signed is logged and skipped so one bad
        client cannot block the others. Returns the artifacts issued.
        """
        issued = []
        with tracer.start_as_current_span("RequestSigner.sign_pending") as span:
            for request in self.channel.list_requests():
                answer = issued_for(request)
                if self.channel.exists(answer):
                    continue
                payload = self.channel.read(request)
                if payload is None:
                    # Still being written
                    continue
                try:
                    pem = self.store.sign_request(
                        self.config.ca_nickname,
                        payload.decode("ascii"),
                        self.config.cert_validity_months,
                    )
                except (BootstrapError, UnicodeDecodeError) as e:
                    logger.warning(
                        "certificate_request_rejected",
                        extra={"request": str(request), "error": str(e)},
                    )
                    continue

                if self.channel.publish(answer, pem.encode("ascii")):
                    trustboot_metrics.record_request_signed()
                    trustboot_metrics.record_certificate_generated("issued")
                    logger.info(
                        "certificate_request_signed",
                        extra={"request": str(request), "issued": str(answer)},
                    )
                    issued.append(answer)
            span.set_attribute("issued_count", len(issued))
        return issued

    def serve(self) -> int:
        """Sign requests every poll interval until the channel's cancel event is set.

        Returns the number of certificates issued.
        """
        logger.info(
            "request_signer_started",
            extra={"role": self.config.role.value, "interval": self.config.poll_interval},
        )
        total = 0
        while not self.channel.cancel_event.is_set():
            total += len(self.sign_pending())
            if self.channel.cancel_event.wait(self.config.poll_interval):
                break
        logger.info("request_signer_stopped", extra={"issued": total})
        return total
