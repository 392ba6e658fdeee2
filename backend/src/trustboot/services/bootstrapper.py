"""Role bootstrapper: drives one role from UNINITIALIZED to VALIDATED.

Every step is idempotent. A restarted process repeats the whole sequence and
only does the work that is still missing, which makes restart the recovery
path for any fatal error.
"""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from cryptography import x509
from opentelemetry import trace

from shared.security import ensure_secret_file, generate_secret, read_secret_file
from trustboot.domain.models import CA_TRUST, END_ENTITY_TRUST, BootstrapConfig
from trustboot.domain.state_machine import BootstrapStateMachine
from trustboot.domain.states import BootstrapEvent, BootstrapState, Role
from trustboot.errors import (
    ArtifactNotReady,
    BootstrapCancelled,
    BootstrapError,
    ChannelError,
    GenerationFailed,
    ImportFailed,
    StoreUnavailable,
    ValidationMismatch,
)
from trustboot.exchange import (
    CA_BUNDLE,
    CA_BUNDLE_PASSWORD,
    CA_CERTIFICATE,
    Artifact,
    Cancelled,
    ExchangeChannel,
    TimedOut,
    certificate_request,
    issued_certificate,
)
from trustboot.metrics import trustboot_metrics
from trustboot.services.coordinator import TrustCoordinator, ValidationReport
from trustboot.store import CertificateStore, open_store
from trustboot.store.crypto import is_issued_by, key_fingerprint

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Hex digits of the key fingerprint appended to request names
KEY_ID_LENGTH = 16


class RoleBootstrapper:
    """Runs the bootstrap sequence for a single role against its own store."""

    def __init__(
        self,
        config: BootstrapConfig,
        store: CertificateStore,
        channel: ExchangeChannel,
    ):
        self.config = config
        self.store = store
        self.channel = channel
        self.coordinator = TrustCoordinator(config)
        self.machine = BootstrapStateMachine(config.role)

    @classmethod
    def from_config(
        cls,
        config: BootstrapConfig,
        cancel_event: threading.Event | None = None,
        prepare: bool = True,
    ) -> "RoleBootstrapper":
        """Build the store adapter and channel for ``config``.

        With ``prepare`` the role's directories and store access secret are
        created when missing; without it (validation only) nothing is written.
        """
        if prepare:
            create_directory_structure(config)
            access_secret, created = ensure_secret_file(config.access_secret_file)
            if created:
                logger.info(
                    "access_secret_generated", extra={"path": str(config.access_secret_file)}
                )
        else:
            try:
                access_secret = read_secret_file(config.access_secret_file)
            except OSError as e:
                raise StoreUnavailable(
                    f"cannot read access secret {config.access_secret_file}: {e}"
                ) from e

        store = open_store(config.store_backend, config.store_dir, access_secret)
        channel = ExchangeChannel(
            config.exchange_dir, config.exchange_private_dir, cancel_event=cancel_event
        )
        return cls(config, store, channel)

    @property
    def role(self) -> Role:
        return self.config.role

    @property
    def state(self) -> BootstrapState:
        return self.machine.state

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def ensure_store(self) -> bool:
        """Create the role's store if absent. Returns True if it was created."""
        with self._step("ensure_store", BootstrapEvent.STORE_ENSURED):
            created = self.store.create()
            if not created:
                logger.debug("store_already_exists", extra={"path": str(self.store.path)})
            self.machine.advance(BootstrapEvent.STORE_ENSURED)
            return created

    def ensure_authority_material(self) -> bool:
        """Make the CA identity present. Returns True if material was generated or imported."""
        with self._step("ensure_authority_material", BootstrapEvent.AUTHORITY_MATERIAL_ENSURED):
            if self.role == Role.AUTHORITY:
                changed = self._ensure_ca_generated()
            elif self.role == Role.INHERITOR:
                changed = self._ensure_ca_bundle_imported()
            else:
                changed = self._ensure_ca_certificate_imported()
            self.machine.advance(BootstrapEvent.AUTHORITY_MATERIAL_ENSURED)
            return changed

    def ensure_own_certificate(self) -> bool:
        """Make the role's end-entity certificate present. Returns True if it was issued now."""
        with self._step("ensure_own_certificate", BootstrapEvent.OWN_CERTIFICATE_ENSURED):
            nickname = self.config.own_nickname
            if self.store.has_identity(nickname):
                logger.debug("own_certificate_already_exists", extra={"nickname": nickname})
                changed = False
            elif self.coordinator.policy.signs_locally:
                self.store.generate_signed(
                    nickname,
                    self.config.own_subject,
                    self.config.ca_nickname,
                    END_ENTITY_TRUST,
                    self.config.cert_validity_months,
                    self.config.cert_key_size,
                    self.config.own_dns_names,
                )
                trustboot_metrics.record_certificate_generated("own")
                logger.info(
                    "own_certificate_issued",
                    extra={"nickname": nickname, "subject": self.config.own_subject},
                )
                changed = True
            else:
                self._request_own_certificate()
                changed = True
            self.machine.advance(BootstrapEvent.OWN_CERTIFICATE_ENSURED)
            return changed

    def export_if_authority(self) -> list[Artifact]:
        """Publish the CA bundle and public CA certificate (authority only).

        Returns the artifacts published by this call; already-present
        artifacts are skipped.
        """
        if self.role != Role.AUTHORITY:
            return []

        with self._step("export_if_authority", BootstrapEvent.ARTIFACTS_PUBLISHED):
            published = []
            ca_nick = self.config.ca_nickname

            # Password first, bundle second, public certificate last: a consumer
            # that sees an artifact can rely on everything published before it.
            if not self.channel.exists(CA_BUNDLE):
                existing = self.channel.read(CA_BUNDLE_PASSWORD)
                if existing is not None:
                    # Left over from an interrupted export; the bundle must use it
                    password = existing.decode("utf-8").strip()
                else:
                    password = generate_secret()
                    self.channel.publish(CA_BUNDLE_PASSWORD, (password + "\n").encode("utf-8"))
                    published.append(CA_BUNDLE_PASSWORD)
                bundle = self.store.export_bundle(ca_nick, password)
                if self.channel.publish(CA_BUNDLE, bundle):
                    published.append(CA_BUNDLE)
            elif not self.channel.exists(CA_BUNDLE_PASSWORD):
                raise ChannelError(f"{CA_BUNDLE} is published without {CA_BUNDLE_PASSWORD}")

            if self.channel.publish(
                CA_CERTIFICATE, self.store.export_certificate(ca_nick).encode("ascii")
            ):
                published.append(CA_CERTIFICATE)

            logger.info(
                "authority_export_complete",
                extra={"published": [str(a) for a in published]},
            )
            self.machine.advance(BootstrapEvent.ARTIFACTS_PUBLISHED)
            return published

    def validate(self) -> ValidationReport:
        """Validate the store; on success the bootstrap reaches VALIDATED."""
        with self._step("validate", BootstrapEvent.VALIDATION_PASSED):
            report = self.coordinator.validate(self.store)
            trustboot_metrics.record_validation(self.role.value, report.passed)
            if report.passed:
                self.machine.advance(BootstrapEvent.VALIDATION_PASSED)
            return report

    def check(self) -> ValidationReport:
        """Validate the store as it is, without running any step."""
        with tracer.start_as_current_span("RoleBootstrapper.check") as span:
            span.set_attribute("role", self.role.value)
            report = self.coordinator.validate(self.store)
            trustboot_metrics.record_validation(self.role.value, report.passed)
            return report

    def run(self) -> ValidationReport:
        """Run the full sequence. Raises ValidationMismatch if the end state is wrong."""
        with tracer.start_as_current_span("RoleBootstrapper.run") as span:
            span.set_attribute("role", self.role.value)
            self.machine = BootstrapStateMachine(self.role)

            logger.info("bootstrap_started", extra={"role": self.role.value})
            self.ensure_store()
            self.ensure_authority_material()
            self.ensure_own_certificate()
            self.export_if_authority()
            report = self.validate()
            if not report.passed:
                raise ValidationMismatch(report, step="validate")

            logger.info("bootstrap_validated", extra={"role": self.role.value})
            return report

    # ------------------------------------------------------------------
    # Role-specific authority material
    # ------------------------------------------------------------------

    def _ensure_ca_generated(self) -> bool:
        ca_nick = self.config.ca_nickname
        if self.store.has_identity(ca_nick):
            logger.debug("ca_already_exists", extra={"nickname": ca_nick})
            return False

        self.store.generate_self_signed(
            ca_nick,
            self.config.ca_subject,
            CA_TRUST,
            self.config.ca_validity_months,
            self.config.ca_key_size,
        )
        trustboot_metrics.record_certificate_generated("ca")
        logger.info(
            "ca_generated",
            extra={
                "nickname": ca_nick,
                "subject": self.config.ca_subject,
                "validity_months": self.config.ca_validity_months,
            },
        )
        return True

    def _ensure_ca_bundle_imported(self) -> bool:
        ca_nick = self.config.ca_nickname
        changed = False
        if not self.store.has_identity(ca_nick):
            bundle = self._wait_for(CA_BUNDLE, self.config.ca_bundle_poll_attempts)
            # The password is published before the bundle
            password = self._wait_for(CA_BUNDLE_PASSWORD, 1).decode("utf-8").strip()
            self.store.import_bundle(ca_nick, bundle, password)
            logger.info("ca_bundle_imported", extra={"nickname": ca_nick})
            changed = True

        # Import carries no trust; assert it every time
        self.store.modify_trust(ca_nick, CA_TRUST)
        return changed

    def _ensure_ca_certificate_imported(self) -> bool:
        ca_nick = self.config.ca_nickname
        if self.store.has_identity(ca_nick):
            if not self.store.list_trust(ca_nick).is_issuance_trusted:
                self.store.modify_trust(ca_nick, CA_TRUST)
            return False

        pem = self._wait_for(CA_CERTIFICATE, self.config.ca_cert_poll_attempts)
        try:
            certificate = x509.load_pem_x509_certificate(pem)
        except ValueError as e:
            raise ImportFailed(f"{CA_CERTIFICATE} is not a PEM certificate: {e}") from e
        if not is_issued_by(certificate, certificate):
            raise ImportFailed(f"{CA_CERTIFICATE} is not a self-signed CA certificate")

        self.store.import_certificate(ca_nick, pem.decode("ascii"), CA_TRUST)
        logger.info("ca_certificate_imported", extra={"nickname": ca_nick})
        return True

    def _request_own_certificate(self) -> None:
        """Have a CA-holding role sign a locally generated key through the channel."""
        nickname = self.config.own_nickname
        request_pem = self.store.create_request(
            nickname,
            self.config.own_subject,
            self.config.cert_key_size,
            self.config.own_dns_names,
        )
        # A rebuilt store has a new key; requests and answers for older keys stay unused
        name = pending_request_name(self.config, request_pem)
        if self.channel.publish(certificate_request(name), request_pem.encode("ascii")):
            logger.info("certificate_requested", extra={"nickname": nickname, "request": name})
        else:
            logger.info(
                "certificate_request_pending", extra={"nickname": nickname, "request": name}
            )

        pem = self._wait_for(issued_certificate(name), self.config.issued_cert_poll_attempts)
        try:
            certificate = x509.load_pem_x509_certificate(pem)
        except ValueError as e:
            raise ImportFailed(f"issued certificate for {nickname!r} is malformed: {e}") from e
        ca_cert = self.store.get_certificate(self.config.ca_nickname)
        if not is_issued_by(certificate, ca_cert):
            raise ImportFailed(
                f"issued certificate for {nickname!r} is not signed by {self.config.ca_nickname!r}"
            )

        self.store.import_certificate(nickname, pem.decode("ascii"), END_ENTITY_TRUST)
        trustboot_metrics.record_certificate_generated("own")
        logger.info("own_certificate_imported", extra={"nickname": nickname})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _wait_for(self, artifact: Artifact, attempts: int) -> bytes:
        result = self.channel.poll(artifact, attempts, self.config.poll_interval)
        if isinstance(result, TimedOut):
            raise ArtifactNotReady(str(artifact), result.attempts)
        if isinstance(result, Cancelled):
            raise BootstrapCancelled(f"shutdown requested while waiting for {artifact}")
        return result.payload

    @contextmanager
    def _step(self, name: str, event: BootstrapEvent) -> Iterator[None]:
        started = time.monotonic()
        with tracer.start_as_current_span(f"RoleBootstrapper.{name}") as span:
            span.set_attribute("role", self.role.value)
            try:
                self.machine.require(event)
                yield
            except BootstrapError as e:
                if e.step is None:
                    e.step = name
                span.set_attribute("error.kind", e.kind)
                trustboot_metrics.record_step(
                    self.role.value, name, e.kind, time.monotonic() - started
                )
                logger.error(
                    "bootstrap_step_failed",
                    extra={"role": self.role.value, "step": name, "error": str(e)},
                )
                raise
            trustboot_metrics.record_step(self.role.value, name, "ok", time.monotonic() - started)


def pending_request_name(config: BootstrapConfig, request_pem: str) -> str:
    """Exchange name for a leaf's request, qualified by the requested key."""
    try:
        request = x509.load_pem_x509_csr(request_pem.encode("ascii"))
    except ValueError as e:
        raise GenerationFailed(f"store produced a malformed certificate request: {e}") from e
    return f"{config.request_name}-{key_fingerprint(request.public_key())[:KEY_ID_LENGTH]}"


def create_directory_structure(config: BootstrapConfig) -> None:
    """Create the role's local directories; shared exchange directories are left to publishers."""
    for directory, mode in (
        (config.store_dir.parent, 0o755),
        (config.secrets_dir, 0o700),
        (config.config_dir, 0o755),
    ):
        _ensure_directory(directory, mode)


def _ensure_directory(directory: Path, mode: int) -> None:
    if directory.is_dir():
        return
    try:
        directory.mkdir(parents=True, exist_ok=True, mode=mode)
    except OSError as e:
        raise StoreUnavailable(f"cannot create directory {directory}: {e}") from e
    logger.debug("directory_created", extra={"path": str(directory)})
