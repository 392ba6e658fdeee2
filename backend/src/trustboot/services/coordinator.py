"""Trust coordinator: role dependencies, trust policy, and end-state validation.

Policy table:

    identity        trust       private key held
    CA              CT,C,C      authority: yes, inheritor: yes, leaf: no
    own certificate u,u,u       yes, generated locally

The authority's own certificate is issued by its CA rather than self-signed,
so every role's own certificate passes the same chain check.

The same checks apply whichever store adapter holds the material.
"""

import logging
from dataclasses import dataclass, field

from trustboot.domain.models import BootstrapConfig
from trustboot.domain.states import IdentityKind, Role
from trustboot.exchange import CA_BUNDLE, CA_CERTIFICATE, Artifact
from trustboot.store.base import CertificateStore
from trustboot.store.crypto import is_issued_by

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Precondition:
    """An artifact that must be visible on the exchange channel before a role can proceed."""

    artifact: Artifact
    producer: Role


@dataclass(frozen=True)
class RolePolicy:
    role: Role
    holds_ca_key: bool
    preconditions: tuple[Precondition, ...] = ()

    @property
    def upstream(self) -> Role | None:
        producers = {p.producer for p in self.preconditions}
        return producers.pop() if producers else None

    @property
    def signs_locally(self) -> bool:
        """Whether the role signs its own certificate rather than requesting one."""
        return self.holds_ca_key


POLICIES: dict[Role, RolePolicy] = {
    Role.AUTHORITY: RolePolicy(Role.AUTHORITY, holds_ca_key=True),
    Role.INHERITOR: RolePolicy(
        Role.INHERITOR,
        holds_ca_key=True,
        preconditions=(Precondition(CA_BUNDLE, Role.AUTHORITY),),
    ),
    Role.LEAF: RolePolicy(
        Role.LEAF,
        holds_ca_key=False,
        preconditions=(Precondition(CA_CERTIFICATE, Role.AUTHORITY),),
    ),
}


@dataclass
class ValidationReport:
    """Outcome of validating one role's store. Empty ``issues`` means it passed."""

    role: Role
    issues: list[str] = field(default_factory=list)
    checked: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.issues

    def fail(self, issue: str) -> None:
        self.issues.append(issue)

    def ok(self, check: str) -> None:
        self.checked.append(check)


class TrustCoordinator:
    """Applies the dependency and trust policy tables to one role."""

    def __init__(self, config: BootstrapConfig):
        self.config = config
        self.policy = POLICIES[config.role]

    @property
    def preconditions(self) -> tuple[Precondition, ...]:
        return self.policy.preconditions

    def expected_nicknames(self) -> dict[str, IdentityKind]:
        return {
            self.config.ca_nickname: IdentityKind.CA,
            self.config.own_nickname: IdentityKind.OWN,
        }

    def validate(self, store: CertificateStore) -> ValidationReport:
        """Check the store against the policy, collecting every discrepancy."""
        report = ValidationReport(role=self.config.role)
        ca_nick = self.config.ca_nickname
        own_nick = self.config.own_nickname

        if not store.exists():
            report.fail(f"certificate store missing at {store.path}")
            return report

        present = set(store.list_nicknames())
        kinds = self.expected_nicknames()
        expected = set(kinds)
        for nickname in sorted(expected - present):
            report.fail(f"missing {kinds[nickname].value} identity {nickname!r}")
        for nickname in sorted(present - expected):
            report.fail(f"unexpected identity {nickname!r}")

        ca_cert = None
        if ca_nick in present:
            ca_cert = store.get_certificate(ca_nick)
            self._check_ca(store, report, ca_cert)

        if own_nick in present:
            self._check_own(store, report, ca_cert)

        logger.info(
            "store_validated",
            extra={
                "role": self.config.role.value,
                "passed": report.passed,
                "issues": report.issues,
            },
        )
        return report

    def _check_ca(self, store: CertificateStore, report: ValidationReport, ca_cert) -> None:
        ca_nick = self.config.ca_nickname

        trust = store.list_trust(ca_nick)
        if trust.is_issuance_trusted:
            report.ok("ca_trust")
        else:
            report.fail(f"CA {ca_nick!r} is not trusted for issuance (trust {trust})")

        has_key = store.has_private_key(ca_nick)
        if has_key and not self.policy.holds_ca_key:
            report.fail(f"{self.config.role.value} must not hold the CA private key {ca_nick!r}")
        elif not has_key and self.policy.holds_ca_key:
            report.fail(f"CA private key {ca_nick!r} missing")
        else:
            report.ok("ca_key")

        if not is_issued_by(ca_cert, ca_cert):
            report.fail(f"CA {ca_nick!r} is not self-signed")
        if self.config.role == Role.AUTHORITY:
            subject = ca_cert.subject.rfc4514_string()
            if subject != self.config.ca_subject:
                report.fail(f"CA subject {subject!r} differs from {self.config.ca_subject!r}")

    def _check_own(self, store: CertificateStore, report: ValidationReport, ca_cert) -> None:
        own_nick = self.config.own_nickname

        trust = store.list_trust(own_nick)
        if trust.is_end_entity:
            report.ok("own_trust")
        else:
            report.fail(f"{own_nick!r} must be an end-entity certificate (trust {trust})")

        if not store.has_private_key(own_nick):
            report.fail(f"private key for {own_nick!r} missing")

        own_cert = store.get_certificate(own_nick)
        subject = own_cert.subject.rfc4514_string()
        if subject != self.config.own_subject:
            expected = self.config.own_subject
            report.fail(f"{own_nick!r} subject {subject!r} differs from {expected!r}")

        if ca_cert is None:
            return
        if is_issued_by(own_cert, ca_cert):
            report.ok("own_chain")
        else:
            report.fail(f"{own_nick!r} was not issued by CA {self.config.ca_nickname!r}")
