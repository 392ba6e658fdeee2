"""Certificate store interface.

A store is a per-role database of nickname-addressed certificates, optional
private keys, and trust flags. The access secret protecting private keys is
bound when the adapter is constructed.

Adapters raise the errors from ``trustboot.errors``; "already exists" is never
an error and is reported by a ``False`` return value from the creating call.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from cryptography import x509

from trustboot.domain.models import TrustFlags


class CertificateStore(ABC):
    """Opaque key/certificate database addressed by nickname."""

    backend = "abstract"

    def __init__(self, path: Path, access_secret: str):
        self.path = path
        self._access_secret = access_secret

    @abstractmethod
    def exists(self) -> bool:
        """Whether the store has been created."""

    @abstractmethod
    def create(self) -> bool:
        """Create the store. Returns False if it already existed."""

    @abstractmethod
    def has_identity(self, nickname: str) -> bool:
        """Whether a certificate is stored under ``nickname``."""

    @abstractmethod
    def list_nicknames(self) -> list[str]:
        """Nicknames of all stored certificates, sorted."""

    @abstractmethod
    def has_private_key(self, nickname: str) -> bool:
        """Whether a private key is held for ``nickname``."""

    @abstractmethod
    def list_trust(self, nickname: str) -> TrustFlags:
        ...

    @abstractmethod
    def modify_trust(self, nickname: str, trust: TrustFlags) -> None:
        ...

    @abstractmethod
    def import_certificate(self, nickname: str, pem: str, trust: TrustFlags) -> bool:
        """Import a certificate without a private key.

        If a key for ``nickname`` is pending from ``create_request``, the
        certificate must match it.
        """

    @abstractmethod
    def import_bundle(self, nickname: str, bundle: bytes, bundle_password: str) -> bool:
        """Import a PKCS#12 certificate + private key bundle.

        Trust flags are not carried by the bundle; callers must re-assert them.
        """

    @abstractmethod
    def generate_self_signed(
        self, nickname: str, subject: str, trust: TrustFlags, validity_months: int, key_size: int
    ) -> None:
        """Generate a key pair and a self-signed CA certificate."""

    @abstractmethod
    def generate_signed(
        self,
        nickname: str,
        subject: str,
        issuer_nickname: str,
        trust: TrustFlags,
        validity_months: int,
        key_size: int,
        dns_names: Sequence[str] = (),
    ) -> None:
        """Generate a key pair and a certificate signed by a locally held issuer."""

    @abstractmethod
    def create_request(
        self, nickname: str, subject: str, key_size: int, dns_names: Sequence[str] = ()
    ) -> str:
        """Generate (or reuse) a pending key for ``nickname`` and return a PEM CSR."""

    @abstractmethod
    def sign_request(self, issuer_nickname: str, request_pem: str, validity_months: int) -> str:
        """Sign a PEM CSR with a locally held issuer, returning the certificate PEM."""

    @abstractmethod
    def export_certificate(self, nickname: str) -> str:
        """PEM of the certificate under ``nickname``."""

    @abstractmethod
    def export_bundle(self, nickname: str, bundle_password: str) -> bytes:
        """PKCS#12 of the certificate and private key under ``nickname``."""

    def get_certificate(self, nickname: str) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.export_certificate(nickname).encode("ascii"))
