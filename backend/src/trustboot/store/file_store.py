"""File-backed certificate store built on ``cryptography``.

Layout under the store directory (mode 0700):

    store.json          format version and Argon2 hash of the access secret
    trust.json          nickname -> trust flags
    certs/<nick>.pem    certificates
    keys/<nick>.pem     PKCS#8 private keys encrypted with the access secret

A key without a certificate is a pending request created by
``create_request``; it becomes an identity once the signed certificate is
imported.
"""

import json
import logging
import os
import re
import tempfile
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from shared.security import hash_secret, verify_secret
from trustboot.domain.models import NO_TRUST, TrustFlags
from trustboot.errors import (
    GenerationFailed,
    IdentityNotFound,
    ImportFailed,
    StoreUnavailable,
)
from trustboot.store import crypto
from trustboot.store.base import CertificateStore

logger = logging.getLogger(__name__)

_NICKNAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class FileCertificateStore(CertificateStore):
    backend = "file"

    INDEX_FILE = "store.json"
    TRUST_FILE = "trust.json"
    FORMAT_VERSION = 1

    def __init__(self, path: Path, access_secret: str):
        super().__init__(path, access_secret)
        self._opened = False

    # ------------------------------------------------------------------
    # Store lifecycle
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return (self.path / self.INDEX_FILE).is_file()

    def create(self) -> bool:
        if self.exists():
            self._open()
            return False

        try:
            self.path.mkdir(parents=True, exist_ok=True, mode=0o700)
            (self.path / "certs").mkdir(exist_ok=True, mode=0o700)
            (self.path / "keys").mkdir(exist_ok=True, mode=0o700)
            self._write_json(self.TRUST_FILE, {})
            # Index last: its presence marks a complete store
            self._write_json(
                self.INDEX_FILE,
                {
                    "format": self.FORMAT_VERSION,
                    "access_secret_hash": hash_secret(self._access_secret),
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
            )
        except OSError as e:
            raise StoreUnavailable(f"cannot create store at {self.path}: {e}") from e

        self._opened = True
        logger.info("store_created", extra={"path": str(self.path), "backend": self.backend})
        return True

    def _open(self) -> None:
        if self._opened:
            return
        if not self.exists():
            raise StoreUnavailable(f"no certificate store at {self.path}")
        try:
            index = json.loads((self.path / self.INDEX_FILE).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreUnavailable(f"cannot read store index at {self.path}: {e}") from e

        if index.get("format") != self.FORMAT_VERSION:
            raise StoreUnavailable(f"unsupported store format {index.get('format')!r}")
        if not verify_secret(self._access_secret, index.get("access_secret_hash", "")):
            raise StoreUnavailable(f"access secret rejected by store at {self.path}")
        self._opened = True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_identity(self, nickname: str) -> bool:
        self._open()
        return self._cert_path(nickname).is_file()

    def list_nicknames(self) -> list[str]:
        self._open()
        return sorted(p.stem for p in (self.path / "certs").glob("*.pem"))

    def has_private_key(self, nickname: str) -> bool:
        self._open()
        return self._key_path(nickname).is_file()

    def list_trust(self, nickname: str) -> TrustFlags:
        self._require_identity(nickname)
        trust = self._read_trust().get(nickname)
        return TrustFlags.parse(trust) if trust is not None else NO_TRUST

    def modify_trust(self, nickname: str, trust: TrustFlags) -> None:
        self._require_identity(nickname)
        table = self._read_trust()
        table[nickname] = str(trust)
        self._write_trust(table)

    def export_certificate(self, nickname: str) -> str:
        self._require_identity(nickname)
        return self._cert_path(nickname).read_text(encoding="ascii")

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def import_certificate(self, nickname: str, pem: str, trust: TrustFlags) -> bool:
        self._open()
        if self.has_identity(nickname):
            return False
        try:
            certificate = x509.load_pem_x509_certificate(pem.encode("ascii"))
        except ValueError as e:
            raise ImportFailed(f"malformed certificate for {nickname!r}: {e}") from e

        if self.has_private_key(nickname):
            pending_key = self._load_key(nickname)
            if not crypto.public_keys_match(certificate, pending_key):
                raise ImportFailed(
                    f"certificate for {nickname!r} does not match the locally generated key"
                )

        self._store_identity(nickname, certificate, None, trust)
        return True

    def import_bundle(self, nickname: str, bundle: bytes, bundle_password: str) -> bool:
        self._open()
        if self.has_identity(nickname):
            return False
        try:
            key, certificate, _ = pkcs12.load_key_and_certificates(
                bundle, bundle_password.encode("utf-8")
            )
        except ValueError as e:
            raise ImportFailed(f"cannot open bundle for {nickname!r}: {e}") from e
        if key is None or certificate is None:
            raise ImportFailed(f"bundle for {nickname!r} lacks a certificate or private key")
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ImportFailed(f"bundle for {nickname!r} holds an unsupported key type")

        # PKCS#12 carries no trust semantics
        self._store_identity(nickname, certificate, key, NO_TRUST)
        return True

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_self_signed(
        self, nickname: str, subject: str, trust: TrustFlags, validity_months: int, key_size: int
    ) -> None:
        self._require_absent(nickname)
        try:
            key = crypto.generate_rsa_key(key_size)
            certificate = crypto.build_ca_certificate(
                key, x509.Name.from_rfc4514_string(subject), validity_months
            )
            self._store_identity(nickname, certificate, key, trust)
        except (ValueError, OSError) as e:
            raise GenerationFailed(f"cannot generate {nickname!r}: {e}") from e

        logger.info(
            "self_signed_generated",
            extra={"nickname": nickname, "thumbprint": crypto.compute_thumbprint(certificate)},
        )

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
        self._require_absent(nickname)
        issuer_cert, issuer_key = self._load_issuer(issuer_nickname)
        try:
            key = crypto.generate_rsa_key(key_size)
            certificate = crypto.build_signed_certificate(
                key.public_key(),
                x509.Name.from_rfc4514_string(subject),
                issuer_cert,
                issuer_key,
                validity_months,
                list(dns_names),
            )
            self._store_identity(nickname, certificate, key, trust)
        except (ValueError, OSError) as e:
            raise GenerationFailed(f"cannot generate {nickname!r}: {e}") from e

        logger.info(
            "signed_certificate_generated",
            extra={
                "nickname": nickname,
                "issuer": issuer_nickname,
                "thumbprint": crypto.compute_thumbprint(certificate),
            },
        )

    def create_request(
        self, nickname: str, subject: str, key_size: int, dns_names: Sequence[str] = ()
    ) -> str:
        self._require_absent(nickname)
        try:
            if self.has_private_key(nickname):
                key = self._load_key(nickname)
            else:
                key = crypto.generate_rsa_key(key_size)
                self._write_key(nickname, key)
            request = crypto.build_request(
                key, x509.Name.from_rfc4514_string(subject), list(dns_names)
            )
        except (ValueError, OSError) as e:
            raise GenerationFailed(f"cannot create request for {nickname!r}: {e}") from e
        return request.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def sign_request(self, issuer_nickname: str, request_pem: str, validity_months: int) -> str:
        issuer_cert, issuer_key = self._load_issuer(issuer_nickname)
        try:
            request = x509.load_pem_x509_csr(request_pem.encode("ascii"))
        except ValueError as e:
            raise ImportFailed(f"malformed certificate request: {e}") from e
        if not request.is_signature_valid:
            raise ImportFailed("certificate request signature is invalid")

        public_key = request.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ImportFailed("certificate request uses an unsupported key type")

        # Only the subject and DNS names are honoured; extensions are ours
        try:
            certificate = crypto.build_signed_certificate(
                public_key,
                request.subject,
                issuer_cert,
                issuer_key,
                validity_months,
                crypto.request_dns_names(request),
            )
        except ValueError as e:
            subject = request.subject.rfc4514_string()
            raise GenerationFailed(f"cannot sign request for {subject}: {e}") from e
        return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def export_bundle(self, nickname: str, bundle_password: str) -> bytes:
        self._require_identity(nickname)
        if not self.has_private_key(nickname):
            raise IdentityNotFound(nickname)
        certificate = self.get_certificate(nickname)
        key = self._load_key(nickname)
        return pkcs12.serialize_key_and_certificates(
            name=nickname.encode("utf-8"),
            key=key,
            cert=certificate,
            cas=None,
            encryption_algorithm=serialization.BestAvailableEncryption(
                bundle_password.encode("utf-8")
            ),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cert_path(self, nickname: str) -> Path:
        return self.path / "certs" / f"{_checked(nickname)}.pem"

    def _key_path(self, nickname: str) -> Path:
        return self.path / "keys" / f"{_checked(nickname)}.pem"

    def _require_identity(self, nickname: str) -> None:
        if not self.has_identity(nickname):
            raise IdentityNotFound(nickname)

    def _require_absent(self, nickname: str) -> None:
        if self.has_identity(nickname):
            raise GenerationFailed(f"nickname {nickname!r} already exists")

    def _load_issuer(self, issuer_nickname: str) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
        self._require_identity(issuer_nickname)
        if not self.has_private_key(issuer_nickname):
            raise GenerationFailed(f"issuer {issuer_nickname!r} has no private key in this store")
        return self.get_certificate(issuer_nickname), self._load_key(issuer_nickname)

    def _load_key(self, nickname: str) -> rsa.RSAPrivateKey:
        data = self._key_path(nickname).read_bytes()
        try:
            key = serialization.load_pem_private_key(
                data, password=self._access_secret.encode("utf-8")
            )
        except (ValueError, TypeError) as e:
            raise StoreUnavailable(f"cannot decrypt private key {nickname!r}: {e}") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise StoreUnavailable(f"private key {nickname!r} is not an RSA key")
        return key

    def _write_key(self, nickname: str, key: rsa.RSAPrivateKey) -> None:
        data = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(
                self._access_secret.encode("utf-8")
            ),
        )
        _atomic_write(self._key_path(nickname), data, 0o600)

    def _store_identity(
        self,
        nickname: str,
        certificate: x509.Certificate,
        key: rsa.RSAPrivateKey | None,
        trust: TrustFlags,
    ) -> None:
        # Key first, certificate second: the certificate file marks the identity complete
        if key is not None:
            self._write_key(nickname, key)
        table = self._read_trust()
        table[nickname] = str(trust)
        self._write_trust(table)
        _atomic_write(
            self._cert_path(nickname),
            certificate.public_bytes(serialization.Encoding.PEM),
            0o644,
        )

    def _read_trust(self) -> dict[str, str]:
        try:
            return json.loads((self.path / self.TRUST_FILE).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreUnavailable(f"cannot read trust table at {self.path}: {e}") from e

    def _write_trust(self, table: dict[str, str]) -> None:
        self._write_json(self.TRUST_FILE, table)

    def _write_json(self, name: str, payload: dict) -> None:
        data = json.dumps(payload, indent=2, sort_keys=True).encode("utf-8")
        _atomic_write(self.path / name, data, 0o600)


def _checked(nickname: str) -> str:
    if not _NICKNAME_RE.match(nickname):
        raise ValueError(f"invalid nickname {nickname!r}")
    return nickname


def _atomic_write(path: Path, data: bytes, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
