"""NSS certificate store driven through the ``certutil`` and ``pk12util`` tools.

Secrets never appear on a command line: the access secret, bundle passwords
and key-generation noise are written to a private temporary directory and
passed by path.
"""

import logging
import os
import re
import subprocess
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from cryptography import x509

from trustboot.domain.models import TrustFlags
from trustboot.errors import (
    GenerationFailed,
    IdentityNotFound,
    ImportFailed,
    StoreUnavailable,
)
from trustboot.store import crypto
from trustboot.store.base import CertificateStore

logger = logging.getLogger(__name__)

CERTUTIL = "certutil"
PK12UTIL = "pk12util"

# "<nickname>    <ssl>,<smime>,<objsign>" rows of `certutil -L`
_TRUST_ROW = re.compile(r"^(?P<nickname>\S.*?)\s{2,}(?P<trust>[A-Za-z]*,[A-Za-z]*,[A-Za-z]*)\s*$")
# "< 0> rsa      0123abcd...   nickname" rows of `certutil -K`
_KEY_ROW = re.compile(r"^<\s*\d+>\s+\S+\s+[0-9a-fA-F]+\s+(?P<nickname>.+?)\s*$")
_TOKEN_PREFIX = "NSS Certificate DB:"

END_ENTITY_KEY_USAGE = "digitalSignature,keyEncipherment"
END_ENTITY_EXT_KEY_USAGE = "serverAuth,clientAuth"
# Answers to `certutil -2`: CA certificate, path length 0, critical
CA_BASIC_CONSTRAINTS_ANSWERS = "y\n0\ny\n"


class NssCertificateStore(CertificateStore):
    backend = "nss"

    REQUIRED_FILES = ("cert9.db", "key4.db")

    @property
    def database(self) -> str:
        return f"sql:{self.path}"

    # ------------------------------------------------------------------
    # Store lifecycle
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return all((self.path / name).is_file() for name in self.REQUIRED_FILES)

    def create(self) -> bool:
        if self.exists():
            with self._workspace() as ws:
                result = self._run(
                    [CERTUTIL, "-K", "-d", self.database, "-f", ws.secret(self._access_secret)]
                )
            # An empty key database also exits non-zero; only a password failure is fatal
            if result.returncode != 0 and "password" in result.stderr.lower():
                raise StoreUnavailable(f"access secret rejected by NSS database {self.path}")
            return False

        try:
            self.path.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as e:
            raise StoreUnavailable(f"cannot create store directory {self.path}: {e}") from e

        with self._workspace() as ws:
            result = self._run(
                [CERTUTIL, "-N", "-d", self.database, "-f", ws.secret(self._access_secret)]
            )
        if result.returncode != 0:
            raise StoreUnavailable(f"certutil -N failed for {self.path}: {_diagnostic(result)}")

        logger.info("store_created", extra={"path": str(self.path), "backend": self.backend})
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_identity(self, nickname: str) -> bool:
        result = self._run([CERTUTIL, "-L", "-d", self.database, "-n", nickname])
        return result.returncode == 0

    def _trust_table(self) -> dict[str, str]:
        result = self._run([CERTUTIL, "-L", "-d", self.database])
        if result.returncode != 0:
            raise StoreUnavailable(f"cannot list NSS database {self.path}: {_diagnostic(result)}")
        table = {}
        for line in result.stdout.splitlines():
            match = _TRUST_ROW.match(line)
            if match:
                table[match.group("nickname")] = match.group("trust")
        return table

    def list_nicknames(self) -> list[str]:
        return sorted(self._trust_table())

    def list_trust(self, nickname: str) -> TrustFlags:
        table = self._trust_table()
        if nickname not in table:
            raise IdentityNotFound(nickname)
        return TrustFlags.parse(table[nickname])

    def has_private_key(self, nickname: str) -> bool:
        with self._workspace() as ws:
            result = self._run(
                [CERTUTIL, "-K", "-d", self.database, "-f", ws.secret(self._access_secret)]
            )
        if result.returncode != 0:
            # certutil reports "no keys found" as a failure
            return False
        for line in result.stdout.splitlines():
            match = _KEY_ROW.match(line.strip())
            if match and match.group("nickname").removeprefix(_TOKEN_PREFIX) == nickname:
                return True
        return False

    def modify_trust(self, nickname: str, trust: TrustFlags) -> None:
        result = self._run([CERTUTIL, "-M", "-d", self.database, "-n", nickname, "-t", str(trust)])
        if result.returncode != 0:
            raise ImportFailed(f"cannot set trust {trust} on {nickname!r}: {_diagnostic(result)}")

    def export_certificate(self, nickname: str) -> str:
        result = self._run([CERTUTIL, "-L", "-d", self.database, "-n", nickname, "-a"])
        if result.returncode != 0 or "BEGIN CERTIFICATE" not in result.stdout:
            raise IdentityNotFound(nickname)
        return result.stdout

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def import_certificate(self, nickname: str, pem: str, trust: TrustFlags) -> bool:
        if self.has_identity(nickname):
            return False
        try:
            x509.load_pem_x509_certificate(pem.encode("ascii"))
        except ValueError as e:
            raise ImportFailed(f"malformed certificate for {nickname!r}: {e}") from e

        with self._workspace() as ws:
            cert_file = ws.write("import.crt", pem.encode("ascii"))
            result = self._run(
                [
                    CERTUTIL, "-A", "-d", self.database,
                    "-n", nickname, "-t", str(trust), "-a", "-i", cert_file,
                ]
            )
        if result.returncode != 0:
            raise ImportFailed(f"certutil -A failed for {nickname!r}: {_diagnostic(result)}")
        return True

    def import_bundle(self, nickname: str, bundle: bytes, bundle_password: str) -> bool:
        if self.has_identity(nickname):
            return False
        with self._workspace() as ws:
            result = self._run(
                [
                    PK12UTIL, "-d", self.database,
                    "-i", ws.write("import.p12", bundle),
                    "-k", ws.secret(self._access_secret),
                    "-w", ws.secret(bundle_password),
                ]
            )
        if result.returncode != 0:
            raise ImportFailed(f"pk12util import failed for {nickname!r}: {_diagnostic(result)}")
        if not self.has_identity(nickname):
            raise ImportFailed(f"bundle did not contain an identity named {nickname!r}")
        return True

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_self_signed(
        self, nickname: str, subject: str, trust: TrustFlags, validity_months: int, key_size: int
    ) -> None:
        _check_key_size(key_size)
        with self._workspace() as ws:
            result = self._run(
                [
                    CERTUTIL, "-S", "-d", self.database,
                    "-n", nickname, "-s", subject, "-t", str(trust), "-x",
                    "-f", ws.secret(self._access_secret),
                    "-k", "rsa", "-g", str(key_size), "-z", ws.noise(),
                    "-v", str(validity_months),
                    "--keyUsage", "certSigning,crlSigning,digitalSignature",
                    "-2",
                ],
                stdin=CA_BASIC_CONSTRAINTS_ANSWERS,
            )
        if result.returncode != 0:
            raise GenerationFailed(f"certutil -S -x failed for {nickname!r}: {_diagnostic(result)}")

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
        _check_key_size(key_size)
        if not self.has_private_key(issuer_nickname):
            raise GenerationFailed(f"issuer {issuer_nickname!r} has no private key in this store")
        with self._workspace() as ws:
            result = self._run(
                [
                    CERTUTIL, "-S", "-d", self.database,
                    "-n", nickname, "-s", subject, "-c", issuer_nickname, "-t", str(trust),
                    "-f", ws.secret(self._access_secret),
                    "-k", "rsa", "-g", str(key_size), "-z", ws.noise(),
                    "-v", str(validity_months),
                    "--keyUsage", END_ENTITY_KEY_USAGE,
                    "--extKeyUsage", END_ENTITY_EXT_KEY_USAGE,
                    *_san_args(dns_names),
                ]
            )
        if result.returncode != 0:
            raise GenerationFailed(f"certutil -S failed for {nickname!r}: {_diagnostic(result)}")

    def create_request(
        self, nickname: str, subject: str, key_size: int, dns_names: Sequence[str] = ()
    ) -> str:
        _check_key_size(key_size)
        with self._workspace() as ws:
            out = ws.path / "request.csr"
            result = self._run(
                [
                    CERTUTIL, "-R", "-d", self.database, "-s", subject,
                    "-f", ws.secret(self._access_secret),
                    "-k", "rsa", "-g", str(key_size), "-z", ws.noise(),
                    "-a", "-o", str(out),
                    *_san_args(dns_names),
                ]
            )
            if result.returncode != 0 or not out.is_file():
                raise GenerationFailed(
                    f"certutil -R failed for {nickname!r}: {_diagnostic(result)}"
                )
            return _pem_only(out.read_text(encoding="ascii"), "CERTIFICATE REQUEST")

    def sign_request(self, issuer_nickname: str, request_pem: str, validity_months: int) -> str:
        try:
            request = x509.load_pem_x509_csr(request_pem.encode("ascii"))
        except ValueError as e:
            raise ImportFailed(f"malformed certificate request: {e}") from e
        if not request.is_signature_valid:
            raise ImportFailed("certificate request signature is invalid")

        with self._workspace() as ws:
            out = ws.path / "issued.crt"
            result = self._run(
                [
                    CERTUTIL, "-C", "-d", self.database, "-c", issuer_nickname,
                    "-i", ws.write("request.csr", request_pem.encode("ascii")),
                    "-f", ws.secret(self._access_secret),
                    "-a", "-o", str(out), "-v", str(validity_months),
                    "--keyUsage", END_ENTITY_KEY_USAGE,
                    "--extKeyUsage", END_ENTITY_EXT_KEY_USAGE,
                    *_san_args(crypto.request_dns_names(request)),
                ]
            )
            if result.returncode != 0 or not out.is_file():
                raise GenerationFailed(f"certutil -C failed: {_diagnostic(result)}")
            return _pem_only(out.read_text(encoding="ascii"), "CERTIFICATE")

    def export_bundle(self, nickname: str, bundle_password: str) -> bytes:
        with self._workspace() as ws:
            out = ws.path / "export.p12"
            result = self._run(
                [
                    PK12UTIL, "-d", self.database, "-o", str(out), "-n", nickname,
                    "-k", ws.secret(self._access_secret),
                    "-w", ws.secret(bundle_password),
                ]
            )
            if result.returncode != 0 or not out.is_file():
                raise IdentityNotFound(nickname)
            return out.read_bytes()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(self, args: list[str], stdin: str | None = None) -> subprocess.CompletedProcess:
        logger.debug("nss_command", extra={"command": args[0], "operation": args[1]})
        try:
            return subprocess.run(args, input=stdin, capture_output=True, text=True, check=False)
        except FileNotFoundError as e:
            raise StoreUnavailable(f"{args[0]} not found; install the NSS tools") from e

    @contextmanager
    def _workspace(self) -> Iterator["_Workspace"]:
        with tempfile.TemporaryDirectory(prefix="trustboot-nss-") as tmp:
            yield _Workspace(Path(tmp))


class _Workspace:
    """Private scratch directory for secret and data files handed to NSS tools."""

    def __init__(self, path: Path):
        self.path = path
        self._count = 0

    def write(self, name: str, data: bytes) -> str:
        target = self.path / name
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        return str(target)

    def secret(self, value: str) -> str:
        self._count += 1
        return self.write(f"secret-{self._count}", (value + "\n").encode("utf-8"))

    def noise(self) -> str:
        return self.write("noise", os.urandom(1024))


def _check_key_size(key_size: int) -> None:
    if key_size < crypto.MIN_RSA_KEY_SIZE:
        raise GenerationFailed(
            f"RSA key size must be at least {crypto.MIN_RSA_KEY_SIZE} bits, got {key_size}"
        )


def _san_args(dns_names: Sequence[str]) -> list[str]:
    if not dns_names:
        return []
    return ["--extSAN", ",".join(f"dns:{name}" for name in dns_names)]


def _pem_only(text: str, label: str) -> str:
    """Strip the human-readable preamble certutil writes before the PEM block."""
    begin = f"-----BEGIN {label}-----"
    end = f"-----END {label}-----"
    start = text.find(begin)
    stop = text.find(end)
    if start < 0 or stop < 0:
        raise GenerationFailed(f"certutil output has no {label} block")
    return text[start : stop + len(end)] + "\n"


def _diagnostic(result: subprocess.CompletedProcess) -> str:
    return (result.stderr or result.stdout or f"exit code {result.returncode}").strip()
