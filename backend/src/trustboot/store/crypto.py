"""X.509 building blocks for the file-backed store and for chain checks.

CA certificates carry BasicConstraints(ca=True) and certificate-signing key
usage; end-entity certificates carry BasicConstraints(ca=False) and both TLS
server and client authentication, since every role takes part in mutual TLS.
"""

import calendar
import hashlib
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID

MIN_RSA_KEY_SIZE = 2048

# Tolerate small clock skew between the host that issues and the one that verifies
BACKDATE = timedelta(minutes=5)


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def generate_rsa_key(key_size: int) -> rsa.RSAPrivateKey:
    if key_size < MIN_RSA_KEY_SIZE:
        raise ValueError(f"RSA key size must be at least {MIN_RSA_KEY_SIZE} bits, got {key_size}")
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def compute_thumbprint(certificate: x509.Certificate) -> str:
    """Lowercase hex SHA-256 over the DER encoding."""
    der_bytes = certificate.public_bytes(serialization.Encoding.DER)
    return hashlib.sha256(der_bytes).hexdigest()


def key_fingerprint(public_key: rsa.RSAPublicKey) -> str:
    """Lowercase hex SHA-256 over the DER SubjectPublicKeyInfo."""
    der_bytes = public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return hashlib.sha256(der_bytes).hexdigest()


def _validity(validity_months: int) -> tuple[datetime, datetime]:
    now = datetime.now(timezone.utc)
    return now - BACKDATE, add_months(now, validity_months)


def _end_entity_extensions(
    builder: x509.CertificateBuilder, dns_names: tuple[str, ...] | list[str]
) -> x509.CertificateBuilder:
    builder = (
        builder.add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                key_cert_sign=False,
                crl_sign=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
            ),
            critical=False,
        )
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
            critical=False,
        )
    return builder


def build_ca_certificate(
    private_key: rsa.RSAPrivateKey, subject: x509.Name, validity_months: int
) -> x509.Certificate:
    """Self-signed CA certificate."""
    not_before, not_after = _validity(validity_months)
    public_key = private_key.public_key()
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_cert_sign=True,
                crl_sign=True,
                key_encipherment=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        .sign(private_key, hashes.SHA256())
    )


def build_signed_certificate(
    public_key: rsa.RSAPublicKey,
    subject: x509.Name,
    issuer_certificate: x509.Certificate,
    issuer_key: rsa.RSAPrivateKey,
    validity_months: int,
    dns_names: tuple[str, ...] | list[str] = (),
) -> x509.Certificate:
    """End-entity certificate for ``public_key`` signed by the issuer."""
    not_before, not_after = _validity(validity_months)
    # Never outlive the issuer
    not_after = min(not_after, issuer_certificate.not_valid_after_utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_certificate.subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
    )
    builder = _end_entity_extensions(builder, dns_names)
    return builder.sign(issuer_key, hashes.SHA256())


def build_request(
    private_key: rsa.RSAPrivateKey, subject: x509.Name, dns_names: tuple[str, ...] | list[str] = ()
) -> x509.CertificateSigningRequest:
    builder = x509.CertificateSigningRequestBuilder().subject_name(subject)
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
            critical=False,
        )
    return builder.sign(private_key, hashes.SHA256())


def request_dns_names(request: x509.CertificateSigningRequest) -> list[str]:
    try:
        san = request.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return san.value.get_values_for_type(x509.DNSName)


def is_issued_by(certificate: x509.Certificate, issuer: x509.Certificate) -> bool:
    """True when ``certificate`` names ``issuer`` and carries a valid issuer signature."""
    try:
        certificate.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def public_keys_match(certificate: x509.Certificate, private_key: rsa.RSAPrivateKey) -> bool:
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_key = certificate.public_key().public_bytes(serialization.Encoding.DER, fmt)
    own_key = private_key.public_key().public_bytes(serialization.Encoding.DER, fmt)
    return cert_key == own_key
