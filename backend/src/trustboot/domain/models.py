"""Value objects shared by the store adapters, the exchange channel and the bootstrapper."""

from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import NameOID

from shared.config import Settings
from trustboot.domain.states import Role


@dataclass(frozen=True)
class TrustFlags:
    """NSS-style trust attributes: ``ssl,email,object_signing``.

    Flag letters used here:
        C  trusted CA for issuing server certificates (SSL only)
        T  trusted CA for issuing client certificates (SSL only)
        c  valid CA
        u  user certificate (a private key is held locally)
        P  trusted peer
    """

    ssl: str = ""
    email: str = ""
    object_signing: str = ""

    @classmethod
    def parse(cls, value: str) -> "TrustFlags":
        parts = value.strip().split(",")
        if len(parts) != 3:
            raise ValueError(f"trust flags must have three comma-separated fields: {value!r}")
        return cls(*(p.strip() for p in parts))

    def __str__(self) -> str:
        return f"{self.ssl},{self.email},{self.object_signing}"

    @property
    def is_issuance_trusted(self) -> bool:
        return "C" in self.ssl

    @property
    def is_end_entity(self) -> bool:
        fields = self.ssl + self.email + self.object_signing
        return not any(flag in fields for flag in "CcT")


CA_TRUST = TrustFlags.parse("CT,C,C")
END_ENTITY_TRUST = TrustFlags.parse("u,u,u")
NO_TRUST = TrustFlags.parse(",,")


def build_subject(common_name: str, organization: str, country: str) -> str:
    """Render a subject DN as an RFC 4514 string, e.g. ``CN=vault,O=Example,C=US``."""
    # DER order is most-general first; RFC 4514 text reverses it
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, country),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )
    return name.rfc4514_string()


@dataclass(frozen=True)
class BootstrapConfig:
    """Everything one role's bootstrap needs, resolved once at startup."""

    role: Role
    store_backend: str
    store_dir: Path
    secrets_dir: Path
    config_dir: Path
    exchange_dir: Path
    exchange_private_dir: Path | None

    ca_nickname: str
    own_nickname: str
    ca_subject: str
    own_subject: str
    own_dns_names: tuple[str, ...]

    ca_key_size: int = 2048
    cert_key_size: int = 2048
    ca_validity_months: int = 120
    cert_validity_months: int = 24

    poll_interval: float = 2.0
    ca_bundle_poll_attempts: int = 30
    ca_cert_poll_attempts: int = 60
    issued_cert_poll_attempts: int = 60

    authority_hostname: str = "gateway"
    inheritor_hostname: str = "vault"
    leaf_username: str = "admin"
    authority_client_port: int = 44334
    authority_server_port: int = 44333

    @property
    def access_secret_file(self) -> Path:
        return self.secrets_dir / "store-password"

    @property
    def request_name(self) -> str:
        """Name under which a leaf publishes its certificate request."""
        return f"{self.leaf_username}-{self.own_nickname}"

    @classmethod
    def from_settings(cls, settings: Settings, role: Role) -> "BootstrapConfig":
        base = Path(settings.BASE_DIR)
        exchange_dir = Path(settings.EXCHANGE_DIR) if settings.EXCHANGE_DIR else base / "ca-export"
        private_dir = (
            Path(settings.EXCHANGE_PRIVATE_DIR)
            if settings.EXCHANGE_PRIVATE_DIR
            else base / "ca-export-private"
        )

        own_nicknames = {
            Role.AUTHORITY: settings.AUTHORITY_CERT_NICKNAME,
            Role.INHERITOR: settings.INHERITOR_CERT_NICKNAME,
            Role.LEAF: settings.LEAF_CERT_NICKNAME,
        }
        common_names = {
            Role.AUTHORITY: settings.AUTHORITY_HOSTNAME,
            Role.INHERITOR: settings.INHERITOR_HOSTNAME,
            Role.LEAF: settings.LEAF_USERNAME,
        }
        # Service roles are addressed by hostname; clients authenticate as a user
        dns_names = () if role == Role.LEAF else (common_names[role],)

        return cls(
            role=role,
            store_backend=settings.STORE_BACKEND,
            store_dir=base / "nss" / role.value,
            secrets_dir=base / "secrets",
            config_dir=base / "config",
            exchange_dir=exchange_dir,
            # Leaves never see the private segment
            exchange_private_dir=None if role == Role.LEAF else private_dir,
            ca_nickname=settings.CA_NICKNAME,
            own_nickname=own_nicknames[role],
            ca_subject=build_subject(
                settings.CA_COMMON_NAME, settings.ORGANIZATION, settings.COUNTRY
            ),
            own_subject=build_subject(common_names[role], settings.ORGANIZATION, settings.COUNTRY),
            own_dns_names=dns_names,
            ca_key_size=settings.CA_KEY_SIZE,
            cert_key_size=settings.CERT_KEY_SIZE,
            ca_validity_months=settings.CA_VALIDITY_MONTHS,
            cert_validity_months=settings.CERT_VALIDITY_MONTHS,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            ca_bundle_poll_attempts=settings.CA_BUNDLE_POLL_ATTEMPTS,
            ca_cert_poll_attempts=settings.CA_CERT_POLL_ATTEMPTS,
            issued_cert_poll_attempts=settings.ISSUED_CERT_POLL_ATTEMPTS,
            authority_hostname=settings.AUTHORITY_HOSTNAME,
            inheritor_hostname=settings.INHERITOR_HOSTNAME,
            leaf_username=settings.LEAF_USERNAME,
            authority_client_port=settings.AUTHORITY_CLIENT_PORT,
            authority_server_port=settings.AUTHORITY_SERVER_PORT,
        )
