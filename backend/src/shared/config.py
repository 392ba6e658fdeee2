from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "trustboot"
    LOG_LEVEL: str = "INFO"
    ROLE: Optional[str] = None

    # Filesystem layout
    BASE_DIR: str = "/var/trustboot"
    STORE_BACKEND: Literal["file", "nss"] = "file"
    EXCHANGE_DIR: Optional[str] = None  # defaults to BASE_DIR/ca-export
    EXCHANGE_PRIVATE_DIR: Optional[str] = None  # defaults to BASE_DIR/ca-export-private

    # Nicknames
    CA_NICKNAME: str = "trustboot-ca"
    AUTHORITY_CERT_NICKNAME: str = "gateway-cert"
    INHERITOR_CERT_NICKNAME: str = "vault-cert"
    LEAF_CERT_NICKNAME: str = "client-cert"

    # Subjects
    CA_COMMON_NAME: str = "Trustboot CA"
    ORGANIZATION: str = "Trustboot Infrastructure"
    COUNTRY: str = Field(default="US", min_length=2, max_length=2)
    AUTHORITY_HOSTNAME: str = "gateway"
    INHERITOR_HOSTNAME: str = "vault"
    LEAF_USERNAME: str = "admin"

    # Peer addressing (rendered into service configuration)
    AUTHORITY_CLIENT_PORT: int = 44334
    AUTHORITY_SERVER_PORT: int = 44333

    # Key material
    CA_KEY_SIZE: int = Field(default=2048, ge=2048)
    CERT_KEY_SIZE: int = Field(default=2048, ge=2048)
    CA_VALIDITY_MONTHS: int = Field(default=120, ge=1)
    CERT_VALIDITY_MONTHS: int = Field(default=24, ge=1)

    # Exchange polling
    POLL_INTERVAL_SECONDS: float = Field(default=2.0, gt=0)
    CA_BUNDLE_POLL_ATTEMPTS: int = Field(default=30, ge=1)
    CA_CERT_POLL_ATTEMPTS: int = Field(default=60, ge=1)
    ISSUED_CERT_POLL_ATTEMPTS: int = Field(default=60, ge=1)

    # Keep signing client requests after bootstrap (CA-holding roles only)
    SERVE_REQUESTS: bool = False
