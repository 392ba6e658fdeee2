"""Renders the role's daemon configuration after a successful bootstrap.

The file points the service at its certificate store and nicknames. The store
access secret is referenced by path, never copied into the configuration.
"""

import configparser
import io
import logging
import os
import tempfile
from pathlib import Path

from trustboot.domain.models import BootstrapConfig
from trustboot.domain.states import Role
from trustboot.errors import GenerationFailed

logger = logging.getLogger(__name__)

SECTION_NAMES = {
    Role.AUTHORITY: "bridge",
    Role.INHERITOR: "server",
    Role.LEAF: "client",
}


def config_path(config: BootstrapConfig) -> Path:
    return config.config_dir / f"{config.role.value}.conf"


def build_service_config(config: BootstrapConfig) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None)
    store_ref = str(config.store_dir)
    if config.store_backend == "nss":
        store_ref = f"sql:{store_ref}"

    parser["store"] = {
        "backend": config.store_backend,
        "store-dir": store_ref,
        "store-password-file": str(config.access_secret_file),
        "ca-cert-nickname": config.ca_nickname,
    }

    section = SECTION_NAMES[config.role]
    if config.role == Role.AUTHORITY:
        parser[section] = {
            "bridge-cert-nickname": config.own_nickname,
            "client-listen-port": str(config.authority_client_port),
            "server-listen-port": str(config.authority_server_port),
        }
    elif config.role == Role.INHERITOR:
        parser[section] = {
            "server-cert-nickname": config.own_nickname,
            "bridge-hostname": config.authority_hostname,
            "bridge-port": str(config.authority_server_port),
            "require-tls": "true",
        }
    else:
        parser[section] = {
            "client-cert-nickname": config.own_nickname,
            "bridge-hostname": config.authority_hostname,
            "bridge-port": str(config.authority_client_port),
            "user-name": config.leaf_username,
            "require-tls": "true",
        }
    return parser


def write_service_config(config: BootstrapConfig) -> Path:
    """Write ``<config_dir>/<role>.conf`` atomically and return its path.

    The file is rewritten on every run so it follows the current settings.
    """
    path = config_path(config)
    buffer = io.StringIO()
    build_service_config(config).write(buffer)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(buffer.getvalue())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise GenerationFailed(f"cannot write service configuration {path}: {e}") from e

    logger.info("service_config_written", extra={"role": config.role.value, "path": str(path)})
    return path
