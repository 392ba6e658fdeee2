"""Shared fixtures: per-test deployment directories and role configurations."""

import dataclasses
import threading

import pytest

from shared.config import Settings
from trustboot.domain.models import BootstrapConfig
from trustboot.domain.states import Role
from trustboot.services.bootstrapper import RoleBootstrapper


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary deployment directory, ignoring any .env file."""
    return Settings(
        _env_file=None,
        BASE_DIR=str(tmp_path / "deploy"),
        POLL_INTERVAL_SECONDS=0.01,
        CA_BUNDLE_POLL_ATTEMPTS=3,
        CA_CERT_POLL_ATTEMPTS=3,
        ISSUED_CERT_POLL_ATTEMPTS=500,
    )


@pytest.fixture
def make_config(settings):
    """Build the BootstrapConfig for a role, with optional field overrides."""

    def _make(role: Role, **overrides) -> BootstrapConfig:
        config = BootstrapConfig.from_settings(settings, role)
        return dataclasses.replace(config, **overrides) if overrides else config

    return _make


@pytest.fixture
def make_bootstrapper(make_config):
    """Build a RoleBootstrapper on the file store for a role."""

    def _make(role: Role, cancel_event: threading.Event | None = None, **overrides):
        return RoleBootstrapper.from_config(make_config(role, **overrides), cancel_event)

    return _make


@pytest.fixture
def authority(make_bootstrapper):
    """An Authority that has completed its bootstrap."""
    bootstrapper = make_bootstrapper(Role.AUTHORITY)
    bootstrapper.run()
    return bootstrapper
