"""Tests for roles, trust flags and the bootstrap configuration value object."""

import dataclasses
from pathlib import Path

import pytest

from trustboot.domain.models import (
    CA_TRUST,
    END_ENTITY_TRUST,
    NO_TRUST,
    BootstrapConfig,
    TrustFlags,
    build_subject,
)
from trustboot.domain.states import Role


class TestRole:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("authority", Role.AUTHORITY),
            ("gateway", Role.AUTHORITY),
            ("bridge", Role.AUTHORITY),
            ("Inheritor", Role.INHERITOR),
            ("server", Role.INHERITOR),
            (" vault ", Role.INHERITOR),
            ("client", Role.LEAF),
            ("leaf", Role.LEAF),
        ],
    )
    def test_parse_accepts_names_and_aliases(self, value, expected):
        assert Role.parse(value) == expected

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Role.parse("observer")


class TestTrustFlags:
    def test_parse_and_render(self):
        flags = TrustFlags.parse("CT,C,C")

        assert flags == TrustFlags("CT", "C", "C")
        assert str(flags) == "CT,C,C"

    def test_parse_empty_fields(self):
        assert TrustFlags.parse(",,") == TrustFlags()

    def test_parse_rejects_wrong_field_count(self):
        with pytest.raises(ValueError, match="three"):
            TrustFlags.parse("CT,C")

    def test_ca_trust_is_issuance_trusted(self):
        assert CA_TRUST.is_issuance_trusted
        assert not CA_TRUST.is_end_entity

    def test_end_entity_trust(self):
        assert END_ENTITY_TRUST.is_end_entity
        assert not END_ENTITY_TRUST.is_issuance_trusted

    def test_valid_ca_flag_is_not_end_entity(self):
        """A 'c' (valid CA) flag disqualifies an end-entity certificate."""
        assert not TrustFlags.parse("cu,u,u").is_end_entity

    def test_no_trust_after_import(self):
        assert not NO_TRUST.is_issuance_trusted


def test_build_subject_renders_rfc4514():
    assert build_subject("vault", "Example Org", "US") == "CN=vault,O=Example Org,C=US"


class TestBootstrapConfig:
    """Tests for deriving per-role configuration from settings."""

    def test_authority_config(self, settings):
        config = BootstrapConfig.from_settings(settings, Role.AUTHORITY)
        base = Path(settings.BASE_DIR)

        assert config.store_dir == base / "nss" / "authority"
        assert config.exchange_dir == base / "ca-export"
        assert config.exchange_private_dir == base / "ca-export-private"
        assert config.own_nickname == settings.AUTHORITY_CERT_NICKNAME
        assert config.own_subject == "CN=gateway,O=Trustboot Infrastructure,C=US"
        assert config.ca_subject == "CN=Trustboot CA,O=Trustboot Infrastructure,C=US"
        assert config.own_dns_names == ("gateway",)
        assert config.access_secret_file == base / "secrets" / "store-password"

    def test_inheritor_subject_follows_hostname(self, settings):
        settings.INHERITOR_HOSTNAME = "vault.internal"

        config = BootstrapConfig.from_settings(settings, Role.INHERITOR)

        assert config.own_subject.startswith("CN=vault.internal,")
        assert config.own_dns_names == ("vault.internal",)

    def test_leaf_has_no_private_segment(self, settings):
        config = BootstrapConfig.from_settings(settings, Role.LEAF)

        assert config.exchange_private_dir is None
        assert config.own_subject.startswith("CN=admin,")
        assert config.own_dns_names == ()
        assert config.request_name == "admin-client-cert"

    def test_explicit_exchange_dirs(self, settings, tmp_path):
        settings.EXCHANGE_DIR = str(tmp_path / "pub")
        settings.EXCHANGE_PRIVATE_DIR = str(tmp_path / "priv")

        config = BootstrapConfig.from_settings(settings, Role.INHERITOR)

        assert config.exchange_dir == tmp_path / "pub"
        assert config.exchange_private_dir == tmp_path / "priv"

    def test_subject_is_deterministic(self, settings):
        first = BootstrapConfig.from_settings(settings, Role.INHERITOR)
        second = BootstrapConfig.from_settings(settings, Role.INHERITOR)

        assert first == second

    def test_is_immutable(self, settings):
        config = BootstrapConfig.from_settings(settings, Role.LEAF)

        with pytest.raises(dataclasses.FrozenInstanceError):
            config.own_nickname = "other"
