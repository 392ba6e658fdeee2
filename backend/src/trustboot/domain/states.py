from enum import StrEnum


class Role(StrEnum):
    """Deployment roles taking part in trust bootstrap."""

    AUTHORITY = "authority"  # gateway: becomes the CA
    INHERITOR = "inheritor"  # vault: inherits CA signing capability
    LEAF = "leaf"  # client: trusts the CA, never signs

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Parse a role name, accepting the deployment aliases."""
        normalized = value.strip().lower()
        if normalized in ROLE_ALIASES:
            return ROLE_ALIASES[normalized]
        return cls(normalized)


ROLE_ALIASES = {
    "gateway": Role.AUTHORITY,
    "bridge": Role.AUTHORITY,
    "vault": Role.INHERITOR,
    "server": Role.INHERITOR,
    "client": Role.LEAF,
}


class IdentityKind(StrEnum):
    CA = "ca"
    OWN = "own"


class BootstrapState(StrEnum):
    """All possible states of a role's bootstrap."""

    UNINITIALIZED = "uninitialized"
    STORE_CREATED = "store_created"
    AUTHORITY_MATERIAL_PRESENT = "authority_material_present"
    OWN_CERTIFICATE_ISSUED = "own_certificate_issued"
    VALIDATED = "validated"  # Terminal state


class BootstrapEvent(StrEnum):
    """All events that move a bootstrap forward."""

    STORE_ENSURED = "store_ensured"
    AUTHORITY_MATERIAL_ENSURED = "authority_material_ensured"
    OWN_CERTIFICATE_ENSURED = "own_certificate_ensured"
    ARTIFACTS_PUBLISHED = "artifacts_published"
    VALIDATION_PASSED = "validation_passed"
