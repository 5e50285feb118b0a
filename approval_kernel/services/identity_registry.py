"""
StaticIdentityRegistry -- read-only identity lookup.

Implements ``IdentityProvider`` for hosts (and tests) that know their
users up front.  Token verification is the host's concern: a credential
here is whatever opaque string the host maps to an identity (an API key,
a verified token subject, an email).
"""

from typing import Any, Iterable, Mapping

from approval_kernel.domain.identity import Identity, parse_role
from approval_kernel.exceptions import UnauthenticatedError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.identity")


class StaticIdentityRegistry:
    """
    In-memory identity -> {role, department, active} registry.

    Contract:
        ``resolve`` accepts a registered credential, an identity id or an
        email (case-insensitive) and returns the Identity.

    Non-goals:
        - Does NOT verify tokens or passwords.
        - Does NOT mutate; build a new registry to change users.
    """

    def __init__(
        self,
        identities: Iterable[Identity],
        credentials: Mapping[str, str] | None = None,
    ):
        self._by_id: dict[str, Identity] = {}
        self._by_email: dict[str, Identity] = {}
        for identity in identities:
            self._by_id[identity.id] = identity
            self._by_email[identity.email.lower()] = identity
        self._credentials = dict(credentials or {})
        for credential, identity_id in self._credentials.items():
            if identity_id not in self._by_id:
                raise ValueError(f"credential {credential!r} maps to unknown identity {identity_id!r}")

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> "StaticIdentityRegistry":
        """Build from plain mappings (e.g. parsed YAML or JSON rows)."""
        identities = []
        credentials = {}
        for rec in records:
            identity = Identity(
                id=str(rec["id"]),
                email=rec["email"],
                role=parse_role(rec["role"]),
                department=rec.get("department"),
                is_active=rec.get("is_active", True),
                full_name=rec.get("full_name"),
            )
            identities.append(identity)
            if rec.get("credential"):
                credentials[rec["credential"]] = identity.id
        return cls(identities, credentials)

    def resolve(self, credential: str) -> Identity:
        if not credential:
            raise UnauthenticatedError()
        identity_id = self._credentials.get(credential)
        if identity_id is not None:
            return self._by_id[identity_id]
        identity = self._by_id.get(credential) or self._by_email.get(credential.lower())
        if identity is None:
            logger.warning("identity_resolution_failed")
            raise UnauthenticatedError("Unknown credential")
        return identity

    def get(self, identity_id: str) -> Identity | None:
        return self._by_id.get(identity_id)

    def all(self) -> list[Identity]:
        return list(self._by_id.values())
