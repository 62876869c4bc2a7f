"""Parent account credentials for provider sites."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlsplit

import yaml

from signup_pilot.utils.logging import get_logger

logger = get_logger("providers.credentials")


@dataclass(frozen=True)
class Credentials:
    """Login for a provider account."""

    email: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(email={self.email!r}, password='***')"


class CredentialStore(ABC):
    """Looks up parent credentials for a provider."""

    @abstractmethod
    async def get_credentials(
        self,
        user_id: str,
        provider_url: str,
        organization_id: Optional[str] = None,
    ) -> Optional[Credentials]:
        """
        Find credentials for a user on a provider.

        Args:
            user_id: Parent account id
            provider_url: Any URL on the provider's site
            organization_id: Provider-side organization, when the site hosts many

        Returns:
            Credentials, or None when none are stored
        """
        ...


@dataclass(frozen=True)
class _Entry:
    host: str
    email: str
    password: str
    organization_id: Optional[str] = None

    def matches(self, host: str, organization_id: Optional[str]) -> bool:
        if not (host == self.host or host.endswith("." + self.host)):
            return False
        return self.organization_id is None or self.organization_id == organization_id


class StaticCredentialStore(CredentialStore):
    """
    In-memory credentials keyed by user.

    An entry with an ``organization_id`` only matches that organization;
    entries without one match any organization on the host.
    """

    def __init__(self, entries: Optional[dict[str, list[dict[str, Any]]]] = None) -> None:
        self._entries: dict[str, list[_Entry]] = {}
        for user_id, user_entries in (entries or {}).items():
            for raw in user_entries:
                self.add(user_id, **raw)

    def add(
        self,
        user_id: str,
        host: str,
        email: str,
        password: str,
        organization_id: Optional[str] = None,
    ) -> None:
        self._entries.setdefault(user_id, []).append(_Entry(
            host=host.lower(),
            email=email,
            password=password,
            organization_id=str(organization_id) if organization_id is not None else None,
        ))

    async def get_credentials(
        self,
        user_id: str,
        provider_url: str,
        organization_id: Optional[str] = None,
    ) -> Optional[Credentials]:
        host = (urlsplit(provider_url).hostname or "").lower()
        candidates = [
            e for e in self._entries.get(user_id, [])
            if e.matches(host, organization_id)
        ]
        if not candidates:
            logger.debug("credentials_not_found", user_id=user_id, host=host)
            return None

        # Prefer an organization-specific entry over a host-wide one
        candidates.sort(key=lambda e: e.organization_id is None)
        entry = candidates[0]
        return Credentials(email=entry.email, password=entry.password)


def load_credentials_file(path: Path) -> StaticCredentialStore:
    """
    Load a credentials YAML file.

    Passwords may be given inline or by environment variable name::

        users:
          parent-1:
            - host: example.jackrabbitclass.com
              organization_id: "12345"
              email: parent@example.com
              password_env: JACKRABBIT_PASSWORD

    Raises:
        ValueError: If an entry references an unset environment variable
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    entries: dict[str, list[dict[str, Any]]] = {}
    for user_id, user_entries in (data.get("users") or {}).items():
        resolved = []
        for raw in user_entries or []:
            raw = dict(raw)
            env_name = raw.pop("password_env", None)
            if env_name:
                password = os.environ.get(env_name)
                if password is None:
                    raise ValueError(f"Environment variable {env_name} is not set")
                raw["password"] = password
            resolved.append(raw)
        entries[str(user_id)] = resolved

    logger.info("credentials_loaded", path=str(path), users=len(entries))
    return StaticCredentialStore(entries)
