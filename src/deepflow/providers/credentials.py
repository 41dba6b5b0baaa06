"""Sources of user-supplied provider credentials."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from deepflow.config import Settings


class CredentialStore(Protocol):
    """Key-value store of provider API keys per user."""

    def get_credentials(self, user_id: str) -> dict[str, str]: ...


class StaticCredentialStore:
    """In-process credential store, keyed by user then provider."""

    def __init__(self, credentials: dict[str, dict[str, str]] | None = None):
        self._credentials = {user: dict(keys) for user, keys in (credentials or {}).items()}

    def set(self, user_id: str, provider: str, api_key: str) -> None:
        self._credentials.setdefault(user_id, {})[provider] = api_key

    def get_credentials(self, user_id: str) -> dict[str, str]:
        return dict(self._credentials.get(user_id, {}))


class SettingsCredentialStore:
    """Serves the process-wide keys from settings to every user."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def get_credentials(self, user_id: str) -> dict[str, str]:
        return self._settings.provider_api_keys()
