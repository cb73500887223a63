"""
Collaborator stores consumed by the pipeline.

The pipeline only needs two lookups from the rest of the system:

- a credential store that returns a provider API key for a user
- an agent-preference store that returns an agent's model settings

Both are abstract here. The implementations below cover configuration-driven
deployments and tests; a host application plugs in its own vault and database.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path

import aiofiles

from agentpipe.config.logging import get_logger
from agentpipe.config.settings import LLMSettings
from agentpipe.llm.models import AgentModelPreference

logger = get_logger(__name__)


class CredentialStore(ABC):
    """Returns decrypted provider API keys."""

    @abstractmethod
    async def get_api_key(self, user_id: str | None, provider: str) -> str | None:
        """
        Look up the API key a user has stored for a provider.

        Args:
            user_id: User the turn runs for (None for system calls)
            provider: Provider family, e.g. 'openai'

        Returns:
            The key, or None if the user has none for this provider
        """
        pass


class PreferenceStore(ABC):
    """Returns per-agent model preferences."""

    @abstractmethod
    async def get_preference(self, agent_id: str) -> AgentModelPreference | None:
        """
        Load an agent's model preference.

        Returns:
            The preference, or None if the agent has no row

        Raises:
            Exception: Any storage failure; the resolver recovers from it
        """
        pass


class SettingsCredentialStore(CredentialStore):
    """Credential store backed by LLM settings (one key per provider, shared by all users)."""

    def __init__(self, settings: LLMSettings):
        self._settings = settings

    async def get_api_key(self, user_id: str | None, provider: str) -> str | None:
        return self._settings.key_for(provider) or None


class InMemoryPreferenceStore(PreferenceStore):
    """Dictionary-backed preference store."""

    def __init__(self, preferences: list[AgentModelPreference] | None = None):
        self._preferences: dict[str, AgentModelPreference] = {}
        for preference in preferences or []:
            self.set_preference(preference)

    def set_preference(self, preference: AgentModelPreference) -> None:
        self._preferences[preference.agent_id] = preference

    async def get_preference(self, agent_id: str) -> AgentModelPreference | None:
        return self._preferences.get(agent_id)


class JsonPreferenceStore(PreferenceStore):
    """
    Preference store reading a JSON file keyed by agent id.

    The file is re-read on every lookup, so edits take effect once the
    resolver's cache entry expires.

    File format::

        {
            "support-bot": {"provider": "openai", "model": "o1-preview"},
            "writer": {"provider": "anthropic", "model": "claude-opus-4-1",
                       "params": {"temperature": 0.2}}
        }
    """

    def __init__(self, path: Path | str):
        self._path = Path(path)

    async def get_preference(self, agent_id: str) -> AgentModelPreference | None:
        if not self._path.exists():
            logger.debug(f"Preference file not found: {self._path}")
            return None

        async with aiofiles.open(self._path, "r", encoding="utf-8") as f:
            raw = await f.read()

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("top level must be an object keyed by agent id")
            row = data.get(agent_id)
            if row is None:
                return None
            if not isinstance(row, dict):
                raise ValueError(f"entry for {agent_id!r} must be an object")
            return AgentModelPreference.model_validate({**row, "agent_id": agent_id})
        except ValueError as e:
            # JSONDecodeError and ValidationError are ValueErrors too
            logger.error(f"Invalid preference file {self._path}: {e}")
            raise
