"""
Static keyed catalogs: agent definitions and localized user-facing text.

Both are immutable lookups. The pipeline never branches on locale; it asks
the catalog for a key and formats the result.
"""

import re
from importlib import resources
from pathlib import Path
from typing import Optional, Protocol

import yaml

from buildchain.core.models import BuildPhase

AGENT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def validate_agent_name(name: str) -> None:
    """Agent identities become file names; refuse anything path-like."""
    if not AGENT_NAME_RE.match(name):
        raise ValueError(f"invalid agent identity: {name!r}")


# ==========================================================================
# Agent Definitions
# ==========================================================================

class AgentDefinitionSource(Protocol):
    def get(self, agent_identity: str) -> bytes:
        """Return the definition content. Raises KeyError if unknown."""
        ...


class BundledAgentDefinitions:
    """
    Agent definitions shipped with the package (buildchain/agents/*.md).

    An override directory takes precedence so deployments can pin their own
    versions without rebuilding the package.
    """

    def __init__(self, override_dir: Optional[Path] = None):
        self.override_dir = override_dir
        self._cache: dict[str, bytes] = {}

    def get(self, agent_identity: str) -> bytes:
        validate_agent_name(agent_identity)
        if agent_identity in self._cache:
            return self._cache[agent_identity]

        filename = f"{agent_identity}.md"
        content: Optional[bytes] = None

        if self.override_dir is not None:
            candidate = self.override_dir / filename
            if candidate.is_file():
                content = candidate.read_bytes()

        if content is None:
            bundled = resources.files("buildchain").joinpath("agents", filename)
            if not bundled.is_file():
                raise KeyError(agent_identity)
            content = bundled.read_bytes()

        self._cache[agent_identity] = content
        return content


class StaticAgentDefinitions:
    """In-memory definitions, e.g. for embedding or tests."""

    def __init__(self, definitions: dict[str, bytes | str]):
        self._definitions = {
            name: value.encode("utf-8") if isinstance(value, str) else value
            for name, value in definitions.items()
        }

    def get(self, agent_identity: str) -> bytes:
        validate_agent_name(agent_identity)
        return self._definitions[agent_identity]


# ==========================================================================
# Localization
# ==========================================================================

class LocalizationCatalog(Protocol):
    def lookup(self, message_key: str, locale: str) -> str:
        ...

    def render(self, message_key: str, locale: str, **params) -> str:
        ...


class YamlLocalizationCatalog:
    """
    Message catalog loaded from YAML: ``key -> {locale: template}``.

    Falls back to the default locale, then to the key itself, so a missing
    translation never breaks delivery of a pipeline outcome.
    """

    def __init__(self, messages: dict[str, dict[str, str]], default_locale: str = "en"):
        self.messages = messages
        self.default_locale = default_locale

    @classmethod
    def from_file(cls, path: Path, default_locale: str = "en") -> "YamlLocalizationCatalog":
        with open(path, encoding="utf-8") as f:
            return cls(yaml.safe_load(f) or {}, default_locale)

    @classmethod
    def bundled(cls, default_locale: str = "en") -> "YamlLocalizationCatalog":
        text = resources.files("buildchain").joinpath("locales", "messages.yaml").read_text(
            encoding="utf-8"
        )
        return cls(yaml.safe_load(text) or {}, default_locale)

    def lookup(self, message_key: str, locale: str) -> str:
        translations = self.messages.get(message_key)
        if not translations:
            return message_key
        language = (locale or self.default_locale).split("-")[0].lower()
        return (
            translations.get(language)
            or translations.get(self.default_locale)
            or message_key
        )

    def render(self, message_key: str, locale: str, **params) -> str:
        template = self.lookup(message_key, locale)
        try:
            return template.format(**params)
        except (KeyError, IndexError):
            return template


def phase_message_key(phase: BuildPhase) -> str:
    return f"phase.{phase.value}"
