"""
Responder Registry Module

Loads the catalogue of tutoring responders (coordinator, subject specialists,
assessor, motivator) from a JSON file. The registry is read-only after load
and shared by every session.

Usage:
    registry = ResponderRegistry.load("./data/responders.json")
    math = registry.resolve("math")   # alias -> math_specialist
"""

import json
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from tutor.logger import get_logger

logger = get_logger(__name__)


# Coordinator models sometimes answer with the short subject name
DEFAULT_ALIASES: Dict[str, str] = {
    "math": "math_specialist",
    "science": "science_specialist",
    "english": "english_specialist",
    "history": "history_specialist",
    "art": "art_specialist",
}

VALID_ROLES = ("coordinator", "subject", "support")
VALID_TIERS = ("fast", "quality")


class RegistryError(Exception):
    """Raised when responder definitions cannot be loaded."""


@dataclass(frozen=True)
class Responder:
    """
    A tutoring persona/agent able to answer a turn.

    Attributes:
        id: Canonical responder id (e.g. "math_specialist")
        name: Display name used in handoff introductions
        role: "coordinator", "subject" or "support"
        capability: Subject or domain tag, used by rule-based selection
        tier: Model tier, "fast" or "quality"
        system_instruction: Persona prompt given to the generation provider
        voice: Synthesis voice, empty for the configured default
        skip_validation: Answers bypass the quality gate
        keywords: Words that suggest this responder for rule-based selection
    """
    id: str
    name: str
    role: str = "subject"
    capability: str = ""
    tier: str = "quality"
    system_instruction: str = ""
    voice: str = ""
    skip_validation: bool = False
    keywords: tuple = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Responder":
        try:
            responder_id = str(data["id"]).strip()
        except KeyError as e:
            raise RegistryError(f"Responder definition without id: {data}") from e

        role = data.get("role", "subject")
        tier = data.get("tier", "quality")
        if role not in VALID_ROLES:
            raise RegistryError(f"Responder '{responder_id}' has unknown role '{role}'")
        if tier not in VALID_TIERS:
            raise RegistryError(f"Responder '{responder_id}' has unknown tier '{tier}'")

        return cls(
            id=responder_id,
            name=data.get("name", responder_id.replace("_", " ").title()),
            role=role,
            capability=data.get("capability", ""),
            tier=tier,
            system_instruction=data.get("system_instruction", ""),
            voice=data.get("voice", ""),
            skip_validation=bool(data.get("skip_validation", False)),
            keywords=tuple(k.lower() for k in data.get("keywords", [])),
        )

    @property
    def is_coordinator(self) -> bool:
        return self.role == "coordinator"


class ResponderRegistry:
    """
    Read-only mapping of responder id to Responder.

    Lookups accept aliases; unknown ids return None from ``resolve`` and raise
    from ``get``.
    """

    def __init__(
        self,
        responders: Iterable[Responder],
        aliases: Optional[Mapping[str, str]] = None,
    ):
        by_id: Dict[str, Responder] = {}
        for responder in responders:
            if responder.id in by_id:
                raise RegistryError(f"Duplicate responder id '{responder.id}'")
            by_id[responder.id] = responder
        if not by_id:
            raise RegistryError("Responder registry is empty")

        self._responders = MappingProxyType(by_id)
        self._aliases = MappingProxyType(dict(aliases if aliases is not None else DEFAULT_ALIASES))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ResponderRegistry":
        """Load responders from a JSON file with "responders" and optional "aliases"."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise RegistryError(f"Responder registry not found: {path}") from e
        except json.JSONDecodeError as e:
            raise RegistryError(f"Responder registry is not valid JSON: {path}: {e}") from e

        responders = [Responder.from_dict(item) for item in data.get("responders", [])]
        aliases = {**DEFAULT_ALIASES, **data.get("aliases", {})}
        registry = cls(responders, aliases)
        logger.info(f"Loaded {len(registry)} responders from {path}")
        return registry

    def canonical_id(self, name: str) -> str:
        key = name.strip().lower()
        return self._aliases.get(key, key)

    def resolve(self, name: Optional[str]) -> Optional[Responder]:
        """Return the responder for an id or alias, or None."""
        if not name:
            return None
        return self._responders.get(self.canonical_id(name))

    def get(self, responder_id: str) -> Responder:
        responder = self.resolve(responder_id)
        if responder is None:
            raise KeyError(f"Unknown responder '{responder_id}'")
        return responder

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.resolve(name) is not None

    def __len__(self) -> int:
        return len(self._responders)

    def __iter__(self):
        return iter(self._responders.values())

    @property
    def ids(self) -> List[str]:
        return list(self._responders.keys())

    def subject_responders(self) -> List[Responder]:
        return [r for r in self._responders.values() if r.role == "subject"]

    def describe(self) -> str:
        """One line per responder, used in routing prompts."""
        lines = []
        for r in self._responders.values():
            if r.is_coordinator:
                continue
            lines.append(f"- {r.id}: {r.name} ({r.capability or r.role})")
        return "\n".join(lines)
