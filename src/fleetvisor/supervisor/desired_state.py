"""Desired-state sources for reconciliation.

A unit's identity is derived from its credential, never from its position
in the source, so reordering entries never changes which unit is which.
"""

import hashlib
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import structlog
import yaml

from fleetvisor.core.config import Settings
from fleetvisor.core.exceptions import DesiredStateError

logger = structlog.get_logger()

IDENTITY_PREFIX = "unit-"
IDENTITY_HASH_LENGTH = 12


def derive_identity(credential: str) -> str:
    """Stable unit id for a credential."""
    digest = hashlib.sha256(credential.encode("utf-8")).hexdigest()
    return f"{IDENTITY_PREFIX}{digest[:IDENTITY_HASH_LENGTH]}"


@dataclass(frozen=True)
class DesiredStateEntry:
    """One unit that should be running."""

    identity: str
    credential: str = field(repr=False)

    @classmethod
    def from_credential(cls, credential: str) -> "DesiredStateEntry":
        credential = credential.strip()
        if not credential:
            raise DesiredStateError("Credential cannot be empty")
        return cls(identity=derive_identity(credential), credential=credential)


def _dedupe(entries: Iterable[DesiredStateEntry]) -> List[DesiredStateEntry]:
    seen: Dict[str, DesiredStateEntry] = {}
    for entry in entries:
        seen.setdefault(entry.identity, entry)
    return list(seen.values())


class DesiredStateSource(ABC):
    """Reloadable list of units that should be running."""

    @abstractmethod
    def load(self) -> List[DesiredStateEntry]:
        """Read the current desired state."""

    def add(self, credential: str) -> DesiredStateEntry:
        raise DesiredStateError(f"{self.__class__.__name__} is read-only")

    def remove(self, identity: str) -> bool:
        raise DesiredStateError(f"{self.__class__.__name__} is read-only")


class StaticDesiredState(DesiredStateSource):
    """In-memory desired state, seeded from configuration."""

    def __init__(self, credentials: Optional[Iterable[str]] = None):
        self._entries: List[DesiredStateEntry] = _dedupe(
            DesiredStateEntry.from_credential(c) for c in (credentials or []) if c.strip()
        )

    def load(self) -> List[DesiredStateEntry]:
        return list(self._entries)

    def add(self, credential: str) -> DesiredStateEntry:
        entry = DesiredStateEntry.from_credential(credential)
        self._entries = _dedupe([*self._entries, entry])
        return entry

    def remove(self, identity: str) -> bool:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.identity != identity]
        return len(self._entries) != before


class YamlDesiredState(DesiredStateSource):
    """Desired state kept in a YAML file, re-read on every load.

    Format::

        units:
          - credential: "123456:abcdef"
          - "654321:fedcba"
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> List[DesiredStateEntry]:
        if not self.path.exists():
            logger.debug("Desired-state file missing, treating as empty", path=str(self.path))
            return []

        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise DesiredStateError(f"Cannot read desired state from {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise DesiredStateError(f"Desired-state file {self.path} must contain a mapping")

        items = data.get("units") or []
        if not isinstance(items, list):
            raise DesiredStateError("'units' must be a list")

        entries = []
        for index, item in enumerate(items):
            if isinstance(item, str):
                credential = item
            elif isinstance(item, dict) and isinstance(item.get("credential"), str):
                credential = item["credential"]
            else:
                raise DesiredStateError(f"Invalid unit entry at index {index}")
            entries.append(DesiredStateEntry.from_credential(credential))

        return _dedupe(entries)

    def add(self, credential: str) -> DesiredStateEntry:
        entry = DesiredStateEntry.from_credential(credential)
        entries = self.load()
        if any(e.identity == entry.identity for e in entries):
            return entry
        self._write([*entries, entry])
        logger.info("Added desired unit", identity=entry.identity, path=str(self.path))
        return entry

    def remove(self, identity: str) -> bool:
        entries = self.load()
        remaining = [e for e in entries if e.identity != identity]
        if len(remaining) == len(entries):
            return False
        self._write(remaining)
        logger.info("Removed desired unit", identity=identity, path=str(self.path))
        return True

    def _write(self, entries: List[DesiredStateEntry]) -> None:
        payload = {"units": [{"credential": e.credential} for e in entries]}
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise DesiredStateError(f"Cannot write desired state to {self.path}: {e}") from e


def source_from_settings(settings: Settings) -> DesiredStateSource:
    """File-backed source when configured, otherwise the static credential list."""
    if settings.desired_state_file:
        return YamlDesiredState(Path(settings.desired_state_file))
    return StaticDesiredState(settings.credentials)
