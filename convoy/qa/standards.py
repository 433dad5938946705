"""Standards catalog (``STANDARDS.md``) and standard ownership (``ownership.json``)."""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import structlog

from convoy.infra.errors import ConfigurationError

logger = structlog.get_logger()

_HEADING = re.compile(r"^###\s+(?P<id>[A-Za-z0-9_.-]+)\s*:\s*(?P<name>.+?)\s*$")


@dataclass(frozen=True)
class Standard:
    id: str
    name: str
    narrative: str = ""


class StandardsCatalog:
    def __init__(self, standards: list[Standard]) -> None:
        self._standards = {standard.id: standard for standard in standards}

    @classmethod
    def parse(cls, text: str) -> StandardsCatalog:
        standards: list[Standard] = []
        current: tuple[str, str] | None = None
        body: list[str] = []
        for line in text.splitlines():
            match = _HEADING.match(line)
            if match:
                if current is not None:
                    standards.append(Standard(current[0], current[1], "\n".join(body).strip()))
                current = (match.group("id"), match.group("name"))
                body = []
            elif current is not None:
                if line.startswith("#") and not line.startswith("####"):
                    # a higher-level heading closes the section
                    standards.append(Standard(current[0], current[1], "\n".join(body).strip()))
                    current = None
                    body = []
                else:
                    body.append(line)
        if current is not None:
            standards.append(Standard(current[0], current[1], "\n".join(body).strip()))
        return cls(standards)

    @classmethod
    def load(cls, path: Path) -> StandardsCatalog:
        if not path.exists():
            raise ConfigurationError(f"standards catalog not found: {path}")
        try:
            catalog = cls.parse(path.read_text("utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigurationError(f"unreadable standards catalog {path}: {exc}") from exc
        logger.info("standards_loaded", path=str(path), count=len(catalog))
        return catalog

    def __len__(self) -> int:
        return len(self._standards)

    def __iter__(self) -> Iterator[Standard]:
        return iter(self._standards.values())

    def __contains__(self, standard_id: object) -> bool:
        return standard_id in self._standards

    def get(self, standard_id: str) -> Standard | None:
        return self._standards.get(standard_id)

    def ids(self) -> list[str]:
        return list(self._standards)


class OwnershipTable:
    """Maps a standard id to the feature responsible for it."""

    def __init__(self, owners: dict[str, str] | None = None) -> None:
        self._owners = dict(owners or {})

    @classmethod
    def load(cls, path: Path) -> OwnershipTable:
        if not path.exists():
            return cls()
        try:
            payload = json.loads(path.read_text("utf-8") or "{}")
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"invalid ownership table {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigurationError(f"ownership table {path} must be a JSON object")
        return cls({str(key): str(value) for key, value in payload.items() if value})

    def owner_of(self, standard_id: str) -> str | None:
        return self._owners.get(standard_id)
