"""
Error registry backed by ``registry.yaml``.

Each entry maps an ``MPX-<KIND>-<NNN>`` code to what the HTTP layer needs:
status, severity, whether the client may retry, a message that is safe to
show, and remediation hints for operators. The file is validated as a
whole on load; a bad entry fails startup rather than a request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from meterproxy.core.errors import CODE_PATTERN, ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_PATH = Path(__file__).with_name("registry.yaml")

VALID_DOMAINS = {kind.value for kind in ErrorKind}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = ("code", "domain", "title", "severity", "retryable", "http_status", "safe_message")


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    http_status: int
    safe_message: str
    remediation: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind(self.domain)


class RegistryValidationError(Exception):
    """registry.yaml is malformed."""


def _parse_entry(index: int, raw: Any) -> ErrorEntry:
    if not isinstance(raw, dict):
        raise RegistryValidationError(f"entry {index}: expected a mapping, got {type(raw).__name__}")

    missing = [name for name in REQUIRED_FIELDS if name not in raw]
    if missing:
        raise RegistryValidationError(f"entry {index} ({raw.get('code', '?')}): missing fields {missing}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"entry {index}: invalid code format {code!r}")

    domain = raw["domain"]
    if domain != code.split("-")[1]:
        raise RegistryValidationError(f"{code}: domain {domain!r} does not match the code")
    if domain not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {domain!r}")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    status = int(raw["http_status"])
    if not 400 <= status <= 599:
        raise RegistryValidationError(f"{code}: http_status {status} is not an error status")

    remediation = raw.get("remediation") or []
    if not isinstance(remediation, list) or not all(isinstance(r, str) for r in remediation):
        raise RegistryValidationError(f"{code}: remediation must be a list of strings")

    return ErrorEntry(
        code=code,
        domain=domain,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        http_status=status,
        safe_message=raw["safe_message"],
        remediation=tuple(remediation),
    )


class ErrorRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version = 0

    def load(self, path: Optional[str | Path] = None) -> "ErrorRegistry":
        """Replace the registry contents with the entries in ``path``."""
        path = Path(path) if path is not None else DEFAULT_PATH
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for index, raw in enumerate(raw_entries):
            entry = _parse_entry(index, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        uncovered = sorted(kind.name for kind in ErrorKind if not any(e.kind is kind for e in entries.values()))
        if uncovered:
            logger.warning("Error kinds without registry codes: %s", ", ".join(uncovered))

        self._entries = entries
        self.schema_version = int(data.get("schema_version", 0))
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})
        return self

    @property
    def loaded(self) -> bool:
        return bool(self._entries)

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        try:
            return self._entries[code]
        except KeyError:
            raise KeyError(f"Unknown error code: {code!r}") from None

    def all_codes(self) -> List[str]:
        return list(self._entries)

    def codes_for_kind(self, kind: ErrorKind) -> List[str]:
        return [code for code, entry in self._entries.items() if entry.kind is kind]

    def __len__(self) -> int:
        return len(self._entries)


# Loaded by the application lifespan (and by the test suite)
error_registry = ErrorRegistry()
