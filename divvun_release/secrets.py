"""Secret lookup and scoped secret handles.

Secrets are looked up by name through a prioritized chain of resolvers
(process environment first, then any registered ``.env`` files). A found
value is wrapped in :class:`SecretHandle`, which prints as ``***`` and is
only revealed by the component that was given the handle.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from dotenv import dotenv_values

MASK = "***"


@dataclass(frozen=True)
class SecretSpec:
    name: str
    description: str = ""
    scopes: Tuple[str, ...] = ()


class SecretResolver(Protocol):
    name: str
    source: str

    def lookup(self, name: str) -> Optional[str]:
        ...

    def details(self) -> Dict[str, object]:
        ...


class EnvResolver:
    name = "env"
    source = "env"

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self.environ = environ

    def lookup(self, name: str) -> Optional[str]:
        environ = os.environ if self.environ is None else self.environ
        return environ.get(name) or None

    def details(self) -> Dict[str, object]:
        return {"type": "env"}


class DotEnvResolver:
    """Read a ``.env`` file lazily. Values never reach ``os.environ``."""

    source = "dotenv"

    def __init__(self, path: Path) -> None:
        self.path = path
        self.name = f"dotenv:{path}"
        self._values: Optional[Dict[str, Optional[str]]] = None

    def lookup(self, name: str) -> Optional[str]:
        if self._values is None:
            self._values = dict(dotenv_values(self.path)) if self.path.exists() else {}
        return self._values.get(name) or None

    def details(self) -> Dict[str, object]:
        return {"path": str(self.path), "exists": self.path.exists(), "loaded": self._values is not None}


@dataclass(frozen=True)
class SecretAttempt:
    resolver: str
    source: str
    success: bool
    details: Dict[str, object] = field(default_factory=dict)

    def label(self) -> str:
        path = self.details.get("path")
        return f"{self.source}@{path}" if path else self.source


@dataclass(frozen=True)
class SecretLookup:
    """Outcome of resolving one secret, including every resolver consulted."""

    name: str
    value: Optional[str] = field(repr=False)
    attempts: List[SecretAttempt] = field(default_factory=list)

    @property
    def found(self) -> Optional[SecretAttempt]:
        return next((attempt for attempt in self.attempts if attempt.success), None)

    @property
    def resolver(self) -> Optional[str]:
        return self.found.resolver if self.found else None

    @property
    def source(self) -> Optional[str]:
        return self.found.source if self.found else None

    @property
    def details(self) -> Dict[str, object]:
        return dict(self.found.details) if self.found else {}

    def summary(self) -> str:
        if not self.attempts:
            return "none"
        return ", ".join(
            f"{attempt.label()} ({'resolved' if attempt.success else 'missing'})" for attempt in self.attempts
        )


class SecretHandle:
    """Opaque wrapper around a secret value.

    ``str``/``repr`` never expose the value; callers that need it call
    :meth:`reveal` at the point of use.
    """

    __slots__ = ("_name", "_value")

    def __init__(self, name: str, value: str) -> None:
        if not value:
            raise ValueError(f"Secret '{name}' is empty.")
        self._name = name
        self._value = value
        register_mask(value)

    @property
    def name(self) -> str:
        return self._name

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"SecretHandle(name={self._name!r}, value={MASK!r})"

    def __str__(self) -> str:
        return MASK


_secret_specs: Dict[str, SecretSpec] = {}
_resolvers: List[Tuple[int, SecretResolver]] = []
_masked_values: set[str] = set()


def register_secret(spec: SecretSpec) -> None:
    _secret_specs.setdefault(spec.name, spec)


def register_resolver(resolver: SecretResolver, priority: int = 0) -> None:
    """Add ``resolver`` to the chain. Higher priorities are consulted first."""

    _resolvers.append((priority, resolver))
    _resolvers.sort(key=lambda item: item[0], reverse=True)


register_resolver(EnvResolver(), priority=0)


def use_dotenv(path: str | Path, *, priority: int = -10) -> None:
    register_resolver(DotEnvResolver(Path(path)), priority=priority)


def lookup_secret(name: str) -> SecretLookup:
    attempts: List[SecretAttempt] = []
    for _, resolver in _resolvers:
        value = resolver.lookup(name)
        attempts.append(
            SecretAttempt(
                resolver=resolver.name,
                source=resolver.source,
                success=value is not None,
                details=resolver.details(),
            )
        )
        if value is not None:
            return SecretLookup(name=name, value=value, attempts=attempts)
    return SecretLookup(name=name, value=None, attempts=attempts)


def resolve_handle(name: str) -> Optional[SecretHandle]:
    """Resolve ``name`` and wrap it, or return ``None`` when no resolver has it."""

    found = lookup_secret(name)
    return SecretHandle(name, found.value) if found.value is not None else None


def list_secrets() -> List[SecretSpec]:
    return list(_secret_specs.values())


def describe_secret(name: str) -> Dict[str, object]:
    spec = _secret_specs.get(name, SecretSpec(name=name))
    found = lookup_secret(name)
    return {
        "name": spec.name,
        "description": spec.description,
        "scopes": list(spec.scopes),
        "present": found.value is not None,
        "resolver": found.resolver,
        "source": found.source,
        "attempts": [
            {"resolver": attempt.resolver, "source": attempt.source, "success": attempt.success}
            for attempt in found.attempts
        ],
    }


def register_mask(value: str) -> None:
    if value:
        _masked_values.add(value)


def mask_text(text: str) -> str:
    for value in sorted(_masked_values, key=len, reverse=True):
        text = text.replace(value, MASK)
    return text


class SecretMaskFilter(logging.Filter):
    """Replace known secret values in log records with ``***``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if _masked_values:
            record.msg = mask_text(record.getMessage())
            record.args = None
        return True
