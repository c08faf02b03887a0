# secrets.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, Mapping


class MissingSecret(KeyError):
    """Raised when a publish target references a credential nobody provided."""


class Secrets:
    """
    Resolved, named credentials handed explicitly to publishers.

    Values never appear in repr() and can be scrubbed from any text that is
    about to be printed or stored.
    """

    def __init__(self, values: Mapping[str, str] | None = None):
        self._values: Dict[str, str] = {k: str(v) for k, v in (values or {}).items() if v}

    @classmethod
    def from_file(cls, path: str | Path) -> Secrets:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Secrets file must hold a JSON object: {path}")
        return cls(data)

    @classmethod
    def from_environ(cls, names: Iterable[str], environ: Mapping[str, str]) -> Secrets:
        """Pick the named variables out of an explicit environment mapping."""
        return cls({n: environ[n] for n in names if environ.get(n)})

    def merged(self, other: Secrets) -> Secrets:
        values = dict(self._values)
        values.update(other._values)
        return Secrets(values)

    def get(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise MissingSecret(f"Secret '{name}' was not provided") from None

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def names(self) -> list[str]:
        return sorted(self._values)

    def redact(self, text: str) -> str:
        for value in sorted(self._values.values(), key=len, reverse=True):
            text = text.replace(value, "***")
        return text

    def __repr__(self) -> str:
        return f"Secrets(names={self.names()})"
