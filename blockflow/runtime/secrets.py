# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Secret resolution and redaction.

Secrets reach the engine already decrypted, as a name -> value mapping.
Config values reference them as ``{{NAME}}``. Anything that leaves the
engine for logs or traces passes through :func:`redact` first.
"""

import os
import re
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from .errors import MissingSecretError

REDACTED = "***"

SECRET_REF = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


@runtime_checkable
class SecretStore(Protocol):
    """Protocol for secret decryption collaborators.

    Implementations must be safe for concurrent read-only use.
    """

    def decrypt(self, ref: str) -> str:
        """Return the plaintext for a secret reference.

        Raises:
            MissingSecretError: If the reference is unknown
        """
        ...


class MemorySecretStore:
    """Secret store backed by an in-memory mapping (testing and embedding)."""

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def decrypt(self, ref: str) -> str:
        try:
            return self._values[ref]
        except KeyError as e:
            raise MissingSecretError(ref) from e


class EnvSecretStore:
    """Secret store reading process environment variables.

    Example:
        store = EnvSecretStore(prefix="BLOCKFLOW_SECRET_")
        store.decrypt("NOTION_KEY")  # reads $BLOCKFLOW_SECRET_NOTION_KEY
    """

    def __init__(self, prefix: str = "", environ: Mapping[str, str] | None = None) -> None:
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def decrypt(self, ref: str) -> str:
        value = self._environ.get(f"{self.prefix}{ref}")
        if value is None:
            raise MissingSecretError(ref)
        return value


def resolve_secrets(store: SecretStore, refs: Mapping[str, str]) -> dict[str, str]:
    """Decrypt a set of secret references.

    Args:
        store: The secret store to decrypt with
        refs: Secret name -> store reference

    Returns:
        Secret name -> plaintext value

    Raises:
        MissingSecretError: Naming the secret that could not be decrypted
    """
    resolved: dict[str, str] = {}
    for name, ref in refs.items():
        try:
            resolved[name] = store.decrypt(ref)
        except MissingSecretError as e:
            raise MissingSecretError(name) from e
    return resolved


def substitute_secrets(value: Any, secrets: Mapping[str, str]) -> Any:
    """Replace ``{{NAME}}`` references with secret values.

    Walks dicts and lists recursively.

    Raises:
        MissingSecretError: If a referenced secret was not supplied
    """
    if isinstance(value, str):

        def replace(match: re.Match) -> str:
            name = match.group(1)
            if name not in secrets:
                raise MissingSecretError(name)
            return secrets[name]

        return SECRET_REF.sub(replace, value)
    if isinstance(value, Mapping):
        return {key: substitute_secrets(item, secrets) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_secrets(item, secrets) for item in value]
    return value


def redact(value: Any, secrets: Mapping[str, str] | None) -> Any:
    """Mask every secret value occurring in a value.

    Returns a copy; strings inside dicts, lists and tuples are masked.
    """
    if not secrets:
        return value
    needles = sorted((s for s in secrets.values() if s), key=len, reverse=True)
    return _redact(value, needles)


def _redact(value: Any, needles: list[str]) -> Any:
    if isinstance(value, str):
        for needle in needles:
            if needle in value:
                value = value.replace(needle, REDACTED)
        return value
    if isinstance(value, Mapping):
        return {key: _redact(item, needles) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item, needles) for item in value]
    return value
