"""
Collaborators
=============
Narrow interfaces the engine consumes from its host application.

  VariableResolver — supplies flow variables ({name, type, value}) for
                     $vars references and update-state scripts.
  FileStore        — reads uploaded files back for multimodal prompts.

In-memory implementations are provided for the CLI demo and for tests.
Storage backends and variable admin screens belong to the host.
"""
from typing import Any, Mapping, Protocol, runtime_checkable

from .errors import ConfigurationError


@runtime_checkable
class VariableResolver(Protocol):
    async def get_vars(self, context: Mapping[str, Any]) -> list[dict]: ...


class StaticVariableResolver:
    """
    Variables fixed at construction time.

    Accepts either a list of {name, type, value} records or a plain
    name → value mapping (treated as static variables).
    """

    def __init__(self, variables: list[dict] | Mapping[str, Any] | None = None):
        if variables is None:
            variables = []
        if isinstance(variables, Mapping):
            variables = [
                {"name": k, "type": "static", "value": v} for k, v in variables.items()
            ]
        for var in variables:
            if not var.get("name"):
                raise ConfigurationError("Variable name is required")
        self._variables = [dict(v) for v in variables]

    async def get_vars(self, context: Mapping[str, Any]) -> list[dict]:
        return [dict(v) for v in self._variables]


@runtime_checkable
class FileStore(Protocol):
    async def get_file(self, name: str, chatflow_id: str, chat_id: str) -> bytes: ...


class InMemoryFileStore:
    def __init__(self):
        self._files: dict[tuple[str, str, str], bytes] = {}

    def put(self, name: str, chatflow_id: str, chat_id: str, data: bytes) -> None:
        self._files[(chatflow_id, chat_id, name)] = data

    async def get_file(self, name: str, chatflow_id: str, chat_id: str) -> bytes:
        try:
            return self._files[(chatflow_id, chat_id, name)]
        except KeyError:
            raise FileNotFoundError(f"{chatflow_id}/{chat_id}/{name}") from None
