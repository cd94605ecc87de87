"""Operation catalog models.

The catalog describes every Graph operation the server can expose together
with the permission scopes it needs. It is parsed and validated once at
startup so malformed entries fail loudly instead of at lookup time.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from importlib import resources
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from ms365_mcp.auth.models.errors import CatalogError

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})


class OperationDescriptor(BaseModel):
    """A single Graph operation and the scopes it requires."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    path_pattern: str = Field(alias="pathPattern")
    method: str
    tool_name: str = Field(alias="toolName", min_length=1)
    scopes: tuple[str, ...] = ()  # Declaration order, duplicates dropped
    requires_work_account: bool = Field(default=False, alias="requiresWorkAccount")

    @field_validator("path_pattern")
    @classmethod
    def validate_path_pattern(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Path pattern must start with '/': {v}")
        return v

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        method = v.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {v}")
        return method

    @field_validator("scopes", mode="before")
    @classmethod
    def validate_scopes(cls, v: Any) -> Any:
        """Treat a missing scope list as empty and reject blank scope names."""
        if v is None:
            return ()
        if isinstance(v, str) or not isinstance(v, (list, tuple)):
            raise ValueError("scopes must be a list of strings")
        if any(not isinstance(scope, str) or not scope.strip() for scope in v):
            raise ValueError("scope names must be non-empty strings")
        return tuple(dict.fromkeys(v))


_DESCRIPTOR_LIST = TypeAdapter(list[OperationDescriptor])


class OperationCatalog:
    """Immutable, validated table of operations keyed by tool name."""

    def __init__(self, operations: Iterable[OperationDescriptor]):
        self._operations = tuple(operations)
        self._by_tool_name: dict[str, OperationDescriptor] = {}
        for operation in self._operations:
            if operation.tool_name in self._by_tool_name:
                raise CatalogError(
                    f"Duplicate tool name in catalog: {operation.tool_name}"
                )
            self._by_tool_name[operation.tool_name] = operation

    @classmethod
    def from_entries(cls, entries: list[dict[str, Any]]) -> OperationCatalog:
        """Parse raw catalog entries.

        Raises:
            CatalogError: If any entry is malformed
        """
        try:
            operations = _DESCRIPTOR_LIST.validate_python(entries)
        except ValidationError as e:
            raise CatalogError(f"Invalid operation catalog: {e}") from e
        return cls(operations)

    @classmethod
    def from_file(cls, path: str | Path) -> OperationCatalog:
        try:
            entries = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogError(f"Cannot read operation catalog {path}: {e}") from e
        return cls.from_entries(entries)

    @classmethod
    def load_default(cls) -> OperationCatalog:
        """Load the catalog shipped with the package."""
        data = resources.files("ms365_mcp").joinpath("endpoints.json")
        try:
            entries = json.loads(data.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogError(f"Cannot read bundled operation catalog: {e}") from e
        return cls.from_entries(entries)

    def get(self, tool_name: str) -> OperationDescriptor | None:
        return self._by_tool_name.get(tool_name)

    def __iter__(self) -> Iterator[OperationDescriptor]:
        return iter(self._operations)

    def __len__(self) -> int:
        return len(self._operations)
