import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Set, Union

import yaml

from cellar.config.constants import SHA256_HEX_LENGTH
from cellar.errors import ManifestError

_COMPONENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+@-]*$")
_HEX_RE = re.compile(r"^[0-9a-f]+$")


def _check_component(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not _COMPONENT_RE.match(value):
        raise ManifestError(f"'{field_name}' must be a plain path component, got {value!r}")
    return value


def _check_relative(value: Any, field_name: str) -> str:
    """Reject absolute paths and parent traversal; return the normalized path."""
    if not isinstance(value, str) or not value.strip():
        raise ManifestError(f"'{field_name}' must be a non-empty relative path")
    path = PurePosixPath(value.strip())
    if path.is_absolute() or ".." in path.parts:
        raise ManifestError(f"'{field_name}' must stay inside the package: {value!r}")
    return str(path)


@dataclass(frozen=True)
class CopyIntoPrefix:
    """Copy a file or directory from the extracted archive into the prefix."""

    relative_path: str

    def __post_init__(self):
        object.__setattr__(self, "relative_path", _check_relative(self.relative_path, "copy"))

    @property
    def destination_name(self) -> str:
        return PurePosixPath(self.relative_path).name


@dataclass(frozen=True)
class WriteExecutableWrapper:
    """Write a launcher into the shared bin directory that execs a prefix binary."""

    target_relative_path: str
    wrapper_name: Optional[str] = None  # Defaults to the manifest name

    def __post_init__(self):
        object.__setattr__(
            self, "target_relative_path", _check_relative(self.target_relative_path, "wrapper")
        )
        if self.wrapper_name is not None:
            _check_component(self.wrapper_name, "wrapper name")


Action = Union[CopyIntoPrefix, WriteExecutableWrapper]


@dataclass
class Manifest:
    """Declarative description of one package version and how to install it."""

    name: str
    source_url: str
    content_hash: str
    version: str
    install_actions: List[Action]
    description: str = ""
    homepage: str = ""

    def __post_init__(self):
        _check_component(self.name, "name")
        _check_component(self.version, "version")

        if not isinstance(self.source_url, str) or not self.source_url.strip():
            raise ManifestError("'source_url' is required")

        digest = str(self.content_hash or "").strip().lower()
        if len(digest) != SHA256_HEX_LENGTH or not _HEX_RE.match(digest):
            raise ManifestError(f"'content_hash' must be a {SHA256_HEX_LENGTH}-character hex SHA-256 digest")
        self.content_hash = digest

        if not self.install_actions:
            raise ManifestError(f"Formula '{self.name}' declares no install actions")
        for action in self.install_actions:
            if not isinstance(action, (CopyIntoPrefix, WriteExecutableWrapper)):
                raise ManifestError(f"Unknown install action: {action!r}")

        names = [self.wrapper_name_for(a) for a in self.wrapper_actions]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ManifestError(f"Duplicate wrapper names: {', '.join(sorted(duplicates))}")

    @property
    def wrapper_actions(self) -> List[WriteExecutableWrapper]:
        return [a for a in self.install_actions if isinstance(a, WriteExecutableWrapper)]

    def wrapper_name_for(self, action: WriteExecutableWrapper) -> str:
        return action.wrapper_name or self.name

    @property
    def archive_basename(self) -> str:
        """Last path segment of the source URL, without query or fragment."""
        path = self.source_url.split("?", 1)[0].split("#", 1)[0].rstrip("/")
        return path.rsplit("/", 1)[-1] or f"{self.name}-{self.version}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        """
        Build a manifest from formula data.

        Accepts the short formula keys (``desc``, ``url``, ``sha256``,
        ``install``) as well as the field names.
        """
        if not isinstance(data, dict):
            raise ManifestError("Formula must be a mapping")

        raw_actions = data.get("install", data.get("install_actions"))
        if not isinstance(raw_actions, list):
            raise ManifestError("'install' must be a list of actions")

        version = data.get("version")
        return cls(
            name=data.get("name"),
            description=str(data.get("desc", data.get("description", "")) or ""),
            homepage=str(data.get("homepage", "") or ""),
            source_url=data.get("url", data.get("source_url")),
            content_hash=data.get("sha256", data.get("content_hash")),
            # YAML reads `version: 0.1` as a float
            version=str(version) if isinstance(version, (int, float)) else version,
            install_actions=[_parse_action(item) for item in raw_actions],
        )


def _parse_action(item: Any) -> Action:
    if not isinstance(item, dict) or len(item) != 1:
        raise ManifestError(f"Install action must be a single-key mapping, got {item!r}")

    kind, value = next(iter(item.items()))
    if kind in ("copy", "prefix_install"):
        return CopyIntoPrefix(value)
    if kind in ("wrapper", "write_exec_script"):
        if isinstance(value, dict):
            return WriteExecutableWrapper(value.get("target"), value.get("name"))
        return WriteExecutableWrapper(value)
    raise ManifestError(f"Unknown install action '{kind}'")


def load_manifest(path: Union[str, Path]) -> Manifest:
    """Load a formula from a YAML file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ManifestError(f"Formula file not found: {path}")
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}: {e}") from e
    return Manifest.from_dict(data)


@dataclass
class InstalledPackage:
    """A package version that has been placed into the cellar."""

    name: str
    version: str
    prefix_path: Path
    installed_files: Set[str] = field(default_factory=set)  # Relative to prefix_path
    wrappers: Dict[str, str] = field(default_factory=dict)  # wrapper name -> target relative path
    content_hash: Optional[str] = None
    source_url: Optional[str] = None
    active: bool = False
    pinned: bool = False
    installed_at: Optional[datetime] = None
