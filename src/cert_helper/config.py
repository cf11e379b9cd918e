"""
Explicit configuration for every pipeline stage.

Each stage receives one of the frozen dataclasses below; nothing is read from
the environment at call time. Values can be seeded from a YAML settings file
(load_settings) and overridden by the CLI.

Example settings file:

    generate:
      dn_template: "O=Acme,OU=Infra,OU=SRE"
      cluster_name: prod
      key_bits: 4096
    sign:
      organization: Acme
      use_intermediate: true
    verify:
      warning_days: 45
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigurationError

DEFAULT_REGISTRY = "ca-nodes.txt"


@dataclass(frozen=True)
class Layout:
    """
    On-disk layout of one working directory.

    Attributes:
        base (Path): Working directory holding every artifact.
        registry_name (str): Node registry file name, relative to base unless absolute.
    """
    base: Path
    registry_name: str = DEFAULT_REGISTRY

    @property
    def registry(self) -> Path:
        p = Path(self.registry_name)
        return p if p.is_absolute() else self.base / p

    @property
    def nodes_dir(self) -> Path:
        return self.base / "nodes"

    @property
    def csr_dir(self) -> Path:
        return self.base / "csr"

    @property
    def ca_dir(self) -> Path:
        return self.base / "CA"

    @property
    def certs_dir(self) -> Path:
        return self.base / "certs"

    @property
    def anchor(self) -> Path:
        """Shared trust anchor consumed by every node (nodes/ca.crt)."""
        return self.nodes_dir / "ca.crt"

    def node_dir(self, safe: str) -> Path:
        return self.nodes_dir / safe

    def csr_path(self, safe: str) -> Path:
        return self.csr_dir / f"{safe}.csr"


@dataclass(frozen=True)
class GeneratorSettings:
    """Node key / CSR generation (the `generate-csr` stage)."""
    dn_template: str = ""
    cluster_name: Optional[str] = None
    key_bits: int = 4096
    workers: int = 4

    def __post_init__(self):
        _require(self.key_bits >= 1024, f"key_bits must be at least 1024, got {self.key_bits}")
        _require(self.workers >= 1, "workers must be positive")


@dataclass(frozen=True)
class AuthoritySettings:
    """CA bootstrap and signing (the `self-sign` stage)."""
    organization: str = "YDB"
    cert_days: Optional[int] = None
    ca_days: int = 3650
    intermediate_days: int = 1825
    key_bits: int = 4096
    use_intermediate: bool = False
    resign: bool = False

    def __post_init__(self):
        _require(bool(self.organization.strip()), "organization must not be empty")
        for name in ("cert_days", "ca_days", "intermediate_days"):
            value = getattr(self, name)
            _require(value is None or value > 0, f"{name} must be positive")
        _require(self.key_bits >= 1024, f"key_bits must be at least 1024, got {self.key_bits}")


@dataclass(frozen=True)
class ArrangeSettings:
    """Bundle assembly (the `arrange` stage)."""
    certs_dir: Optional[Path] = None
    ca_cert: Optional[Path] = None
    copy_keys: bool = False


@dataclass(frozen=True)
class VerifySettings:
    """Verification engine (the `verify` stage)."""
    node: Optional[str] = None
    warning_days: int = 30
    verbose: bool = False
    workers: int = 4

    def __post_init__(self):
        _require(self.warning_days >= 0, "warning_days must not be negative")
        _require(self.workers >= 1, "workers must be positive")


@dataclass(frozen=True)
class Settings:
    """All stage settings, as loaded from a settings file."""
    generate: GeneratorSettings = field(default_factory=GeneratorSettings)
    sign: AuthoritySettings = field(default_factory=AuthoritySettings)
    arrange: ArrangeSettings = field(default_factory=ArrangeSettings)
    verify: VerifySettings = field(default_factory=VerifySettings)


_SECTIONS = {
    "generate": GeneratorSettings,
    "sign": AuthoritySettings,
    "arrange": ArrangeSettings,
    "verify": VerifySettings,
}

_PATH_FIELDS = {"certs_dir", "ca_cert"}


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigurationError(msg)


def _build(cls, values: dict[str, Any], section: str):
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(values) - known)
    _require(not unknown, f"Unknown keys in settings section '{section}': {unknown}")
    values = {k: (Path(v) if k in _PATH_FIELDS and v is not None else v) for k, v in values.items()}
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid settings section '{section}': {e}")


def load_settings(path: Optional[Path]) -> Settings:
    """
    Load stage settings from a YAML file.

    Args:
        path (Path | None): Settings file; None yields the defaults.

    Returns:
        Settings: One dataclass per stage.

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML, or
            contains unknown sections/keys.
    """
    if path is None:
        return Settings()
    if not path.is_file():
        raise ConfigurationError(f"Settings file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Settings file is not valid YAML: {path} ({e})")
    _require(isinstance(data, dict), f"Settings file must contain a mapping: {path}")

    unknown = sorted(set(data) - set(_SECTIONS))
    _require(not unknown, f"Unknown settings sections: {unknown}")

    built = {}
    for name, cls in _SECTIONS.items():
        section = data.get(name) or {}
        _require(isinstance(section, dict), f"Settings section '{name}' must be a mapping")
        built[name] = _build(cls, section, name)
    return Settings(**built)


def override(settings, **values):
    """
    Return a copy of a settings dataclass with every non-None value applied.

    Used by the CLI so that options left unset keep the file/default value.
    """
    changes = {k: v for k, v in values.items() if v is not None}
    try:
        return dataclasses.replace(settings, **changes)
    except TypeError as e:
        raise ConfigurationError(str(e))
