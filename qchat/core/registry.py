"""
qchat :: Model Registry

Resolves a dotted model identifier to the artifacts needed to run it.

    "qwen3"         → the default variant of the qwen3 architecture
    "qwen3.4b_q4"   → the 4b_q4 variant

The table is loaded once from models.toml:

    [qwen3.4b_base]
    model_repo = "Qwen/Qwen3-4B"
    default = true

    [qwen3.4b_q4]
    model_repo = "Qwen/Qwen3-4B-GGUF"
    model_file = "Qwen3-4B-Q4_K_M.gguf"

Missing fields are filled by convention:
  - format:          "gguf" in the repo name → quantized, else full precision
  - model_file:      model.safetensors / model.gguf
  - tokenizer_repo:  a full-precision (base) entry tokenizes itself,
                     other entries borrow the tokenizer of their base sibling

INL - 2025
"""

import enum
import tomllib
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

from qchat.core.errors import (
    ConfigError,
    InvalidIdentifier,
    NoDefaultVariant,
    NoTokenizerSource,
    ResolutionError,
    UnknownArchitecture,
    UnknownVariant,
)


class ModelArch(str, enum.Enum):
    """Architectures with an inference backend."""
    QWEN3 = "qwen3"
    LLAMA = "llama"


class WeightFormat(str, enum.Enum):
    QUANTIZED = "quantized"
    FULL = "full"


# Substrings of a repository name that mark quantized weights
QUANTIZATION_MARKERS = ("gguf",)

DEFAULT_MODEL_FILES = {
    WeightFormat.FULL: "model.safetensors",
    WeightFormat.QUANTIZED: "model.gguf",
}

_FORMAT_ALIASES = {
    "gguf": WeightFormat.QUANTIZED,
    "quantized": WeightFormat.QUANTIZED,
    "safetensors": WeightFormat.FULL,
    "full": WeightFormat.FULL,
}

_ENTRY_KEYS = {"model_repo", "model_file", "tokenizer_repo", "format", "default"}


@dataclass(frozen=True)
class HubEntry:
    """One row of models.toml, as written."""
    model_repo: str
    model_file: Optional[str] = None
    tokenizer_repo: Optional[str] = None
    format: Optional[str] = None
    default: bool = False


@dataclass(frozen=True)
class ArtifactSpec:
    """A fully resolved model: every field is populated."""
    model_id: str
    architecture: ModelArch
    variant: str
    model_repo: str
    model_file: str
    tokenizer_repo: str
    format: WeightFormat
    is_default: bool

    @property
    def is_quantized(self) -> bool:
        return self.format == WeightFormat.QUANTIZED


class ConfigTable:
    """
    Immutable architecture → variant → HubEntry mapping.

    Built once at startup and passed explicitly to resolve().
    """

    def __init__(self, entries: Mapping[str, Mapping[str, HubEntry]]):
        self._entries = MappingProxyType({
            arch: MappingProxyType(dict(variants))
            for arch, variants in entries.items()
        })

    @property
    def architectures(self) -> List[str]:
        return list(self._entries.keys())

    def variants(self, architecture: str) -> Mapping[str, HubEntry]:
        return self._entries.get(architecture, MappingProxyType({}))

    def __contains__(self, architecture: str) -> bool:
        return architecture in self._entries

    @staticmethod
    def from_dict(data: Mapping[str, Mapping[str, Mapping]]) -> "ConfigTable":
        """Build a table from parsed TOML (architecture → variant → fields)."""
        known = {arch.value for arch in ModelArch}
        entries: Dict[str, Dict[str, HubEntry]] = {}

        for arch, variants in data.items():
            if arch not in known:
                raise ConfigError(
                    f"Unknown architecture section [{arch}]. Supported: {', '.join(sorted(known))}"
                )
            if not isinstance(variants, Mapping):
                raise ConfigError(f"[{arch}] must contain variant tables")

            entries[arch] = {}
            for variant, fields in variants.items():
                if not isinstance(fields, Mapping):
                    raise ConfigError(f"[{arch}.{variant}] must be a table")
                unknown = set(fields) - _ENTRY_KEYS
                if unknown:
                    raise ConfigError(
                        f"[{arch}.{variant}] has unknown keys: {', '.join(sorted(unknown))}"
                    )
                if not fields.get("model_repo"):
                    raise ConfigError(f"[{arch}.{variant}] is missing model_repo")
                fmt = fields.get("format")
                if fmt is not None and fmt.lower() not in _FORMAT_ALIASES:
                    raise ConfigError(f"[{arch}.{variant}] has unknown format {fmt!r}")
                entries[arch][variant] = HubEntry(
                    model_repo=fields["model_repo"],
                    model_file=fields.get("model_file"),
                    tokenizer_repo=fields.get("tokenizer_repo"),
                    format=fmt,
                    default=bool(fields.get("default", False)),
                )

        return ConfigTable(entries)


def load_config_table(path: Union[str, Path] = "models.toml") -> ConfigTable:
    """Load the configuration table from a TOML file."""
    path = Path(path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Model table not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    return ConfigTable.from_dict(data)


# =========================================================================
# Resolution
# =========================================================================

def infer_format(entry: HubEntry) -> WeightFormat:
    """Explicit format wins, otherwise look for a quantization marker in the repo name."""
    if entry.format is not None:
        return _FORMAT_ALIASES[entry.format.lower()]
    repo = entry.model_repo.lower()
    if any(marker in repo for marker in QUANTIZATION_MARKERS):
        return WeightFormat.QUANTIZED
    return WeightFormat.FULL


def _model_file(entry: HubEntry, fmt: WeightFormat) -> str:
    if not entry.model_file:
        return DEFAULT_MODEL_FILES[fmt]
    if fmt == WeightFormat.QUANTIZED and not entry.model_file.endswith(".gguf"):
        return f"{entry.model_file}.gguf"
    return entry.model_file


def _size_prefix(variant: str) -> str:
    """'8b_q4' → '8b', 'base' → 'base'."""
    head, sep, _ = variant.rpartition("_")
    return head if sep else variant


def _tokenizer_repos(variants: Mapping[str, HubEntry]) -> Dict[str, Optional[str]]:
    """
    Two passes over one architecture:
      1. every full-precision entry is a base; it tokenizes with its own repo
         unless tokenizer_repo is explicit
      2. remaining entries borrow from the base with the same size prefix,
         else the default entry if it is a base, else the only base

    Entries that find no source map to None.
    """
    formats = {name: infer_format(entry) for name, entry in variants.items()}

    # Pass 1: bases
    bases: Dict[str, str] = {}
    for name in sorted(variants):
        entry = variants[name]
        if formats[name] == WeightFormat.FULL:
            bases[name] = entry.tokenizer_repo or entry.model_repo

    base_by_prefix: Dict[str, List[str]] = {}
    for name in sorted(bases):
        base_by_prefix.setdefault(_size_prefix(name), []).append(name)

    defaults = [name for name, entry in variants.items() if entry.default]
    default_base = defaults[0] if len(defaults) == 1 and defaults[0] in bases else None
    only_base = next(iter(bases)) if len(bases) == 1 else None

    # Pass 2: everything else
    result: Dict[str, Optional[str]] = {}
    for name in sorted(variants):
        entry = variants[name]
        if name in bases:
            result[name] = bases[name]
        elif entry.tokenizer_repo:
            result[name] = entry.tokenizer_repo
        else:
            siblings = base_by_prefix.get(_size_prefix(name), [])
            if len(siblings) == 1:
                result[name] = bases[siblings[0]]
            elif default_base is not None:
                result[name] = bases[default_base]
            elif only_base is not None:
                result[name] = bases[only_base]
            else:
                result[name] = None
    return result


def split_identifier(identifier: str) -> Tuple[str, Optional[str]]:
    """Split on the first dot: 'arch' or 'arch.variant'."""
    if not isinstance(identifier, str) or not identifier.strip():
        raise InvalidIdentifier(str(identifier), "Model identifier is empty")
    arch, sep, variant = identifier.partition(".")
    if not arch:
        raise InvalidIdentifier(identifier, "Model identifier has no architecture")
    if sep and not variant:
        raise InvalidIdentifier(identifier, "Model identifier has an empty variant")
    return arch, (variant if sep else None)


def resolve(identifier: str, table: ConfigTable) -> ArtifactSpec:
    """
    Resolve a model identifier against the configuration table.

    Pure: reads only the table. Raises a ResolutionError subclass
    (never returns a partially filled spec).
    """
    arch_name, variant = split_identifier(identifier)

    try:
        arch = ModelArch(arch_name)
    except ValueError:
        supported = ", ".join(a.value for a in ModelArch)
        raise UnknownArchitecture(identifier, f"Unsupported architecture '{arch_name}'. Supported: {supported}")
    if arch_name not in table:
        raise UnknownArchitecture(identifier, f"Architecture '{arch_name}' has no entries in the model table")

    variants = table.variants(arch_name)

    if variant is None:
        defaults = sorted(name for name, entry in variants.items() if entry.default)
        if not defaults:
            raise NoDefaultVariant(identifier, f"Architecture '{arch_name}' has no default variant")
        if len(defaults) > 1:
            raise NoDefaultVariant(
                identifier,
                f"Architecture '{arch_name}' has {len(defaults)} default variants: {', '.join(defaults)}",
            )
        variant = defaults[0]
    elif variant not in variants:
        available = ", ".join(sorted(variants))
        raise UnknownVariant(identifier, f"Variant '{variant}' does not exist. Available: {available}")

    entry = variants[variant]
    tokenizer_repo = _tokenizer_repos(variants)[variant]
    if not tokenizer_repo:
        raise NoTokenizerSource(
            identifier,
            f"'{arch_name}.{variant}' has no tokenizer_repo and no full-precision base to borrow one from",
        )

    fmt = infer_format(entry)
    return ArtifactSpec(
        model_id=f"{arch_name}.{variant}",
        architecture=arch,
        variant=variant,
        model_repo=entry.model_repo,
        model_file=_model_file(entry, fmt),
        tokenizer_repo=tokenizer_repo,
        format=fmt,
        is_default=entry.default,
    )


class ModelRegistry:
    """Convenience wrapper: a loaded table plus resolve()."""

    def __init__(self, table: ConfigTable):
        self.table = table

    @staticmethod
    def from_file(path: Union[str, Path] = "models.toml") -> "ModelRegistry":
        return ModelRegistry(load_config_table(path))

    def get(self, model_id: str) -> ArtifactSpec:
        return resolve(model_id, self.table)

    def list_models(self) -> List[Tuple[str, Union[ArtifactSpec, ResolutionError]]]:
        """Every 'arch.variant' in the table with its spec or the error it resolves to."""
        out = []
        for arch in self.table.architectures:
            for variant in sorted(self.table.variants(arch)):
                model_id = f"{arch}.{variant}"
                try:
                    out.append((model_id, resolve(model_id, self.table)))
                except ResolutionError as e:
                    out.append((model_id, e))
        return out
