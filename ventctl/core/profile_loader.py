"""Profile loading and validation for YAML-based ventctl device profiles."""

from __future__ import annotations

import logging
import json
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from ventctl.core.codec import DEFAULT_SECRET
from ventctl.core.errors import ProfileLoadError, ProfileValidationError
from ventctl.core.model import DEFAULT_SYNC_KEY, Profile, ReconnectSettings, Vocabulary
from ventctl.core.telemetry import DEFAULT_VOCABULARY

_UUID16_RE = re.compile(r"^[0-9a-f]{4}$")
_UUID32_RE = re.compile(r"^[0-9a-f]{8}$")
_UUID128_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_MAC_RE = re.compile(r"^[0-9A-F]{2}(?::[0-9A-F]{2}){5}$")
_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ProfileValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedProfiles:
    profiles: dict[str, Profile]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("ventctl.schemas").joinpath("profile.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _profile_dirs() -> tuple[Path, ...]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return (xdg_config / "ventctl/profiles",)


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProfileLoadError(f"Could not read profile file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ProfileValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ProfileValidationError(f"Profile file {path} must contain a mapping at root")
    return loaded


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if _UUID16_RE.match(normalized):
        return f"0000{normalized}{_BASE_UUID_SUFFIX}"
    if _UUID32_RE.match(normalized):
        return f"{normalized}{_BASE_UUID_SUFFIX}"
    if _UUID128_RE.match(normalized):
        return normalized
    raise ProfileValidationError(
        f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
    )


def _normalize_address(value: str, *, context: str) -> str:
    normalized = value.strip().upper()
    if _MAC_RE.match(normalized) or _UUID128_RE.match(normalized.lower()):
        return normalized
    raise ProfileValidationError(f"{context} must be a MAC address or a platform device UUID")


def _normalize_secret(value: Any, *, context: str) -> int:
    if isinstance(value, int):
        secret = value
    else:
        text = str(value).strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        try:
            secret = int(text, 16)
        except ValueError:
            raise ProfileValidationError(f"{context} must be a byte value like 0x5A") from None
    if not 0 <= secret <= 0xFF:
        raise ProfileValidationError(f"{context} must fit in one byte (0..255)")
    return secret


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise ProfileValidationError(f"{context} must be boolean true/false")


def _build_profile(doc: dict[str, Any], source: Path | Traversable) -> Profile:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ProfileValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    profile_id = doc["id"]
    reconnect_doc = doc.get("reconnect", {})
    telemetry_doc = doc.get("telemetry", {})
    defaults = ReconnectSettings()

    return Profile(
        id=profile_id,
        name=doc["name"],
        service_uuid=_normalize_uuid(doc["service_uuid"], context=f"{profile_id}.service_uuid"),
        control_char_uuid=_normalize_uuid(
            doc["control_char_uuid"],
            context=f"{profile_id}.control_char_uuid",
        ),
        telemetry_char_uuid=_normalize_uuid(
            doc["telemetry_char_uuid"],
            context=f"{profile_id}.telemetry_char_uuid",
        ),
        secret=_normalize_secret(doc.get("secret", DEFAULT_SECRET), context=f"{profile_id}.secret"),
        reconnect=ReconnectSettings(
            max_attempts=int(reconnect_doc.get("max_attempts", defaults.max_attempts)),
            base_delay_s=float(reconnect_doc.get("base_delay_s", defaults.base_delay_s)),
        ),
        vocabulary=Vocabulary(
            closed=tuple(telemetry_doc.get("closed", DEFAULT_VOCABULARY.closed)),
            opened=tuple(telemetry_doc.get("opened", DEFAULT_VOCABULARY.opened)),
        ),
        sync_key=doc.get("sync_key", DEFAULT_SYNC_KEY),
        address=_normalize_address(doc["address"], context=f"{profile_id}.address")
        if "address" in doc
        else None,
        write_with_response=_normalize_bool(
            doc.get("write_with_response", True),
            context=f"{profile_id}.write_with_response",
        ),
        connect_timeout_s=float(doc.get("connect_timeout_s", 10.0)),
    )


def _iter_packaged_profile_paths() -> list[Traversable]:
    profile_root = resources.files("ventctl.profiles")
    return [item for item in profile_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_profile_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _profile_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_profiles() -> LoadedProfiles:
    profiles: dict[str, Profile] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_profile_paths(), key=lambda p: p.name):
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        profiles[profile.id] = profile

    for path in _iter_user_profile_paths():
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        if profile.id in profiles:
            warning = f"User profile '{profile.id}' overrides packaged profile"
            LOGGER.warning(warning)
            warnings.append(warning)
        profiles[profile.id] = profile

    return LoadedProfiles(profiles=profiles, warnings=tuple(warnings))
