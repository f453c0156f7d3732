"""Profile loading and validation for YAML-based reader profiles."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from magtekctl.core.errors import ProfileLoadError, ProfileValidationError
from magtekctl.core.model import (
    DEFAULT_FALLBACK_NAME,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_READ_TIMEOUT_MS,
    DEFAULT_REPORT_SIZE,
    PollingSpec,
    ReaderProfile,
)

_USB_ID_RE = re.compile(r"^(0x)?[0-9a-f]{1,4}$")
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
    profiles: dict[str, ReaderProfile]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("magtekctl.schemas").joinpath("profile.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _profile_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "magtekctl/profiles", xdg_data / "magtekctl/profiles"


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


def _normalize_usb_id(value: Any, *, context: str) -> int:
    if not isinstance(value, str):
        raise ProfileValidationError(f"{context} must be a quoted hex string")
    normalized = value.strip().lower()
    if not _USB_ID_RE.match(normalized):
        raise ProfileValidationError(f"{context} must be a 16-bit hex id")
    return int(normalized, 16)


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


def _normalize_fallback_name(value: str, *, context: str) -> str:
    try:
        value.format(product_id=0)
    except (KeyError, IndexError, ValueError) as exc:
        raise ProfileValidationError(
            f"{context} may only reference {{product_id}}: {exc}"
        ) from exc
    return value


def _build_profile(doc: dict[str, Any], source: Path | Traversable) -> ReaderProfile:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ProfileValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    match = doc["match"]
    products: dict[int, str] = {}
    for product_hex, product_name in match["products"].items():
        context = f"{doc['id']}.match.products.{product_hex}"
        product_id = _normalize_usb_id(product_hex, context=context)
        if product_id in products:
            raise ProfileValidationError(f"{context} duplicates product 0x{product_id:04x}")
        products[product_id] = product_name

    polling_doc = doc.get("polling", {})
    polling = PollingSpec(
        interval_ms=int(polling_doc.get("interval_ms", DEFAULT_POLL_INTERVAL_MS)),
        read_timeout_ms=int(polling_doc.get("read_timeout_ms", DEFAULT_READ_TIMEOUT_MS)),
        report_size=int(polling_doc.get("report_size", DEFAULT_REPORT_SIZE)),
    )
    if polling.read_timeout_ms > polling.interval_ms:
        raise ProfileValidationError(
            f"{doc['id']}.polling.read_timeout_ms must not exceed interval_ms"
        )

    return ReaderProfile(
        id=doc["id"],
        name=doc["name"],
        vendor_id=_normalize_usb_id(match["vendor_id"], context=f"{doc['id']}.match.vendor_id"),
        products=products,
        any_product=_normalize_bool(
            match.get("any_product", False),
            context=f"{doc['id']}.match.any_product",
        ),
        fallback_name=_normalize_fallback_name(
            match.get("fallback_name", DEFAULT_FALLBACK_NAME),
            context=f"{doc['id']}.match.fallback_name",
        ),
        polling=polling,
    )


def _iter_packaged_profile_paths() -> list[Traversable]:
    profile_root = resources.files("magtekctl.profiles")
    return [item for item in profile_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_profile_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _profile_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_profiles() -> LoadedProfiles:
    profiles: dict[str, ReaderProfile] = {}
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
