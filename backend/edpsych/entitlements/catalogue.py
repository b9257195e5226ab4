"""
Tier catalogue - load and validate config/plans.yml.

Provides:
- TierDefinition: display name, audience, rank, default limits and the
  complete feature row for one tier
- FeatureDefinition: display metadata for one feature
- Catalogue: immutable, validated view over all tiers and features
- load_catalogue(): read the YAML once at process start

The catalogue is built once in the application lifespan and passed to
whatever needs it. Any gap (missing tier, partial feature row, bad limit)
raises CatalogueConfigError so the process refuses to start.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from edpsych.entitlements.errors import (
    CatalogueConfigError,
    UnknownFeatureError,
    UnknownTierError,
)
from edpsych.entitlements.models import (
    Audience,
    Feature,
    Limit,
    ResourceKind,
    Tier,
    parse_limit,
)

logger = logging.getLogger(__name__)

CATALOGUE_FILENAME = "plans.yml"


@dataclass(frozen=True)
class FeatureDefinition:
    """Display metadata for a feature."""

    feature: Feature
    name: str
    description: str = ""


@dataclass(frozen=True)
class TierDefinition:
    """A single catalogue entry. Immutable once loaded."""

    tier: Tier
    name: str
    audience: Audience
    rank: int
    limits: Mapping[ResourceKind, Limit]
    features: Mapping[Feature, bool]
    purchasable: bool = True

    def includes(self, feature: Feature) -> bool:
        return self.features[feature]

    def limit_for(self, resource_kind: ResourceKind) -> Limit:
        return self.limits[resource_kind]

    def enabled_features(self) -> List[Feature]:
        """Included features, in catalogue order."""
        return [f for f in Feature if self.features[f]]


def coerce_feature(feature: Union[Feature, str]) -> Feature:
    try:
        return Feature(feature)
    except ValueError:
        raise UnknownFeatureError(feature) from None


def coerce_tier(tier: Union[Tier, str]) -> Tier:
    try:
        return Tier(tier)
    except ValueError:
        raise UnknownTierError(tier) from None


class Catalogue:
    """
    Validated tier/feature catalogue.

    Lookups are fixed mappings from enum member to definition. Instances are
    read-only after construction and safe to share between threads.

    Usage:
        catalogue = load_catalogue()
        tier = catalogue.get_tier(Tier.SCHOOL_SMALL)
        if tier.includes(Feature.BATTLE_ROYALE):
            ...
    """

    def __init__(
        self,
        tiers: Mapping[Tier, TierDefinition],
        features: Mapping[Feature, FeatureDefinition],
        version: Optional[str] = None,
        source: Optional[str] = None,
    ):
        self._tiers = MappingProxyType(dict(tiers))
        self._features = MappingProxyType(dict(features))
        self.version = version
        self.source = source
        self._validate()
        self._by_rank: Tuple[TierDefinition, ...] = tuple(
            sorted(self._tiers.values(), key=lambda t: (t.rank, list(Tier).index(t.tier)))
        )

    def _validate(self) -> None:
        missing_tiers = [t.value for t in Tier if t not in self._tiers]
        if missing_tiers:
            raise CatalogueConfigError(f"tiers missing from catalogue: {missing_tiers}", self.source)

        missing_features = [f.value for f in Feature if f not in self._features]
        if missing_features:
            raise CatalogueConfigError(
                f"features missing from catalogue: {missing_features}", self.source
            )

        for definition in self._tiers.values():
            incomplete = [f.value for f in Feature if f not in definition.features]
            if incomplete:
                raise CatalogueConfigError(
                    f"tier '{definition.tier.value}' has no inclusion entry for {incomplete}",
                    self.source,
                )
            missing_limits = [k.limit_key for k in ResourceKind if k not in definition.limits]
            if missing_limits:
                raise CatalogueConfigError(
                    f"tier '{definition.tier.value}' is missing limits {missing_limits}",
                    self.source,
                )

    # ------------------------------------------------------------------
    # Construction from parsed YAML
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], source: Optional[str] = None) -> "Catalogue":
        """Build a catalogue from the parsed plans.yml structure."""
        if not isinstance(raw, dict):
            raise CatalogueConfigError("catalogue root must be a mapping", source)

        features = cls._parse_features(raw.get("features"), source)
        tiers = cls._parse_tiers(raw.get("tiers"), source)
        version = raw.get("version")
        return cls(tiers, features, version=str(version) if version else None, source=source)

    @staticmethod
    def _parse_features(data: Any, source: Optional[str]) -> Dict[Feature, FeatureDefinition]:
        if not isinstance(data, dict) or not data:
            raise CatalogueConfigError("'features' must be a non-empty mapping", source)

        features: Dict[Feature, FeatureDefinition] = {}
        for key, meta in data.items():
            try:
                feature = Feature(key)
            except ValueError:
                raise CatalogueConfigError(f"unknown feature '{key}'", source) from None
            meta = meta or {}
            if not isinstance(meta, dict):
                raise CatalogueConfigError(f"feature '{key}' must be a mapping", source)
            features[feature] = FeatureDefinition(
                feature=feature,
                name=str(meta.get("name") or key.replace("_", " ").title()),
                description=str(meta.get("description", "")),
            )
        return features

    @staticmethod
    def _parse_tiers(data: Any, source: Optional[str]) -> Dict[Tier, TierDefinition]:
        if not isinstance(data, list) or not data:
            raise CatalogueConfigError("'tiers' must be a non-empty list", source)

        tiers: Dict[Tier, TierDefinition] = {}
        for entry in data:
            if not isinstance(entry, dict):
                raise CatalogueConfigError("each tier entry must be a mapping", source)

            tier_id = entry.get("id")
            try:
                tier = Tier(tier_id)
            except ValueError:
                raise CatalogueConfigError(f"unknown tier '{tier_id}'", source) from None
            if tier in tiers:
                raise CatalogueConfigError(f"duplicate tier '{tier_id}'", source)

            rank = entry.get("rank")
            if isinstance(rank, bool) or not isinstance(rank, int):
                raise CatalogueConfigError(f"tier '{tier_id}' rank must be an integer", source)

            try:
                audience = Audience(entry.get("audience"))
            except ValueError:
                raise CatalogueConfigError(
                    f"tier '{tier_id}' has unknown audience {entry.get('audience')!r}", source
                ) from None

            tiers[tier] = TierDefinition(
                tier=tier,
                name=str(entry.get("name") or tier_id),
                audience=audience,
                rank=rank,
                limits=MappingProxyType(_parse_limits(tier_id, entry.get("limits"), source)),
                features=MappingProxyType(_parse_feature_row(tier_id, entry.get("features"), source)),
                purchasable=bool(entry.get("purchasable", True)),
            )
        return tiers

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_tier(self, tier: Union[Tier, str]) -> TierDefinition:
        return self._tiers[coerce_tier(tier)]

    def get_feature(self, feature: Union[Feature, str]) -> FeatureDefinition:
        return self._features[coerce_feature(feature)]

    def feature_name(self, feature: Union[Feature, str]) -> str:
        return self.get_feature(feature).name

    def tier_name(self, tier: Union[Tier, str]) -> str:
        return self.get_tier(tier).name

    @property
    def tiers(self) -> Tuple[TierDefinition, ...]:
        """All tiers ordered by rank; ties keep enum declaration order."""
        return self._by_rank

    @property
    def features(self) -> Tuple[FeatureDefinition, ...]:
        return tuple(self._features[f] for f in Feature)

    def validate_feature_references(self, features: Iterable[Any], context: str = "") -> None:
        """
        Ensure every referenced feature identifier exists in the catalogue.

        Used at startup for route gates registered with require_feature().
        """
        unknown = []
        for feature in features:
            try:
                coerce_feature(feature)
            except UnknownFeatureError:
                unknown.append(feature)
        if unknown:
            where = f" in {context}" if context else ""
            raise CatalogueConfigError(f"unknown features referenced{where}: {unknown}", self.source)


def _parse_limits(tier_id: str, data: Any, source: Optional[str]) -> Dict[ResourceKind, Limit]:
    if not isinstance(data, dict):
        raise CatalogueConfigError(f"tier '{tier_id}' limits must be a mapping", source)

    known_keys = {kind.limit_key: kind for kind in ResourceKind}
    unknown = [key for key in data if key not in known_keys]
    if unknown:
        raise CatalogueConfigError(f"tier '{tier_id}' has unknown limits {unknown}", source)

    limits: Dict[ResourceKind, Limit] = {}
    for key, kind in known_keys.items():
        if key not in data:
            raise CatalogueConfigError(f"tier '{tier_id}' is missing limit '{key}'", source)
        try:
            limits[kind] = parse_limit(data[key])
        except ValueError as e:
            raise CatalogueConfigError(f"tier '{tier_id}' {key}: {e}", source) from None
    return limits


def _parse_feature_row(tier_id: str, data: Any, source: Optional[str]) -> Dict[Feature, bool]:
    if not isinstance(data, dict):
        raise CatalogueConfigError(f"tier '{tier_id}' features must be a mapping", source)

    row: Dict[Feature, bool] = {}
    for key, included in data.items():
        try:
            feature = Feature(key)
        except ValueError:
            raise CatalogueConfigError(
                f"tier '{tier_id}' references unknown feature '{key}'", source
            ) from None
        if not isinstance(included, bool):
            raise CatalogueConfigError(
                f"tier '{tier_id}' feature '{key}' must be true or false, got {included!r}",
                source,
            )
        row[feature] = included

    missing = [f.value for f in Feature if f not in row]
    if missing:
        raise CatalogueConfigError(
            f"tier '{tier_id}' has no inclusion entry for {missing}", source
        )
    return row


def _resolve_catalogue_path(config_path: Optional[str] = None) -> Path:
    """Resolve the catalogue file: explicit path, CATALOGUE_PATH, then known locations."""
    explicit = config_path or os.getenv("CATALOGUE_PATH")
    if explicit:
        return Path(explicit)

    candidates = [
        Path(__file__).parent.parent / "config" / CATALOGUE_FILENAME,  # edpsych/config/
        Path(os.getcwd()) / "config" / CATALOGUE_FILENAME,
        Path(os.getcwd()) / "backend" / "edpsych" / "config" / CATALOGUE_FILENAME,
    ]

    for path in candidates:
        resolved = path.resolve()
        if resolved.exists():
            return resolved

    raise CatalogueConfigError(
        f"{CATALOGUE_FILENAME} not found in any of: {[str(p) for p in candidates]}"
    )


def load_catalogue(config_path: Optional[str] = None) -> Catalogue:
    """
    Load and validate the catalogue.

    Call once at process start. Raises CatalogueConfigError for a missing,
    unparseable or incomplete file.
    """
    path = _resolve_catalogue_path(config_path)
    logger.info("Loading tier catalogue from %s", path)

    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        raise CatalogueConfigError("catalogue file not found", str(path)) from None
    except yaml.YAMLError as e:
        raise CatalogueConfigError(f"catalogue is not valid YAML: {e}", str(path)) from e

    catalogue = Catalogue.from_dict(raw, source=str(path))
    logger.info(
        "Loaded tier catalogue",
        extra={
            "catalogue_version": catalogue.version,
            "tier_count": len(catalogue.tiers),
            "feature_count": len(catalogue.features),
        },
    )
    return catalogue
