"""Configuration records for the segmentation engines.

Each engine takes a closed configuration record. Enumerated fields are
``Enum`` members so an unknown mode or shape cannot be represented once a
record has been built; ``from_dict`` converts raw values and raises
``ConfigurationError`` for anything it does not recognise.

``EngineDefaults.load`` reads the default records from a YAML file:

    threshold:
      lower: 100
      upper: 1000
      connectivity: 26
      fill_holes: true
    region_growing:
      similarity: {mode: intensity, threshold: 50}
      constraints: {max_region_size: 100000, min_region_size: 10}
      stop_criteria: {max_iterations: 1000, convergence_threshold: 0.01}
    editing:
      kernel_size: 3
      kernel_shape: sphere
    brush:
      radius: 5
      hardness: 0.8
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, TypeVar

import yaml

from .SegmentationDataStructures import Point3D, as_point
from .SegmentationErrors import ConfigurationError

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


class Connectivity(IntEnum):
    """Voxel adjacency: faces, faces+edges, or faces+edges+corners."""

    FACE = 6
    EDGE = 18
    CORNER = 26


class SimilarityMode(Enum):
    """Scoring used to accept neighbours during region growing."""

    INTENSITY = "intensity"
    GRADIENT = "gradient"
    ADAPTIVE = "adaptive"


class KernelShape(Enum):
    """Structuring element shapes for morphology."""

    SPHERE = "sphere"
    CUBE = "cube"
    CROSS = "cross"


class BrushMode(Enum):
    PAINT = "paint"
    ERASE = "erase"
    FILL = "fill"


class BrushShape(Enum):
    CIRCLE = "circle"
    SQUARE = "square"


class EditingOperation(Enum):
    """Editing operations reported in ``EditingResult``."""

    SMOOTH = "smooth"
    DILATE = "dilate"
    ERODE = "erode"
    OPEN = "open"
    CLOSE = "close"
    FILL_HOLES = "fill_holes"
    REMOVE_ISLANDS = "remove_islands"
    UNION = "union"
    INTERSECTION = "intersection"
    DIFFERENCE = "difference"


def parse_enum(enum_cls: type[E], value: Any, field_name: str) -> E:
    """Convert a raw value to a member of ``enum_cls``.

    Args:
        enum_cls: Target enum class.
        value: Enum member, value, or member name (case-insensitive).
        field_name: Name used in the error message.

    Returns:
        The matching enum member.

    Raises:
        ConfigurationError: If the value matches no member.
    """
    if isinstance(value, enum_cls):
        return value

    if isinstance(value, str) and value.isdigit():
        value = int(value)

    try:
        return enum_cls(value)
    except ValueError:
        pass

    if isinstance(value, str):
        for member in enum_cls:
            if member.name.lower() == value.lower():
                return member

    valid = ", ".join(str(m.value) for m in enum_cls)
    raise ConfigurationError(f"Unknown {field_name} '{value}' (expected one of: {valid})")


def _parse_points(values: Any) -> list[Point3D]:
    if not values:
        return []
    try:
        return [as_point(v) for v in values]
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid seed point list {values!r}: {e}") from e


def _check_unknown_keys(cls: type, data: dict) -> None:
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} keys: {', '.join(sorted(unknown))}")


def _normalise_enums(record: Any, enum_fields: dict[str, type[Enum]]) -> None:
    for name, enum_cls in enum_fields.items():
        setattr(record, name, parse_enum(enum_cls, getattr(record, name), name))


def _enum_errors(record: Any, enum_fields: dict[str, type[Enum]]) -> list[str]:
    errors = []
    for name, enum_cls in enum_fields.items():
        value = getattr(record, name)
        if not isinstance(value, enum_cls):
            errors.append(f"{name} must be a {enum_cls.__name__}, got {value!r}")
    return errors


def _raise_if_invalid(record: Any) -> None:
    errors = record.validate()
    if errors:
        raise ConfigurationError("; ".join(errors))


@dataclass
class ThresholdConfig:
    """Intensity range segmentation settings."""

    lower: float = 100.0
    upper: float = 1000.0
    connectivity: Connectivity = Connectivity.CORNER
    seed_points: list[Point3D] = field(default_factory=list)
    fill_holes: bool = True
    smoothing: bool = False

    _ENUM_FIELDS = {"connectivity": Connectivity}

    def __post_init__(self):
        _normalise_enums(self, self._ENUM_FIELDS)

    def validate(self) -> list[str]:
        """Validate configuration.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = _enum_errors(self, self._ENUM_FIELDS)
        if math.isnan(self.lower) or math.isnan(self.upper):
            errors.append("Threshold bounds must be numbers")
        elif self.lower > self.upper:
            errors.append(
                f"Lower threshold ({self.lower}) must not exceed upper threshold ({self.upper})"
            )
        return errors

    @classmethod
    def from_dict(cls, data: dict) -> ThresholdConfig:
        _check_unknown_keys(cls, data)
        defaults = cls()
        return cls(
            lower=float(data.get("lower", defaults.lower)),
            upper=float(data.get("upper", defaults.upper)),
            connectivity=parse_enum(
                Connectivity, data.get("connectivity", defaults.connectivity), "connectivity"
            ),
            seed_points=_parse_points(data.get("seed_points")),
            fill_holes=bool(data.get("fill_holes", defaults.fill_holes)),
            smoothing=bool(data.get("smoothing", defaults.smoothing)),
        )

    def to_dict(self) -> dict:
        return {
            "lower": self.lower,
            "upper": self.upper,
            "connectivity": int(self.connectivity),
            "seed_points": [tuple(p) for p in self.seed_points],
            "fill_holes": self.fill_holes,
            "smoothing": self.smoothing,
        }


@dataclass
class SimilarityConfig:
    mode: SimilarityMode = SimilarityMode.INTENSITY
    threshold: float = 50.0
    radius: float = 5.0
    """Distance at which the adaptive factor saturates (adaptive mode only)."""

    def __post_init__(self):
        _normalise_enums(self, {"mode": SimilarityMode})


@dataclass
class GrowthConstraints:
    max_region_size: int | None = 100000
    min_region_size: int | None = 10
    max_distance: float = math.inf


@dataclass
class StopCriteria:
    max_iterations: int = 1000
    convergence_threshold: float = 0.01


@dataclass
class RegionGrowingConfig:
    """Seeded region growing settings.

    Seed points are required when growing but may be left empty in the
    defaults loaded from a file; they are supplied per call.
    """

    seed_points: list[Point3D] = field(default_factory=list)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    constraints: GrowthConstraints = field(default_factory=GrowthConstraints)
    stop_criteria: StopCriteria = field(default_factory=StopCriteria)

    def validate(self, require_seeds: bool = True) -> list[str]:
        """Validate configuration.

        Args:
            require_seeds: Report an empty seed list as an error.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = _enum_errors(self.similarity, {"mode": SimilarityMode})

        if require_seeds and not self.seed_points:
            errors.append("Region growing requires at least one seed point")

        if self.similarity.threshold < 0:
            errors.append(f"Similarity threshold must be >= 0, got {self.similarity.threshold}")

        if self.similarity.radius <= 0:
            errors.append(f"Adaptive radius must be > 0, got {self.similarity.radius}")

        if self.stop_criteria.max_iterations < 1:
            errors.append(
                f"max_iterations must be >= 1, got {self.stop_criteria.max_iterations}"
            )

        if self.constraints.max_region_size is not None and self.constraints.max_region_size < 1:
            errors.append(
                f"max_region_size must be >= 1, got {self.constraints.max_region_size}"
            )

        if self.constraints.max_distance < 0:
            errors.append(f"max_distance must be >= 0, got {self.constraints.max_distance}")

        return errors

    @classmethod
    def from_dict(cls, data: dict) -> RegionGrowingConfig:
        _check_unknown_keys(cls, data)
        sim = dict(data.get("similarity") or {})
        cons = dict(data.get("constraints") or {})
        stop = dict(data.get("stop_criteria") or {})
        _check_unknown_keys(SimilarityConfig, sim)
        _check_unknown_keys(GrowthConstraints, cons)
        _check_unknown_keys(StopCriteria, stop)

        if "mode" in sim:
            sim["mode"] = parse_enum(SimilarityMode, sim["mode"], "similarity mode")
        if cons.get("max_distance") is None:
            cons.pop("max_distance", None)

        return cls(
            seed_points=_parse_points(data.get("seed_points")),
            similarity=SimilarityConfig(**sim),
            constraints=GrowthConstraints(**cons),
            stop_criteria=StopCriteria(**stop),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["seed_points"] = [tuple(p) for p in self.seed_points]
        data["similarity"]["mode"] = self.similarity.mode.value
        return data


@dataclass
class EditingConfig:
    """Morphology and island removal settings.

    ``kernel_size`` is the full kernel width; the kernel radius is
    ``kernel_size // 2``.
    """

    iterations: int = 1
    kernel_size: int = 3
    kernel_shape: KernelShape = KernelShape.SPHERE
    connectivity: Connectivity = Connectivity.CORNER
    min_island_size: int = 10

    _ENUM_FIELDS = {"kernel_shape": KernelShape, "connectivity": Connectivity}

    def __post_init__(self):
        _normalise_enums(self, self._ENUM_FIELDS)

    @property
    def kernel_radius(self) -> int:
        return self.kernel_size // 2

    def validate(self) -> list[str]:
        errors = _enum_errors(self, self._ENUM_FIELDS)
        if self.iterations < 1:
            errors.append(f"iterations must be >= 1, got {self.iterations}")
        if self.kernel_size < 1:
            errors.append(f"kernel_size must be >= 1, got {self.kernel_size}")
        if self.kernel_shape == KernelShape.SPHERE and self.kernel_radius < 1:
            errors.append(
                f"Sphere kernel needs kernel_size >= 2 (radius >= 1), got {self.kernel_size}"
            )
        if self.min_island_size < 0:
            errors.append(f"min_island_size must be >= 0, got {self.min_island_size}")
        return errors

    @classmethod
    def from_dict(cls, data: dict) -> EditingConfig:
        _check_unknown_keys(cls, data)
        defaults = cls()
        return cls(
            iterations=int(data.get("iterations", defaults.iterations)),
            kernel_size=int(data.get("kernel_size", defaults.kernel_size)),
            kernel_shape=parse_enum(
                KernelShape, data.get("kernel_shape", defaults.kernel_shape), "kernel shape"
            ),
            connectivity=parse_enum(
                Connectivity, data.get("connectivity", defaults.connectivity), "connectivity"
            ),
            min_island_size=int(data.get("min_island_size", defaults.min_island_size)),
        )

    def to_dict(self) -> dict:
        return {
            "iterations": self.iterations,
            "kernel_size": self.kernel_size,
            "kernel_shape": self.kernel_shape.value,
            "connectivity": int(self.connectivity),
            "min_island_size": self.min_island_size,
        }


@dataclass
class BrushToolConfig:
    """Brush settings.

    Hardness runs from 0 (soft, falloff from the centre) to 1 (hard edge).
    ``sphere_mode`` extends the in-slice shapes through z.
    """

    radius: float = 5.0
    hardness: float = 0.8
    mode: BrushMode = BrushMode.PAINT
    pressure_sensitive: bool = False
    shape: BrushShape = BrushShape.CIRCLE
    spacing: float = 1.0
    sphere_mode: bool = False

    _ENUM_FIELDS = {"mode": BrushMode, "shape": BrushShape}

    def __post_init__(self):
        _normalise_enums(self, self._ENUM_FIELDS)

    def validate(self) -> list[str]:
        errors = _enum_errors(self, self._ENUM_FIELDS)
        if self.radius <= 0:
            errors.append(f"Brush radius must be > 0, got {self.radius}")
        if not 0.0 <= self.hardness <= 1.0:
            errors.append(f"Brush hardness must be between 0 and 1, got {self.hardness}")
        if self.spacing < 0:
            errors.append(f"Brush spacing must be >= 0, got {self.spacing}")
        return errors

    @classmethod
    def from_dict(cls, data: dict) -> BrushToolConfig:
        _check_unknown_keys(cls, data)
        defaults = cls()
        return cls(
            radius=float(data.get("radius", defaults.radius)),
            hardness=float(data.get("hardness", defaults.hardness)),
            mode=parse_enum(BrushMode, data.get("mode", defaults.mode), "brush mode"),
            pressure_sensitive=bool(data.get("pressure_sensitive", defaults.pressure_sensitive)),
            shape=parse_enum(BrushShape, data.get("shape", defaults.shape), "brush shape"),
            spacing=float(data.get("spacing", defaults.spacing)),
            sphere_mode=bool(data.get("sphere_mode", defaults.sphere_mode)),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["shape"] = self.shape.value
        return data


@dataclass
class EngineDefaults:
    """Default configuration records a facade starts with."""

    threshold: ThresholdConfig = field(default_factory=ThresholdConfig)
    region_growing: RegionGrowingConfig = field(default_factory=RegionGrowingConfig)
    editing: EditingConfig = field(default_factory=EditingConfig)
    brush: BrushToolConfig = field(default_factory=BrushToolConfig)

    # Source path (set when loading)
    source_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> EngineDefaults:
        """Build defaults from a parsed document.

        Args:
            data: Mapping with optional ``threshold``, ``region_growing``,
                ``editing`` and ``brush`` sections.

        Returns:
            Validated EngineDefaults.

        Raises:
            ConfigurationError: If a section is malformed or invalid.
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Expected a mapping at the top level, got {type(data).__name__}")

        unknown = set(data) - {"threshold", "region_growing", "editing", "brush"}
        if unknown:
            raise ConfigurationError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

        defaults = cls(
            threshold=ThresholdConfig.from_dict(data.get("threshold") or {}),
            region_growing=RegionGrowingConfig.from_dict(data.get("region_growing") or {}),
            editing=EditingConfig.from_dict(data.get("editing") or {}),
            brush=BrushToolConfig.from_dict(data.get("brush") or {}),
        )

        _raise_if_invalid(defaults.threshold)
        errors = defaults.region_growing.validate(require_seeds=False)
        if errors:
            raise ConfigurationError("; ".join(errors))
        _raise_if_invalid(defaults.editing)
        _raise_if_invalid(defaults.brush)
        return defaults

    @classmethod
    def load(cls, config_path: Path | str) -> EngineDefaults:
        """Load defaults from a YAML file.

        Args:
            config_path: Path to YAML config file.

        Returns:
            Loaded EngineDefaults.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ConfigurationError: If config is invalid.
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Could not parse {config_path}: {e}") from e

        config = cls.from_dict(data)
        config.source_path = config_path

        logger.info(f"Loaded engine defaults from {config_path}")
        return config

    def to_dict(self) -> dict:
        return {
            "threshold": self.threshold.to_dict(),
            "region_growing": self.region_growing.to_dict(),
            "editing": self.editing.to_dict(),
            "brush": self.brush.to_dict(),
        }
