"""
Measurement normalization for roofing estimates.

Turns satellite results, verified measurement rows, solar pulls and manual
entries into a single MeasurementSet that the rest of the estimating
pipeline consumes.
"""
import math
from typing import Dict, List, Any, Optional, Tuple, Callable
from dataclasses import dataclass, asdict
from enum import Enum
from ..core.logging import get_logger

logger = get_logger(__name__)

SQUARE_FEET_PER_SQUARE = 100

LINEAR_FEATURES = ("ridge", "hip", "valley", "eave", "rake")

QUANTITY_FIELDS = (
    "total_area_sqft", "total_squares", "perimeter_ft", "ridge_ft",
    "hip_ft", "valley_ft", "eave_ft", "rake_ft", "waste_percent",
)

# Sloped-surface factor per rise/12
PITCH_MULTIPLIERS = {
    "flat": 1.0000,
    "1/12": 1.0035,
    "2/12": 1.0138,
    "3/12": 1.0308,
    "4/12": 1.0541,
    "5/12": 1.0833,
    "6/12": 1.1180,
    "7/12": 1.1577,
    "8/12": 1.2019,
    "9/12": 1.2500,
    "10/12": 1.3017,
    "11/12": 1.3566,
    "12/12": 1.4142,
}

DEFAULT_PITCH = "4/12"


class IncompleteMeasurementError(Exception):
    """Raised when measurements cannot support a materialization pass."""


class Complexity(str, Enum):
    """Roof complexity levels"""
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXTREME = "extreme"

    @classmethod
    def parse(cls, value: Any) -> "Complexity":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.MODERATE


class MeasurementSource(str, Enum):
    """Where a MeasurementSet came from"""
    VERIFIED = "verified_measurement"
    PIPELINE_METADATA = "pipeline_metadata"
    SATELLITE = "satellite"
    SOLAR = "solar"
    MANUAL = "manual"


def pitch_multiplier(pitch: Optional[str]) -> float:
    """Area multiplier for a pitch token; unknown tokens are treated as flat."""
    if not pitch:
        return 1.0
    token = str(pitch).strip().lower()
    if token in ("0/12", "0"):
        token = "flat"
    return PITCH_MULTIPLIERS.get(token, 1.0)


def pitch_from_factor(factor: Optional[float]) -> str:
    """Nearest pitch token for a multiplier, defaulting to 4/12."""
    if not factor or factor <= 0:
        return DEFAULT_PITCH
    return min(PITCH_MULTIPLIERS, key=lambda token: abs(PITCH_MULTIPLIERS[token] - factor))


def normalize_pitch(value: Any) -> str:
    """Coerce a pitch given as token or rise number to a rise/12 token."""
    if value is None or value == "":
        return DEFAULT_PITCH
    if isinstance(value, (int, float)):
        rise = int(round(value))
        if rise <= 0:
            return "flat"
        return f"{min(rise, 12)}/12"
    token = str(value).strip().lower()
    if token in ("0/12", "0"):
        return "flat"
    return token


def _as_float(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def _feature_value(entry: Any) -> float:
    # Solar results nest lengths as {"totalLength": ...}
    if isinstance(entry, dict):
        for key in ("totalLength", "total_length", "length_ft", "length"):
            if key in entry:
                return _as_float(entry[key])
        return 0.0
    return _as_float(entry)


def extract_linear_features(features: Any) -> Dict[str, float]:
    """
    Extract ridge/hip/valley/eave/rake lengths from either input shape.

    A list of ``{"type": ..., "length_ft": ...}`` records is filtered and
    summed per type; a mapping is read by direct key lookup. Missing
    features are always 0.0.
    """
    totals = {name: 0.0 for name in LINEAR_FEATURES}
    if not features:
        return totals

    if isinstance(features, (list, tuple)):
        for record in features:
            if not isinstance(record, dict):
                continue
            kind = str(record.get("type", "")).strip().lower()
            if kind.endswith("s"):
                kind = kind[:-1]
            if kind in totals:
                totals[kind] += _as_float(record.get("length_ft", record.get("length")))
        return totals

    if isinstance(features, dict):
        for name in LINEAR_FEATURES:
            for key in (name, f"{name}s", f"{name}_ft", f"{name}_lf", f"lf.{name}"):
                if key in features:
                    totals[name] = _feature_value(features[key])
                    break
        return totals

    logger.warning("Unrecognized linear feature shape", shape=type(features).__name__)
    return totals


@dataclass
class MeasurementSet:
    """Canonical bag of roof quantities used by estimating."""
    total_area_sqft: float = 0.0
    total_squares: float = 0.0
    perimeter_ft: float = 0.0
    ridge_ft: float = 0.0
    hip_ft: float = 0.0
    valley_ft: float = 0.0
    eave_ft: float = 0.0
    rake_ft: float = 0.0
    pitch: str = DEFAULT_PITCH
    waste_percent: float = 0.0
    complexity: Complexity = Complexity.MODERATE

    def __post_init__(self):
        for name in QUANTITY_FIELDS:
            setattr(self, name, _as_float(getattr(self, name)))
        self.pitch = normalize_pitch(self.pitch)
        self.complexity = Complexity.parse(self.complexity)

    @property
    def is_complete(self) -> bool:
        return self.total_squares > 0

    def as_measure_variables(self) -> Dict[str, float]:
        """Values exposed to formulas as ``{{ measure.<name> }}``."""
        return {
            "surface_area_sf": self.total_area_sqft,
            "surface_squares": self.total_squares,
            "perimeter_lf": self.perimeter_ft,
            "ridge_lf": self.ridge_ft,
            "valley_lf": self.valley_ft,
            "hip_lf": self.hip_ft,
            "rake_lf": self.rake_ft,
            "eave_lf": self.eave_ft,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["complexity"] = self.complexity.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeasurementSet":
        fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**fields)


@dataclass
class AreaSources:
    """Candidate inputs for the total-squares fallback chain."""
    adjusted_squares: Optional[float] = None
    summary: Optional[Dict[str, Any]] = None
    manual_area_sqft: Optional[float] = None
    pitch: str = DEFAULT_PITCH
    waste_percent: float = 0.0


def _from_adjusted_squares(sources: AreaSources) -> Optional[float]:
    return _as_float(sources.adjusted_squares) or None


def _from_summary_squares(sources: AreaSources) -> Optional[float]:
    return _as_float((sources.summary or {}).get("total_squares")) or None


def _from_summary_area(sources: AreaSources) -> Optional[float]:
    area = _as_float((sources.summary or {}).get("total_area_sqft"))
    return area / SQUARE_FEET_PER_SQUARE if area else None


def _from_manual_area(sources: AreaSources) -> Optional[float]:
    area = _as_float(sources.manual_area_sqft)
    if not area:
        return None
    adjusted = area * pitch_multiplier(sources.pitch) * (1 + _as_float(sources.waste_percent) / 100)
    return adjusted / SQUARE_FEET_PER_SQUARE


# Tried in order; first non-zero result wins
SQUARES_STRATEGIES: List[Tuple[str, Callable[[AreaSources], Optional[float]]]] = [
    ("adjusted_squares", _from_adjusted_squares),
    ("summary_total_squares", _from_summary_squares),
    ("summary_total_area", _from_summary_area),
    ("manual_area", _from_manual_area),
]


def resolve_total_squares(sources: AreaSources) -> Tuple[float, Optional[str]]:
    """
    Walk the squares fallback chain.

    Returns:
        (total_squares, strategy name) or (0.0, None) when nothing resolves
    """
    for name, strategy in SQUARES_STRATEGIES:
        value = strategy(sources)
        if value:
            return value, name
    return 0.0, None


def _build_set(
    sources: AreaSources,
    linear: Dict[str, float],
    perimeter: float,
    complexity: Any,
    area_sqft: Optional[float] = None,
) -> MeasurementSet:
    squares, strategy = resolve_total_squares(sources)
    logger.debug("Resolved total squares", strategy=strategy, total_squares=squares)
    if not area_sqft:
        area_sqft = squares * SQUARE_FEET_PER_SQUARE
    if not perimeter:
        perimeter = linear["eave"] + linear["rake"]
    return MeasurementSet(
        total_area_sqft=area_sqft,
        total_squares=squares,
        perimeter_ft=perimeter,
        ridge_ft=linear["ridge"],
        hip_ft=linear["hip"],
        valley_ft=linear["valley"],
        eave_ft=linear["eave"],
        rake_ft=linear["rake"],
        pitch=sources.pitch,
        waste_percent=sources.waste_percent,
        complexity=complexity,
    )


def normalize_satellite(result: Dict[str, Any]) -> MeasurementSet:
    """Normalize a satellite measurement result."""
    summary = result.get("summary") or {}
    pitch = normalize_pitch(result.get("pitch") or summary.get("pitch"))
    waste = result.get("adjustedWastePercent", summary.get("waste_pct", 0))
    linear_source = result.get("linear_features") or result.get("linearFeatures") or result
    sources = AreaSources(
        adjusted_squares=result.get("adjustedSquares"),
        summary=summary,
        manual_area_sqft=result.get("total_area_sqft"),
        pitch=pitch,
        waste_percent=_as_float(waste),
    )
    perimeter = _as_float(result.get("perimeter_ft") or summary.get("perimeter"))
    return _build_set(
        sources,
        extract_linear_features(linear_source),
        perimeter,
        result.get("complexity", summary.get("complexity")),
        area_sqft=_as_float(summary.get("total_area_sqft")) or None,
    )


def normalize_measurement_row(row: Dict[str, Any]) -> MeasurementSet:
    """Normalize a verified measurement database row."""
    summary = row.get("summary") or {}
    pitch = normalize_pitch(summary.get("pitch") or row.get("predominant_pitch"))
    sources = AreaSources(
        adjusted_squares=row.get("adjusted_squares"),
        summary=summary,
        pitch=pitch,
        waste_percent=_as_float(summary.get("waste_pct", row.get("waste_percent", 0))),
    )
    linear_source = row.get("linear_features") or summary.get("linear") or summary
    perimeter = _as_float(summary.get("perimeter") or row.get("perimeter_ft"))
    return _build_set(
        sources,
        extract_linear_features(linear_source),
        perimeter,
        row.get("complexity", summary.get("complexity")),
        area_sqft=_as_float(summary.get("total_area_sqft")) or None,
    )


def normalize_manual(entry: Dict[str, Any]) -> MeasurementSet:
    """Normalize a manually entered roof area plus optional edge lengths."""
    pitch = normalize_pitch(entry.get("roof_pitch") or entry.get("pitch"))
    waste = _as_float(entry.get("waste_percent", entry.get("waste_factor_percent", 0)))
    sources = AreaSources(
        manual_area_sqft=entry.get("roof_area_sq_ft") or entry.get("total_area_sqft"),
        pitch=pitch,
        waste_percent=waste,
    )
    linear_source = entry.get("linear_measurements") or entry.get("linear_features") or {}
    perimeter = _as_float(entry.get("perimeter_ft") or (linear_source.get("perimeter")
                                                       if isinstance(linear_source, dict) else 0))
    return _build_set(
        sources,
        extract_linear_features(linear_source),
        perimeter,
        entry.get("complexity_level", entry.get("complexity")),
    )


def normalize_solar(result: Dict[str, Any], waste_percent: float = 0.0) -> MeasurementSet:
    """Normalize a solar-API measurement pull."""
    pitch = normalize_pitch(result.get("averagePitch"))
    area = _as_float(result.get("roofArea"))
    sources = AreaSources(
        summary={"total_area_sqft": area},
        pitch=pitch,
        waste_percent=waste_percent,
    )
    linear = extract_linear_features({
        "ridge": result.get("ridges"),
        "hip": result.get("hips"),
        "valley": result.get("valleys"),
        "eave": result.get("eaves"),
        "rake": result.get("rakes"),
    })
    return _build_set(
        sources,
        linear,
        _as_float(result.get("perimeter")),
        result.get("complexity"),
        area_sqft=area or None,
    )


def _pipeline_measurements(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not metadata:
        return None
    return metadata.get("comprehensive_measurements") or metadata.get("measurements")


# Precedence: active verified row > pipeline metadata cache > fresh satellite > manual entry
def resolve_measurements(
    verified_row: Optional[Dict[str, Any]] = None,
    pipeline_metadata: Optional[Dict[str, Any]] = None,
    satellite: Optional[Dict[str, Any]] = None,
    manual_entry: Optional[Dict[str, Any]] = None,
) -> Tuple[MeasurementSet, MeasurementSource]:
    """
    Pick the authoritative measurement source and normalize it.

    A source only wins when it produces a non-zero area; an empty verified
    row falls through instead of masking the cache.

    Raises:
        IncompleteMeasurementError: when no source yields any squares
    """
    candidates: List[Tuple[MeasurementSource, Callable[[], Optional[MeasurementSet]]]] = [
        (MeasurementSource.VERIFIED,
         lambda: normalize_measurement_row(verified_row) if verified_row else None),
        (MeasurementSource.PIPELINE_METADATA,
         lambda: (normalize_satellite(_pipeline_measurements(pipeline_metadata))
                  if _pipeline_measurements(pipeline_metadata) else None)),
        (MeasurementSource.SATELLITE,
         lambda: normalize_satellite(satellite) if satellite else None),
        (MeasurementSource.MANUAL,
         lambda: normalize_manual(manual_entry) if manual_entry else None),
    ]

    for source, build in candidates:
        measurement = build()
        if measurement is not None and measurement.is_complete:
            logger.info("Measurement source resolved", source=source.value,
                        total_squares=measurement.total_squares)
            return measurement, source

    raise IncompleteMeasurementError(
        "No measurement source produced a roof area; measure the roof or enter the area manually"
    )
