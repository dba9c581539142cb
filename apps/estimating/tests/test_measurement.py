"""
Tests for measurement normalization.
"""
import pytest

from ..services.measurement import (
    AreaSources,
    Complexity,
    IncompleteMeasurementError,
    MeasurementSet,
    MeasurementSource,
    extract_linear_features,
    normalize_manual,
    normalize_measurement_row,
    normalize_pitch,
    normalize_satellite,
    normalize_solar,
    pitch_from_factor,
    pitch_multiplier,
    resolve_measurements,
    resolve_total_squares,
)


SATELLITE_RESULT = {
    "adjustedSquares": 25,
    "adjustedWastePercent": 10,
    "ridge_ft": 40,
    "hip_ft": 10,
    "eave_ft": 120,
    "rake_ft": 60,
    "valley_ft": 0,
    "perimeter_ft": 180,
}


class TestPitch:
    """Pitch token handling"""

    def test_known_multiplier(self):
        assert pitch_multiplier("4/12") == 1.0541
        assert pitch_multiplier("12/12") == 1.4142

    def test_unknown_pitch_is_flat(self):
        assert pitch_multiplier("17/12") == 1.0
        assert pitch_multiplier(None) == 1.0

    def test_normalize_numeric_rise(self):
        assert normalize_pitch(6) == "6/12"
        assert normalize_pitch(0) == "flat"
        assert normalize_pitch(None) == "4/12"

    def test_pitch_from_factor(self):
        assert pitch_from_factor(1.118) == "6/12"
        assert pitch_from_factor(0) == "4/12"


class TestLinearFeatures:
    """Both linear feature shapes yield the same keys"""

    def test_list_shape_sums_by_type(self):
        features = [
            {"type": "ridge", "length_ft": 20},
            {"type": "ridge", "length_ft": 15.5},
            {"type": "valleys", "length_ft": 12},
            {"type": "chimney", "length_ft": 99},
        ]
        totals = extract_linear_features(features)
        assert totals["ridge"] == 35.5
        assert totals["valley"] == 12
        assert totals["hip"] == 0.0
        assert set(totals) == {"ridge", "hip", "valley", "eave", "rake"}

    def test_mapping_shape(self):
        totals = extract_linear_features({"ridge_ft": 40, "eaves": {"totalLength": 120}})
        assert totals["ridge"] == 40
        assert totals["eave"] == 120
        assert totals["rake"] == 0.0

    def test_empty_input(self):
        assert extract_linear_features(None) == {
            "ridge": 0.0, "hip": 0.0, "valley": 0.0, "eave": 0.0, "rake": 0.0,
        }


class TestAreaFallback:
    """Squares fallback chain order"""

    def test_adjusted_squares_wins(self):
        sources = AreaSources(adjusted_squares=25, summary={"total_squares": 30})
        assert resolve_total_squares(sources) == (25, "adjusted_squares")

    def test_summary_squares_then_area(self):
        assert resolve_total_squares(AreaSources(summary={"total_squares": 30})) == (30, "summary_total_squares")
        assert resolve_total_squares(AreaSources(summary={"total_area_sqft": 2200})) == (22, "summary_total_area")

    def test_manual_area_uses_pitch_and_waste(self):
        sources = AreaSources(manual_area_sqft=2000, pitch="6/12", waste_percent=10)
        squares, strategy = resolve_total_squares(sources)
        assert strategy == "manual_area"
        assert squares == pytest.approx(2000 * 1.1180 * 1.10 / 100)

    def test_nothing_resolves(self):
        assert resolve_total_squares(AreaSources()) == (0.0, None)


class TestNormalizers:
    """Source-specific normalization"""

    def test_satellite(self):
        m = normalize_satellite(SATELLITE_RESULT)
        assert m.total_squares == 25
        assert m.total_area_sqft == 2500
        assert m.waste_percent == 10
        assert m.ridge_ft == 40
        assert m.perimeter_ft == 180

    def test_perimeter_defaults_to_eaves_plus_rakes(self):
        result = dict(SATELLITE_RESULT)
        del result["perimeter_ft"]
        assert normalize_satellite(result).perimeter_ft == 180

    def test_measurement_row(self):
        row = {
            "adjusted_squares": 32.4,
            "summary": {"pitch": "7/12", "total_area_sqft": 3000, "waste_pct": 12},
            "linear_features": [{"type": "hip", "length_ft": 44}],
        }
        m = normalize_measurement_row(row)
        assert m.total_squares == 32.4
        assert m.total_area_sqft == 3000
        assert m.pitch == "7/12"
        assert m.hip_ft == 44

    def test_manual_entry(self):
        m = normalize_manual({
            "roof_area_sq_ft": 2000,
            "roof_pitch": "flat",
            "complexity_level": "complex",
            "linear_measurements": {"ridges": 30, "eaves": 80, "rakes": 40},
        })
        assert m.total_squares == 20
        assert m.complexity == Complexity.COMPLEX
        assert m.perimeter_ft == 120

    def test_solar(self):
        m = normalize_solar({
            "roofArea": 2400,
            "averagePitch": 5,
            "ridges": {"totalLength": 38},
            "eaves": {"totalLength": 110},
        })
        assert m.total_squares == 24
        assert m.pitch == "5/12"
        assert m.ridge_ft == 38

    def test_negative_and_nan_become_zero(self):
        m = MeasurementSet(total_squares=-3, ridge_ft=float("nan"))
        assert m.total_squares == 0.0
        assert m.ridge_ft == 0.0
        assert not m.is_complete

    def test_infinite_becomes_zero(self):
        m = MeasurementSet(total_squares=float("inf"), eave_ft="1e400", perimeter_ft=10)
        assert m.total_squares == 0.0
        assert m.eave_ft == 0.0
        assert m.perimeter_ft == 10
        assert not m.is_complete


class TestResolveMeasurements:
    """Source precedence"""

    def test_verified_row_beats_pipeline_cache(self):
        measurements, source = resolve_measurements(
            verified_row={"adjusted_squares": 18},
            pipeline_metadata={"comprehensive_measurements": SATELLITE_RESULT},
        )
        assert source == MeasurementSource.VERIFIED
        assert measurements.total_squares == 18

    def test_empty_verified_row_falls_through(self):
        measurements, source = resolve_measurements(
            verified_row={"summary": {}},
            pipeline_metadata={"measurements": SATELLITE_RESULT},
        )
        assert source == MeasurementSource.PIPELINE_METADATA
        assert measurements.total_squares == 25

    def test_manual_last(self):
        measurements, source = resolve_measurements(manual_entry={"roof_area_sq_ft": 1500})
        assert source == MeasurementSource.MANUAL
        assert measurements.total_squares == 15

    def test_no_source_raises(self):
        with pytest.raises(IncompleteMeasurementError):
            resolve_measurements()

    def test_measure_variables(self):
        variables = normalize_satellite(SATELLITE_RESULT).as_measure_variables()
        assert variables["surface_squares"] == 25
        assert variables["eave_lf"] == 120
