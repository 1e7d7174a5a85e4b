import pytest
import numpy as np
import sys
import os

# Add the src directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from fused_positioning.config import RangingConfiguration
from fused_positioning.sensors.ranging import (Anchor, RangingMeasurement, RangingSource,
                                               TrilaterationSolver, classify_proximity,
                                               horizontal_dilution_of_precision, rate_residual,
                                               rssi_to_distance, trilateration_weight)
from fused_positioning.types import RangingSample, RssiSample, SourceType


@pytest.fixture
def square_anchors():
    """Four anchors on the corners of a 10 m square"""
    return {
        'a1': Anchor('a1', [0.0, 0.0, 0.0]),
        'a2': Anchor('a2', [10.0, 0.0, 0.0]),
        'a3': Anchor('a3', [0.0, 10.0, 0.0]),
        'a4': Anchor('a4', [10.0, 10.0, 0.0]),
    }


def exact_measurements(anchors, position, ids=None, quality=0.1):
    position = np.asarray(position, dtype=float)
    ids = ids or list(anchors)
    return [RangingMeasurement(i, float(np.linalg.norm(anchors[i].position - position)), quality)
            for i in ids]


class TestPathLossModel:
    """Test RSSI to distance conversion and proximity classes"""

    def test_reference_rssi_is_one_meter(self):
        """Test the calibrated RSSI maps to 1 m"""
        assert rssi_to_distance(-59.0) == pytest.approx(1.0)

    def test_path_loss_exponent(self):
        """Test 25 dB of extra loss is 10x distance with n = 2.5"""
        assert rssi_to_distance(-84.0, -59.0, 2.5) == pytest.approx(10.0)

    def test_distance_floor(self):
        """Test very strong signals are floored at 0.1 m"""
        assert rssi_to_distance(-20.0) == 0.1

    def test_proximity_classes(self):
        """Test proximity buckets by distance"""
        assert classify_proximity(0.2) == 'immediate'
        assert classify_proximity(1.0) == 'near'
        assert classify_proximity(5.0) == 'far'
        assert classify_proximity(25.0) == 'unknown'

    def test_residual_rating(self):
        """Test residual error quality ratings"""
        assert rate_residual(0.05) == 'excellent'
        assert rate_residual(0.2) == 'good'
        assert rate_residual(0.4) == 'fair'
        assert rate_residual(1.0) == 'poor'

    def test_weight(self):
        """Test fusion weight grows with anchors and falls with residual"""
        assert trilateration_weight(4, 0.0) == 1.0
        assert trilateration_weight(3, 0.0) == pytest.approx(0.75)
        assert trilateration_weight(4, 1.0) == pytest.approx(0.5)


class TestTrilaterationSolver:
    """Test position solving from anchor distances"""

    def test_exact_three_anchors(self, square_anchors):
        """Test exact distances to three anchors recover the true position"""
        solver = TrilaterationSolver(square_anchors)
        result = solver.solve(exact_measurements(square_anchors, [3.0, 4.0, 0.0], ['a1', 'a2', 'a3']))

        assert result is not None
        np.testing.assert_allclose(result.position, [3.0, 4.0, 0.0], atol=1e-6)
        assert result.residual_error < 1e-6
        assert result.method == 'least_squares'
        assert result.confidence == pytest.approx(0.9)
        assert result.quality_rating == 'excellent'

    def test_exact_four_anchors(self, square_anchors):
        """Test an overdetermined exact solve"""
        solver = TrilaterationSolver(square_anchors)
        result = solver.solve(exact_measurements(square_anchors, [2.0, 7.0, 0.0]))

        np.testing.assert_allclose(result.position, [2.0, 7.0, 0.0], atol=1e-6)
        assert len(result.used_anchors) == 4
        assert np.isfinite(result.hdop)

    def test_fewer_than_three_anchors(self, square_anchors):
        """Test two anchors are not enough"""
        solver = TrilaterationSolver(square_anchors)
        assert solver.solve(exact_measurements(square_anchors, [3.0, 4.0, 0.0], ['a1', 'a2'])) is None

    def test_unknown_anchor_ignored(self, square_anchors):
        """Test measurements from unknown anchors do not count"""
        solver = TrilaterationSolver(square_anchors)
        measurements = exact_measurements(square_anchors, [3.0, 4.0, 0.0], ['a1', 'a2'])
        measurements.append(RangingMeasurement('ghost', 5.0, 0.1))
        assert solver.solve(measurements) is None

    def test_collinear_anchors_rejected(self):
        """Test anchors on a line give no solution"""
        anchors = {
            'a': Anchor('a', [0.0, 0.0, 0.0]),
            'b': Anchor('b', [5.0, 0.0, 0.0]),
            'c': Anchor('c', [10.0, 0.0, 0.0]),
        }
        solver = TrilaterationSolver(anchors)
        assert solver.solve(exact_measurements(anchors, [3.0, 4.0, 0.0])) is None

    def test_anchors_too_close_rejected(self):
        """Test anchors closer than the minimum separation give no solution"""
        anchors = {
            'a': Anchor('a', [0.0, 0.0, 0.0]),
            'b': Anchor('b', [0.1, 0.0, 0.0]),
            'c': Anchor('c', [0.0, 10.0, 0.0]),
        }
        solver = TrilaterationSolver(anchors)
        assert solver.solve(exact_measurements(anchors, [3.0, 4.0, 0.0])) is None

    def test_best_measurements_selected(self, square_anchors):
        """Test only the max_measurements best-quality readings are used"""
        anchors = dict(square_anchors)
        anchors['a5'] = Anchor('a5', [5.0, -5.0, 0.0])
        solver = TrilaterationSolver(anchors)

        measurements = exact_measurements(anchors, [3.0, 4.0, 0.0], ['a1', 'a2', 'a3', 'a4'])
        measurements.append(RangingMeasurement('a5', 50.0, 2.0))
        result = solver.solve(measurements)

        assert 'a5' not in result.used_anchors
        np.testing.assert_allclose(result.position, [3.0, 4.0, 0.0], atol=1e-6)

    def test_duplicate_anchor_keeps_best(self, square_anchors):
        """Test the best reading per anchor wins"""
        solver = TrilaterationSolver(square_anchors)
        measurements = exact_measurements(square_anchors, [3.0, 4.0, 0.0], ['a1', 'a2', 'a3'])
        measurements.append(RangingMeasurement('a1', 40.0, 5.0))
        result = solver.solve(measurements)

        np.testing.assert_allclose(result.position, [3.0, 4.0, 0.0], atol=1e-6)

    def test_weighted_centroid_without_refinement(self, square_anchors):
        """Test the centroid stage alone averages the anchors by quality"""
        solver = TrilaterationSolver(square_anchors, RangingConfiguration(refine=False))
        result = solver.solve(exact_measurements(square_anchors, [5.0, 5.0, 0.0]))

        assert result.method == 'weighted_centroid'
        np.testing.assert_allclose(result.position, [5.0, 5.0, 0.0], atol=1e-9)

    def test_confidence_bounds(self, square_anchors):
        """Test confidence stays within [0.1, 0.9]"""
        solver = TrilaterationSolver(square_anchors, RangingConfiguration(refine=False))
        result = solver.solve(exact_measurements(square_anchors, [1.0, 1.0, 0.0]))

        assert 0.1 <= result.confidence <= 0.9
        assert result.residual_error > 0

    def test_hdop_degrades_with_geometry(self):
        """Test HDOP is lower inside the anchor polygon than far outside"""
        anchors = np.array([[0.0, 0.0, 0.0], [10.0, 0.0, 0.0], [0.0, 10.0, 0.0], [10.0, 10.0, 0.0]])
        inside = horizontal_dilution_of_precision(np.array([5.0, 5.0, 0.0]), anchors)
        outside = horizontal_dilution_of_precision(np.array([100.0, 100.0, 0.0]), anchors)
        assert inside < outside


class TestRangingSource:
    """Test per-anchor ranging state"""

    def test_uwb_ranging_estimate(self, square_anchors):
        """Test UWB distances yield a trilateration estimate"""
        source = RangingSource(square_anchors)
        for m in exact_measurements(square_anchors, [3.0, 4.0, 0.0], ['a1', 'a2', 'a3']):
            source.add_ranging(RangingSample(0.0, m.anchor_id, m.distance, 0.1))

        estimate = source.latest_estimate(now=0.5)

        assert estimate.source == SourceType.TRILATERATION
        np.testing.assert_allclose(estimate.position, [3.0, 4.0, 0.0], atol=1e-6)
        assert estimate.weight == pytest.approx(0.75, abs=1e-6)
        assert estimate.accuracy_m == pytest.approx(0.1)
        assert estimate.timestamp == 0.0
        assert estimate.metadata['anchor_count'] == 3

    def test_unknown_anchor(self, square_anchors):
        """Test samples from unknown anchors are ignored"""
        source = RangingSource(square_anchors)
        assert source.add_ranging(RangingSample(0.0, 'ghost', 3.0)) is None
        assert source.measurements() == []

    def test_distance_smoothing(self, square_anchors):
        """Test repeated ranges are smoothed by a per-anchor filter"""
        source = RangingSource(square_anchors)
        assert source.add_ranging(RangingSample(0.0, 'a1', 5.0, 0.1)) == 5.0
        smoothed = source.add_ranging(RangingSample(0.2, 'a1', 6.0, 0.1))
        assert 5.0 < smoothed < 6.0

    def test_stale_readings_expire(self, square_anchors):
        """Test readings older than the maximum age are dropped"""
        source = RangingSource(square_anchors)
        for m in exact_measurements(square_anchors, [3.0, 4.0, 0.0]):
            source.add_ranging(RangingSample(0.0, m.anchor_id, m.distance, 0.1))

        assert source.latest_estimate(now=10.0) is None
        assert source.measurements() == []
        assert source.coverage() == 0.0

    def test_rssi_smoothing(self, square_anchors):
        """Test BLE signal strength is smoothed before conversion"""
        source = RangingSource(square_anchors)

        assert source.add_rssi(RssiSample(0.0, 'a1', -59.0)) == pytest.approx(1.0)
        # 0.3 · -84 + 0.7 · -59 = -66.5 dBm
        assert source.add_rssi(RssiSample(0.5, 'a1', -84.0)) == pytest.approx(10 ** 0.3)

    def test_proximity_and_coverage(self, square_anchors):
        """Test proximity classes and anchor coverage"""
        source = RangingSource(square_anchors)
        source.add_ranging(RangingSample(0.0, 'a1', 0.3))
        source.add_ranging(RangingSample(0.0, 'a2', 2.0))
        source.add_ranging(RangingSample(0.0, 'a3', 8.0))

        assert source.proximity() == {'a1': 'immediate', 'a2': 'near', 'a3': 'far'}
        assert source.coverage() == pytest.approx(0.75)

    def test_reset(self, square_anchors):
        """Test reset forgets every reading"""
        source = RangingSource(square_anchors)
        source.add_ranging(RangingSample(0.0, 'a1', 3.0))
        source.reset()
        assert source.measurements() == []
        assert source.last_result is None
