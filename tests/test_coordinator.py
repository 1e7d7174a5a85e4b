import pytest
import numpy as np
import math
from unittest.mock import Mock
import sys
import os

# Add the src directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from fused_positioning.config import FusionConfiguration, PlatformConfiguration
from fused_positioning.fusion.coordinator import FusionCoordinator
from fused_positioning.sensors.ranging import Anchor
from fused_positioning.types import (AccelerometerSample, GnssSample, MotionActivity, RangingSample,
                                     SourceEstimate, SourceType)


@pytest.fixture
def anchors():
    return {
        'a1': Anchor('a1', [0.0, 0.0, 0.0]),
        'a2': Anchor('a2', [10.0, 0.0, 0.0]),
        'a3': Anchor('a3', [0.0, 10.0, 0.0]),
    }


def gnss_fix(timestamp, accuracy=3.0, latitude=59.0, longitude=18.0):
    return GnssSample(timestamp=timestamp, latitude=latitude, longitude=longitude, accuracy=accuracy)


def feed_ranges(coordinator, anchors, position, timestamp):
    position = np.asarray(position, dtype=float)
    for anchor in anchors.values():
        distance = float(np.linalg.norm(anchor.position - position))
        coordinator.on_ranging(RangingSample(timestamp, anchor.id, distance, 0.1))


def feed_heave(coordinator, frequency_hz=0.1, amplitude=0.5, duration_s=30.0, rate_hz=20.0):
    """Feed a vertical deck oscillation through the inertial input"""
    dt = 1.0 / rate_hz
    for i in range(int(duration_s * rate_hz) + 1):
        t = i * dt
        vertical = amplitude * math.sin(2 * math.pi * frequency_hz * t)
        coordinator.on_inertial(AccelerometerSample(t, [0.0, 0.0, 9.80665 + vertical]), None, dt)
    return duration_s


def stub_sources(coordinator, gnss=None, inertial=None, trilateration=None):
    """Replace the per-source snapshots with fixed estimates"""
    coordinator.gnss.latest_estimate = Mock(return_value=gnss)
    coordinator.inertial.latest_estimate = Mock(return_value=inertial)
    coordinator.ranging.latest_estimate = Mock(return_value=trilateration)


class TestFusionCombination:
    """Test weighted combination of source estimates"""

    def test_no_sources(self):
        """Test a tick without sources produces nothing"""
        coordinator = FusionCoordinator()
        assert coordinator.tick(now=0.0) is None
        assert coordinator.current_position() is None
        assert coordinator.quality_metrics()['overall_accuracy'] == 10.0

    def test_equal_weights_average(self):
        """Test two equally weighted sources fuse to their midpoint"""
        coordinator = FusionCoordinator()
        stub_sources(
            coordinator,
            gnss=SourceEstimate(SourceType.GNSS, [0.0, 0.0, 0.0], 10.0, 0.5, 100.0),
            trilateration=SourceEstimate(SourceType.TRILATERATION, [4.0, 2.0, 0.0], 1.0, 0.5, 100.0),
        )

        fused = coordinator.tick(now=100.0)

        np.testing.assert_allclose(fused.position, [2.0, 1.0, 0.0])
        assert fused.accuracy_m == pytest.approx(5.5)
        assert fused.confidence == pytest.approx(0.5)
        assert not fused.indoor

    def test_single_source(self):
        """Test a single source passes through with its accuracy"""
        coordinator = FusionCoordinator()
        coordinator.on_gnss(gnss_fix(0.0, accuracy=3.0))

        fused = coordinator.tick(now=0.5)

        assert fused.source_types == (SourceType.GNSS,)
        assert fused.accuracy_m == pytest.approx(3.0)
        assert fused.confidence == pytest.approx(0.8)
        assert fused.confidence <= 0.95
        np.testing.assert_allclose(fused.position, [0.0, 0.0, 0.0], atol=1e-6)

    def test_confidence_capped(self):
        """Test confidence never exceeds 0.95"""
        coordinator = FusionCoordinator()
        stub_sources(
            coordinator,
            trilateration=SourceEstimate(SourceType.TRILATERATION, [1.0, 1.0, 0.0], 0.2, 1.0, 5.0),
        )
        fused = coordinator.tick(now=5.0)
        assert fused.confidence == pytest.approx(0.95)

    def test_zero_total_weight_uses_primary(self):
        """Test zero weights fall back to the primary source position"""
        coordinator = FusionCoordinator()
        stub_sources(
            coordinator,
            inertial=SourceEstimate(SourceType.INERTIAL, [1.0, 1.0, 0.0], 4.0, 0.0, 5.0),
            trilateration=SourceEstimate(SourceType.TRILATERATION, [9.0, 9.0, 0.0], 2.0, 0.0, 5.0),
        )

        fused = coordinator.tick(now=5.0)

        np.testing.assert_allclose(fused.position, [1.0, 1.0, 0.0])
        assert fused.accuracy_m == pytest.approx(3.0)
        assert fused.confidence == 0.0

    def test_sources_ordered_by_weight(self):
        """Test the highest weight source is reported as primary"""
        coordinator = FusionCoordinator()
        stub_sources(
            coordinator,
            gnss=SourceEstimate(SourceType.GNSS, [0.0, 0.0, 0.0], 10.0, 0.5, 5.0),
            trilateration=SourceEstimate(SourceType.TRILATERATION, [1.0, 0.0, 0.0], 0.2, 0.9, 5.0),
        )
        fused = coordinator.tick(now=5.0)

        assert fused.source_types == (SourceType.TRILATERATION, SourceType.GNSS)
        assert fused.metadata['primary_source'] == 'trilateration'


class TestIndoorDetection:
    """Test indoor mode switching"""

    def test_gnss_only_stays_outdoor(self):
        """Test steady good GNSS fixes keep outdoor mode and stable confidence"""
        coordinator = FusionCoordinator()
        results = []
        for t in range(5):
            coordinator.on_gnss(gnss_fix(float(t), accuracy=3.0))
            results.append(coordinator.tick(now=t + 0.5))

        assert all(not r.indoor for r in results)
        assert all(r.source_types == (SourceType.GNSS,) for r in results)
        confidences = [r.confidence for r in results]
        assert max(confidences) - min(confidences) < 1e-9

    def test_stale_gnss_with_anchors_goes_indoor(self, anchors):
        """Test losing GNSS while anchors are heard switches to indoor mode"""
        changes = []
        coordinator = FusionCoordinator(anchors=anchors, on_indoor_mode_changed=changes.append)

        coordinator.on_gnss(gnss_fix(0.0))
        assert not coordinator.tick(now=0.5).indoor

        feed_ranges(coordinator, anchors, [3.0, 4.0, 0.0], 10.0)
        fused = coordinator.tick(now=10.5)

        assert fused.indoor
        assert coordinator.is_indoor
        assert SourceType.GNSS not in fused.source_types
        np.testing.assert_allclose(fused.position, [3.0, 4.0, 0.0], atol=1e-6)
        assert changes == [True]

    def test_indoor_callback_only_on_change(self, anchors):
        """Test the indoor callback fires on transitions only"""
        changes = []
        coordinator = FusionCoordinator(anchors=anchors, on_indoor_mode_changed=changes.append)

        for t in (0.0, 1.0, 2.0):
            feed_ranges(coordinator, anchors, [3.0, 4.0, 0.0], t)
            coordinator.tick(now=t + 0.5)

        assert changes == [True]

    def test_poor_gnss_accuracy_counts_as_indoor(self):
        """Test a GNSS estimate above the indoor threshold does not keep outdoor mode"""
        coordinator = FusionCoordinator(FusionConfiguration(indoor_gnss_accuracy_threshold_m=5.0))
        stub_sources(
            coordinator,
            gnss=SourceEstimate(SourceType.GNSS, [0.0, 0.0, 0.0], 8.0, 0.5, 5.0),
            inertial=SourceEstimate(SourceType.INERTIAL, [1.0, 0.0, 0.0], 2.0, 0.5, 5.0),
        )
        fused = coordinator.tick(now=5.0)

        assert fused.indoor
        gnss = [e for e in fused.sources if e.source == SourceType.GNSS][0]
        assert gnss.weight == pytest.approx(0.15)

    def test_rejected_poor_fix_switches_indoor(self, anchors):
        """Test a receiver reporting poor accuracy switches to indoor mode at once"""
        changes = []
        coordinator = FusionCoordinator(anchors=anchors, on_indoor_mode_changed=changes.append)
        coordinator.on_gnss(gnss_fix(0.0, accuracy=3.0))
        assert not coordinator.tick(now=0.5).indoor

        # Rejected by the accuracy gate, the 3 m fix is still fresh
        coordinator.on_gnss(gnss_fix(1.0, accuracy=30.0))
        feed_ranges(coordinator, anchors, [3.0, 4.0, 0.0], 1.0)
        fused = coordinator.tick(now=1.5)

        assert fused.indoor
        assert changes == [True]
        gnss = [e for e in fused.sources if e.source == SourceType.GNSS][0]
        assert gnss.accuracy_m == pytest.approx(3.0)
        assert gnss.weight == pytest.approx(0.24)

        coordinator.on_gnss(gnss_fix(2.0, accuracy=3.0))
        feed_ranges(coordinator, anchors, [3.0, 4.0, 0.0], 2.0)
        assert not coordinator.tick(now=2.5).indoor
        assert changes == [True, False]

    def test_stale_sources_excluded(self, anchors):
        """Test old readings no longer contribute"""
        coordinator = FusionCoordinator(anchors=anchors)
        feed_ranges(coordinator, anchors, [3.0, 4.0, 0.0], 0.0)

        assert coordinator.tick(now=0.5) is not None
        assert coordinator.tick(now=5.0) is None


class TestCoordinatorCallbacks:
    """Test notifications and feedback"""

    def test_position_callback(self):
        """Test every fused position is delivered"""
        received = []
        coordinator = FusionCoordinator(on_position_update=received.append)
        coordinator.on_gnss(gnss_fix(0.0))
        fused = coordinator.tick(now=0.5)
        assert len(received) == 1
        assert received[0] is fused

    def test_failing_callback_is_contained(self):
        """Test an exception in a callback does not abort the tick"""
        callback = Mock(side_effect=RuntimeError("consumer failure"))
        coordinator = FusionCoordinator(on_position_update=callback)
        coordinator.on_gnss(gnss_fix(0.0))

        fused = coordinator.tick(now=0.5)

        assert fused is not None
        callback.assert_called_once_with(fused)
        assert coordinator.current_position() is fused

    def test_accuracy_improved(self, anchors):
        """Test reaching sub-target accuracy is announced"""
        improved = []
        coordinator = FusionCoordinator(anchors=anchors,
                                        on_accuracy_improved=lambda new, old: improved.append((new, old)))
        coordinator.on_gnss(gnss_fix(0.0, accuracy=3.0))
        coordinator.tick(now=0.5)

        feed_ranges(coordinator, anchors, [3.0, 4.0, 0.0], 10.0)
        coordinator.tick(now=10.5)

        assert len(improved) == 1
        new, old = improved[0]
        assert new == pytest.approx(0.1)
        assert old == pytest.approx(3.0)

    def test_inertial_anchored_by_fusion(self):
        """Test the fused position anchors the inertial estimator"""
        coordinator = FusionCoordinator()
        assert not coordinator.inertial.is_anchored

        coordinator.on_gnss(gnss_fix(0.0))
        coordinator.tick(now=0.5)

        assert coordinator.inertial.is_anchored

    def test_geo_position(self):
        """Test fused positions are projected back to latitude/longitude"""
        coordinator = FusionCoordinator()
        coordinator.on_gnss(gnss_fix(0.0, latitude=59.3293, longitude=18.0686))
        fused = coordinator.tick(now=0.5)

        assert fused.geo_position.latitude == pytest.approx(59.3293, abs=1e-7)
        assert fused.geo_position.longitude == pytest.approx(18.0686, abs=1e-7)


class TestCoordinatorState:
    """Test history, stationary lock and reset"""

    def test_history_bounded(self):
        """Test the position history keeps only the newest entries"""
        coordinator = FusionCoordinator(FusionConfiguration(history_size=5))
        for t in range(10):
            coordinator.on_gnss(gnss_fix(float(t)))
            coordinator.tick(now=t + 0.5)

        history = coordinator.position_history()
        assert len(history) == 5
        assert history[-1].timestamp == 9.5

    def test_stationary_lock(self):
        """Test positions are pinned while the agent stands still"""
        coordinator = FusionCoordinator()
        coordinator.set_motion_activity(MotionActivity.STATIONARY)

        stub_sources(coordinator, gnss=SourceEstimate(SourceType.GNSS, [0.0, 0.0, 0.0], 3.0, 0.8, 1.0))
        coordinator.tick(now=1.0)
        stub_sources(coordinator, gnss=SourceEstimate(SourceType.GNSS, [1.0, 0.0, 0.0], 3.0, 0.8, 2.0))
        fused = coordinator.tick(now=2.0)

        np.testing.assert_allclose(fused.position, [0.13, 0.0, 0.0])
        assert fused.metadata['motion_activity'] == 'stationary'

    def test_moving_releases_lock(self):
        """Test leaving STATIONARY releases the lock"""
        coordinator = FusionCoordinator()
        coordinator.set_motion_activity(MotionActivity.STATIONARY)
        stub_sources(coordinator, gnss=SourceEstimate(SourceType.GNSS, [0.0, 0.0, 0.0], 3.0, 0.8, 1.0))
        coordinator.tick(now=1.0)

        coordinator.set_motion_activity(MotionActivity.WALKING)
        stub_sources(coordinator, gnss=SourceEstimate(SourceType.GNSS, [1.0, 0.0, 0.0], 3.0, 0.8, 2.0))
        fused = coordinator.tick(now=2.0)

        np.testing.assert_allclose(fused.position, [1.0, 0.0, 0.0])
        assert not coordinator.stationary_lock.is_locked

    def test_reset(self, anchors):
        """Test reset flushes filters, history and the current position"""
        coordinator = FusionCoordinator(anchors=anchors)
        feed_ranges(coordinator, anchors, [3.0, 4.0, 0.0], 0.0)
        coordinator.tick(now=0.5)

        coordinator.reset()

        assert coordinator.current_position() is None
        assert coordinator.position_history() == []
        assert not coordinator.is_indoor
        assert coordinator.tick(now=0.6) is None

    def test_quality_metrics(self, anchors):
        """Test quality metrics reflect the current fusion state"""
        coordinator = FusionCoordinator(anchors=anchors)
        feed_ranges(coordinator, anchors, [3.0, 4.0, 0.0], 0.0)
        coordinator.tick(now=0.5)

        metrics = coordinator.quality_metrics()
        assert metrics['beacon_coverage'] == pytest.approx(0.75)
        assert metrics['overall_accuracy'] == pytest.approx(0.1)
        assert metrics['indoor'] is True
        assert metrics['history_length'] == 1

    def test_platform_metadata(self):
        """Test platform mode adds sea state and deck to the metadata"""
        coordinator = FusionCoordinator(FusionConfiguration(enable_platform_motion_compensation=True))
        assert coordinator.platform_detector is not None

        coordinator.on_gnss(GnssSample(timestamp=0.0, latitude=59.0, longitude=18.0,
                                       altitude=7.0, accuracy=3.0))
        fused = coordinator.tick(now=0.5)

        assert fused.metadata['sea_state'] == 'calm'
        assert 'deck' in fused.metadata
        assert not fused.platform_corrected

    def test_platform_heave_removed(self):
        """Test a still agent on a heaving deck is corrected around its true height"""
        detections = []
        config = FusionConfiguration(enable_platform_motion_compensation=True,
                                     platform=PlatformConfiguration(persistence_updates=1))
        coordinator = FusionCoordinator(config, on_platform_motion_detected=detections.append)
        start = feed_heave(coordinator)
        amplitude = 0.5 / (2 * math.pi * 0.1) ** 2

        heights = []
        for offset in (0.0, 2.5, 5.0, 7.5):
            now = start + offset
            stub_sources(coordinator,
                         gnss=SourceEstimate(SourceType.GNSS, [0.0, 0.0, 10.0], 3.0, 0.8, now))
            fused = coordinator.tick(now=now)
            assert fused.platform_corrected
            heights.append(fused.position[2])

        # Deck at 0, -A, 0, +A over half a period
        np.testing.assert_allclose(heights, [10.0, 10.0 + amplitude, 10.0, 10.0 - amplitude],
                                   atol=0.15)
        assert np.mean(heights) == pytest.approx(10.0, abs=0.1)
        assert len(detections) == 1
        assert detections[0].heave_amplitude_m == pytest.approx(amplitude, rel=0.1)

    def test_platform_correction_outside_hull_falls_back(self):
        """Test a correction far outside the platform keeps the fused position"""
        config = FusionConfiguration(enable_platform_motion_compensation=True,
                                     platform=PlatformConfiguration(persistence_updates=1))
        coordinator = FusionCoordinator(config)
        now = feed_heave(coordinator)
        stub_sources(coordinator,
                     gnss=SourceEstimate(SourceType.GNSS, [40.0, 0.0, 10.0], 3.0, 0.8, now))

        fused = coordinator.tick(now=now)

        assert not fused.platform_corrected
        np.testing.assert_allclose(fused.position, [40.0, 0.0, 10.0])
        assert coordinator.platform_compensator.failed_corrections == 1

        coordinator.reset()
        assert coordinator.platform_compensator.failed_corrections == 0
