import pytest

from markerless import ImageTracker, TrackerConfig

from synthetic import FOCAL, FRAME_HEIGHT, FRAME_WIDTH, RecordingBinding, make_pattern


@pytest.fixture
def binding():
    return RecordingBinding()


@pytest.fixture(scope="session")
def pattern_image():
    return make_pattern(seed=7)


@pytest.fixture(scope="session")
def other_pattern_image():
    return make_pattern(seed=99)


@pytest.fixture
def make_tracker():
    """Factory for an initialized tracker at full processing resolution."""
    trackers = []

    def factory(**overrides):
        options = {"processing_downsample_factor": 1.0}
        options.update(overrides)
        tracker = ImageTracker(TrackerConfig(**options))
        assert tracker.initialize(
            FRAME_WIDTH, FRAME_HEIGHT, FRAME_WIDTH / 2.0, FRAME_HEIGHT / 2.0, FOCAL, FOCAL
        )
        trackers.append(tracker)
        return tracker

    yield factory

    for tracker in trackers:
        tracker.release()
