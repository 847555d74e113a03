"""Tests for VisionPipeline orchestration, smoothing and cancellation."""

import threading

import numpy as np
import pytest

from chess_stream.capture import Frame, Region
from chess_stream.config import PipelineSettings
from chess_stream.inference import pipeline as pipeline_module
from chess_stream.inference.change_tracker import ChangeKind
from chess_stream.inference.fen_utils import fen_to_pieces, pieces_to_fen
from chess_stream.inference.pipeline import PipelineError, VisionPipeline
from chess_stream.inference.square_classifier import ClassificationResult, SquareClassifier

from conftest import START_FEN, FakeBackend, one_hot_scores


def make_frame(timestamp=0.0, size=64):
    pixels = np.zeros((size, size, 4), dtype=np.uint8)
    return Frame(pixels=pixels, timestamp=timestamp)


def make_result(pieces, confidences=None, was_flipped=False):
    confidences = confidences or [0.9] * 64
    return ClassificationResult(
        fen=pieces_to_fen(pieces),
        pieces=list(pieces),
        confidences=list(confidences),
        perspective="white-bottom",
        was_flipped=was_flipped,
        avg_confidence=sum(confidences) / 64,
        source="model",
    )


class StubLocator:
    def __init__(self, region=Region(0, 0, 64, 64)):
        self.region = region
        self.calls = []

    def locate(self, frame):
        self.calls.append(frame.timestamp)
        return self.region


class StubClassifier:
    """Returns queued results; optionally blocks or raises on a given call."""

    def __init__(self, results, block_on=None, raise_on=None):
        self.results = list(results)
        self.block_on = block_on
        self.raise_on = raise_on
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0
        self.force_flips = []
        self.disposed = False

    def classify(self, board_image, force_flip=False):
        self.calls += 1
        self.force_flips.append(force_flip)
        if self.calls == self.block_on:
            self.started.set()
            self.release.wait(timeout=5)
        if self.calls == self.raise_on:
            raise RuntimeError("classifier exploded")
        return self.results[min(self.calls, len(self.results)) - 1]

    def dispose(self):
        self.disposed = True


def build(classifier, locator=None, **settings):
    updates, errors = [], []
    pipeline = VisionPipeline(
        settings=PipelineSettings(**settings),
        locator=locator or StubLocator(),
        classifier=classifier,
        on_update=updates.append,
        on_error=errors.append,
    )
    return pipeline, updates, errors


# ── Per-frame processing ───────────────────────────────────────────────

def test_first_update_is_new_game(start_pieces):
    pipeline, updates, errors = build(StubClassifier([make_result(start_pieces)]))
    with pipeline:
        update = pipeline.process_frame(make_frame())

    assert update is not None
    assert updates == [update]
    assert errors == []
    assert update.fen == START_FEN
    assert update.change is ChangeKind.NEW_GAME
    assert update.region == Region(0, 0, 64, 64)
    assert update.request_id == 1
    assert update.performance.low_confidence_count == 0
    assert update.performance.fps == 0.0
    assert update.violations == []


def test_low_confidence_square_keeps_previous_label(start_pieces):
    noisy = list(start_pieces)
    noisy[12] = "1"                                  # e7 pawn misread as empty
    confidences = [0.9] * 64
    confidences[12] = 0.3

    classifier = StubClassifier([
        make_result(start_pieces),
        make_result(noisy, confidences),
    ])
    pipeline, updates, _ = build(classifier)
    with pipeline:
        pipeline.process_frame(make_frame(0.0))
        second = pipeline.process_frame(make_frame(1.5))

    assert second.fen == START_FEN
    assert fen_to_pieces(second.fen)[12] == "p"
    assert second.change is ChangeKind.NO_CHANGE
    assert second.performance.low_confidence_count == 1
    assert second.performance.fps > 0


def test_low_confidence_without_history_is_kept(start_pieces):
    noisy = list(start_pieces)
    noisy[12] = "1"
    confidences = [0.9] * 64
    confidences[12] = 0.3
    pipeline, _, _ = build(StubClassifier([make_result(noisy, confidences)]))
    with pipeline:
        update = pipeline.process_frame(make_frame())

    assert fen_to_pieces(update.fen)[12] == "1"
    assert update.performance.low_confidence_count == 0


def test_confident_change_is_a_move(start_pieces):
    moved = list(start_pieces)
    moved[52], moved[36] = "1", "P"                  # e2 → e4
    classifier = StubClassifier([make_result(start_pieces), make_result(moved)])
    pipeline, updates, _ = build(classifier)
    with pipeline:
        pipeline.process_frame(make_frame(0.0))
        pipeline.process_frame(make_frame(1.5))

    assert [u.change for u in updates] == [ChangeKind.NEW_GAME, ChangeKind.MOVE]


def test_region_is_cached_between_refreshes(start_pieces):
    locator = StubLocator()
    pipeline, updates, _ = build(
        StubClassifier([make_result(start_pieces)]),
        locator=locator,
        board_refresh_interval=1.0,
    )
    with pipeline:
        for t in (0.0, 0.4, 0.9, 1.0, 1.5, 2.2):
            pipeline.process_frame(make_frame(t))

    assert locator.calls == [0.0, 1.0, 2.2]
    assert len(updates) == 6
    assert updates[1].performance.detect_ms == 0.0


def test_no_board_emits_nothing(start_pieces):
    classifier = StubClassifier([make_result(start_pieces)])
    pipeline, updates, errors = build(classifier, locator=StubLocator(region=None))
    with pipeline:
        assert pipeline.process_frame(make_frame()) is None

    assert updates == [] and errors == []
    assert classifier.calls == 0
    assert pipeline.tracker.last_fen is None


def test_no_board_clears_cache_and_relocates_next_frame(start_pieces):
    locator = StubLocator()
    pipeline, updates, _ = build(StubClassifier([make_result(start_pieces)]), locator=locator)
    with pipeline:
        pipeline.process_frame(make_frame(0.0))
        locator.region = None
        pipeline.process_frame(make_frame(1.0))
        assert pipeline.state.region is None
        assert pipeline.process_frame(make_frame(1.1)) is None
        locator.region = Region(0, 0, 64, 64)
        assert pipeline.process_frame(make_frame(1.2)) is not None

    assert locator.calls == [0.0, 1.0, 1.1, 1.2]
    assert len(updates) == 2


def test_force_flip_is_passed_to_classifier(start_pieces):
    classifier = StubClassifier([make_result(start_pieces, was_flipped=True)])
    pipeline, updates, _ = build(classifier, force_flip=True)
    with pipeline:
        pipeline.process_frame(make_frame(0.0))
        pipeline.set_force_flip(False)
        pipeline.process_frame(make_frame(1.0))

    assert classifier.force_flips == [True, False]
    assert updates[0].was_flipped is True


def test_reset_starts_a_new_game(start_pieces):
    pipeline, updates, _ = build(StubClassifier([make_result(start_pieces)]))
    with pipeline:
        pipeline.process_frame(make_frame(0.0))
        pipeline.reset()
        pipeline.process_frame(make_frame(0.5))

    assert [u.change for u in updates] == [ChangeKind.NEW_GAME, ChangeKind.NEW_GAME]


def test_update_as_dict_is_json_ready(start_pieces):
    pipeline, _, _ = build(StubClassifier([make_result(start_pieces)]))
    with pipeline:
        data = pipeline.process_frame(make_frame(3.0)).as_dict()

    assert data["fen"] == START_FEN
    assert data["change"] == "new-game"
    assert data["region"] == {"x": 0, "y": 0, "width": 64, "height": 64}
    assert data["timestamp"] == 3.0
    assert set(data["performance"]) == {
        "fps", "total_ms", "detect_ms", "classify_ms",
        "avg_confidence", "low_confidence_count",
    }


# ── Errors ─────────────────────────────────────────────────────────────

def test_processing_error_is_reported_and_state_survives(start_pieces):
    classifier = StubClassifier([make_result(start_pieces)], raise_on=2)
    pipeline, updates, errors = build(classifier)
    with pipeline:
        pipeline.process_frame(make_frame(0.0))
        state_before = pipeline.state
        assert pipeline.process_frame(make_frame(1.5)) is None
        assert pipeline.state is state_before
        third = pipeline.process_frame(make_frame(3.0))

    assert errors == [PipelineError(request_id=2, message="classifier exploded")]
    assert [u.request_id for u in updates] == [1, 3]
    assert third.change is ChangeKind.NO_CHANGE



def test_failing_consumer_does_not_become_a_processing_error(start_pieces):
    errors = []
    delivered = []

    def on_update(update):
        delivered.append(update)
        raise RuntimeError("consumer failed")

    pipeline = VisionPipeline(
        locator=StubLocator(),
        classifier=StubClassifier([make_result(start_pieces)]),
        on_update=on_update,
        on_error=errors.append,
    )
    with pipeline:
        update = pipeline.process_frame(make_frame(0.0))
        second = pipeline.process_frame(make_frame(1.5))

    assert update is not None
    assert update.fen == START_FEN
    assert delivered == [update, second]
    assert errors == []
    assert second.change is ChangeKind.NO_CHANGE
    assert pipeline.tracker.last_fen == START_FEN.split()[0]


# ── Scheduling & cancellation ──────────────────────────────────────────

def test_superseded_request_never_emits(start_pieces):
    moved = list(start_pieces)
    moved[52], moved[36] = "1", "P"
    classifier = StubClassifier(
        [make_result(start_pieces), make_result(moved)], block_on=1,
    )
    pipeline, updates, _ = build(classifier)

    with pipeline:
        first = pipeline.submit(make_frame(0.0))
        assert classifier.started.wait(timeout=5)
        second = pipeline.submit(make_frame(1.5))
        assert (first, second) == (1, 2)
        assert pipeline.is_stale(first)
        classifier.release.set()
        latest = pipeline.wait(timeout=5)

    assert latest is not None
    assert latest.request_id == second
    assert [u.request_id for u in updates] == [2]
    assert updates[0].change is ChangeKind.NEW_GAME
    assert classifier.calls == 2


def test_queued_stale_request_is_skipped(start_pieces):
    classifier = StubClassifier([make_result(start_pieces)], block_on=1)
    pipeline, updates, _ = build(classifier)

    with pipeline:
        pipeline.submit(make_frame(0.0))
        assert classifier.started.wait(timeout=5)
        pipeline.submit(make_frame(1.0))
        pipeline.submit(make_frame(2.0))
        classifier.release.set()
        latest = pipeline.wait(timeout=5)

    assert latest.request_id == 3
    assert [u.request_id for u in updates] == [3]
    # Request 2 was dropped before any work
    assert classifier.calls == 2


def test_submit_returns_increasing_request_ids(start_pieces):
    pipeline, updates, _ = build(StubClassifier([make_result(start_pieces)]))
    with pipeline:
        ids = []
        for t in (0, 1, 2):
            ids.append(pipeline.submit(make_frame(t)))
            assert pipeline.wait(timeout=5).request_id == ids[-1]

    assert ids == [1, 2, 3]
    assert pipeline.latest_request_id == 3
    assert [u.request_id for u in updates] == ids


def test_wait_without_submissions_returns_none(start_pieces):
    pipeline, _, _ = build(StubClassifier([make_result(start_pieces)]))
    with pipeline:
        assert pipeline.wait(timeout=1) is None


def test_error_request_id_matches_submission(start_pieces):
    classifier = StubClassifier([make_result(start_pieces)], raise_on=1)
    pipeline, updates, errors = build(classifier)
    with pipeline:
        request_id = pipeline.submit(make_frame())
        assert pipeline.wait(timeout=5) is None

    assert updates == []
    assert [e.request_id for e in errors] == [request_id]


def test_close_disposes_and_rejects_new_frames(start_pieces):
    classifier = StubClassifier([make_result(start_pieces)])
    pipeline, _, _ = build(classifier)
    pipeline.close()

    assert classifier.disposed
    assert pipeline.is_stale(pipeline.latest_request_id)
    with pytest.raises(RuntimeError):
        pipeline.submit(make_frame())
    pipeline.close()


# ── End to end ─────────────────────────────────────────────────────────

def test_real_components_on_synthetic_frame(board_frame):
    updates = []
    with VisionPipeline(classifier=SquareClassifier(), on_update=updates.append) as pipeline:
        update = pipeline.process_frame(board_frame)

    assert update is not None
    assert updates == [update]
    assert update.region.fits_within(board_frame.width, board_frame.height)
    assert len(update.fen.split()[0].split("/")) == 8
    assert update.change is ChangeKind.NEW_GAME


def test_default_classifier_loads_backend_from_settings(monkeypatch, start_pieces):
    calls = []

    def fake_load_backend(model_path, device, use_tta=False):
        calls.append((model_path, device, use_tta))
        return FakeBackend(one_hot_scores(start_pieces))

    monkeypatch.setattr(pipeline_module, "load_backend", fake_load_backend)
    settings = PipelineSettings(model_path="net.pt", test_time_augmentation=True)
    with VisionPipeline(settings=settings, locator=StubLocator()) as pipeline:
        assert pipeline.classifier.ensure_backend() is not None

    assert calls == [("net.pt", "cpu", True)]
