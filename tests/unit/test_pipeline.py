"""Tests for the selection pipeline and dashboard state."""

import asyncio
import random
import threading

import pytest

from quakewatch_ai.ingest.regions import UnknownRegionError
from quakewatch_ai.jobs.run_pipeline import PENDING, READY, UNAVAILABLE, RiskPipeline
from quakewatch_ai.predict.train_risk import TrainingCancelled


class FakeClassifier:
    def __init__(self, p=0.5):
        self.p = p
        self.released = False

    def predict_many(self, rows):
        return [self.p for _ in rows]

    def release(self):
        self.released = True


def fetch_returning(events):
    async def fetch(selection, cfg):
        return list(events)

    return fetch


class CountingTrain:
    def __init__(self, result=None, exc=None):
        self.calls = 0
        self.result = result
        self.exc = exc

    def __call__(self, examples, cfg, progress, cancel):
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        progress(100.0)
        return self.result or FakeClassifier()


class TestInsufficientData:
    def test_empty_fetch_never_trains(self, fast_settings):
        train = CountingTrain()
        p = RiskPipeline(fast_settings, fetch=fetch_returning([]), train=train)
        state = asyncio.run(p.run("california"))
        assert train.calls == 0
        assert state.predictions == []
        assert state.classifier_status == UNAVAILABLE
        assert state.snapshot()["risk_level"] == "low"
        assert state.snapshot()["risk_label"] == "BAJO"
        assert not state.loading

    def test_ten_events_never_trains(self, fast_settings, event_series):
        train = CountingTrain()
        p = RiskPipeline(fast_settings, fetch=fetch_returning(event_series(10)), train=train)
        state = asyncio.run(p.run("california"))
        assert train.calls == 0
        assert len(state.events) == 10

    def test_eleven_events_trains(self, fast_settings, event_series):
        train = CountingTrain()
        p = RiskPipeline(fast_settings, fetch=fetch_returning(event_series(11)), train=train)
        state = asyncio.run(p.run("california"))
        assert train.calls == 1
        assert state.classifier_status == READY
        assert len(state.predictions) == 10

    def test_fetch_exception_degrades_to_empty(self, fast_settings):
        async def fetch(selection, cfg):
            raise RuntimeError("catalog down")

        p = RiskPipeline(fast_settings, fetch=fetch, train=CountingTrain())
        state = asyncio.run(p.run("alaska"))
        assert state.events == []
        assert state.classifier_status == UNAVAILABLE


class TestTrainingFailure:
    def test_keeps_events_and_drops_predictions(self, fast_settings, event_series):
        events = event_series(30)
        p = RiskPipeline(fast_settings, fetch=fetch_returning(events), train=CountingTrain(exc=FloatingPointError("nan")))
        state = asyncio.run(p.run("california"))
        assert len(state.events) == 30
        assert state.predictions == []
        assert state.classifier is None
        assert state.classifier_status == UNAVAILABLE
        assert "nan" in state.error


class TestFullRun:
    def test_real_training(self, fast_settings, event_series):
        p = RiskPipeline(fast_settings, fetch=fetch_returning(event_series(40)), rng=random.Random(4))
        state = asyncio.run(p.run("user", (35.0, -118.0)))
        snap = state.snapshot()
        assert snap["classifier_ready"] is True
        assert snap["training_progress"] == 100.0
        assert snap["region_label"] == "Mi ubicación"
        assert len(snap["recent_events"]) == 10
        probs = [x["probability"] for x in snap["predictions"]]
        assert len(probs) == 10
        assert probs == sorted(probs, reverse=True)
        assert all(0.0 <= x <= 100.0 for x in probs)
        assert all(x["region"] == "Mi ubicación" for x in snap["predictions"])

    def test_new_selection_releases_previous_classifier(self, fast_settings, event_series):
        first = FakeClassifier()
        train = CountingTrain(result=first)
        p = RiskPipeline(fast_settings, fetch=fetch_returning(event_series(20)), train=train)

        async def go():
            await p.select("california")
            train.result = FakeClassifier()
            task = p.select("alaska")
            assert p.state.classifier_status == PENDING
            assert p.state.predictions == []
            await task

        asyncio.run(go())
        assert first.released
        assert p.state.generation == 2
        assert p.state.region_label == "Alaska"

    def test_unknown_region_leaves_state_alone(self, fast_settings):
        p = RiskPipeline(fast_settings, fetch=fetch_returning([]), train=CountingTrain())

        async def go():
            with pytest.raises(UnknownRegionError):
                p.select("atlantis")

        asyncio.run(go())
        assert p.state.generation == 0


class TestSupersede:
    def test_fetch_in_flight_is_cancelled(self, fast_settings, event_series):
        train = CountingTrain()

        async def go():
            blocker = asyncio.Event()

            async def fetch(selection, cfg):
                if selection.region_key == "alaska":
                    await blocker.wait()
                return event_series(15)

            p = RiskPipeline(fast_settings, fetch=fetch, train=train)
            t1 = p.select("alaska")
            await asyncio.sleep(0)
            t2 = p.select("california")
            await t2
            await asyncio.gather(t1, return_exceptions=True)
            return p, t1

        p, t1 = asyncio.run(go())
        assert t1.cancelled()
        assert train.calls == 1
        assert p.state.region_key == "california"
        assert p.state.generation == 2

    def test_at_most_one_training_run(self, fast_settings, event_series):
        started = threading.Event()
        guard = threading.Lock()
        active = {"now": 0, "max": 0, "calls": 0}

        def train(examples, cfg, progress, cancel):
            with guard:
                active["calls"] += 1
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
                call = active["calls"]
            try:
                if call == 1:
                    started.set()
                    cancel.wait(timeout=5)
                    progress(50.0)
                    raise TrainingCancelled("superseded")
                progress(100.0)
                return FakeClassifier(0.9)
            finally:
                with guard:
                    active["now"] -= 1

        async def go():
            p = RiskPipeline(fast_settings, fetch=fetch_returning(event_series(15)), train=train)
            t1 = p.select("alaska")
            await asyncio.to_thread(started.wait, 5)
            t2 = p.select("newmadrid")
            await t2
            await asyncio.gather(t1, return_exceptions=True)
            return p

        p = asyncio.run(go())
        assert active["calls"] == 2
        assert active["max"] == 1
        assert p.state.region_label == "New Madrid"
        assert p.state.training_progress == 100.0
        assert p.state.risk_level == "high"
