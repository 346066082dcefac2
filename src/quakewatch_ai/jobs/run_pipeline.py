from __future__ import annotations

import argparse
import asyncio
import json
import random
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from quakewatch_ai.ingest.regions import Selection, resolve_selection
from quakewatch_ai.ingest.usgs_catalog import SeismicEvent, fetch_events
from quakewatch_ai.log import setup_logging
from quakewatch_ai.predict.features import build_examples
from quakewatch_ai.predict.sampler import RISK_LABELS, Prediction, risk_level, sample_candidates
from quakewatch_ai.predict.train_risk import TrainedClassifier, TrainingCancelled, train_classifier
from quakewatch_ai.settings import CONFIG_DEFAULT, USER_REGION, CatalogConfig, Settings, load_settings

PENDING = "pending"
READY = "ready"
UNAVAILABLE = "unavailable"

RECENT_EVENTS = 10

FetchFn = Callable[[Selection, CatalogConfig], Awaitable[List[SeismicEvent]]]


@dataclass
class DashboardState:
    """
    Everything the dashboard reads. Lifecycle per selection:
    reset → events (fetch) → classifier + progress (training) → predictions (sampling).
    """

    generation: int = 0
    region_key: str = ""
    region_label: str = ""
    center: Optional[Tuple[float, float]] = None
    loading: bool = False
    events: List[SeismicEvent] = field(default_factory=list)
    classifier: Optional[TrainedClassifier] = None
    classifier_status: str = PENDING
    training_progress: float = 0.0
    predictions: List[Prediction] = field(default_factory=list)
    error: Optional[str] = None

    def reset(self, generation: int, selection: Selection) -> None:
        if self.classifier is not None:
            self.classifier.release()
        self.generation = generation
        self.region_key = selection.region_key
        self.region_label = selection.label
        self.center = selection.center
        self.loading = True
        self.events = []
        self.classifier = None
        self.classifier_status = PENDING
        self.training_progress = 0.0
        self.predictions = []
        self.error = None

    @property
    def risk_level(self) -> str:
        return risk_level(self.predictions)

    def snapshot(self) -> Dict[str, Any]:
        level = self.risk_level
        return {
            "generation": self.generation,
            "region": self.region_key,
            "region_label": self.region_label,
            "center": list(self.center) if self.center else None,
            "loading": self.loading,
            "events_total": len(self.events),
            "recent_events": [e.to_dict() for e in self.events[:RECENT_EVENTS]],
            "classifier_status": self.classifier_status,
            "classifier_ready": self.classifier_status == READY,
            "training_progress": self.training_progress,
            "risk_level": level,
            "risk_label": RISK_LABELS[level],
            "predictions": [p.to_dict() for p in self.predictions],
            "error": self.error,
        }


class RiskPipeline:
    """
    Runs fetch → train → sample for one selection at a time.

    Every select() starts a new generation. Older runs are cancelled, their training
    thread is told to stop at the next epoch boundary, and anything they still produce
    is dropped because its generation no longer matches.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        fetch: FetchFn = fetch_events,
        train: Callable[..., TrainedClassifier] = train_classifier,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or load_settings()
        self.state = DashboardState()
        self._fetch = fetch
        self._train = train
        self._rng = rng
        self._task: Optional[asyncio.Task] = None
        self._cancel: Optional[threading.Event] = None
        self._train_lock = asyncio.Lock()

    def _current(self, gen: int) -> bool:
        return gen == self.state.generation

    def select(self, region_key: str, location: Optional[Tuple[float, float]] = None) -> asyncio.Task:
        selection = resolve_selection(self.settings, region_key, location)

        if self._cancel is not None:
            self._cancel.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

        gen = self.state.generation + 1
        self.state.reset(gen, selection)
        cancel = threading.Event()
        self._cancel = cancel

        logger.info("Selection #{}: {}", gen, selection.label)
        self._task = asyncio.get_running_loop().create_task(self._run(gen, selection, cancel))
        return self._task

    async def run(self, region_key: str, location: Optional[Tuple[float, float]] = None) -> DashboardState:
        await self.select(region_key, location)
        return self.state

    def _set_progress(self, gen: int, pct: float) -> None:
        if self._current(gen):
            self.state.training_progress = pct

    def _fit(self, examples, on_progress, cancel: threading.Event) -> Optional[TrainedClassifier]:
        try:
            return self._train(examples, self.settings.train, on_progress, cancel)
        except TrainingCancelled as exc:
            logger.debug("Training stopped: {}", exc)
            return None

    async def _train_exclusive(self, gen: int, events: List[SeismicEvent], cancel: threading.Event):
        loop = asyncio.get_running_loop()

        def on_progress(pct: float) -> None:
            loop.call_soon_threadsafe(self._set_progress, gen, pct)

        async with self._train_lock:
            if not self._current(gen):
                return None
            examples = build_examples(events)
            fut = asyncio.ensure_future(asyncio.to_thread(self._fit, examples, on_progress, cancel))
            try:
                return await asyncio.shield(fut)
            except asyncio.CancelledError:
                # hold the lock until the worker thread has actually stopped
                cancel.set()
                try:
                    await fut
                except Exception as exc:
                    logger.debug("Superseded training run ended with {!r}", exc)
                raise

    async def _run(self, gen: int, selection: Selection, cancel: threading.Event) -> None:
        state = self.state
        try:
            events = await self._fetch(selection, self.settings.catalog)
        except Exception:
            logger.exception("Event fetch raised for {}", selection.label)
            events = []
        if not self._current(gen):
            return
        state.events = events
        state.loading = False

        if len(events) < self.settings.train.min_events:
            logger.info(
                "Only {} events for {} (need {}); skipping training",
                len(events),
                selection.label,
                self.settings.train.min_events,
            )
            state.classifier_status = UNAVAILABLE
            return

        try:
            classifier = await self._train_exclusive(gen, events, cancel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Training failed for {}", selection.label)
            if self._current(gen):
                state.classifier_status = UNAVAILABLE
                state.predictions = []
                state.error = f"training failed: {exc}"
            return

        if classifier is None:
            return
        if not self._current(gen):
            classifier.release()
            return

        state.classifier = classifier
        try:
            preds = sample_candidates(
                classifier,
                selection.center,
                selection.label,
                self.settings.sampler,
                rng=self._rng,
            )
        except Exception as exc:
            logger.exception("Scoring candidates failed for {}", selection.label)
            classifier.release()
            state.classifier = None
            state.classifier_status = UNAVAILABLE
            state.predictions = []
            state.error = f"inference failed: {exc}"
            return

        state.classifier_status = READY
        state.predictions = preds
        logger.info("{} predictions for {} (risk {})", len(preds), selection.label, state.risk_level)


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Fetch USGS events, train the risk classifier, score candidates.")
    ap.add_argument("--config", default=str(CONFIG_DEFAULT))
    ap.add_argument("--region", default=USER_REGION, choices=[USER_REGION, *settings.regions.keys()])
    ap.add_argument("--lat", type=float, default=None)
    ap.add_argument("--lng", type=float, default=None)
    ap.add_argument("--epochs", type=int, default=None)
    ap.add_argument("--seed", type=int, default=None)
    ap.add_argument("--log-level", default=None)
    return ap


async def run_once(settings: Settings, region: str, location: Optional[Tuple[float, float]], seed: Optional[int]):
    rng = random.Random(seed) if seed is not None else None
    pipeline = RiskPipeline(settings, rng=rng)
    state = await pipeline.run(region, location)
    return state.snapshot()


def main(argv: Optional[List[str]] = None) -> int:
    # Two passes: the region choices depend on the config file.
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", default=str(CONFIG_DEFAULT))
    known, _ = pre.parse_known_args(argv)
    settings = load_settings(Path(known.config))

    args = build_parser(settings).parse_args(argv)
    if args.epochs is not None:
        settings.train = replace(settings.train, epochs=args.epochs)
    if args.seed is not None:
        settings.train = replace(settings.train, seed=args.seed)
    setup_logging(args.log_level or settings.log_level, settings.log_dir)

    location = (args.lat, args.lng) if args.lat is not None and args.lng is not None else None
    snap = asyncio.run(run_once(settings, args.region, location, args.seed))

    print(
        json.dumps(
            {
                "region": snap["region_label"],
                "events_total": snap["events_total"],
                "classifier_status": snap["classifier_status"],
                "risk_level": snap["risk_level"],
                "predictions": snap["predictions"],
            },
            ensure_ascii=False,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
