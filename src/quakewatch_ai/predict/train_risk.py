from __future__ import annotations

import math
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import torch
import torch.nn as nn
import torch.optim as optim
from loguru import logger

from quakewatch_ai.predict.features import TrainingExample
from quakewatch_ai.predict.risk_net import RiskNet
from quakewatch_ai.settings import TrainConfig

ProgressFn = Callable[[float], None]


class TrainingCancelled(RuntimeError):
    """Raised between epochs once a newer selection has superseded this run."""


class TensorScope:
    """
    Owns the tensors built for one training or inference call and drops them on exit,
    including when the body raises. On CUDA the cached blocks are handed back too.

    Tensors are only reachable through the scope (scope["name"]); callers should not bind
    them to locals, otherwise a local or a traceback frame keeps them alive past release().
    """

    def __init__(self, device: str = "cpu"):
        self.device = device
        self._tensors: Dict[str, torch.Tensor] = {}

    def add(self, name: str, data, dtype: torch.dtype = torch.float32) -> None:
        self._tensors[name] = torch.tensor(data, dtype=dtype, device=self.device)

    def __getitem__(self, name: str) -> torch.Tensor:
        return self._tensors[name]

    def __contains__(self, name: str) -> bool:
        return name in self._tensors

    @property
    def live(self) -> int:
        return len(self._tensors)

    def release(self) -> None:
        self._tensors.clear()
        if self.device.startswith("cuda") and torch.cuda.is_available():
            torch.cuda.empty_cache()

    def __enter__(self) -> "TensorScope":
        return self

    def __exit__(self, *_exc) -> None:
        self.release()


@dataclass
class TrainedClassifier:
    model: Optional[RiskNet]
    device: str = "cpu"
    history: List[Dict[str, float]] = field(default_factory=list)

    @property
    def released(self) -> bool:
        return self.model is None

    @torch.no_grad()
    def predict_many(self, rows: Sequence[Sequence[float]]) -> List[float]:
        if self.model is None:
            raise RuntimeError("Classifier was released; retrain before predicting.")
        self.model.eval()
        with TensorScope(self.device) as scope:
            scope.add("x", [list(r) for r in rows])
            probs = self.model(scope["x"]).squeeze(-1).detach().cpu().tolist()
        return [float(p) for p in probs]

    def predict_proba(self, features: Sequence[float]) -> float:
        return self.predict_many([features])[0]

    def release(self) -> None:
        if self.model is None:
            return
        self.model = None
        if self.device.startswith("cuda") and torch.cuda.is_available():
            torch.cuda.empty_cache()


def set_seed(seed: int) -> None:
    random.seed(seed)
    torch.manual_seed(seed)
    torch.cuda.manual_seed_all(seed)


def train_classifier(
    examples: Sequence[TrainingExample],
    cfg: TrainConfig = TrainConfig(),
    progress: Optional[ProgressFn] = None,
    cancel: Optional[threading.Event] = None,
) -> TrainedClassifier:
    """
    Fit a fresh RiskNet on the examples, always for cfg.epochs passes.

    The last val_split share of the examples (input order) is held out for validation;
    the rest is reshuffled every epoch. progress gets the completed percentage after
    each epoch.
    """
    if not examples:
        raise ValueError("No training examples.")
    if cfg.seed is not None:
        set_seed(cfg.seed)

    n = len(examples)
    split = max(1, int(math.floor(n * (1.0 - cfg.val_split))))

    model = RiskNet(hidden=cfg.hidden, dropout=cfg.dropout).to(cfg.device)
    opt = optim.Adam(model.parameters(), lr=cfg.lr)
    loss_fn = nn.BCELoss()
    history: List[Dict[str, float]] = []

    logger.info("Training risk classifier on {} examples ({} held out), {} epochs", n, n - split, cfg.epochs)

    features = [e.features for e in examples]
    labels = [[float(e.label)] for e in examples]

    # Train/val are separate tensors (not views of one) and are only read through the
    # scope, so release() drops the last reference on every exit path.
    with TensorScope(cfg.device) as scope:
        scope.add("x_train", features[:split])
        scope.add("y_train", labels[:split])
        if split < n:
            scope.add("x_val", features[split:])
            scope.add("y_val", labels[split:])

        for ep in range(cfg.epochs):
            if cancel is not None and cancel.is_set():
                raise TrainingCancelled(f"cancelled before epoch {ep + 1}")

            model.train()
            perm = torch.randperm(split, device=cfg.device)
            total = 0.0
            for i in range(0, split, cfg.batch_size):
                idx = perm[i : i + cfg.batch_size]
                # index_select copies: the batch does not pin the scope tensors
                xb, yb = scope["x_train"][idx], scope["y_train"][idx]
                opt.zero_grad(set_to_none=True)
                out = model(xb)
                if not bool(torch.isfinite(out).all()):
                    raise FloatingPointError(f"non-finite network output at epoch {ep + 1}")
                loss = loss_fn(out, yb)
                loss.backward()
                opt.step()
                total += float(loss.item()) * xb.size(0)
            train_loss = total / split
            if not math.isfinite(train_loss):
                raise FloatingPointError(f"training loss diverged at epoch {ep + 1}")

            row = {"epoch": ep + 1, "loss": train_loss}
            if "x_val" in scope:
                model.eval()
                with torch.no_grad():
                    pva = model(scope["x_val"])
                    row["val_loss"] = float(loss_fn(pva, scope["y_val"]).item())
                    row["val_acc"] = float(((pva >= 0.5).float() == scope["y_val"]).float().mean().item())
            history.append(row)
            logger.debug("epoch {epoch}: {row}", epoch=ep + 1, row=row)

            if progress is not None:
                progress((ep + 1) / cfg.epochs * 100.0)

    model.eval()
    logger.info("Training done: loss={:.4f}", history[-1]["loss"] if history else float("nan"))
    return TrainedClassifier(model=model, device=cfg.device, history=history)
