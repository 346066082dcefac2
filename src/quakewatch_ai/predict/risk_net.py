from __future__ import annotations

from typing import Sequence

import torch
import torch.nn as nn

from quakewatch_ai.predict.features import NUM_FEATURES


class RiskNet(nn.Module):
    """
    Small MLP for "does another event follow within 30 days".

    Input: [batch, 7] raw event features
    Output: [batch, 1] probability (sigmoid applied in forward)
    """

    def __init__(
        self,
        input_dim: int = NUM_FEATURES,
        hidden: Sequence[int] = (64, 32, 16),
        dropout: float = 0.2,
    ):
        super().__init__()
        layers = []
        prev = input_dim
        for i, width in enumerate(hidden):
            layers.append(nn.Linear(prev, width))
            layers.append(nn.ReLU())
            # dropout after every hidden layer except the last
            if i < len(hidden) - 1:
                layers.append(nn.Dropout(dropout))
            prev = width
        layers.append(nn.Linear(prev, 1))
        layers.append(nn.Sigmoid())
        self.net = nn.Sequential(*layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.net(x)
