from typing import Optional

import torch
from torch import nn


class FixedTransform(nn.Module):
    """Feature transform applied before caching. Never trained."""

    def __init__(self, module: Optional[nn.Module] = None):
        super().__init__()
        self.module = module
        if module is not None:
            module.requires_grad_(False)
            module.eval()

    def train(self, mode: bool = True):
        return super().train(False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.module is None:
            return x
        with torch.no_grad():
            return self.module(x)


class FrozenBackend(nn.Module):
    """
    Scoring network behind the adaptation layers. Error signal flows through
    it to its input, but none of its parameters ever receives a gradient.
    """

    def __init__(self, module: nn.Module):
        super().__init__()
        self.module = module
        module.requires_grad_(False)
        module.eval()

    def train(self, mode: bool = True):
        return super().train(False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.module(x)
