from typing import List

import torch
from torch import nn

from .errors import CodeDimMismatchError


class AdaptiveLayer(nn.Module):
    """
    Base class for layers driven by a per-group code vector.

    Every adaptive layer keeps its own copy of the code (`code`) and a
    correction accumulator (`code_corr`) that smooths code updates within a
    group. The trainer never touches these directly; it goes through
    set_code / get_code / get_code_gradient / update_code.
    """

    def __init__(self, code_dim: int):
        super().__init__()
        self.code = nn.Parameter(torch.zeros(code_dim))
        self.register_buffer("code_corr", torch.zeros(code_dim))
        self.learn_rate = 0.008
        self.momentum = 0.0
        self.l2_penalty = 0.0
        self.update_code_vec = True

    @property
    def code_dim(self) -> int:
        return self.code.shape[0]

    def weight_parameters(self) -> List[nn.Parameter]:
        raise NotImplementedError

    def transform_parameters(self) -> List[nn.Parameter]:
        raise NotImplementedError

    def set_train_options(self, learn_rate: float, momentum: float = 0.0, l2_penalty: float = 0.0):
        self.learn_rate = learn_rate
        self.momentum = momentum
        self.l2_penalty = l2_penalty

    def configure_updates(self, update_weight: bool, update_transform: bool, update_code: bool):
        for p in self.weight_parameters():
            p.requires_grad_(update_weight)
        for p in self.transform_parameters():
            p.requires_grad_(update_transform)
        self.code.requires_grad_(update_code)
        self.update_code_vec = update_code

    def set_code(self, code: torch.Tensor):
        code = torch.as_tensor(code, dtype=self.code.dtype).reshape(-1)
        if code.shape[0] != self.code_dim:
            raise CodeDimMismatchError(
                f"code of dim {code.shape[0]} given to a layer with code dim {self.code_dim}"
            )
        with torch.no_grad():
            self.code.copy_(code)

    def get_code(self) -> torch.Tensor:
        return self.code.detach().clone()

    def zero_gradient_accumulator(self):
        self.code_corr.zero_()
        self.code.grad = None

    def get_code_gradient(self) -> torch.Tensor:
        if self.code.grad is None:
            return torch.zeros_like(self.code.detach())
        return self.code.grad.detach().clone()

    def update_code(self, gradient: torch.Tensor):
        if not self.update_code_vec:
            return
        with torch.no_grad():
            if self.l2_penalty != 0.0:
                gradient = gradient + self.l2_penalty * self.code
            self.code_corr.mul_(self.momentum).add_(gradient, alpha=-self.learn_rate)
            self.code.add_(self.code_corr)


class CodeAdaptiveLinear(AdaptiveLayer):
    """
    Affine layer with a code-dependent bias: y = W x + b + A c.
    Mirrors DaySpecificLinear, but the per-group shift is generated from a
    learned code instead of looked up per day.
    """

    def __init__(self, input_dim: int, output_dim: int, code_dim: int, init_identity: bool = False):
        super().__init__(code_dim)
        self.input_dim = input_dim
        self.output_dim = output_dim
        self.linear = nn.Linear(input_dim, output_dim)
        self.code_xform = nn.Linear(code_dim, output_dim, bias=False)
        if init_identity and input_dim == output_dim:
            with torch.no_grad():
                self.linear.weight.copy_(torch.eye(input_dim))
                self.linear.bias.zero_()

    def weight_parameters(self):
        return [self.linear.weight, self.linear.bias]

    def transform_parameters(self):
        return [self.code_xform.weight]

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # x: [N, D]; the code shift broadcasts over frames
        return self.linear(x) + self.code_xform(self.code)


def collect_adaptive_layers(module: nn.Module) -> List[AdaptiveLayer]:
    return [m for m in module.modules() if isinstance(m, AdaptiveLayer)]


def common_code_dim(layers: List[AdaptiveLayer]) -> int:
    """Code dim shared by all the layers, 0 when there are none."""
    code_dim = 0
    for layer in layers:
        if code_dim == 0:
            code_dim = layer.code_dim
        elif code_dim != layer.code_dim:
            raise CodeDimMismatchError(
                f"Inconsistent code dimensions for adaptive layers: {code_dim} vs {layer.code_dim}"
            )
    return code_dim
