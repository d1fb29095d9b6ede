import pytest
import torch
from torch import nn

from code_adapt.adaptive import CodeAdaptiveLinear, collect_adaptive_layers, common_code_dim
from code_adapt.errors import CodeDimMismatchError


def test_configure_updates_toggles_parameter_groups():
    layer = CodeAdaptiveLinear(3, 3, 2)
    layer.configure_updates(update_weight=False, update_transform=True, update_code=False)
    assert not layer.linear.weight.requires_grad
    assert not layer.linear.bias.requires_grad
    assert layer.code_xform.weight.requires_grad
    assert not layer.code.requires_grad


def test_set_code_copies_instead_of_aliasing():
    layer = CodeAdaptiveLinear(3, 3, 2)
    code = torch.tensor([1.0, 2.0])
    layer.set_code(code)
    code[0] = 100.0
    assert layer.get_code().tolist() == [1.0, 2.0]

    returned = layer.get_code()
    returned[1] = -5.0
    assert layer.get_code().tolist() == [1.0, 2.0]


def test_set_code_with_wrong_dim_raises():
    layer = CodeAdaptiveLinear(3, 3, 2)
    with pytest.raises(CodeDimMismatchError):
        layer.set_code(torch.zeros(5))


def test_identity_init_and_zero_code_passes_features_through():
    layer = CodeAdaptiveLinear(3, 3, 2, init_identity=True)
    x = torch.randn(4, 3)
    assert torch.allclose(layer(x), x)


def test_code_gradient_is_zero_before_backward():
    layer = CodeAdaptiveLinear(3, 3, 2)
    assert torch.equal(layer.get_code_gradient(), torch.zeros(2))


def test_code_gradient_matches_autograd():
    layer = CodeAdaptiveLinear(3, 3, 2)
    layer.configure_updates(False, False, True)
    x = torch.randn(5, 3)
    layer(x).sum().backward()
    expected = layer.code_xform.weight.detach().sum(dim=0) * 5
    assert torch.allclose(layer.get_code_gradient(), expected)


def test_update_code_with_momentum_accumulates_corrections():
    layer = CodeAdaptiveLinear(3, 3, 2)
    layer.set_train_options(learn_rate=0.1, momentum=0.5)
    layer.set_code(torch.tensor([1.0, 1.0]))
    g = torch.tensor([1.0, -2.0])
    layer.update_code(g)
    assert torch.allclose(layer.get_code(), torch.tensor([0.9, 1.2]))
    layer.update_code(g)
    # second correction: 0.5 * (-0.1 g) - 0.1 g = -0.15 g
    assert torch.allclose(layer.get_code(), torch.tensor([0.75, 1.5]))


def test_zero_gradient_accumulator_resets_corrections():
    layer = CodeAdaptiveLinear(3, 3, 2)
    layer.set_train_options(learn_rate=0.1, momentum=0.9)
    layer.update_code(torch.ones(2))
    assert layer.code_corr.abs().sum() > 0
    layer.zero_gradient_accumulator()
    assert torch.equal(layer.code_corr, torch.zeros(2))
    assert layer.code.grad is None


def test_update_code_is_noop_when_code_updates_disabled():
    layer = CodeAdaptiveLinear(3, 3, 2)
    layer.configure_updates(True, True, False)
    layer.set_code(torch.tensor([0.5, 0.5]))
    layer.update_code(torch.ones(2))
    assert layer.get_code().tolist() == [0.5, 0.5]


def test_l2_penalty_pulls_code_towards_zero():
    layer = CodeAdaptiveLinear(3, 3, 2)
    layer.set_train_options(learn_rate=0.1, l2_penalty=1.0)
    layer.set_code(torch.tensor([2.0, -2.0]))
    layer.update_code(torch.zeros(2))
    assert torch.allclose(layer.get_code(), torch.tensor([1.8, -1.8]))


def test_collect_adaptive_layers_in_network_order():
    first = CodeAdaptiveLinear(3, 4, 2)
    second = CodeAdaptiveLinear(4, 3, 2)
    nnet = nn.Sequential(first, nn.Sigmoid(), nn.Linear(3, 3), second)
    layers = collect_adaptive_layers(nnet)
    assert layers == [first, second]
    assert common_code_dim(layers) == 2


def test_common_code_dim_mismatch_raises():
    layers = [CodeAdaptiveLinear(3, 3, 2), CodeAdaptiveLinear(3, 3, 4)]
    with pytest.raises(CodeDimMismatchError):
        common_code_dim(layers)


def test_common_code_dim_without_layers_is_zero():
    assert common_code_dim([]) == 0
