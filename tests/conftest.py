# tests/conftest.py
import numpy as np
import pytest
import torch
from torch import nn

from code_adapt.adaptive import CodeAdaptiveLinear
from code_adapt.config import TrainConfig
from code_adapt.sources import DictCodeStore, DictFeatureSource, DictLabelSource

FEAT_DIM = 3
CODE_DIM = 2
N_CLASSES = 4


def make_utterance(n_frames: int, seed: int):
    rng = np.random.default_rng(seed)
    feats = rng.standard_normal((n_frames, FEAT_DIM)).astype(np.float32)
    labels = rng.integers(0, N_CLASSES, size=n_frames)
    return feats, labels


@pytest.fixture
def adapt_nnet():
    torch.manual_seed(0)
    return nn.Sequential(
        CodeAdaptiveLinear(FEAT_DIM, FEAT_DIM, CODE_DIM, init_identity=True),
        nn.Sigmoid(),
        CodeAdaptiveLinear(FEAT_DIM, FEAT_DIM, CODE_DIM),
    )


@pytest.fixture
def back_nnet():
    torch.manual_seed(1)
    return nn.Sequential(nn.Linear(FEAT_DIM, 8), nn.Tanh(), nn.Linear(8, N_CLASSES))


@pytest.fixture
def corpus():
    """Two sets of utterances with matching features and alignments."""
    feats, labels = {}, {}
    lengths = {"a1": 5, "a2": 3, "a3": 7, "b1": 6, "b2": 4}
    for i, (utt, n) in enumerate(lengths.items()):
        feats[utt], labels[utt] = make_utterance(n, seed=i)
    groups = [("A", ["a1", "a2", "a3"]), ("B", ["b1", "b2"])]
    return groups, DictFeatureSource(feats), DictLabelSource(labels)


@pytest.fixture
def codes_in():
    return DictCodeStore({
        "A": np.array([0.1, -0.2], dtype=np.float32),
        "B": np.array([0.0, 0.3], dtype=np.float32),
    })


@pytest.fixture
def code_config():
    return TrainConfig(
        bunch_size=4,
        cache_size=8,
        seed=3,
        randomize=False,
        shuffle=False,
        update_code_vec=True,
        learn_rate=0.05,
    )
