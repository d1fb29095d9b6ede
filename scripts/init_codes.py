"""
Build an initial adaptation nnet and zero codes for every set in a set2utt list.

The nnet is two code-adaptive layers with a sigmoid in between, the first one
initialised to identity so training starts from the unadapted features.
"""

import torch
from torch import nn

from code_adapt.adaptive import CodeAdaptiveLinear
from code_adapt.sources import read_group_list, save_archive, zero_codes

featDim = 440
codeDim = 50
set2utt = 'data/train/spk2utt'
adaptOut = 'exp/adapt.nnet'
codesOut = 'exp/code_init.pkl'

adapt_nnet = nn.Sequential(
    CodeAdaptiveLinear(featDim, featDim, codeDim, init_identity=True),
    nn.Sigmoid(),
    CodeAdaptiveLinear(featDim, featDim, codeDim),
)
torch.save(adapt_nnet, adaptOut)

keys = [key for key, _ in read_group_list(set2utt)]
save_archive(codesOut, zero_codes(keys, codeDim))

print(f"Wrote {adaptOut} and {len(keys)} zero codes of dim {codeDim} to {codesOut}")
