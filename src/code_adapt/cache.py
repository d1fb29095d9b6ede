"""
Frame-level shuffling cache.

Utterances of arbitrary length go in, fixed-size bunches of
(feature row, label) pairs come out. The capacity is always a multiple of the
bunch size so every bunch is full except, possibly, the last one of a group.
"""

import logging
from typing import Optional, Tuple

import torch

from .errors import CacheEmptyError, CacheFullError

logger = logging.getLogger(__name__)


class BunchBuffer:
    """
    Reusable storage for one bunch. Owned by the trainer and handed to
    ShuffleCache.take_bunch, which overwrites the returned rows on every call.
    """

    def __init__(self, bunch_size: int, device="cpu"):
        self.bunch_size = bunch_size
        self.device = device
        self.features: Optional[torch.Tensor] = None
        self.labels = torch.empty(bunch_size, dtype=torch.long, device=device)

    def load(self, features: torch.Tensor, labels: torch.Tensor):
        n = features.shape[0]
        if (
            self.features is None
            or self.features.shape[1] != features.shape[1]
            or self.features.dtype != features.dtype
        ):
            self.features = torch.empty(
                self.bunch_size, features.shape[1], dtype=features.dtype, device=self.device
            )
        self.features[:n].copy_(features)
        self.labels[:n].copy_(labels)
        return self.features[:n], self.labels[:n]


class ShuffleCache:
    """
    Entries live in one preallocated block of `capacity + overshoot` rows.
    Utterances are written at the fill position and bunches are read from the
    front; the storage is only reallocated when the feature dim or dtype
    changes, or when a single utterance overshoots more than `overshoot` rows.
    """

    def __init__(self, capacity: int = 32768, bunch_size: int = 512, overshoot: int = 0):
        self.configure(capacity, bunch_size, overshoot)

    def configure(self, capacity: int, bunch_size: int, overshoot: int = 0):
        if bunch_size <= 0:
            raise ValueError(f"bunch size must be positive, got {bunch_size}")
        # ensure divisibility
        capacity = (capacity // bunch_size) * bunch_size
        if capacity <= 0:
            raise ValueError(f"cache capacity must hold at least one bunch of {bunch_size}")
        self.capacity = capacity
        self.bunch_size = bunch_size
        self.overshoot = max(overshoot, 0)
        self._features: Optional[torch.Tensor] = None
        self._labels: Optional[torch.Tensor] = None
        self.clear()

    def clear(self):
        self._begin = 0
        self._end = 0
        self._randomized = False

    def __len__(self):
        return self._end - self._begin

    @property
    def randomized(self) -> bool:
        return self._randomized

    def is_full(self) -> bool:
        return len(self) >= self.capacity

    def is_empty(self) -> bool:
        return len(self) == 0

    def _reserve(self, features: torch.Tensor, n_new: int):
        if self._features is not None and not self.is_empty() and self._features.shape[1] != features.shape[1]:
            raise ValueError(
                f"feature dim {features.shape[1]} does not match cached dim {self._features.shape[1]}"
            )
        if (
            self._features is None
            or self._features.shape[1] != features.shape[1]
            or (self.is_empty() and (self._features.dtype != features.dtype or self._features.device != features.device))
        ):
            rows = max(self.capacity + self.overshoot, n_new)
            self._features = torch.empty(rows, features.shape[1], dtype=features.dtype, device=features.device)
            self._labels = torch.empty(rows, dtype=torch.long, device=features.device)
            self.clear()
            return

        if self._begin > 0:
            # move the carried-over tail to the front
            n = len(self)
            self._features[:n] = self._features[self._begin:self._end].clone()
            self._labels[:n] = self._labels[self._begin:self._end].clone()
            self._begin, self._end = 0, n

        needed = self._end + n_new
        if needed > self._features.shape[0]:
            logger.debug("Growing cache storage from %d to %d rows", self._features.shape[0], needed)
            grown = torch.empty(needed, self._features.shape[1], dtype=self._features.dtype, device=self._features.device)
            grown[:self._end] = self._features[:self._end]
            grown_labels = torch.empty(needed, dtype=torch.long, device=self._labels.device)
            grown_labels[:self._end] = self._labels[:self._end]
            self._features, self._labels = grown, grown_labels

    def add_utterance(self, features: torch.Tensor, labels):
        """Append every frame of one utterance. The cache may overshoot its
        capacity by the tail of this utterance; it is then full."""
        if self.is_full():
            raise CacheFullError(f"cache is full ({len(self)} of {self.capacity} frames)")
        if features.dim() != 2:
            raise ValueError(f"expected a 2-D feature matrix, got shape {tuple(features.shape)}")
        labels = torch.as_tensor(labels, dtype=torch.long, device=features.device).reshape(-1)
        if labels.shape[0] != features.shape[0]:
            raise ValueError(
                f"{labels.shape[0]} labels for {features.shape[0]} feature rows"
            )

        n = features.shape[0]
        self._reserve(features, n)
        self._features[self._end:self._end + n].copy_(features.detach())
        self._labels[self._end:self._end + n].copy_(labels)
        self._end += n
        self._randomized = False

    def randomize(self, generator: Optional[torch.Generator] = None):
        if self.is_empty():
            return
        perm = torch.randperm(len(self), generator=generator).to(self._labels.device) + self._begin
        self._features[self._begin:self._end] = self._features[perm]
        self._labels[self._begin:self._end] = self._labels[perm]
        self._randomized = True

    def take_bunch(self, out: Optional[BunchBuffer] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """Remove the next bunch from the front. Without `out` the rows are
        returned as fresh tensors, otherwise they are loaded into `out`."""
        if self.is_empty():
            raise CacheEmptyError("take_bunch called on an empty cache")
        n = min(self.bunch_size, len(self))
        features = self._features[self._begin:self._begin + n]
        labels = self._labels[self._begin:self._begin + n]
        if out is not None:
            features, labels = out.load(features, labels)
        else:
            features, labels = features.clone(), labels.clone()
        self._begin += n
        if self._begin == self._end:
            self.clear()
        return features, labels
