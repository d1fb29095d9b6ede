"""
Keyed data sources used by the trainer: utterance features, frame labels
(alignments), per-group codes and the group -> utterance list.

Archives are plain pickles of {key: array}.
"""

import os
import pickle
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np
import torch


class FeatureSource(Protocol):
    def has_key(self, key: str) -> bool: ...

    def get(self, key: str) -> torch.Tensor: ...


class LabelSource(Protocol):
    def has_key(self, key: str) -> bool: ...

    def get(self, key: str) -> Sequence[int]: ...


class CodeStore(Protocol):
    def has_key(self, key: str) -> bool: ...

    def read(self, key: str) -> np.ndarray: ...

    def write(self, key: str, code) -> None: ...

    def flush(self) -> None: ...


class DictFeatureSource:
    def __init__(self, feats: Mapping[str, np.ndarray]):
        self.feats = feats

    def has_key(self, key):
        return key in self.feats

    def get(self, key) -> torch.Tensor:
        return torch.as_tensor(np.asarray(self.feats[key]), dtype=torch.float32)

    def __len__(self):
        return len(self.feats)


class DictLabelSource:
    def __init__(self, labels: Mapping[str, Sequence[int]]):
        self.labels = labels

    def has_key(self, key):
        return key in self.labels

    def get(self, key) -> np.ndarray:
        return np.asarray(self.labels[key], dtype=np.int64).reshape(-1)

    def __len__(self):
        return len(self.labels)


class DictCodeStore:
    def __init__(self, codes: Optional[Dict[str, np.ndarray]] = None):
        self.codes = {} if codes is None else dict(codes)

    def has_key(self, key):
        return key in self.codes

    def read(self, key) -> np.ndarray:
        return np.asarray(self.codes[key], dtype=np.float32)

    def write(self, key, code):
        self.codes[key] = np.asarray(code, dtype=np.float32).copy()

    def flush(self):
        pass

    def keys(self):
        return self.codes.keys()

    def __len__(self):
        return len(self.codes)


class CodeArchive(DictCodeStore):
    """
    Code store backed by a pickle file. Writes are buffered and the file is
    rewritten every `flush_every` writes and on `flush()`.
    """

    def __init__(self, path: str, flush_every: int = 100):
        self.path = path
        self.flush_every = flush_every
        self._pending = 0
        codes = {}
        if os.path.exists(path):
            with open(path, "rb") as handle:
                codes = pickle.load(handle)
        super().__init__(codes)

    def write(self, key, code):
        super().write(key, code)
        self._pending += 1
        if self.flush_every > 0 and self._pending >= self.flush_every:
            self.flush()

    def flush(self):
        if self._pending == 0 and os.path.exists(self.path):
            return
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "wb") as handle:
            pickle.dump(self.codes, handle)
        os.replace(tmp_path, self.path)
        self._pending = 0


def _load_pickle(path):
    with open(path, "rb") as handle:
        return pickle.load(handle)


def load_feature_archive(path: str) -> DictFeatureSource:
    return DictFeatureSource(_load_pickle(path))


def load_label_archive(path: str) -> DictLabelSource:
    return DictLabelSource(_load_pickle(path))


def save_archive(path: str, data: Mapping):
    with open(path, "wb") as handle:
        pickle.dump(dict(data), handle)


def read_group_list(path: str) -> Iterator[Tuple[str, List[str]]]:
    """Lazily yield (group key, [utterance ids]) from lines `key utt1 utt2 ...`."""
    with open(path) as handle:
        for line in handle:
            fields = line.split()
            if not fields:
                continue
            yield fields[0], fields[1:]


def zero_codes(group_keys: Iterable[str], code_dim: int) -> Dict[str, np.ndarray]:
    return {key: np.zeros(code_dim, dtype=np.float32) for key in group_keys}
