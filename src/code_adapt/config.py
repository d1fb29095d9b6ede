from dataclasses import dataclass, fields
from typing import Mapping, Optional

from omegaconf import DictConfig, OmegaConf

from .errors import ConfigurationError


@dataclass
class TrainConfig:
    bunch_size: int = 512
    cache_size: int = 32768
    seed: int = 777
    randomize: bool = True  # frame-level shuffling inside the cache
    shuffle: bool = True  # utterance-level shuffling
    max_frames: int = 6000
    crossvalidate: bool = False

    update_weight: bool = False
    update_code_xform: bool = False
    update_code_vec: bool = False

    learn_rate: float = 0.008
    momentum: float = 0.0
    l2_penalty: float = 0.0
    code_learn_rate: Optional[float] = None

    out_adapt_filename: str = ""
    code_out: str = ""
    overwrite_codes: bool = False

    @classmethod
    def from_args(cls, args: Mapping) -> "TrainConfig":
        if isinstance(args, DictConfig):
            args = OmegaConf.to_container(args, resolve=True)
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in args.items() if k in names and v is not None})

    @property
    def updates_network(self) -> bool:
        return self.update_weight or self.update_code_xform

    @property
    def effective_code_learn_rate(self) -> float:
        return self.learn_rate if self.code_learn_rate is None else self.code_learn_rate

    def validate(self, has_code_writer: Optional[bool] = None):
        if self.bunch_size <= 0:
            raise ConfigurationError(f"bunch_size must be positive, got {self.bunch_size}")
        if self.cache_size < self.bunch_size:
            raise ConfigurationError(
                f"cache_size {self.cache_size} is smaller than bunch_size {self.bunch_size}"
            )
        if self.max_frames <= 0:
            raise ConfigurationError(f"max_frames must be positive, got {self.max_frames}")
        if self.crossvalidate:
            return
        if not (self.update_weight or self.update_code_xform or self.update_code_vec):
            raise ConfigurationError("All the updates are disabled! Exiting ...")
        if self.updates_network and not self.out_adapt_filename:
            raise ConfigurationError("No output adapt nnet file is specified for learning!")
        if has_code_writer is None:
            has_code_writer = bool(self.code_out)
        if self.update_code_vec and not has_code_writer:
            raise ConfigurationError("No output code archive is specified for learning")
