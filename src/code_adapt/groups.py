import logging
from typing import List, Optional

import torch

from .adaptive import AdaptiveLayer
from .errors import DuplicateKeyError, MissingCodeError

logger = logging.getLogger(__name__)


class CodeGroupManager:
    """
    Owns the code of the group being trained and keeps the copies held by the
    adaptive layers in lockstep.
    """

    def __init__(self, layers: List[AdaptiveLayer], code_reader, code_writer=None, overwrite: bool = False):
        self.layers = list(layers)
        self.code_reader = code_reader
        self.code_writer = code_writer
        self.overwrite = overwrite
        self._key: Optional[str] = None
        self._code: Optional[torch.Tensor] = None

    @property
    def current_key(self) -> Optional[str]:
        return self._key

    @property
    def code(self) -> Optional[torch.Tensor]:
        return self._code

    def begin_group(self, key) -> torch.Tensor:
        if not self.code_reader.has_key(key):
            raise MissingCodeError(key)
        code = torch.as_tensor(self.code_reader.read(key), dtype=torch.float32).reshape(-1)
        for layer in self.layers:
            layer.set_code(code)
            # keep corrections from leaking between groups
            layer.zero_gradient_accumulator()
        self._key = key
        self._code = code.clone()
        return self._code

    def aggregate_gradient(self, layers: Optional[List[AdaptiveLayer]] = None) -> torch.Tensor:
        """Mean of the code gradients of all layers."""
        layers = self.layers if layers is None else layers
        if not layers:
            raise ValueError("no adaptive layers to aggregate a code gradient from")
        gradient = layers[0].get_code_gradient()
        for layer in layers[1:]:
            gradient.add_(layer.get_code_gradient())
        gradient.mul_(1.0 / len(layers))
        return gradient

    def apply_update(self, gradient: torch.Tensor):
        for layer in self.layers:
            layer.update_code(gradient)
        if self.layers:
            self._code = self.layers[0].get_code()

    def mirrors_synchronized(self) -> bool:
        if not self.layers:
            return True
        reference = self.layers[0].get_code()
        return all(torch.equal(reference, layer.get_code()) for layer in self.layers[1:])

    def end_group(self, key, persist: bool):
        if persist:
            if self.code_writer is None:
                raise ValueError("no code output store to persist into")
            if not self.overwrite and self.code_writer.has_key(key):
                raise DuplicateKeyError(key)
            code = self.layers[0].get_code() if self.layers else self._code
            self.code_writer.write(key, code.cpu().numpy())
            logger.debug("Wrote code for set %s", key)
        self._key = None
        self._code = None
