import math

import torch
import torch.nn.functional as F


class FrameCrossEntropy:
    """
    Frame-level cross-entropy against integer targets.

    evaluate() returns the loss summed over the frames of the bunch; calling
    backward() on it gives the per-frame error signal. Running totals are kept
    for the end-of-run report.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.frames = 0
        self.correct = 0
        self.loss = 0.0

    def evaluate(self, logits: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
        loss = F.cross_entropy(logits, targets, reduction="sum")
        with torch.no_grad():
            self.frames += targets.shape[0]
            self.correct += int((logits.argmax(dim=-1) == targets).sum().item())
            self.loss += loss.item()
        return loss

    @property
    def avg_loss(self) -> float:
        return self.loss / self.frames if self.frames > 0 else math.nan

    @property
    def frame_accuracy(self) -> float:
        return 100.0 * self.correct / self.frames if self.frames > 0 else math.nan

    def report(self) -> str:
        return (
            f"Xent:: AvgLoss: {self.avg_loss:.6f} (Xent), "
            f"FRAME_ACCURACY >> {self.frame_accuracy:.4f}% << over {self.frames} frames"
        )
