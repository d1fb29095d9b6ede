import logging
import os
import pickle
import time
from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import hydra
import numpy as np
from omegaconf import DictConfig, OmegaConf
import torch
from torch import nn
import wandb

from .adaptive import collect_adaptive_layers, common_code_dim
from .cache import BunchBuffer, ShuffleCache
from .config import TrainConfig
from .errors import ConfigurationError
from .groups import CodeGroupManager
from .loss import FrameCrossEntropy
from .pipeline import FixedTransform, FrozenBackend
from .sources import (
    CodeArchive,
    CodeStore,
    FeatureSource,
    LabelSource,
    load_feature_archive,
    load_label_archive,
    read_group_list,
)

logger = logging.getLogger(__name__)


@dataclass
class TrainingStats:
    num_sets: int = 0
    num_done: int = 0
    missing_alignment: int = 0
    too_long: int = 0
    length_mismatch: int = 0
    num_cache: int = 0
    total_frames: int = 0
    empty_sets: int = 0
    feature_wait: float = 0.0
    elapsed: float = 0.0

    @property
    def num_other_error(self) -> int:
        return self.too_long + self.length_mismatch

    @property
    def frames_per_second(self) -> float:
        return self.total_frames / self.elapsed if self.elapsed > 0 else 0.0


class CodeTrainer:
    """
    Learns per-group codes (and optionally the adaptation layers themselves)
    by back-propagating frame classification errors through a frozen backend.

    Pipeline per bunch: feature transform (applied when caching) ->
    adaptation network -> frozen backend -> frame cross-entropy.
    """

    def __init__(
        self,
        adapt_nnet: nn.Module,
        back_nnet: nn.Module,
        config: TrainConfig,
        feature_transform: Optional[nn.Module] = None,
        loss_fn: Optional[FrameCrossEntropy] = None,
        device="cpu",
    ):
        config.validate(has_code_writer=True)
        self.config = config
        self.device = device
        self.adapt_nnet = adapt_nnet.to(device)
        self.back_nnet = FrozenBackend(back_nnet).to(device)
        self.feature_transform = FixedTransform(feature_transform).to(device)
        self.loss_fn = FrameCrossEntropy() if loss_fn is None else loss_fn

        self.layers = collect_adaptive_layers(self.adapt_nnet)
        self.code_dim = common_code_dim(self.layers)
        logger.info(
            "Totally %d among %d modules of the nnet are adaptive layers.",
            len(self.layers),
            len(list(self.adapt_nnet.modules())),
        )
        if config.update_code_vec and not config.crossvalidate and not self.layers:
            raise ConfigurationError("Code update requested but the nnet has no adaptive layers")

        code_params = {id(layer.code) for layer in self.layers}
        if not config.update_weight:
            # plain layers of the adaptation nnet only learn together with the adaptive weights
            for module in self.adapt_nnet.modules():
                for p in module.parameters(recurse=False):
                    if id(p) not in code_params:
                        p.requires_grad_(False)
        for layer in self.layers:
            layer.configure_updates(config.update_weight, config.update_code_xform, config.update_code_vec)
            layer.set_train_options(config.effective_code_learn_rate, config.momentum, config.l2_penalty)
        if self.training and not any(p.requires_grad for p in self.adapt_nnet.parameters()):
            raise ConfigurationError(
                f"Updates requested (weight={config.update_weight}, code_xform={config.update_code_xform}, "
                f"code_vec={config.update_code_vec}) but no parameter of the adaptation nnet is trainable"
            )

        self.optimizer = None
        net_params = [
            p for p in self.adapt_nnet.parameters() if p.requires_grad and id(p) not in code_params
        ]
        if net_params and not config.crossvalidate:
            self.optimizer = torch.optim.SGD(
                net_params,
                lr=config.learn_rate,
                momentum=config.momentum,
                weight_decay=config.l2_penalty,
            )

        self.generator = torch.Generator().manual_seed(config.seed)
        self.cache = ShuffleCache(config.cache_size, config.bunch_size, overshoot=config.max_frames)
        self.bunch_buffer = BunchBuffer(self.cache.bunch_size, device)
        self.stats = TrainingStats()
        self._start = time.time()

    @property
    def training(self) -> bool:
        return not self.config.crossvalidate

    def train(
        self,
        groups: Iterable[Tuple[str, Sequence[str]]],
        feature_reader: FeatureSource,
        alignment_reader: LabelSource,
        code_reader: CodeStore,
        code_writer: Optional[CodeStore] = None,
    ) -> TrainingStats:
        if self.training and self.config.update_code_vec and code_writer is None:
            raise ConfigurationError("No output code archive is specified for learning")

        manager = CodeGroupManager(self.layers, code_reader, code_writer, overwrite=self.config.overwrite_codes)
        self.adapt_nnet.train(self.training)
        self.loss_fn.reset()
        self.stats = TrainingStats()
        start = self._start = time.time()
        logger.info("%s STARTED", "TRAINING" if self.training else "CROSSVALIDATE")

        for key, utts in groups:
            self._train_group(manager, key, list(utts), feature_reader, alignment_reader)
            self.stats.elapsed = time.time() - start
        if code_writer is not None:
            code_writer.flush()

        if self.training and self.config.updates_network:
            torch.save(self.adapt_nnet, self.config.out_adapt_filename)
            logger.info("Wrote adapted nnet to %s", self.config.out_adapt_filename)

        self.stats.elapsed = time.time() - start
        self._log_summary()
        return self.stats

    def _train_group(self, manager: CodeGroupManager, key: str, utts: List[str], feature_reader, alignment_reader):
        config = self.config
        self.stats.num_sets += 1
        logger.info("Set # %d - %s:", self.stats.num_sets, key)
        manager.begin_group(key)

        if config.shuffle and len(utts) > 1:
            perm = torch.randperm(len(utts), generator=self.generator).tolist()
            utts = [utts[i] for i in perm]

        frames_before = self.stats.total_frames
        loss_before, acc_frames_before = self.loss_fn.loss, self.loss_fn.frames
        uid = 0
        while uid < len(utts) or not self.cache.is_empty():
            # fill the cache
            while not self.cache.is_full() and uid < len(utts):
                self._add_utterance(utts[uid], feature_reader, alignment_reader)
                uid += 1

            if self.training and config.randomize:
                self.cache.randomize(self.generator)
            self.stats.num_cache += 1
            logger.debug(
                "Cache #%d %s segments: %d frames: %.4fh",
                self.stats.num_cache,
                "[RND]" if self.cache.randomized else "[NO-RND]",
                self.stats.num_done,
                self.stats.total_frames / 360000,
            )

            # a sub-bunch tail waits for the next fill unless the group is done
            exhausted = uid >= len(utts)
            while len(self.cache) >= self.cache.bunch_size or (exhausted and not self.cache.is_empty()):
                nnet_in, targets = self.cache.take_bunch(out=self.bunch_buffer)
                self._train_bunch(manager, nnet_in, targets)

        group_frames = self.stats.total_frames - frames_before
        persist = self.training and config.update_code_vec
        if group_frames == 0:
            self.stats.empty_sets += 1
            if persist:
                logger.warning("Set %s has no usable utterances, its code is not written", key)
            persist = False
        manager.end_group(key, persist=persist)

        if wandb.run is not None and group_frames > 0:
            wandb.log({
                "set/frames": group_frames,
                "set/avg_loss": (self.loss_fn.loss - loss_before) / (self.loss_fn.frames - acc_frames_before),
                "set/index": self.stats.num_sets,
            })

    def _add_utterance(self, utt: str, feature_reader, alignment_reader):
        config = self.config
        logger.debug("Reading utt %s", utt)
        if not alignment_reader.has_key(utt):
            logger.debug("No alignment for utt %s", utt)
            self.stats.missing_alignment += 1
            return

        t_features = time.time()
        mat = feature_reader.get(utt)
        alignment = alignment_reader.get(utt)
        self.stats.feature_wait += time.time() - t_features

        if mat.shape[0] > config.max_frames:
            logger.warning(
                "Utterance %s: Skipped because it has %d frames, which is more than %d.",
                utt,
                mat.shape[0],
                config.max_frames,
            )
            self.stats.too_long += 1
            return
        if len(alignment) != mat.shape[0]:
            logger.warning(
                "Alignment has wrong size %d vs. features' %d, for utt %s",
                len(alignment),
                mat.shape[0],
                utt,
            )
            self.stats.length_mismatch += 1
            return

        feats_transf = self.feature_transform(torch.as_tensor(mat, dtype=torch.float32, device=self.device))
        self.cache.add_utterance(feats_transf, alignment)
        self.stats.num_done += 1

        if self.stats.num_done % 1000 == 0:
            elapsed = max(time.time() - self._start, 1e-9)
            logger.info(
                "After %d utterances: time elapsed = %.2f min; processed %.1f frames per second.",
                self.stats.num_done,
                elapsed / 60,
                self.stats.total_frames / elapsed,
            )

    def _train_bunch(self, manager: CodeGroupManager, nnet_in: torch.Tensor, targets: torch.Tensor):
        if not self.training:
            with torch.no_grad():
                back_out = self.back_nnet(self.adapt_nnet(nnet_in))
                self.loss_fn.evaluate(back_out, targets)
            self.stats.total_frames += nnet_in.shape[0]
            return

        self.adapt_nnet.zero_grad(set_to_none=True)
        back_out = self.back_nnet(self.adapt_nnet(nnet_in))
        loss = self.loss_fn.evaluate(back_out, targets)
        loss.backward()
        if self.optimizer is not None:
            self.optimizer.step()

        if self.config.update_code_vec:
            # accumulate code gradient through the different layers
            code_vec_diff = manager.aggregate_gradient()
            manager.apply_update(code_vec_diff)
        self.stats.total_frames += nnet_in.shape[0]

    def _log_summary(self):
        stats = self.stats
        logger.info(
            "%s FINISHED %.2fmin, fps %.1f, feature wait %.2fs",
            "TRAINING" if self.training else "CROSSVALIDATE",
            stats.elapsed / 60,
            stats.frames_per_second,
            stats.feature_wait,
        )
        logger.info("Done %d sets (%d without usable utterances).", stats.num_sets, stats.empty_sets)
        logger.info(
            "Done %d files, %d with no alignments, %d with other errors "
            "(%d too long, %d with length mismatch).",
            stats.num_done,
            stats.missing_alignment,
            stats.num_other_error,
            stats.too_long,
            stats.length_mismatch,
        )
        logger.info("Total frames %d", stats.total_frames)
        logger.info(self.loss_fn.report())


def _resolve_device(device: str) -> str:
    if device == "auto":
        return "cuda" if torch.cuda.is_available() else "cpu"
    return device


def loadNetwork(path: str, device="cpu") -> nn.Module:
    return torch.load(path, map_location=device, weights_only=False)


def trainCodes(args):
    config = TrainConfig.from_args(args)
    config.validate()
    device = _resolve_device(args.get("device", "auto"))

    output_dir = args.get("outputDir")
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        with open(output_dir + "/args", "wb") as file:
            pickle.dump(OmegaConf.to_container(args) if isinstance(args, DictConfig) else dict(args), file)

    wandb.init(
        project=args.get("wandb_project", "code-adaptation"),
        config=asdict(config),
        name=os.path.basename(output_dir) if output_dir else None,
        mode=args.get("wandb_mode", "disabled"),
    )

    feature_transform = None
    if args.get("feature_transform"):
        feature_transform = loadNetwork(args["feature_transform"], device)
    adapt_nnet = loadNetwork(args["adapt_model"], device)
    back_nnet = loadNetwork(args["back_model"], device)

    trainer = CodeTrainer(
        adapt_nnet,
        back_nnet,
        config,
        feature_transform=feature_transform,
        device=device,
    )

    code_writer = None
    if not config.crossvalidate and config.update_code_vec:
        code_writer = CodeArchive(config.code_out)

    stats = trainer.train(
        read_group_list(args["set2utt"]),
        load_feature_archive(args["features"]),
        load_label_archive(args["alignments"]),
        CodeArchive(args["codes"]),
        code_writer,
    )

    wandb.log({
        "train/avg_loss" if not config.crossvalidate else "eval/avg_loss": trainer.loss_fn.avg_loss,
        "frame_accuracy": trainer.loss_fn.frame_accuracy,
        "total_frames": stats.total_frames,
    })

    if output_dir:
        tStats = asdict(stats)
        tStats["avg_loss"] = np.array(trainer.loss_fn.avg_loss)
        tStats["frame_accuracy"] = np.array(trainer.loss_fn.frame_accuracy)
        with open(output_dir + "/trainingStats", "wb") as file:
            pickle.dump(tStats, file)

    wandb.finish()
    return stats


@hydra.main(version_base="1.1", config_path="conf", config_name="config")
def main(cfg):
    cfg.outputDir = os.getcwd()
    trainCodes(cfg)


if __name__ == "__main__":
    main()
