"""
MMOD Detector Training Script
================================
Trains the sliding-window MMOD detector on an imglab XML dataset.

Each step draws a mini-batch of random crops, jitters their colours and
runs one SGD step. The learning rate is shrunk whenever the loss history
shows no statistically meaningful decrease for
``ITERATIONS_WITHOUT_PROGRESS`` steps, and training stops once it falls
below ``LR_FLOOR``.

Usage:
    python src/mmod/train.py faces
    python src/mmod/train.py faces --model models/mmod_network.dat --device cpu
"""

import os
import sys
import time
import argparse
from collections import deque
from pathlib import Path
from statistics import NormalDist

import numpy as np
import torch
import torch.nn as nn
import torch.optim as optim
from torchvision.ops import box_iou
from tqdm import tqdm

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.mmod.config import MMODConfig as cfg
from src.mmod.data import (RandomCropper, disturb_colors, load_image_dataset,
                           samples_to_tensor)
from src.mmod.loss import MMODLoss
from src.mmod.model import MMODNet, model_info
from src.mmod.options import MMODOptions
from src.mmod.rects import rects_to_tensor


# ---------------------------------------------------------------------------
# Progress detection
# ---------------------------------------------------------------------------
def _steps_without_decrease(values, keep, probability_of_decrease):
    # Walk from newest to oldest, fitting a least-squares line to the kept
    # values seen so far. In that reversed order a decreasing loss has a
    # positive slope.
    y = np.asarray(values, dtype=np.float64)[::-1]
    w = np.asarray(keep, dtype=np.float64)[::-1]
    if y.size == 0:
        return 0
    n = np.cumsum(w)
    x = n - 1
    sx = np.cumsum(w * x)
    sxx = np.cumsum(w * x * x)
    sy = np.cumsum(w * y)
    sxy = np.cumsum(w * x * y)
    syy = np.cumsum(w * y * y)

    with np.errstate(divide="ignore", invalid="ignore"):
        denom = n * sxx - sx * sx
        slope = (n * sxy - sx * sy) / denom
        intercept = (sy - slope * sx) / n
        sse = (syy - 2 * slope * sxy - 2 * intercept * sy
               + slope * slope * sxx + 2 * slope * intercept * sx + n * intercept * intercept)
        sse = np.clip(sse, 0.0, None)
        stderr = np.sqrt(sse / (n - 2) * n / denom)
        z = np.where(stderr > 0, slope / stderr, np.where(slope > 0, np.inf, -np.inf))

    threshold = NormalDist().inv_cdf(probability_of_decrease)
    stalled = np.nonzero((n > 2) & (z < threshold))[0]
    return int(stalled[-1] + 1) if stalled.size else 0


def count_steps_without_decrease(values, probability_of_decrease=cfg.PROBABILITY_OF_DECREASE):
    """Longest run of most recent values over which the loss isn't decreasing.

    Returns the largest N such that, fitting a line to the last N values, the
    probability that its slope is negative is below ``probability_of_decrease``.
    """
    if not 0.5 < probability_of_decrease < 1:
        raise ValueError("probability_of_decrease must be in (0.5, 1)")
    return _steps_without_decrease(values, np.ones(len(values), dtype=bool), probability_of_decrease)


def count_steps_without_decrease_robust(values, probability_of_decrease=cfg.PROBABILITY_OF_DECREASE,
                                        quantile_discard=0.10):
    """Same as :func:`count_steps_without_decrease` but ignores the largest values."""
    if not 0.5 < probability_of_decrease < 1:
        raise ValueError("probability_of_decrease must be in (0.5, 1)")
    values = np.asarray(values, dtype=np.float64)
    if values.size == 0:
        return 0
    cut = np.quantile(values, 1.0 - quantile_discard)
    return _steps_without_decrease(values, values <= cut, probability_of_decrease)


# ---------------------------------------------------------------------------
# Trainer
# ---------------------------------------------------------------------------
def resolve_devices(devices):
    """Map requested device names to available torch devices."""
    resolved = []
    for name in devices:
        device = torch.device(name)
        if device.type == "cuda" and not torch.cuda.is_available():
            continue
        resolved.append(device)
    return resolved or [torch.device("cpu")]


class MMODTrainer:
    """SGD trainer that shrinks the learning rate when progress stalls."""

    def __init__(
        self,
        net: MMODNet,
        weight_decay=cfg.WEIGHT_DECAY,
        momentum=cfg.MOMENTUM,
        learning_rate=cfg.LR,
        devices=cfg.DEVICES,
        iterations_without_progress_threshold=cfg.ITERATIONS_WITHOUT_PROGRESS,
        learning_rate_shrink_factor=cfg.LR_SHRINK_FACTOR,
        sync_file=None,
        sync_interval=cfg.SYNC_INTERVAL,
        verbose=False,
    ):
        self.net = net
        self.devices = resolve_devices(devices)
        self.device = self.devices[0]
        net.to(self.device)
        if len(self.devices) > 1 and self.device.type == "cuda":
            self.model = nn.DataParallel(net, device_ids=[d.index for d in self.devices])
        else:
            self.model = net

        self.weight_decay = weight_decay
        self.momentum = momentum
        self.loss_fn = MMODLoss(net)
        self.optimizer = optim.SGD(net.parameters(), lr=learning_rate,
                                   momentum=momentum, weight_decay=weight_decay)
        self.iterations_without_progress_threshold = iterations_without_progress_threshold
        self.learning_rate_shrink_factor = learning_rate_shrink_factor
        self.loss_history = deque(maxlen=2 * iterations_without_progress_threshold)
        self.steps = 0
        self.average_loss = None
        self.steps_without_progress = 0

        self.sync_file = Path(sync_file) if sync_file else None
        self.sync_interval = sync_interval
        self._last_sync = time.time()
        self.verbose = verbose
        self._pbar = None

        if self.sync_file is not None and self.sync_file.exists():
            self.load_sync()
            print(f"  Resumed from {self.sync_file} at step {self.steps}")

    @property
    def learning_rate(self):
        return self.optimizer.param_groups[0]["lr"]

    @learning_rate.setter
    def learning_rate(self, value):
        for group in self.optimizer.param_groups:
            group["lr"] = value

    def train_one_step(self, samples, labels):
        """One forward/backward/SGD update on a batch of PIL chips and their boxes."""
        self.net.train()
        batch = samples_to_tensor(samples).to(self.device)
        self.optimizer.zero_grad()
        maps = self.model(batch)
        loss = self.loss_fn(maps, labels, tuple(batch.shape[-2:]))
        loss.backward()
        self.optimizer.step()
        self._record_loss(loss.item())
        if self.sync_file is not None and time.time() - self._last_sync >= self.sync_interval:
            self.save_sync()
        return loss.item()

    def _record_loss(self, loss):
        self.steps += 1
        self.average_loss = loss if self.average_loss is None else 0.99 * self.average_loss + 0.01 * loss
        self.loss_history.append(loss)

        threshold = self.iterations_without_progress_threshold
        if len(self.loss_history) >= threshold:
            self.steps_without_progress = count_steps_without_decrease(self.loss_history)
            if (self.steps_without_progress >= threshold
                    and count_steps_without_decrease_robust(self.loss_history) >= threshold):
                self.learning_rate = self.learning_rate * self.learning_rate_shrink_factor
                self.loss_history.clear()
                self.steps_without_progress = 0
        else:
            self.steps_without_progress = len(self.loss_history)

        if self.verbose:
            if self._pbar is None:
                self._pbar = tqdm(desc="Training", unit="step", initial=self.steps - 1)
            self._pbar.update(1)
            self._pbar.set_postfix({
                "lr": f"{self.learning_rate:.6g}",
                "loss": f"{self.average_loss:.5f}",
                "no_progress": self.steps_without_progress,
            })

    def get_net(self):
        """Finish training: close the progress bar, write a last sync and return the net."""
        if self._pbar is not None:
            self._pbar.close()
            self._pbar = None
        if self.sync_file is not None:
            self.save_sync()
        return self.net

    def state_dict(self):
        return {
            "model": self.net.state_dict(),
            "optimizer": self.optimizer.state_dict(),
            "loss_history": list(self.loss_history),
            "steps": self.steps,
            "average_loss": self.average_loss,
        }

    def load_state_dict(self, state):
        self.net.load_state_dict(state["model"])
        self.optimizer.load_state_dict(state["optimizer"])
        self.loss_history.clear()
        self.loss_history.extend(state["loss_history"])
        self.steps = state["steps"]
        self.average_loss = state["average_loss"]

    def save_sync(self):
        """Atomically write trainer state to the sync file."""
        self.sync_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = Path(str(self.sync_file) + ".tmp")
        torch.save(self.state_dict(), tmp)
        os.replace(tmp, self.sync_file)
        self._last_sync = time.time()

    def load_sync(self):
        state = torch.load(self.sync_file, map_location=self.device, weights_only=False)
        self.load_state_dict(state)

    def __str__(self):
        return "\n".join([
            "dnn_trainer details:",
            f"  devices:                                {', '.join(str(d) for d in self.devices)}",
            f"  solver:                                 SGD(weight_decay={self.weight_decay}, momentum={self.momentum})",
            f"  learning rate:                          {self.learning_rate:.6g}",
            f"  learning rate shrink factor:            {self.learning_rate_shrink_factor}",
            f"  iterations without progress threshold:  {self.iterations_without_progress_threshold}",
            f"  steps:                                  {self.steps}",
            f"  synchronization file:                   {self.sync_file}",
        ])


def train_until_floor(trainer, cropper, images, boxes, rng, batch_size=cfg.BATCH_SIZE, lr_floor=cfg.LR_FLOOR):
    """Run crop → jitter → step until the learning rate drops below ``lr_floor``.

    The floor is checked only between steps. Returns the number of steps run.
    """
    steps = 0
    while trainer.learning_rate >= lr_floor:
        samples, labels = cropper(batch_size, images, boxes)
        samples = [disturb_colors(img, rng) for img in samples]
        trainer.train_one_step(samples, labels)
        steps += 1
    return steps


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
@torch.no_grad()
def evaluate_detector(net, images, boxes, iou_threshold=cfg.EVAL_IOU):
    """Precision, recall and 11-point average precision of ``net`` on a dataset.

    Reports the same triple as dlib's ``test_object_detection_function``.

    Detections must match a non-ignored truth of the same label. Unmatched
    detections that overlap an ignore box are not counted.
    """
    scored = []   # (score, is_tp)
    n_truth = 0
    for image, truths in tqdm(list(zip(images, boxes)), desc="Eval"):
        kept = [t for t in truths if not t.ignore]
        ignores = [t for t in truths if t.ignore]
        n_truth += len(kept)
        dets = net.detect(image)
        if not dets:
            continue

        det_boxes = rects_to_tensor(dets)
        iou = box_iou(det_boxes, rects_to_tensor(kept)) if kept else None
        ignored = None
        if ignores:
            ignored = net.options.overlaps_ignore.overlap_matrix(
                det_boxes, rects_to_tensor(ignores)).any(dim=1)

        matched = set()
        for i, det in enumerate(dets):
            best_iou, best_j = 0.0, -1
            for j, truth in enumerate(kept):
                if j in matched or truth.label != det.label:
                    continue
                if float(iou[i, j]) > best_iou:
                    best_iou, best_j = float(iou[i, j]), j
            if best_j >= 0 and best_iou >= iou_threshold:
                matched.add(best_j)
                scored.append((det.detection_confidence, True))
            elif ignored is not None and bool(ignored[i]):
                continue
            else:
                scored.append((det.detection_confidence, False))

    n_tp = sum(1 for _, tp in scored if tp)
    precision = n_tp / len(scored) if scored else 1.0
    recall = n_tp / n_truth if n_truth else 1.0

    tp_cumsum = 0
    precisions, recalls = [], []
    for rank, (score, is_tp) in enumerate(sorted(scored, key=lambda s: -s[0]), 1):
        if is_tp:
            tp_cumsum += 1
        precisions.append(tp_cumsum / rank)
        recalls.append(tp_cumsum / n_truth if n_truth else 1.0)

    # 11-point interpolation
    ap = 0.0
    for r_threshold in [i / 10.0 for i in range(11)]:
        p_at_r = 0.0
        for p, r in zip(precisions, recalls):
            if r >= r_threshold:
                p_at_r = max(p_at_r, p)
        ap += p_at_r / 11.0
    return precision, recall, ap


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------
def print_options(options: MMODOptions):
    print(f"num detector windows: {len(options.detector_windows)}")
    for w in options.detector_windows:
        label = f" [{w.label}]" if w.label else ""
        print(f"detector window width by height: {w.width} x {w.height}{label}")
    print(f"overlap NMS IOU thresh:             {options.overlaps_nms.iou_thresh:.6g}")
    print(f"overlap NMS percent covered thresh: {options.overlaps_nms.percent_covered_thresh:.6g}")


def train_detector(data_dir, model_path=cfg.MODEL_PATH, devices=cfg.DEVICES,
                   sync_file=cfg.SYNC_FILE, learning_rate=cfg.LR):
    """Load ``data_dir``/training.xml, train until the LR floor, save and evaluate."""
    data_dir = Path(data_dir)
    images_train, boxes_train = load_image_dataset(data_dir / cfg.TRAIN_XML)
    test_xml = data_dir / cfg.TEST_XML
    images_test, boxes_test = load_image_dataset(test_xml) if test_xml.exists() else ([], [])

    print(f"num training images: {len(images_train)}")
    print(f"num testing images:  {len(images_test)}")

    options = MMODOptions.from_boxes(
        boxes_train, cfg.TARGET_SIZE, cfg.MIN_TARGET_SIZE, cfg.MIN_WINDOW_OVERLAP_IOU)
    print_options(options)

    net = MMODNet(options)
    model_info(net)
    trainer = MMODTrainer(net, learning_rate=learning_rate, devices=devices,
                          sync_file=sync_file, verbose=cfg.VERBOSE)
    cropper = RandomCropper()
    rng = np.random.default_rng(cfg.SEED)

    t0 = time.time()
    train_until_floor(trainer, cropper, images_train, boxes_train, rng)
    net = trainer.get_net()
    print("done training")

    net.save(model_path)
    print(f"training time: {(time.time() - t0) / 60:.4f} Min")
    if trainer.loss_fn.num_unmatchable:
        print(f"  {trainer.loss_fn.num_unmatchable} truth boxes could not be matched by any detector window")

    print(trainer)
    print(cropper)

    print("training results: {:.6f} {:.6f} {:.6f}".format(
        *evaluate_detector(net, images_train, boxes_train)))
    if images_test:
        print("testing results:  {:.6f} {:.6f} {:.6f}".format(
            *evaluate_detector(net, images_test, boxes_test)))
    return net


def main(argv=None):
    parser = argparse.ArgumentParser(description="Train the MMOD sliding-window detector")
    parser.add_argument("data_dir", nargs="?", help="Directory holding training.xml (and testing.xml)")
    parser.add_argument("--model", type=str, default=str(cfg.MODEL_PATH))
    parser.add_argument("--device", action="append", default=None,
                        help="Device to train on; repeat for several GPUs")
    parser.add_argument("--lr", type=float, default=cfg.LR)
    parser.add_argument("--sync-file", type=str, default=str(cfg.SYNC_FILE))
    args = parser.parse_args(argv)

    if args.data_dir is None:
        parser.print_usage()
        print("Give the path to the training data directory as the argument, e.g.")
        print("   python src/mmod/train.py faces")
        return 0

    print(f"\n{'='*60}")
    print(f"  MMOD Detector Training")
    print(f"{'='*60}")
    train_detector(args.data_dir, model_path=args.model, devices=args.device or cfg.DEVICES,
                   sync_file=args.sync_file, learning_rate=args.lr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
