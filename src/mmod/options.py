"""
MMOD Detector Options
=======================
Derives sliding-window geometry and non-max-suppression thresholds from a
set of training annotations.

Given a target window size (long side) and a minimum short side, one window
shape is picked per cluster of box aspect ratios, per label, so that every
training box rescaled to a window's area overlaps that window with at least
``min_detector_window_overlap_iou``.
"""

import math
from collections import defaultdict
from dataclasses import asdict, dataclass
from itertools import combinations
from typing import Dict, List, Optional, Sequence

import torch
from torchvision.ops import box_iou

from .config import MMODConfig as cfg
from .rects import MMODRect, OverlapTester, box_intersection, rects_to_tensor


@dataclass
class DetectorWindow:
    width: int
    height: int
    label: str = ""

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


def shape_iou(ratio_a: float, ratio_b: float) -> float:
    """IoU of two centred boxes of equal area with aspect ratios a and b."""
    q = math.sqrt(min(ratio_a, ratio_b) / max(ratio_a, ratio_b))
    return q / (2.0 - q)


def find_covering_aspect_ratios(ratios: Sequence[float], min_iou: float) -> List[float]:
    """Greedy cover of a set of aspect ratios by a few of those ratios.

    The widest uncovered ratio becomes a window, then every ratio whose
    equal-area box overlaps it with at least ``min_iou`` is dropped.
    """
    remaining = sorted(ratios, reverse=True)
    windows = []
    while remaining:
        w = remaining[0]
        windows.append(w)
        remaining = [r for r in remaining if shape_iou(r, w) < min_iou]
    return windows


def window_from_ratio(ratio: float, target_size: int, min_target_size: int, label: str) -> DetectorWindow:
    if ratio >= 1:
        width, height = float(target_size), target_size / ratio
    else:
        width, height = target_size * ratio, float(target_size)
    short = min(width, height)
    if short < min_target_size:
        scale = min_target_size / short
        width, height = width * scale, height * scale
    return DetectorWindow(max(1, int(round(width))), max(1, int(round(height))), label)


def _advance_toward_1(value: float) -> float:
    if value < 1:
        return value + (1 - value) * 0.1
    return value


def find_tight_overlap_tester(boxes: Sequence[Sequence[MMODRect]]) -> OverlapTester:
    """Tightest NMS thresholds that keep every pair of training boxes apart."""
    max_iou = 0.0
    max_covered = 0.0
    for image_boxes in boxes:
        kept = [b for b in image_boxes if not b.ignore]
        if len(kept) < 2:
            continue
        t = rects_to_tensor(kept)
        iou = box_iou(t, t)
        inter = box_intersection(t, t)
        areas = torch.tensor([max(b.area, 1e-9) for b in kept])
        for i, j in combinations(range(len(kept)), 2):
            max_iou = max(max_iou, float(iou[i, j]))
            covered = max(float(inter[i, j] / areas[i]), float(inter[i, j] / areas[j]))
            max_covered = max(max_covered, covered)
    return OverlapTester(max_iou, max_covered)


class MMODOptions:
    """Detector windows, overlap tests and loss weights for one detector."""

    def __init__(
        self,
        detector_windows: List[DetectorWindow],
        overlaps_nms: OverlapTester,
        overlaps_ignore: Optional[OverlapTester] = None,
        truth_match_iou_threshold: float = cfg.TRUTH_MATCH_IOU,
        loss_per_false_alarm: float = cfg.LOSS_PER_FALSE_ALARM,
        loss_per_missed_target: float = cfg.LOSS_PER_MISSED_TARGET,
    ):
        if not detector_windows:
            raise ValueError("MMODOptions needs at least one detector window")
        self.detector_windows = list(detector_windows)
        self.overlaps_nms = overlaps_nms
        self.overlaps_ignore = overlaps_ignore or OverlapTester(*cfg.OVERLAPS_IGNORE)
        self.truth_match_iou_threshold = truth_match_iou_threshold
        self.loss_per_false_alarm = loss_per_false_alarm
        self.loss_per_missed_target = loss_per_missed_target

    @classmethod
    def from_boxes(
        cls,
        boxes: Sequence[Sequence[MMODRect]],
        target_size: int,
        min_target_size: int,
        min_detector_window_overlap_iou: float = 0.75,
    ) -> "MMODOptions":
        if not 0 < min_detector_window_overlap_iou <= 1:
            raise ValueError("min_detector_window_overlap_iou must be in (0, 1]")
        if min_target_size > target_size:
            raise ValueError("min_target_size can't be larger than target_size")

        ratios: Dict[str, List[float]] = defaultdict(list)
        for image_boxes in boxes:
            for b in image_boxes:
                if b.ignore or b.width <= 0 or b.height <= 0:
                    continue
                ratios[b.label].append(b.width / b.height)
        if not ratios:
            raise ValueError("Can't derive detector windows: no non-ignored boxes in the training data")

        windows = []
        for label in sorted(ratios):
            for r in find_covering_aspect_ratios(ratios[label], min_detector_window_overlap_iou):
                windows.append(window_from_ratio(r, target_size, min_target_size, label))

        tight = find_tight_overlap_tester(boxes)
        overlaps_nms = OverlapTester(
            _advance_toward_1(tight.iou_thresh),
            _advance_toward_1(tight.percent_covered_thresh),
        )
        return cls(windows, overlaps_nms)

    def best_window(self, rect: MMODRect) -> Optional[int]:
        """Index of the same-label window whose shape best fits ``rect``."""
        if rect.width <= 0 or rect.height <= 0:
            return None
        ratio = rect.width / rect.height
        best, best_iou = None, -1.0
        for k, w in enumerate(self.detector_windows):
            if w.label != rect.label:
                continue
            iou = shape_iou(ratio, w.aspect_ratio)
            if iou > best_iou:
                best, best_iou = k, iou
        return best

    @property
    def min_window_side(self) -> int:
        return min(min(w.width, w.height) for w in self.detector_windows)

    def to_dict(self) -> dict:
        return {
            "detector_windows": [asdict(w) for w in self.detector_windows],
            "overlaps_nms": list(self.overlaps_nms.as_tuple()),
            "overlaps_ignore": list(self.overlaps_ignore.as_tuple()),
            "truth_match_iou_threshold": self.truth_match_iou_threshold,
            "loss_per_false_alarm": self.loss_per_false_alarm,
            "loss_per_missed_target": self.loss_per_missed_target,
        }

    @classmethod
    def from_dict(cls, state: dict) -> "MMODOptions":
        return cls(
            [DetectorWindow(**w) for w in state["detector_windows"]],
            OverlapTester(*state["overlaps_nms"]),
            OverlapTester(*state["overlaps_ignore"]),
            state["truth_match_iou_threshold"],
            state["loss_per_false_alarm"],
            state["loss_per_missed_target"],
        )
