"""Labelled rectangles and box-overlap tests shared by training and inference."""

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import torch
from torchvision.ops import box_area, box_iou


@dataclass
class MMODRect:
    """An annotated or detected box.

    ``rect`` is (x1, y1, x2, y2) in pixel coordinates. Annotations carry
    ``ignore``; detections carry ``detection_confidence``.
    """
    rect: Tuple[float, float, float, float]
    label: str = ""
    detection_confidence: float = 0.0
    ignore: bool = False

    @property
    def width(self) -> float:
        return self.rect[2] - self.rect[0]

    @property
    def height(self) -> float:
        return self.rect[3] - self.rect[1]

    @property
    def area(self) -> float:
        return max(self.width, 0.0) * max(self.height, 0.0)

    @property
    def center(self) -> Tuple[float, float]:
        return (self.rect[0] + self.rect[2]) / 2, (self.rect[1] + self.rect[3]) / 2


def rects_to_tensor(rects: Sequence[MMODRect]) -> torch.Tensor:
    """Stack rect coordinates into an (N, 4) float tensor."""
    if not rects:
        return torch.zeros((0, 4), dtype=torch.float32)
    return torch.tensor([r.rect for r in rects], dtype=torch.float32)


def box_intersection(boxes1: torch.Tensor, boxes2: torch.Tensor) -> torch.Tensor:
    """Pairwise intersection areas of two xyxy box sets, shape (N, M)."""
    lt = torch.max(boxes1[:, None, :2], boxes2[None, :, :2])
    rb = torch.min(boxes1[:, None, 2:], boxes2[None, :, 2:])
    wh = (rb - lt).clamp(min=0)
    return wh[..., 0] * wh[..., 1]


class OverlapTester:
    """Decides whether two boxes overlap enough to count as the same object.

    Two boxes overlap when their IoU exceeds ``iou_thresh`` or when either one
    is covered by more than ``percent_covered_thresh`` of its own area.
    """

    def __init__(self, iou_thresh=0.5, percent_covered_thresh=1.0):
        self.iou_thresh = float(iou_thresh)
        self.percent_covered_thresh = float(percent_covered_thresh)

    def overlap_matrix(self, boxes1: torch.Tensor, boxes2: torch.Tensor) -> torch.Tensor:
        if boxes1.numel() == 0 or boxes2.numel() == 0:
            return torch.zeros((boxes1.shape[0], boxes2.shape[0]), dtype=torch.bool)
        boxes1 = boxes1.float()
        boxes2 = boxes2.float()
        inter = box_intersection(boxes1, boxes2)
        area1 = box_area(boxes1).clamp(min=1e-9)[:, None]
        area2 = box_area(boxes2).clamp(min=1e-9)[None, :]
        covered = torch.max(inter / area1, inter / area2)
        iou = box_iou(boxes1, boxes2)
        return (iou > self.iou_thresh) | (covered > self.percent_covered_thresh)

    def overlaps_any(self, box: np.ndarray, area: float, others: np.ndarray, other_areas: np.ndarray) -> bool:
        """True when ``box`` overlaps at least one row of ``others`` (K, 4)."""
        if others.shape[0] == 0:
            return False
        lt = np.maximum(box[:2], others[:, :2])
        rb = np.minimum(box[2:], others[:, 2:])
        wh = np.clip(rb - lt, 0, None)
        inter = wh[:, 0] * wh[:, 1]
        iou = inter / np.maximum(area + other_areas - inter, 1e-9)
        covered = np.maximum(inter / max(area, 1e-9), inter / np.maximum(other_areas, 1e-9))
        return bool(np.any((iou > self.iou_thresh) | (covered > self.percent_covered_thresh)))

    def __call__(self, a: MMODRect, b: MMODRect) -> bool:
        return bool(self.overlap_matrix(rects_to_tensor([a]), rects_to_tensor([b]))[0, 0])

    def as_tuple(self):
        return self.iou_thresh, self.percent_covered_thresh

    def __repr__(self):
        return f"OverlapTester(iou={self.iou_thresh:.4f}, percent_covered={self.percent_covered_thresh:.4f})"


def nms(boxes: torch.Tensor, scores: torch.Tensor, tester: OverlapTester) -> List[int]:
    """Greedy non-max suppression with an arbitrary overlap test.

    Returns indices into ``boxes`` of the kept boxes, highest score first.
    Each candidate is tested only against the boxes kept so far, so memory
    stays linear in the number of candidates.
    """
    n = boxes.shape[0]
    if n == 0:
        return []
    order = torch.argsort(scores, descending=True).tolist()
    b = boxes.detach().cpu().double().numpy()
    areas = np.clip(b[:, 2] - b[:, 0], 0, None) * np.clip(b[:, 3] - b[:, 1], 0, None)

    kept = np.empty((n, 4))
    kept_areas = np.empty(n)
    keep = []
    for i in order:
        k = len(keep)
        if tester.overlaps_any(b[i], areas[i], kept[:k], kept_areas[:k]):
            continue
        kept[k] = b[i]
        kept_areas[k] = areas[i]
        keep.append(i)
    return keep
