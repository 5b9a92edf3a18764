"""
Max-Margin Object Detection Loss
==================================
Hinge-style structured loss over a whole image:

  * every truth box is pinned to one (level, window, cell) of the score maps
    and pays ``loss_per_missed_target * relu(1 - score)`` there;
  * loss-augmented inference runs the detector with every score shifted by
    ``loss_per_false_alarm``; the surviving detections that neither match a
    truth nor overlap an ignore box pay ``score + loss_per_false_alarm``.

Gradients flow through torch autograd; the selection steps run on detached
scores.
"""

import math
from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn.functional as F
from torchvision.ops import box_iou

from .config import MMODConfig as cfg
from .model import MMODNet
from .rects import MMODRect, nms, rects_to_tensor


class MMODLoss:
    """Callable loss bound to a network's geometry and options."""

    def __init__(self, net: MMODNet, max_candidates: int = cfg.MAX_LOSS_CANDIDATES):
        self.net = net
        self.options = net.options
        self.max_candidates = max_candidates
        self.num_unmatchable = 0

    def assign_truth(self, rect: MMODRect, image_size, sizes, map_shapes) -> Optional[Tuple[int, int, int, int]]:
        """(level, window, y, x) that should fire for ``rect``, or None if no cell can match it."""
        k = self.options.best_window(rect)
        if k is None:
            return None
        window = self.options.detector_windows[k]
        desired = math.log(math.sqrt(window.width * window.height / rect.area))
        height, width = image_size

        def level_scale(size):
            return math.log(math.sqrt((size[0] / height) * (size[1] / width)))

        level = min(range(len(sizes)), key=lambda l: abs(level_scale(sizes[l]) - desired))
        sy, sx = sizes[level][0] / height, sizes[level][1] / width
        cx, cy = rect.center
        rows, cols = map_shapes[level]
        x = min(max(int(round(cx * sx / self.net.stride)), 0), cols - 1)
        y = min(max(int(round(cy * sy / self.net.stride)), 0), rows - 1)

        box = self.net.window_rects(
            sizes[level], image_size,
            torch.tensor([k]), torch.tensor([y]), torch.tensor([x]))
        if float(box_iou(box, rects_to_tensor([rect]))[0, 0]) < self.options.truth_match_iou_threshold:
            return None
        return level, k, y, x

    def __call__(self, maps: List[torch.Tensor], labels: Sequence[Sequence[MMODRect]], image_size) -> torch.Tensor:
        sizes = self.net.pyramid_sizes(*image_size)
        map_shapes = [tuple(m.shape[-2:]) for m in maps]
        batch_size = maps[0].shape[0]
        fa = self.options.loss_per_false_alarm
        missed = self.options.loss_per_missed_target
        windows = self.options.detector_windows

        total = maps[0].sum() * 0.0
        for i in range(batch_size):
            truths, ignores, cells = [], [], []
            for rect in labels[i]:
                if rect.ignore:
                    ignores.append(rect)
                    continue
                cell = self.assign_truth(rect, image_size, sizes, map_shapes)
                if cell is None:
                    self.num_unmatchable += 1
                    ignores.append(rect)
                    continue
                truths.append(rect)
                if cell not in cells:
                    cells.append(cell)

            for level, k, y, x in cells:
                total = total + missed * F.relu(1 - maps[level][i, k, y, x])

            boxes, scores, wins = [], [], []
            for level, (level_map, size) in enumerate(zip(maps, sizes)):
                s = level_map[i]
                mask = s.detach() + fa > 0
                for cl, k, y, x in cells:
                    if cl == level:
                        mask[k, y, x] = False
                ks, ys, xs = torch.nonzero(mask, as_tuple=True)
                if ks.numel() == 0:
                    continue
                boxes.append(self.net.window_rects(size, image_size, ks, ys, xs))
                scores.append(s[ks, ys, xs])
                wins.append(ks)
            if not boxes:
                continue
            boxes, scores, wins = torch.cat(boxes), torch.cat(scores), torch.cat(wins)
            if scores.numel() > self.max_candidates:
                top = torch.topk(scores.detach(), self.max_candidates).indices
                boxes, scores, wins = boxes[top], scores[top], wins[top]

            keep = nms(boxes.detach().cpu(), scores.detach().cpu(), self.options.overlaps_nms)
            kept_boxes = boxes.detach().cpu()[keep]
            hits = torch.zeros(len(keep), dtype=torch.bool)
            if truths:
                iou = box_iou(kept_boxes, rects_to_tensor(truths))
                same_label = torch.tensor(
                    [[windows[int(wins[j])].label == t.label for t in truths] for j in keep],
                    dtype=torch.bool)
                hits |= ((iou >= self.options.truth_match_iou_threshold) & same_label).any(dim=1)
            if ignores:
                hits |= self.options.overlaps_ignore.overlap_matrix(
                    kept_boxes, rects_to_tensor(ignores)).any(dim=1)
            false_alarms = [j for j, hit in zip(keep, hits.tolist()) if not hit]
            if false_alarms:
                idx = torch.tensor(false_alarms, device=scores.device)
                total = total + (scores[idx] + fa).sum()

        return total / batch_size
