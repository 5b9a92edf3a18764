"""
MMOD Sliding-Window Detector: Model Definition
==================================================
A small fully-convolutional scorer evaluated over an RGB image pyramid.

Architecture:
  pyramid level  →  downsampler (3x strided 5x5 conv, 8x smaller)
                 →  3x rcon5 (5x5 conv + BN + ReLU)
                 →  15x15 conv with one channel per detector window

A high value in channel k at cell (y, x) means the network thinks an object
of window k's shape sits centred at (STRIDE*x, STRIDE*y) of that level.
"""

from pathlib import Path
from typing import List, Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F
import torchvision.transforms.functional as TF

from .config import MMODConfig as cfg
from .options import MMODOptions
from .rects import MMODRect, nms


def con5d(in_ch, out_ch):
    """5x5 conv that does 2x downsampling."""
    return nn.Conv2d(in_ch, out_ch, kernel_size=5, stride=2, padding=2)


def con5(in_ch, out_ch):
    """5x5 conv that keeps the spatial size."""
    return nn.Conv2d(in_ch, out_ch, kernel_size=5, stride=1, padding=2)


class Downsampler(nn.Module):
    """8x downsampling block: three con5d + BN + ReLU stages."""

    def __init__(self, filters=cfg.DOWNSAMPLER_FILTERS):
        super().__init__()
        layers = []
        in_ch = 3
        for out_ch in filters:
            layers += [con5d(in_ch, out_ch), nn.BatchNorm2d(out_ch), nn.ReLU(inplace=True)]
            in_ch = out_ch
        self.body = nn.Sequential(*layers)
        self.out_channels = in_ch

    def forward(self, x):
        return self.body(x)


class RCon5(nn.Sequential):
    def __init__(self, in_ch, out_ch):
        super().__init__(con5(in_ch, out_ch), nn.BatchNorm2d(out_ch), nn.ReLU(inplace=True))


def image_to_tensor(image) -> torch.Tensor:
    """PIL image or (3, H, W) tensor → float (3, H, W) tensor in [0, 1]."""
    if isinstance(image, torch.Tensor):
        return image.float()
    return TF.to_tensor(image.convert("RGB"))


class MMODNet(nn.Module):
    """Max-margin object detector network.

    ``forward`` takes a batch (B, 3, H, W) with values in [0, 1] and returns
    one score map (B, num_windows, h, w) per pyramid level. Level geometry is
    deterministic given (H, W), see :meth:`pyramid_sizes`.
    """

    def __init__(
        self,
        options: MMODOptions,
        downsampler_filters: Sequence[int] = cfg.DOWNSAMPLER_FILTERS,
        rcon_filters: int = cfg.RCON_FILTERS,
        num_rcon_blocks: int = cfg.NUM_RCON_BLOCKS,
        score_kernel: int = cfg.SCORE_KERNEL,
        pyramid_down: int = cfg.PYRAMID_DOWN,
        max_pyramid_levels: int = cfg.MAX_PYRAMID_LEVELS,
    ):
        super().__init__()
        self.options = options
        self.arch = {
            "downsampler_filters": list(downsampler_filters),
            "rcon_filters": rcon_filters,
            "num_rcon_blocks": num_rcon_blocks,
            "score_kernel": score_kernel,
            "pyramid_down": pyramid_down,
            "max_pyramid_levels": max_pyramid_levels,
        }
        self.stride = 2 ** len(downsampler_filters)
        self.pyramid_factor = (pyramid_down - 1) / pyramid_down
        self.max_pyramid_levels = max_pyramid_levels

        self.downsampler = Downsampler(downsampler_filters)
        blocks = []
        in_ch = self.downsampler.out_channels
        for _ in range(num_rcon_blocks):
            blocks.append(RCon5(in_ch, rcon_filters))
            in_ch = rcon_filters
        self.rcon = nn.Sequential(*blocks)
        # The MMOD loss needs one output channel per detector window.
        self.score = nn.Conv2d(in_ch, len(options.detector_windows), score_kernel,
                               padding=score_kernel // 2)

        mean = torch.tensor(cfg.PIXEL_MEAN, dtype=torch.float32).view(1, 3, 1, 1)
        self.register_buffer("pixel_mean", mean / 255.0)
        self.pixel_scale = 255.0 / cfg.PIXEL_SCALE

    @property
    def num_windows(self):
        return self.score.out_channels

    @property
    def device(self):
        return next(self.parameters()).device

    def pyramid_sizes(self, height: int, width: int) -> List[Tuple[int, int]]:
        """(h, w) of every pyramid level for an input of the given size."""
        sizes = [(height, width)]
        min_side = self.options.min_window_side
        while len(sizes) < self.max_pyramid_levels:
            h, w = sizes[-1]
            nh, nw = int(round(h * self.pyramid_factor)), int(round(w * self.pyramid_factor))
            if min(nh, nw) < min_side or (nh, nw) == (h, w):
                break
            sizes.append((nh, nw))
        return sizes

    def forward(self, x: torch.Tensor) -> List[torch.Tensor]:
        x = (x - self.pixel_mean) * self.pixel_scale
        height, width = x.shape[-2:]
        maps = []
        for level, size in enumerate(self.pyramid_sizes(height, width)):
            level_x = x if level == 0 else F.interpolate(
                x, size=size, mode="bilinear", align_corners=False)
            maps.append(self.score(self.rcon(self.downsampler(level_x))))
        return maps

    def window_rects(
        self,
        level_size: Tuple[int, int],
        image_size: Tuple[int, int],
        ks: torch.Tensor,
        ys: torch.Tensor,
        xs: torch.Tensor,
    ) -> torch.Tensor:
        """Image-space xyxy boxes of windows ``ks`` at output cells (ys, xs) of one level."""
        sy = level_size[0] / image_size[0]
        sx = level_size[1] / image_size[1]
        dims = torch.tensor([[w.width, w.height] for w in self.options.detector_windows],
                            dtype=torch.float32, device=ks.device)[ks]
        cx = xs.float() * self.stride / sx
        cy = ys.float() * self.stride / sy
        half_w = dims[:, 0] / sx / 2
        half_h = dims[:, 1] / sy / 2
        return torch.stack([cx - half_w, cy - half_h, cx + half_w, cy + half_h], dim=1)

    def to_candidates(self, maps, image_size, index, threshold):
        """All windows of sample ``index`` scoring above ``threshold``.

        Returns (boxes, scores, window indices); scores keep their autograd graph.
        """
        sizes = self.pyramid_sizes(*image_size)
        boxes, scores, windows = [], [], []
        for level_map, size in zip(maps, sizes):
            level_scores = level_map[index]
            ks, ys, xs = torch.nonzero(level_scores > threshold, as_tuple=True)
            if ks.numel() == 0:
                continue
            boxes.append(self.window_rects(size, image_size, ks, ys, xs))
            scores.append(level_scores[ks, ys, xs])
            windows.append(ks)
        if not boxes:
            device = maps[0].device
            return (torch.zeros((0, 4), device=device), torch.zeros((0,), device=device),
                    torch.zeros((0,), dtype=torch.long, device=device))
        return torch.cat(boxes), torch.cat(scores), torch.cat(windows)

    @torch.no_grad()
    def detect(self, image, adjust_threshold: float = cfg.ADJUST_THRESHOLD) -> List[MMODRect]:
        """Run the detector on one image and return NMS'd detections."""
        self.eval()
        tensor = image_to_tensor(image).unsqueeze(0).to(self.device)
        image_size = tuple(tensor.shape[-2:])
        maps = self(tensor)
        boxes, scores, windows = self.to_candidates(maps, image_size, 0, adjust_threshold)
        keep = nms(boxes.cpu(), scores.cpu(), self.options.overlaps_nms)
        detections = []
        for i in keep:
            window = self.options.detector_windows[int(windows[i])]
            detections.append(MMODRect(
                rect=tuple(float(v) for v in boxes[i].tolist()),
                label=window.label,
                detection_confidence=float(scores[i]),
            ))
        return detections

    def clean(self):
        """Drop gradients and switch to eval mode before serialisation."""
        self.zero_grad(set_to_none=True)
        self.eval()

    def save(self, path):
        """Save weights, architecture and detector options to one file."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.clean()
        torch.save({
            "state_dict": self.state_dict(),
            "options": self.options.to_dict(),
            "arch": self.arch,
        }, path)

    @classmethod
    def load(cls, path, device="cpu"):
        """Load a network saved with :meth:`save`."""
        ckpt = torch.load(path, map_location=device, weights_only=False)
        model = cls(MMODOptions.from_dict(ckpt["options"]), **ckpt["arch"])
        model.load_state_dict(ckpt["state_dict"])
        return model.to(device)


def model_info(model: nn.Module):
    total_params = sum(p.numel() for p in model.parameters())
    size_mb = sum(p.numel() * p.element_size() for p in model.parameters()) / (1024 ** 2)
    print(f"  Parameters: {total_params:,}")
    print(f"  Size: {size_mb:.1f} MB")
