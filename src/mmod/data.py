"""
MMOD Training Data
====================
imglab XML dataset loading, random cropping with box bookkeeping, and colour
jitter for the detector's training loop.

Dataset format (paths relative to the XML file):

    <dataset>
      <images>
        <image file='img/0001.jpg'>
          <box top='74' left='35' width='90' height='44'><label>T</label></box>
          <box top='10' left='10' width='20' height='20' ignore='1'/>
        </image>
      </images>
    </dataset>
"""

import math
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Sequence, Tuple

import numpy as np
import torch
import torchvision.transforms.functional as TF
from PIL import Image

from .config import MMODConfig as cfg
from .rects import MMODRect


# ---------------------------------------------------------------------------
# Dataset I/O
# ---------------------------------------------------------------------------
def load_image_dataset(xml_path) -> Tuple[List[Image.Image], List[List[MMODRect]]]:
    """Load images and their boxes from an imglab XML file."""
    xml_path = Path(xml_path)
    if not xml_path.exists():
        raise FileNotFoundError(f"Dataset file not found: {xml_path}")

    root = ET.parse(xml_path).getroot()
    base = xml_path.parent

    images, boxes = [], []
    for img_el in root.iter("image"):
        image = Image.open(base / img_el.get("file")).convert("RGB")
        rects = []
        for box in img_el.findall("box"):
            top = float(box.get("top"))
            left = float(box.get("left"))
            width = float(box.get("width"))
            height = float(box.get("height"))
            label_el = box.find("label")
            label = label_el.text.strip() if label_el is not None and label_el.text else ""
            ignore = box.get("ignore", "0") not in ("0", "")
            rects.append(MMODRect((left, top, left + width, top + height), label=label, ignore=ignore))
        images.append(image)
        boxes.append(rects)
    return images, boxes


def pyramid_up(image: Image.Image) -> Image.Image:
    """Double an image's resolution."""
    w, h = image.size
    return image.resize((w * 2, h * 2), Image.BILINEAR)


def upsample_image_dataset(images, boxes, times=1):
    """Double images and their boxes ``times`` times."""
    images, boxes = list(images), [list(b) for b in boxes]
    for _ in range(times):
        images = [pyramid_up(img) for img in images]
        boxes = [[MMODRect(tuple(v * 2 for v in r.rect), r.label, r.detection_confidence, r.ignore)
                  for r in rects] for rects in boxes]
    return images, boxes


def samples_to_tensor(samples: Sequence[Image.Image]) -> torch.Tensor:
    """Stack equally-sized PIL chips into a (B, 3, H, W) batch in [0, 1]."""
    return torch.stack([TF.to_tensor(s) for s in samples])


# ---------------------------------------------------------------------------
# Augmentation
# ---------------------------------------------------------------------------
def disturb_colors(image: Image.Image, rng: np.random.Generator,
                   gamma_magnitude=cfg.GAMMA_MAGNITUDE, color_magnitude=cfg.COLOR_MAGNITUDE) -> Image.Image:
    """Random gamma followed by a random per-channel colour balance."""
    gamma = 1.0 + (rng.random() - 0.5) * gamma_magnitude
    image = TF.adjust_gamma(image.convert("RGB"), gamma)
    balance = 1.0 + (rng.random(3) - 0.5) * color_magnitude
    balance /= balance.mean()
    arr = np.asarray(image, dtype=np.float32) * balance
    return Image.fromarray(np.clip(arr, 0, 255).astype(np.uint8))


def _rotate_point(x, y, cx, cy, cos_a, sin_a):
    # PIL rotates counter-clockwise on screen, where y points down
    dx, dy = x - cx, y - cy
    return cx + dx * cos_a + dy * sin_a, cy - dx * sin_a + dy * cos_a


class RandomCropper:
    """Cuts fixed-size training chips out of annotated images.

    Object crops are centred (with jitter) on a random non-ignored box, scaled
    so its long side lands between ``min_object_size[0]`` pixels and
    ``max_object_size`` of the chip. Background crops are taken anywhere.
    Boxes that end up cut by the chip border or too small are kept but
    flagged ``ignore``.
    """

    def __init__(
        self,
        chip_dims=cfg.CHIP_DIMS,
        min_object_size=cfg.MIN_OBJECT_SIZE,
        max_object_size=cfg.MAX_OBJECT_SIZE,
        background_crops_fraction=cfg.BACKGROUND_CROPS_FRACTION,
        translate_amount=cfg.TRANSLATE_AMOUNT,
        randomly_flip=cfg.RANDOMLY_FLIP,
        max_rotation_degrees=cfg.MAX_ROTATION_DEGREES,
        seed=cfg.SEED,
    ):
        self.chip_dims = tuple(chip_dims)
        self.min_object_size = tuple(min_object_size)
        self.max_object_size = max_object_size
        self.background_crops_fraction = background_crops_fraction
        self.translate_amount = translate_amount
        self.randomly_flip = randomly_flip
        self.max_rotation_degrees = max_rotation_degrees
        self.rng = np.random.default_rng(seed)

    def __call__(self, num_crops, images, boxes):
        if not images:
            raise ValueError("RandomCropper needs at least one image")
        samples, labels = [], []
        for _ in range(num_crops):
            idx = int(self.rng.integers(len(images)))
            chip, chip_boxes = self.crop(images[idx], boxes[idx])
            samples.append(chip)
            labels.append(chip_boxes)
        return samples, labels

    def make_crop_plan(self, image: Image.Image, rects: Sequence[MMODRect]):
        """Pick the source rectangle, flip and rotation for one chip."""
        rows, cols = self.chip_dims
        rng = self.rng
        usable = [r for r in rects if not r.ignore and r.width > 0 and r.height > 0]

        if usable and rng.random() >= self.background_crops_fraction:
            rect = usable[int(rng.integers(len(usable)))]
            chip_long = max(rows, cols)
            lo = self.min_object_size[0] / chip_long
            hi = max(self.max_object_size, lo)
            long_side = max(rect.width, rect.height)
            short_side = min(rect.width, rect.height)
            scale = rng.uniform(lo, hi) * chip_long / long_side
            if short_side * scale < self.min_object_size[1]:
                scale = self.min_object_size[1] / short_side
            crop_w, crop_h = cols / scale, rows / scale
            cx, cy = rect.center
            cx += rng.uniform(-1, 1) * self.translate_amount * crop_w
            cy += rng.uniform(-1, 1) * self.translate_amount * crop_h
        else:
            img_w, img_h = image.size
            max_h = max(1.0, min(img_h, img_w * rows / cols))
            min_h = min(float(rows), max_h)
            crop_h = rng.uniform(min_h, max_h) if max_h > min_h else max_h
            crop_w = crop_h * cols / rows
            cx = rng.uniform(crop_w / 2, img_w - crop_w / 2) if img_w > crop_w else img_w / 2
            cy = rng.uniform(crop_h / 2, img_h - crop_h / 2) if img_h > crop_h else img_h / 2

        crop = (cx - crop_w / 2, cy - crop_h / 2, cx + crop_w / 2, cy + crop_h / 2)
        flip = bool(self.randomly_flip and rng.random() < 0.5)
        angle = float(rng.uniform(-self.max_rotation_degrees, self.max_rotation_degrees)) \
            if self.max_rotation_degrees > 0 else 0.0
        return crop, flip, angle

    def crop(self, image: Image.Image, rects: Sequence[MMODRect]):
        rows, cols = self.chip_dims
        crop, flip, angle = self.make_crop_plan(image, rects)
        chip = image.transform((cols, rows), Image.Transform.EXTENT, data=crop, resample=Image.BILINEAR)
        sx = cols / (crop[2] - crop[0])
        sy = rows / (crop[3] - crop[1])

        if flip:
            chip = TF.hflip(chip)
        if angle:
            chip = chip.rotate(angle, resample=Image.BILINEAR)
        cos_a, sin_a = math.cos(math.radians(angle)), math.sin(math.radians(angle))

        chip_boxes = []
        for r in rects:
            x1 = (r.rect[0] - crop[0]) * sx
            y1 = (r.rect[1] - crop[1]) * sy
            x2 = (r.rect[2] - crop[0]) * sx
            y2 = (r.rect[3] - crop[1]) * sy
            if flip:
                x1, x2 = cols - x2, cols - x1
            if angle:
                corners = [_rotate_point(x, y, cols / 2, rows / 2, cos_a, sin_a)
                           for x, y in ((x1, y1), (x2, y1), (x1, y2), (x2, y2))]
                xs, ys = [c[0] for c in corners], [c[1] for c in corners]
                x1, y1, x2, y2 = min(xs), min(ys), max(xs), max(ys)

            cx1, cy1 = max(x1, 0.0), max(y1, 0.0)
            cx2, cy2 = min(x2, float(cols)), min(y2, float(rows))
            if cx2 <= cx1 or cy2 <= cy1:
                continue

            w, h = x2 - x1, y2 - y1
            inside = (cx1, cy1, cx2, cy2) == (x1, y1, x2, y2)
            too_small = max(w, h) < self.min_object_size[0] or min(w, h) < self.min_object_size[1]
            chip_boxes.append(MMODRect(
                (x1, y1, x2, y2), label=r.label,
                ignore=r.ignore or not inside or too_small))
        return chip, chip_boxes

    def __str__(self):
        rows, cols = self.chip_dims
        return "\n".join([
            "random_cropper details:",
            f"  chip_dims.rows:              {rows}",
            f"  chip_dims.cols:              {cols}",
            f"  randomly_flip:               {self.randomly_flip}",
            f"  max_rotation_degrees:        {self.max_rotation_degrees}",
            f"  min_object_length_long_dim:  {self.min_object_size[0]}",
            f"  min_object_length_short_dim: {self.min_object_size[1]}",
            f"  max_object_size:             {self.max_object_size}",
            f"  background_crops_fraction:   {self.background_crops_fraction}",
            f"  translate_amount:            {self.translate_amount}",
        ])
