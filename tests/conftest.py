"""Shared fixtures: tiny detector options and networks that run fast on CPU."""
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
import torch
from PIL import Image

from src.mmod.model import MMODNet
from src.mmod.options import DetectorWindow, MMODOptions
from src.mmod.rects import OverlapTester


TINY_ARCH = dict(downsampler_filters=(4, 4, 4), rcon_filters=4, num_rcon_blocks=1, score_kernel=3)


@pytest.fixture()
def tiny_options() -> MMODOptions:
    return MMODOptions([DetectorWindow(24, 24, "T")], OverlapTester(0.4, 0.55))


@pytest.fixture()
def tiny_net(tiny_options) -> MMODNet:
    torch.manual_seed(0)
    return MMODNet(tiny_options, **TINY_ARCH)


def set_constant_scores(net: MMODNet, value: float) -> None:
    """Make every score-map cell equal ``value``."""
    with torch.no_grad():
        net.score.weight.zero_()
        net.score.bias.fill_(value)


def write_image(path: Path, size=(64, 64), color=(0, 0, 0)) -> Path:
    Image.new("RGB", size, color).save(path)
    return path


def write_dataset(root: Path, name="training.xml", count=2) -> Path:
    """Tiny imglab dataset: ``count`` 120x120 images with one 40x40 "T" box each."""
    (root / "img").mkdir(parents=True, exist_ok=True)
    entries = []
    for i in range(count):
        write_image(root / "img" / f"{i}.png", size=(120, 120), color=(40 * i, 80, 120))
        entries.append(f"  <image file='img/{i}.png'>\n"
                       f"    <box top='40' left='40' width='40' height='40'><label>T</label></box>\n"
                       f"  </image>")
    xml = "<dataset>\n<images>\n" + "\n".join(entries) + "\n</images>\n</dataset>\n"
    (root / name).write_text(xml)
    return root / name
