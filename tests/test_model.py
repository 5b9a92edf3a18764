"""Tests for the MMOD network, its geometry and the MMOD loss."""
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
import torch
from PIL import Image

from conftest import set_constant_scores
from src.mmod.data import pyramid_up
from src.mmod.loss import MMODLoss
from src.mmod.model import MMODNet
from src.mmod.rects import MMODRect, OverlapTester, rects_to_tensor


def test_pyramid_shrinks_by_three_quarters_until_windows_no_longer_fit(tiny_net) -> None:
    sizes = tiny_net.pyramid_sizes(250, 250)
    assert sizes[0] == (250, 250)
    assert 1 < len(sizes) <= tiny_net.max_pyramid_levels
    for (h0, _), (h1, _) in zip(sizes, sizes[1:]):
        assert h1 == pytest.approx(h0 * 0.75, abs=1)
    assert min(sizes[-1]) >= 24
    assert round(min(sizes[-1]) * 0.75) < 24


def test_forward_returns_one_map_per_level(tiny_net) -> None:
    maps = tiny_net(torch.rand(2, 3, 64, 64))
    assert len(maps) == len(tiny_net.pyramid_sizes(64, 64))
    assert maps[0].shape == (2, 1, 8, 8)
    assert all(m.shape[1] == tiny_net.num_windows for m in maps)


def test_window_rects_map_cells_to_image_space(tiny_net) -> None:
    one = torch.tensor([0])
    box = tiny_net.window_rects((64, 64), (64, 64), one, torch.tensor([2]), torch.tensor([3]))
    assert box.tolist() == [[12.0, 4.0, 36.0, 28.0]]

    # Half-resolution level: cells and windows scale back up by 2
    box = tiny_net.window_rects((32, 32), (64, 64), one, torch.tensor([1]), torch.tensor([1]))
    assert box.tolist() == [[-8.0, -8.0, 40.0, 40.0]]


def test_detect_applies_threshold_and_nms(tiny_net) -> None:
    image = Image.new("RGB", (64, 64))

    set_constant_scores(tiny_net, -5.0)
    assert tiny_net.detect(image) == []

    set_constant_scores(tiny_net, 5.0)
    dets = tiny_net.detect(image)
    assert dets
    assert all(isinstance(d, MMODRect) and d.label == "T" for d in dets)
    assert all(d.detection_confidence == pytest.approx(5.0) for d in dets)
    overlaps = tiny_net.options.overlaps_nms.overlap_matrix(rects_to_tensor(dets), rects_to_tensor(dets))
    assert int(overlaps.sum()) == len(dets)


def test_save_and_load_round_trip(tiny_net, tmp_path: Path) -> None:
    path = tmp_path / "models" / "mmod_network.dat"
    tiny_net.save(path)
    loaded = MMODNet.load(path)

    assert loaded.arch == tiny_net.arch
    assert loaded.options.to_dict() == tiny_net.options.to_dict()
    for key, value in tiny_net.state_dict().items():
        assert torch.equal(loaded.state_dict()[key], value)


def test_loss_charges_missed_truth_only(tiny_net) -> None:
    set_constant_scores(tiny_net, -5.0)
    maps = tiny_net(torch.zeros(1, 3, 64, 64))
    loss = MMODLoss(tiny_net)(maps, [[MMODRect((4, 4, 28, 28), "T")]], (64, 64))
    # hinge 1 - (-5) at the truth cell, no false alarms above -1
    assert float(loss) == pytest.approx(6.0)


def test_loss_skips_false_alarms_inside_ignore_boxes(tiny_net) -> None:
    set_constant_scores(tiny_net, 5.0)
    maps = tiny_net(torch.zeros(1, 3, 64, 64))
    loss_fn = MMODLoss(tiny_net)

    ignored = loss_fn(maps, [[MMODRect((-100, -100, 200, 200), ignore=True)]], (64, 64))
    assert float(ignored) == pytest.approx(0.0)

    unignored = loss_fn(maps, [[]], (64, 64))
    assert float(unignored) > 0
    unignored.backward()
    assert tiny_net.score.bias.grad is not None
    assert float(tiny_net.score.bias.grad.abs().sum()) > 0


def test_unmatchable_truth_becomes_ignore(tiny_net) -> None:
    set_constant_scores(tiny_net, -5.0)
    maps = tiny_net(torch.zeros(1, 3, 64, 64))
    loss_fn = MMODLoss(tiny_net)
    loss = loss_fn(maps, [[MMODRect((4, 4, 28, 28), "NB")]], (64, 64))
    assert float(loss) == pytest.approx(0.0)
    assert loss_fn.num_unmatchable == 1


def test_detect_on_large_upsampled_image_stays_sparse(tiny_net, monkeypatch) -> None:
    set_constant_scores(tiny_net, 0.5)
    image = pyramid_up(Image.new("RGB", (320, 240)))

    def dense_matrix(self, boxes1, boxes2):
        raise AssertionError("detect built a full candidate overlap matrix")

    with monkeypatch.context() as m:
        m.setattr(OverlapTester, "overlap_matrix", dense_matrix)
        dets = tiny_net.detect(image)

    assert dets
    overlaps = tiny_net.options.overlaps_nms.overlap_matrix(rects_to_tensor(dets), rects_to_tensor(dets))
    assert int(overlaps.sum()) == len(dets)
