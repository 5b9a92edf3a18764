"""Tests for progress detection, the trainer and the training loop."""
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

import numpy as np
import pytest
import torch
from PIL import Image

from conftest import TINY_ARCH, write_dataset
from src.mmod import train
from src.mmod.model import MMODNet
from src.mmod.rects import MMODRect
from src.mmod.train import (MMODTrainer, count_steps_without_decrease,
                            count_steps_without_decrease_robust, resolve_devices, train_until_floor)


# ---------------------------------------------------------------------------
# Progress detection
# ---------------------------------------------------------------------------
def test_flat_loss_counts_every_step() -> None:
    values = [1.0] * 40
    assert count_steps_without_decrease(values) == 40
    assert count_steps_without_decrease_robust(values) == 40


def test_falling_loss_counts_nothing() -> None:
    values = [float(100 - i) for i in range(100)]
    assert count_steps_without_decrease(values) == 0
    assert count_steps_without_decrease_robust(values) == 0


def test_loss_that_stopped_falling() -> None:
    values = [float(100 - i) for i in range(50)] + [1.0] * 50
    assert 50 <= count_steps_without_decrease(values) < 100


def test_probability_must_exceed_one_half() -> None:
    with pytest.raises(ValueError):
        count_steps_without_decrease([1.0, 2.0, 3.0], probability_of_decrease=0.4)
    with pytest.raises(ValueError):
        count_steps_without_decrease_robust([1.0, 2.0, 3.0], probability_of_decrease=1.0)


# ---------------------------------------------------------------------------
# Trainer
# ---------------------------------------------------------------------------
def make_trainer(options, **kwargs) -> MMODTrainer:
    torch.manual_seed(0)
    kwargs.setdefault("devices", ["cpu"])
    return MMODTrainer(MMODNet(options, **TINY_ARCH), **kwargs)


def chips_and_labels():
    samples = [Image.new("RGB", (64, 64)), Image.new("RGB", (64, 64), (200, 200, 200))]
    labels = [[MMODRect((4, 4, 28, 28), "T")], []]
    return samples, labels


def test_resolve_devices_keeps_cpu() -> None:
    assert resolve_devices(["cpu"]) == [torch.device("cpu")]


def test_learning_rate_shrinks_when_progress_stalls(tiny_options) -> None:
    trainer = make_trainer(tiny_options, learning_rate=1.0,
                           iterations_without_progress_threshold=5, learning_rate_shrink_factor=0.1)
    for _ in range(4):
        trainer._record_loss(1.0)
    assert trainer.learning_rate == pytest.approx(1.0)

    trainer._record_loss(1.0)
    assert trainer.learning_rate == pytest.approx(0.1)
    assert len(trainer.loss_history) == 0
    assert trainer.steps == 5


def test_train_one_step_records_loss(tiny_options) -> None:
    trainer = make_trainer(tiny_options, learning_rate=0.01)
    loss = trainer.train_one_step(*chips_and_labels())
    assert np.isfinite(loss)
    assert trainer.steps == 1
    assert trainer.average_loss == pytest.approx(loss)
    assert "dnn_trainer details" in str(trainer)


def test_sync_file_resumes_training_state(tiny_options, tmp_path: Path) -> None:
    sync = tmp_path / "mmod_sync"
    trainer = make_trainer(tiny_options, learning_rate=0.01, sync_file=sync, sync_interval=0)
    trainer.train_one_step(*chips_and_labels())
    assert sync.exists()
    assert not Path(str(sync) + ".tmp").exists()

    resumed = make_trainer(tiny_options, learning_rate=0.01, sync_file=sync)
    assert resumed.steps == 1
    assert list(resumed.loss_history) == list(trainer.loss_history)
    for key, value in trainer.net.state_dict().items():
        assert torch.equal(resumed.net.state_dict()[key], value)


class FakeTrainer:
    """Halves its learning rate every step and logs each access."""

    def __init__(self, events, learning_rate=1.0):
        self.events = events
        self._lr = learning_rate

    @property
    def learning_rate(self):
        self.events.append("check")
        return self._lr

    def train_one_step(self, samples, labels):
        self.events.append("step")
        self._lr /= 2


def test_train_until_floor_checks_only_between_steps() -> None:
    events = []

    def cropper(num_crops, images, boxes):
        events.append("crop")
        return [Image.new("RGB", (8, 8))] * num_crops, [[] for _ in range(num_crops)]

    steps = train_until_floor(FakeTrainer(events), cropper, [None], [[]],
                              np.random.default_rng(0), batch_size=2, lr_floor=0.1)

    # 1, 0.5, 0.25, 0.125 are all above the floor
    assert steps == 4
    assert events == ["check", "crop", "step"] * 4 + ["check"]


def test_train_until_floor_below_floor_runs_nothing() -> None:
    events = []
    steps = train_until_floor(FakeTrainer(events, learning_rate=1e-5), None, [], [],
                              np.random.default_rng(0), lr_floor=1e-4)
    assert steps == 0
    assert events == ["check"]


# ---------------------------------------------------------------------------
# Evaluation and CLI
# ---------------------------------------------------------------------------
class FixedDetector:
    def __init__(self, detections, options):
        self.detections = detections
        self.options = options

    def detect(self, image):
        return self.detections


def test_object_detection_metrics(tiny_options) -> None:
    detector = FixedDetector([
        MMODRect((0, 0, 10, 10), "T", detection_confidence=0.9),
        MMODRect((50, 50, 60, 60), "C", detection_confidence=0.8),
    ], tiny_options)
    truths = [[MMODRect((0, 0, 10, 10), "T"), MMODRect((20, 20, 30, 30), "C")]]

    precision, recall, ap = train.evaluate_detector(detector, [None], truths)
    assert precision == pytest.approx(0.5)
    assert recall == pytest.approx(0.5)
    assert 0 < ap <= 1


def test_detections_on_ignore_boxes_are_not_counted(tiny_options) -> None:
    detector = FixedDetector([MMODRect((0, 0, 10, 10), "T", detection_confidence=0.9)], tiny_options)
    truths = [[MMODRect((0, 0, 10, 10), "T", ignore=True)]]

    precision, recall, _ = train.evaluate_detector(detector, [None], truths)
    assert precision == pytest.approx(1.0)
    assert recall == pytest.approx(1.0)


def test_main_without_arguments_prints_usage(capsys) -> None:
    assert train.main([]) == 0
    assert "training data directory" in capsys.readouterr().out


def test_train_detector_saves_a_loadable_model(tmp_path: Path, capsys) -> None:
    write_dataset(tmp_path)
    model = tmp_path / "models" / "mmod_network.dat"

    # Starting below the floor skips the SGD loop but runs every other stage
    net = train.train_detector(tmp_path, model_path=model, devices=["cpu"],
                               sync_file=tmp_path / "mmod_sync", learning_rate=1e-5)

    out = capsys.readouterr().out
    assert "num training images: 2" in out
    assert "detector window width by height: 100 x 100 [T]" in out
    assert "done training" in out
    assert "training results:" in out
    assert "testing results:" not in out
    assert (tmp_path / "mmod_sync").exists()

    loaded = MMODNet.load(model)
    assert [(w.width, w.height, w.label) for w in loaded.options.detector_windows] == [(100, 100, "T")]
    assert loaded.options.to_dict() == net.options.to_dict()
    assert isinstance(loaded.detect(Image.new("RGB", (120, 120))), list)


def test_train_detector_evaluates_testing_set_when_present(tmp_path: Path, capsys) -> None:
    write_dataset(tmp_path)
    write_dataset(tmp_path, name="testing.xml", count=1)

    train.train_detector(tmp_path, model_path=tmp_path / "m.dat", devices=["cpu"],
                         sync_file=tmp_path / "mmod_sync", learning_rate=1e-5)

    out = capsys.readouterr().out
    assert "num testing images:  1" in out
    assert "testing results:" in out
