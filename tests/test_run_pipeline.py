"""End-to-end tests for the master pipeline script."""
from pathlib import Path
import importlib.util
import sys

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from conftest import set_constant_scores, write_dataset, write_image
from src.mmod.config import MMODConfig


def load_script():
    spec = importlib.util.spec_from_file_location(
        "run_pipeline", PROJECT_ROOT / "scripts" / "run_pipeline.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture()
def run_pipeline():
    return load_script()


def test_no_arguments_prints_usage(run_pipeline, capsys) -> None:
    assert run_pipeline.main([]) == 0
    assert "training data directory" in capsys.readouterr().out


def test_errors_are_reported_once(run_pipeline, tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(MMODConfig, "PAUSE_ON_ERROR", False)
    prompts = []
    monkeypatch.setattr("builtins.input", lambda prompt="": prompts.append(prompt))

    assert run_pipeline.main([str(tmp_path / "missing"), "--device", "cpu"]) == 1

    captured = capsys.readouterr()
    assert "Dataset file not found" in captured.out
    assert "Traceback" in captured.err
    assert prompts == []


def test_errors_pause_when_configured(run_pipeline, tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(MMODConfig, "PAUSE_ON_ERROR", True)
    prompts = []
    monkeypatch.setattr("builtins.input", lambda prompt="": prompts.append(prompt))

    assert run_pipeline.main([str(tmp_path / "missing"), "--device", "cpu"]) == 1
    assert "Traceback" in capsys.readouterr().err
    assert len(prompts) == 1


def test_train_then_scan(run_pipeline, tmp_path: Path, capsys) -> None:
    data = tmp_path / "data"
    write_dataset(data)
    scan = tmp_path / "scan"
    scan.mkdir()
    write_image(scan / "a.png", size=(60, 60))
    model = tmp_path / "mmod_network.dat"

    code = run_pipeline.main([
        str(data), "--lr", "1e-5", "--device", "cpu", "--model", str(model),
        "--sync-file", str(tmp_path / "mmod_sync"), "--scan-dir", str(scan),
        "--report-action", "none",
    ])

    assert code == 0
    assert model.exists()
    printed = capsys.readouterr().out
    assert "done training" in printed
    assert "Images scanned: 1" in printed


def test_scan_with_saved_model(run_pipeline, tiny_net, tmp_path: Path, capsys) -> None:
    set_constant_scores(tiny_net, 5.0)
    model = tmp_path / "mmod_network.dat"
    tiny_net.save(model)
    scan = tmp_path / "scan"
    scan.mkdir()
    write_image(scan / "a.png", size=(32, 32))
    write_image(scan / "b.png", size=(40, 40))
    out = tmp_path / "out"

    code = run_pipeline.main([
        "unused", "--skip-training", "--model", str(model), "--device", "cpu",
        "--scan-dir", str(scan), "--output-dir", str(out), "--report-action", "none",
    ])

    assert code == 0
    assert sorted(p.name for p in out.iterdir()) == ["a.png", "b.png"]
    printed = capsys.readouterr().out
    assert "Images scanned: 2" in printed
    assert "Transformers:" in printed


def test_missing_scan_directory_fails(run_pipeline, tiny_net, tmp_path: Path) -> None:
    model = tmp_path / "mmod_network.dat"
    tiny_net.save(model)
    code = run_pipeline.main([
        "unused", "--skip-training", "--model", str(model), "--device", "cpu",
        "--scan-dir", str(tmp_path / "nowhere"), "--report-action", "none",
    ])
    assert code == 1
