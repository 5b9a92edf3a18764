"""
MMOD Master Pipeline Runner
==============================
Runs the whole detector workflow in one process:
  1. Load training.xml (and testing.xml if present) from the data directory
  2. Derive detector windows, train until the learning-rate floor, save
  3. Scan the configured directory, draw and tally detections per image

Usage:
  python scripts/run_pipeline.py faces
  python scripts/run_pipeline.py faces --scan-dir data/scan --report-action print
  python scripts/run_pipeline.py faces --skip-training --model mmod_network.dat
"""
import argparse
import sys
import traceback
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.mmod.config import MMODConfig as cfg
from src.mmod.model import MMODNet
from src.mmod.train import train_detector, resolve_devices
from inference.scan_pipeline import REPORT_ACTIONS, list_directory, overlay_window, scan_directory

USAGE = """Give the path to the training data directory as the argument to this
program. For example, if you are in the examples folder then execute
this program by running:
   python scripts/run_pipeline.py faces
"""


def build_parser():
    parser = argparse.ArgumentParser(description="MMOD Master Pipeline")
    parser.add_argument("data_dir", nargs="?", help="Directory holding training.xml")
    parser.add_argument("--scan-dir", default=str(cfg.SCAN_DIR))
    parser.add_argument("--model", default=str(cfg.MODEL_PATH))
    parser.add_argument("--output-dir", default=cfg.OUTPUT_DIR)
    parser.add_argument("--display", action="store_true", default=cfg.DISPLAY)
    parser.add_argument("--report-action", choices=REPORT_ACTIONS, default=cfg.REPORT_ACTION)
    parser.add_argument("--device", action="append", default=None)
    parser.add_argument("--lr", type=float, default=cfg.LR, help="Initial learning rate")
    parser.add_argument("--sync-file", default=str(cfg.SYNC_FILE))
    parser.add_argument("--skip-training", action="store_true",
                        help="Load --model instead of training a new network")
    return parser


def run(args):
    devices = args.device or list(cfg.DEVICES)
    if args.skip_training:
        net = MMODNet.load(args.model, device=resolve_devices(devices)[0])
    else:
        net = train_detector(args.data_dir, model_path=args.model, devices=devices,
                             sync_file=args.sync_file, learning_rate=args.lr)

    if args.report_action == "pause":
        input("Press Enter to start scanning...")

    listing = list_directory(args.scan_dir)
    if not listing.found:
        print(f"Scan directory not found: {listing.path}")
        return 1
    with overlay_window(display=args.display, output_dir=args.output_dir) as window:
        results = scan_directory(net, listing, window=window, report_action=args.report_action)

    print(f"\n{'='*60}")
    print("  Scan Summary")
    print(f"{'='*60}")
    print(f"  Images scanned: {len(results)}")
    print(f"  With every label present: {sum(1 for r in results if r.complete)}")
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.data_dir is None:
        print(USAGE)
        return 0

    try:
        return run(args)
    except Exception as e:
        print(e)
        traceback.print_exc()
        if cfg.PAUSE_ON_ERROR:
            input("Press Enter to exit...")
        return 1


if __name__ == "__main__":
    sys.exit(main())
