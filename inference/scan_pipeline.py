"""
MMOD Directory Scan Pipeline
==============================
Runs a trained MMOD detector over every entry of a directory:

    list directory → decode → 2x upsample → detect → draw → tally → report

Usage:
    from inference.scan_pipeline import list_directory, scan_directory

    listing = list_directory('data/scan')
    results = scan_directory(net, listing)

    for r in results:
        print(r.path, r.tally, r.complete)
"""

import os
import sys
import argparse
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.mmod.config import MMODConfig as cfg
from src.mmod.data import pyramid_up
from src.mmod.rects import MMODRect

REPORT_ACTIONS = ("pause", "print", "none")


# ============================================================================
# DIRECTORY LISTING
# ============================================================================

@dataclass
class DirectoryListing:
    """Entries of one directory. ``found`` is False when the path isn't a directory."""
    path: Path
    found: bool
    paths: List[str] = field(default_factory=list)

    def __len__(self):
        return len(self.paths)

    def __iter__(self):
        return iter(self.paths)


def list_directory(path) -> DirectoryListing:
    """Full paths of every entry in ``path``, in the platform's enumeration order.

    Subdirectories are included. A missing path gives ``found=False`` and no
    entries instead of an error; the caller decides what that means.
    """
    path = Path(path)
    if not path.is_dir():
        return DirectoryListing(path, found=False)
    with os.scandir(path) as entries:
        paths = [os.path.join(str(path), entry.name) for entry in entries if entry.name != ".."]
    return DirectoryListing(path, found=True, paths=paths)


# ============================================================================
# LABEL TREATMENTS AND TALLIES
# ============================================================================

@dataclass(frozen=True)
class LabelTreatment:
    """How one detection label is drawn and reported."""
    label: str
    name: str
    color: Tuple[int, int, int]


def default_treatments(labels: Mapping[str, Tuple[str, Tuple[int, int, int]]] = None) -> Dict[str, LabelTreatment]:
    labels = cfg.LABELS if labels is None else labels
    return {label: LabelTreatment(label, name, tuple(color)) for label, (name, color) in labels.items()}


def tally_detections(detections: Iterable[MMODRect], treatments: Mapping[str, LabelTreatment]) -> Dict[str, int]:
    """Fresh per-image counts of every configured label. Unknown labels are ignored."""
    tally = {label: 0 for label in treatments}
    for det in detections:
        if det.label in tally:
            tally[det.label] += 1
    return tally


def all_labels_present(tally: Mapping[str, int]) -> bool:
    """True when every tracked label was detected at least once."""
    return all(count >= 1 for count in tally.values())


def overlay_text(det: MMODRect) -> str:
    return f"{det.label} {det.detection_confidence:g}%"


# ============================================================================
# OVERLAY WINDOW
# ============================================================================

class OverlayWindow:
    """Draws detections on an image, then optionally saves and/or shows it."""

    def __init__(self, display=False, output_dir=None, title="MMOD detections"):
        self.display = display
        self.output_dir = Path(output_dir) if output_dir else None
        self.title = title
        self._opened = False

    def render(self, image: Image.Image, detections, treatments) -> Image.Image:
        image = image.copy().convert("RGB")
        draw = ImageDraw.Draw(image)
        for det in detections:
            treatment = treatments.get(det.label)
            if treatment is None:
                continue
            x1, y1, x2, y2 = det.rect
            draw.rectangle([x1, y1, x2, y2], outline=treatment.color, width=2)
            draw.text((x1, max(y1 - 15, 0)), overlay_text(det), fill=treatment.color)
        return image

    def show(self, image: Image.Image, detections, treatments, name: Optional[str] = None) -> Image.Image:
        annotated = self.render(image, detections, treatments)
        if self.output_dir is not None and name:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            annotated.save(self.output_dir / name)
        if self.display:
            import cv2
            cv2.imshow(self.title, cv2.cvtColor(np.asarray(annotated), cv2.COLOR_RGB2BGR))
            cv2.waitKey(1)
            self._opened = True
        return annotated

    def close(self):
        if self._opened:
            import cv2
            cv2.destroyWindow(self.title)
            self._opened = False


@contextmanager
def overlay_window(display=False, output_dir=None):
    """Context manager ensuring the display window is destroyed."""
    window = OverlayWindow(display=display, output_dir=output_dir)
    try:
        yield window
    finally:
        window.close()


# ============================================================================
# SCAN
# ============================================================================

@dataclass
class ScanResult:
    """Per-image outcome of a directory scan."""
    path: str
    detections: List[MMODRect]
    tally: Dict[str, int]
    complete: bool


def run_report_action(action: str, result: ScanResult):
    """What to do when every tracked label appears in one image."""
    if action == "pause":
        input("All labels present. Press Enter to continue...")
    elif action == "print":
        print(f"All labels present: {result.path}")
    elif action != "none":
        raise ValueError(f"Unknown report action {action!r}; choose one of {REPORT_ACTIONS}")


def print_tally(tally, treatments):
    for label, count in tally.items():
        print(f"{treatments[label].name}: {count}")


def process_image(net, path, treatments, window=None, adjust_threshold=cfg.ADJUST_THRESHOLD) -> ScanResult:
    image = pyramid_up(Image.open(path).convert("RGB"))
    detections = net.detect(image, adjust_threshold=adjust_threshold)
    if window is not None:
        window.show(image, detections, treatments, name=Path(path).name)
    tally = tally_detections(detections, treatments)
    return ScanResult(path=str(path), detections=detections, tally=tally,
                      complete=all_labels_present(tally))


def scan_directory(net, listing: DirectoryListing, treatments=None, window=None,
                   report_action=cfg.REPORT_ACTION) -> List[ScanResult]:
    """Detect, draw, tally and report on every entry of ``listing``."""
    if report_action not in REPORT_ACTIONS:
        raise ValueError(f"Unknown report action {report_action!r}; choose one of {REPORT_ACTIONS}")
    treatments = default_treatments() if treatments is None else treatments
    if not listing.found:
        print(f"Directory not found: {listing.path}")
        return []

    print(f"Scanning {len(listing)} entries in {listing.path}")
    results = []
    for path in listing:
        print("-------------------------------------")
        print(f"Image: {path}")
        result = process_image(net, path, treatments, window)
        print(f"Total detections: {len(result.detections)}")
        print_tally(result.tally, treatments)
        if result.complete:
            run_report_action(report_action, result)
        results.append(result)
    return results


# ============================================================================
# CLI
# ============================================================================

def main(argv=None):
    from src.mmod.model import MMODNet

    parser = argparse.ArgumentParser(description='Scan a directory with a trained MMOD detector')
    parser.add_argument('scan_dir', nargs='?', default=str(cfg.SCAN_DIR), help='Directory of images')
    parser.add_argument('--model', '-m', default=str(cfg.MODEL_PATH), help='Trained network file')
    parser.add_argument('--output-dir', '-o', default=cfg.OUTPUT_DIR, help='Save annotated images here')
    parser.add_argument('--display', action='store_true', default=cfg.DISPLAY, help='Show an OpenCV window')
    parser.add_argument('--report-action', choices=REPORT_ACTIONS, default=cfg.REPORT_ACTION)
    parser.add_argument('--device', '-d', default='cpu', help='Device (cuda/cpu)')
    args = parser.parse_args(argv)

    net = MMODNet.load(args.model, device=args.device)
    listing = list_directory(args.scan_dir)
    with overlay_window(display=args.display, output_dir=args.output_dir) as window:
        results = scan_directory(net, listing, window=window, report_action=args.report_action)

    complete = sum(1 for r in results if r.complete)
    print(f'\nScanned {len(results)} images, {complete} with every label present')
    return 0 if listing.found else 1


if __name__ == '__main__':
    sys.exit(main())
