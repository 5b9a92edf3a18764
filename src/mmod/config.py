"""
MMOD Detector Configuration
==============================
Hyperparameters and paths for training the max-margin sliding-window
detector and scanning a directory of images with it.

Model: 3x strided 5x5 conv downsampler + 3x rcon5 blocks + 15x15 scoring
layer, evaluated over a 3/4-step image pyramid.
"""

from pathlib import Path


class MMODConfig:
    """Configuration for MMOD detector training and directory scanning."""

    # --- Paths ---
    TRAIN_XML = "training.xml"   # relative to the data directory
    TEST_XML = "testing.xml"
    MODEL_PATH = Path("mmod_network.dat")
    SYNC_FILE = Path("mmod_sync")
    SCAN_DIR = Path("data/scan")
    OUTPUT_DIR = None            # annotated copies of scanned images, off by default

    # --- Detector geometry ---
    TARGET_SIZE = 100            # long side of each detector window
    MIN_TARGET_SIZE = 6          # short side floor
    MIN_WINDOW_OVERLAP_IOU = 0.75
    PYRAMID_DOWN = 4             # each level is (N-1)/N of the previous one
    MAX_PYRAMID_LEVELS = 12

    # --- Network ---
    DOWNSAMPLER_FILTERS = (32, 64, 128)
    RCON_FILTERS = 55
    NUM_RCON_BLOCKS = 3
    SCORE_KERNEL = 15
    # Per-channel RGB mean subtracted by the pyramid input layer (0-255 scale)
    PIXEL_MEAN = (122.782, 117.001, 104.298)
    PIXEL_SCALE = 256.0

    # --- Loss ---
    LOSS_PER_FALSE_ALARM = 1.0
    LOSS_PER_MISSED_TARGET = 1.0
    TRUTH_MATCH_IOU = 0.5
    OVERLAPS_IGNORE = (0.5, 0.95)   # (iou, percent covered)
    MAX_LOSS_CANDIDATES = 1000

    # --- Training ---
    BATCH_SIZE = 87
    WEIGHT_DECAY = 5e-5
    MOMENTUM = 0.9
    LR = 0.15
    LR_FLOOR = 1e-4
    LR_SHRINK_FACTOR = 0.1
    ITERATIONS_WITHOUT_PROGRESS = 40000
    PROBABILITY_OF_DECREASE = 0.51
    DEVICES = ("cuda:0",)
    SYNC_INTERVAL = 5 * 60       # seconds
    VERBOSE = True
    SEED = 0

    # --- Cropper / augmentation ---
    CHIP_DIMS = (250, 250)       # rows, cols
    MIN_OBJECT_SIZE = (84, 6)    # long side, short side
    MAX_OBJECT_SIZE = 0.7
    BACKGROUND_CROPS_FRACTION = 0.5
    TRANSLATE_AMOUNT = 0.1
    RANDOMLY_FLIP = False
    MAX_ROTATION_DEGREES = 0.0
    GAMMA_MAGNITUDE = 0.5
    COLOR_MAGNITUDE = 0.2

    # --- Inference ---
    ADJUST_THRESHOLD = 0.0
    EVAL_IOU = 0.5

    # Label -> (display name, RGB overlay colour)
    LABELS = {
        "T": ("Transformers", (255, 0, 0)),
        "C": ("Fuses/switches", (0, 255, 0)),
        "L": ("Luminaires", (0, 0, 255)),
        "NM": ("Medium-voltage nodes", (246, 255, 51)),
        "NB": ("Low-voltage nodes", (255, 51, 236)),
    }

    # --- Scan / reporting ---
    DISPLAY = False
    REPORT_ACTION = "pause"      # pause | print | none
    PAUSE_ON_ERROR = True
