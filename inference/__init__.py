"""MMOD Inference Module."""
from .scan_pipeline import (DirectoryListing, LabelTreatment, ScanResult, list_directory,
                            scan_directory, tally_detections, all_labels_present)

__all__ = ['DirectoryListing', 'LabelTreatment', 'ScanResult', 'list_directory',
           'scan_directory', 'tally_detections', 'all_labels_present']
