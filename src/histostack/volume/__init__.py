"""Alignment of the reconstructed stack to a reference volume."""

from histostack.volume.match import (
    VolumeMatcher,
    extract_volume_slice,
    l1_distance_matrix,
    select_median_transform,
)
from histostack.volume.iterate import IterativeRefiner, SUMMARY_COLUMNS, split_report

__all__ = [
    'VolumeMatcher',
    'extract_volume_slice',
    'l1_distance_matrix',
    'select_median_transform',
    'IterativeRefiner',
    'SUMMARY_COLUMNS',
    'split_report',
]
