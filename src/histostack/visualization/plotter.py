"""Quality-control figures for reconstruction and volume refinement.

Renders:

- root-distance totals per slice after reconstruction,
- per-iteration volume / neighbor metric curves after refinement,
- a montage of the reconstructed (root-space) stack.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
import xarray as xr
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

__all__ = ['StackPlotter']

logger = logging.getLogger(__name__)


class StackPlotter:
    """Writes QC figures into a project's ``qc/`` directory.

    Parameters
    ----------
    output_dir : str or Path
        Directory the figures are written to. Created on first save.
    dpi : int, optional
    figsize : tuple of float, optional
    output_format : str, optional
        ``png``, ``pdf`` or ``jpeg``.
    montage_columns : int, optional
        Panels per montage row.

    Example usage::

        plotter = StackPlotter("project/qc")
        plotter.plot_iteration_metrics(ledger.iteration_metrics())
    """

    def __init__(self, output_dir, dpi: int = 150, figsize=(10, 6),
                 output_format: str = "png", montage_columns: int = 6):
        self.output_dir = Path(output_dir)
        self.dpi = dpi
        self.figsize = tuple(figsize)
        self.output_format = output_format
        self.montage_columns = max(1, int(montage_columns))

    @classmethod
    def from_config(cls, output_dir, vis_cfg) -> "StackPlotter":
        return cls(
            output_dir,
            dpi=vis_cfg.dpi,
            figsize=vis_cfg.figsize,
            output_format=vis_cfg.output_format,
            montage_columns=vis_cfg.montage_columns,
        )

    def _save_figure(self, fig: plt.Figure, name: str) -> str:
        """Save figure in configured format."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_file = self.output_dir / f"{name}.{self.output_format}"

        fig.savefig(
            output_file,
            dpi=self.dpi,
            bbox_inches='tight',
            format=self.output_format
        )
        plt.close(fig)
        logger.info("QC plot saved: %s", output_file)
        return str(output_file)

    def plot_root_distances(self, slice_ids: Sequence[str], totals: np.ndarray,
                            root: int) -> str:
        """Bar chart of each slice's total shortest-path distance; root highlighted."""
        totals = np.asarray(totals, dtype=float)
        colors = ['tab:red' if i == root else 'tab:blue' for i in range(len(totals))]
        finite = np.where(np.isfinite(totals), totals, np.nan)

        fig, ax = plt.subplots(figsize=self.figsize)
        ax.bar(np.arange(len(totals)), finite, color=colors)
        ax.set_xticks(np.arange(len(totals)))
        ax.set_xticklabels(slice_ids, rotation=90, fontsize=8)
        ax.set_ylabel('Total distance to all slices')
        ax.set_title(f'Root selection (root = {slice_ids[root]})')
        ax.grid(axis='y', alpha=0.3)
        return self._save_figure(fig, 'recon_root_distances')

    def plot_iteration_metrics(self, metrics: pd.DataFrame) -> Optional[str]:
        """Volume and neighbor metric totals against iteration.

        ``metrics`` needs columns iteration, total_vol_metric and
        total_nbr_metric. Returns None when there is nothing to plot.
        """
        if metrics.empty:
            logger.info("No iteration metrics to plot")
            return None

        fig, (ax1, ax2) = plt.subplots(1, 2, figsize=self.figsize, sharex=True)
        ax1.plot(metrics['iteration'], metrics['total_vol_metric'], 'o-', color='tab:blue')
        ax1.set_title('Volume metric')
        ax2.plot(metrics['iteration'], metrics['total_nbr_metric'], 'o-', color='tab:orange')
        ax2.set_title('Neighbor metric')
        for ax in (ax1, ax2):
            ax.set_xlabel('Iteration')
            ax.grid(alpha=0.3)
        ax1.set_ylabel('Total over slices')
        fig.tight_layout()
        return self._save_figure(fig, 'voliter_metrics')

    def plot_stack_montage(self, images: Dict[str, xr.DataArray], name: str = 'recon_montage') -> Optional[str]:
        """Grid of slice images, one panel per slice, in the given order."""
        if not images:
            return None

        n = len(images)
        ncols = min(self.montage_columns, n)
        nrows = int(np.ceil(n / ncols))
        fig, axes = plt.subplots(nrows, ncols, figsize=(2.0 * ncols, 2.0 * nrows), squeeze=False)

        for ax in axes.ravel():
            ax.set_axis_off()
        for ax, (slice_id, image) in zip(axes.ravel(), images.items()):
            data = image.values
            if 'component' in image.dims:
                data = image.mean(dim='component').values
            ax.imshow(data, cmap='gray', origin='lower')
            ax.set_title(slice_id, fontsize=8)

        fig.tight_layout()
        return self._save_figure(fig, name)
