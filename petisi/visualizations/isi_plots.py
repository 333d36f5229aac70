"""
Plotting of in-scan intervention (ISI) displacement model fits: the measured regional TACs as markers and the fitted
model curves as dashed lines, one color per region.
"""
from matplotlib import pyplot as plt
import numpy as np
import seaborn as sns


def plot_isi_fit(frame_mid_times: np.ndarray,
                 tacs: np.ndarray,
                 model_curves: np.ndarray,
                 roi_names: list,
                 title: str = None,
                 figObj: plt.Figure = None) -> plt.Figure:
    """
    Plots the measured TACs and the fitted model curves.

    Args:
        frame_mid_times (np.ndarray): Frame mid-times, in minutes.
        tacs (np.ndarray): Measured TACs, ``[num_frames, num_regions]``.
        model_curves (np.ndarray): Fitted curves, ``[num_frames, num_regions]``.
        roi_names (list): Region names, one per column.
        title (str, optional): Title of the figure.
        figObj (plt.Figure, optional): Figure to draw on. If not provided, a new one is created.

    Returns:
        plt.Figure: The figure.
    """
    if figObj is None:
        fig, ax = plt.subplots(1, 1, constrained_layout=True, figsize=[11, 8])
    else:
        fig = figObj
        ax = fig.get_axes()[0] if fig.get_axes() else fig.add_subplot(1, 1, 1)

    colors = sns.color_palette(n_colors=len(roi_names))
    for region_id, (roi_name, color) in enumerate(zip(roi_names, colors)):
        ax.plot(frame_mid_times, tacs[:, region_id], ls='', marker='o', mec='k', mfc=color, ms=8, label=roi_name)
        ax.plot(frame_mid_times, model_curves[:, region_id], ls='--', color=color, lw=2, label=f'{roi_name} fit')

    if title is not None:
        ax.set_title(title)
    ax.set_xlabel('Time [min]')
    ax.set_ylabel('Activity')
    ax.legend()
    return fig


def generate_isi_fit_title(model: str, solver: str, subject_id: str, occupancy: float) -> str:
    """Title with the model, solver, subject and the fitted occupancy in percent."""
    return f"{model} displacement model ({solver}) fit to {subject_id}\nOccupancy = {occupancy * 100:.3g}%"
