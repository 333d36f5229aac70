"""
Functions to handle PET frame timing and the per-frame weights used when fitting regional time activity curves (TACs).

Frame durations from the scan metadata are preferable. When only the frame mid-times are known, the frame boundaries
are recovered with :func:`estimate_frame_start_end_times`.

"""
from typing import Union
import numpy as np

WEIGHTING_SCHEMES = ('ones', 'framedur')


def estimate_frame_start_end_times(frame_mid_times: np.ndarray, scan_duration: float) -> np.ndarray:
    r"""
    Estimates the frame boundaries from the frame mid-times.

    The first frame starts at :math:`t=0` and every frame is assumed to be centered on its mid-time, so that
    :math:`s_{i+1} = s_i + 2(m_i - s_i)`. The end of the last frame is set to the scan duration.

    Args:
        frame_mid_times (np.ndarray): Frame mid-times, in minutes.
        scan_duration (float): End time of the scan, in minutes.

    Returns:
        np.ndarray: ``num_frames + 1`` frame boundaries: the start of each frame followed by the end of the last one.
    """
    frame_mid_times = np.asarray(frame_mid_times, dtype=float)
    start_end_times = np.zeros(len(frame_mid_times) + 1, dtype=float)
    for frame_id, mid_time in enumerate(frame_mid_times):
        start_end_times[frame_id + 1] = start_end_times[frame_id] + 2.0 * (mid_time - start_end_times[frame_id])
    start_end_times[-1] = scan_duration
    return start_end_times


def calc_frame_durations(start_end_times: np.ndarray) -> np.ndarray:
    """
    Get array containing the duration of each frame from the frame boundaries.

    Args:
        start_end_times (np.ndarray): ``num_frames + 1`` frame boundaries.

    Returns:
        np.ndarray: The duration of each frame.
    """
    start_end_times = np.asarray(start_end_times, dtype=float)
    return start_end_times[1:] - start_end_times[:-1]


def calc_frame_weights(weighting: str,
                       frame_mid_times: np.ndarray,
                       scan_duration: float,
                       frame_durations: Union[np.ndarray, None] = None,
                       frame_start_end_times: Union[np.ndarray, None] = None) -> np.ndarray:
    r"""
    Calculates the per-frame weights multiplying the fit residuals.

    - ``'ones'``: every frame is weighted equally.
    - ``'framedur'``: :math:`w_i=\sqrt{\Delta t_i}`. The durations are taken from ``frame_durations`` if provided,
      else from ``frame_start_end_times``, else estimated with :func:`estimate_frame_start_end_times`.

    Args:
        weighting (str): ``'ones'`` or ``'framedur'``.
        frame_mid_times (np.ndarray): Frame mid-times, in minutes.
        scan_duration (float): End time of the scan, in minutes.
        frame_durations (np.ndarray, optional): Frame durations, in minutes.
        frame_start_end_times (np.ndarray, optional): ``num_frames + 1`` frame boundaries, in minutes.

    Returns:
        np.ndarray: The weights, one per frame.

    Raises:
        ValueError: If the weighting scheme is unknown, or the provided frame durations or boundaries do not match
            the number of frames, or any duration is negative.
    """
    frame_mid_times = np.asarray(frame_mid_times, dtype=float)
    num_frames = len(frame_mid_times)
    if weighting == 'ones':
        return np.ones(num_frames, dtype=float)
    if weighting != 'framedur':
        raise ValueError(f"weighting must be one of {', '.join(repr(w) for w in WEIGHTING_SCHEMES)}. "
                         f"Got {weighting!r}.")

    if frame_durations is not None:
        durations = np.asarray(frame_durations, dtype=float).ravel()
    else:
        if frame_start_end_times is None:
            frame_start_end_times = estimate_frame_start_end_times(frame_mid_times, scan_duration)
        frame_start_end_times = np.asarray(frame_start_end_times, dtype=float).ravel()
        if len(frame_start_end_times) != num_frames + 1:
            raise ValueError(f"`frame_start_end_times` must have {num_frames + 1} values (one more than the number of "
                             f"frames). Got {len(frame_start_end_times)}.")
        durations = calc_frame_durations(frame_start_end_times)

    if len(durations) != num_frames:
        raise ValueError(f"Expected {num_frames} frame durations. Got {len(durations)}.")
    if np.any(durations < 0.0):
        raise ValueError(f"Frame durations must be non-negative. Got {durations}.")
    return np.sqrt(durations)
