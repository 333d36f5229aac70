"""
Functions to read blood data and regional time activity curves (TACs) from text files, and to write analysis results.

File formats:
    * Blood files: whitespace separated columns ``time input_function whole_blood``, optionally with a single header
      line. If a whole-blood column is missing, the input function is used for both.
    * Regional TAC tables: tab separated, with a header. The first column holds the frame mid-times and every other
      column holds one region's TAC; the column names are used as region names.

Times are expected in minutes. As in the rest of the PET processing tools, times whose maximum is at least 300 are
assumed to be in seconds and converted to minutes.

"""
import json
from typing import List, Tuple
import numpy as np
import pandas as pd


def _times_to_minutes(times: np.ndarray) -> np.ndarray:
    if np.max(times) >= 300:
        return times / 60.0
    return times


def safe_load_blood_data(filename: str, **kwargs) -> np.ndarray:
    """
    Loads blood data from a file.

    Args:
        filename (str): The name of the file to be loaded.

    Returns:
        np.ndarray: Array of shape ``(3, num_samples)``: times (minutes), input function and whole blood.

    Raises:
        ValueError: If the file does not have two or three columns.
    """
    try:
        blood_data = np.asarray(np.loadtxt(filename, ndmin=2, **kwargs).T, dtype=float, order='C')
    except ValueError:
        blood_data = np.asarray(np.loadtxt(filename, skiprows=1, ndmin=2, **kwargs).T, dtype=float, order='C')
    except Exception as e:
        print(f"Couldn't read file {filename}. Error: {e}")
        raise e

    if blood_data.shape[0] == 2:
        blood_data = np.vstack([blood_data, blood_data[1]])
    if blood_data.shape[0] != 3:
        raise ValueError(f"Blood file {filename} must have 2 or 3 columns (time, input function[, whole blood]). "
                         f"Got {blood_data.shape[0]}.")
    blood_data[0] = _times_to_minutes(blood_data[0])
    return blood_data


def safe_load_region_tacs(filename: str) -> Tuple[np.ndarray, np.ndarray, List[str]]:
    """
    Loads a table of regional TACs.

    Args:
        filename (str): Path to the tab separated table.

    Returns:
        tuple: ``(frame_mid_times, tacs, roi_names)`` where ``tacs`` has shape ``[num_frames, num_regions]``.

    Raises:
        ValueError: If the table does not have at least one region column.
    """
    tacs_table = pd.read_csv(filename, sep='\t')
    if tacs_table.shape[1] < 2:
        raise ValueError(f"TAC table {filename} must have a time column and at least one region column.")
    frame_mid_times = _times_to_minutes(tacs_table.iloc[:, 0].to_numpy(dtype=float))
    tacs = tacs_table.iloc[:, 1:].to_numpy(dtype=float)
    roi_names = [str(name) for name in tacs_table.columns[1:]]
    return frame_mid_times, tacs, roi_names


def _json_safe(value):
    """Converts numpy containers and scalars to plain Python types, with non-finite floats as ``None``."""
    if isinstance(value, dict):
        return {key: _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, np.ndarray)):
        return [_json_safe(val) for val in value]
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not np.isfinite(value):
        return None
    return value


def write_dict_to_json(meta_data_dict: dict, out_path: str):
    """
    Save a dictionary of analysis properties to a JSON file.

    Non-finite values, such as the ``nan`` parameters of failed fits or unbounded limits, are written as ``null`` so
    that the file is strict JSON.

    Args:
        meta_data_dict (dict): The dictionary to be saved.
        out_path (str): Path to the output file.
    """
    with open(out_path, 'w', encoding='utf-8') as out_file:
        json.dump(_json_safe(meta_data_dict), out_file, indent=4, allow_nan=False)


def write_region_params_table(region_params: dict, out_path: str):
    """
    Save the regional parameters as a tab separated table, one row per region.

    Args:
        region_params (dict): Mapping from parameter name to a mapping from region name to value.
        out_path (str): Path to the output file.
    """
    params_table = pd.DataFrame(data=region_params)
    params_table.index.name = 'region'
    params_table.to_csv(out_path, sep='\t')
