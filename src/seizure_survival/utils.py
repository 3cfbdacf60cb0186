from __future__ import annotations
import datetime as dt
import os
from typing import Dict

import pandas as pd

OUTPUT_SUBDIRS = ("tables", "figures", "models", "report", "logs")


def ensure_dir(path: str):
    """Create directory (and parents) if it doesn't exist."""
    os.makedirs(path, exist_ok=True)


def get_output_paths(run_type: str = "full", output_dir: str = "data/outputs") -> Dict[str, str]:
    """Create and return the output directories for one run.

    Args:
        run_type: "sample" or "full"
        output_dir: Root output directory

    Returns:
        Dictionary with ``base_dir`` and one key per subdirectory
        (tables, figures, models, report, logs)

    Example:
        >>> get_output_paths("sample")["tables"]
        'data/outputs/sample/tables'
    """
    base_dir = os.path.join(output_dir, run_type)
    paths = {"base_dir": base_dir}
    paths.update({name: os.path.join(base_dir, name) for name in OUTPUT_SUBDIRS})
    for path in paths.values():
        ensure_dir(path)
    return paths


def save_table(df: pd.DataFrame, outdir: str, name: str, index: bool = False) -> str:
    """Write a result table to ``<outdir>/<name>.csv`` and return the path."""
    ensure_dir(outdir)
    path = os.path.join(outdir, f"{name}.csv")
    df.to_csv(path, index=index)
    return path


def versioned_name(base: str, run_type: str | None = None) -> str:
    """Append a timestamp to a file name, optionally prefixed by the run type.

    Example:
        >>> versioned_name("final_weibull", run_type="full")
        'full_final_weibull_20250123_143052'
    """
    ts = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    if run_type:
        return f"{run_type}_{base}_{ts}"
    return f"{base}_{ts}"
