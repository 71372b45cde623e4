"""
Dataset loading for the Ames housing notebook.

Reads the Ames CSV, normalizes its column names to snake_case and adds the
log-transformed sale price used as the modeling outcome. The small crickets
dataset used for the formula examples is bundled here as well.
"""

import re
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from sklearn.datasets import fetch_openml

from settings import AMES_CSV, get_logger

logger = get_logger("AmesData")

# Chirp rate (per minute) against temperature (C) for two cricket species
_CRICKETS = {
    'O. exclamationis': [
        (20.8, 67.9), (20.8, 65.1), (24.0, 77.3), (24.0, 78.7), (24.0, 79.4),
        (24.0, 80.4), (26.2, 85.8), (26.2, 86.6), (26.2, 87.5), (26.2, 89.1),
        (28.4, 98.6), (29.0, 100.8), (30.4, 99.3), (30.4, 101.7),
    ],
    'O. niveus': [
        (17.2, 44.3), (18.3, 47.2), (18.3, 47.6), (18.3, 49.6), (18.9, 50.3),
        (18.9, 51.8), (20.4, 60.0), (21.0, 58.5), (21.0, 58.9), (22.1, 60.7),
        (23.5, 69.8), (24.2, 70.9), (25.9, 76.2), (26.5, 76.1), (26.5, 77.0),
        (26.5, 77.7), (28.6, 84.7),
    ],
}


def _clean_name(name) -> str:
    name = str(name).strip()
    # split camelCase and acronym boundaries: SalePrice -> Sale_Price, MSZoning -> MS_Zoning
    name = re.sub(r'([a-z])([A-Z])', r'\1_\2', name)
    name = re.sub(r'([A-Z]+)([A-Z][a-z])', r'\1_\2', name)
    name = re.sub(r'[^0-9a-zA-Z]+', '_', name).strip('_').lower()
    if not name:
        return 'x'
    if name[0].isdigit():
        name = 'x' + name
    return name


def clean_names(df: pd.DataFrame) -> pd.DataFrame:
    """
    Return a copy of df with janitor-style snake_case column names.

    '1st Flr SF' becomes 'x1st_flr_sf', 'SalePrice' becomes 'sale_price'
    and 'Gr_Liv_Area' becomes 'gr_liv_area'. Names that collide after
    cleaning get a numeric suffix ('_2', '_3', ...).
    """
    seen = {}
    new_names = []
    for col in df.columns:
        name = _clean_name(col)
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        new_names.append(name)

    out = df.copy()
    out.columns = new_names
    return out


def load_ames(filepath: Optional[str] = None) -> pd.DataFrame:
    path = Path(filepath or AMES_CSV)
    if not path.exists():
        raise FileNotFoundError(f"Ames CSV not found at: {path.resolve()}")

    df = clean_names(pd.read_csv(path))
    logger.info(f"Loaded Ames data from {path} with shape: {df.shape}")
    return df


def fetch_ames() -> pd.DataFrame:
    """Download the Kaggle release of the Ames data from OpenML."""
    bunch = fetch_openml(name="house_prices", version=1, as_frame=True)
    df = clean_names(bunch.frame)
    logger.info(f"Fetched Ames data from OpenML with shape: {df.shape}")
    return df


def add_log_target(df: pd.DataFrame, column: str = 'sale_price', base: float = 10,
                   new_column: Optional[str] = None) -> pd.DataFrame:
    """
    Add a log-transformed copy of `column` (log10 by default).

    Prices are strictly positive, so a log scale keeps predictions positive
    and stops errors on expensive houses from dominating the fit.
    """
    if column not in df.columns:
        raise KeyError(f"Column '{column}' not found in dataframe.")

    values = df[column]
    if (values <= 0).any():
        raise ValueError(f"Column '{column}' contains non-positive values; cannot log-transform.")

    out = df.copy()
    new_column = new_column or f"log_{column}"
    if base == 10:
        out[new_column] = np.log10(values)
    else:
        out[new_column] = np.log(values) / np.log(base)
    return out


def load_crickets() -> pd.DataFrame:
    rows = [
        {'species': species, 'temp': temp, 'rate': rate}
        for species, values in _CRICKETS.items()
        for temp, rate in values
    ]
    return pd.DataFrame(rows)


def glimpse(df: pd.DataFrame, n_values: int = 5) -> pd.DataFrame:
    """Column overview: dtype, non-null count and the first few values."""
    return pd.DataFrame({
        'column': df.columns,
        'dtype': [str(t) for t in df.dtypes],
        'non_null': df.notna().sum().values,
        'values': [', '.join(map(str, df[c].head(n_values).tolist())) for c in df.columns],
    })


def level_counts(df: pd.DataFrame, column: str) -> pd.Series:
    if column not in df.columns:
        raise KeyError(f"Column '{column}' not found in dataframe.")
    return df[column].value_counts().sort_index()
