import matplotlib
matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from ames_data import load_crickets


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close('all')


@pytest.fixture
def crickets():
    return load_crickets()


@pytest.fixture
def housing():
    """Synthetic frame shaped like the cleaned Ames data."""
    rng = np.random.default_rng(0)
    n = 400
    neighborhood = rng.choice(['North_Ames', 'College_Creek', 'Old_Town', 'Edwards', 'Somerset'],
                              size=n, p=[0.3, 0.25, 0.2, 0.15, 0.1]).astype(object)
    neighborhood[:3] = 'Rare_Hood'
    bldg_type = rng.choice(['OneFam', 'TwoFmCon', 'Duplex', 'Twnhs'], size=n, p=[0.7, 0.1, 0.1, 0.1])
    gr_liv_area = rng.uniform(600, 3000, n)
    year_built = rng.integers(1900, 2010, n)
    latitude = rng.uniform(41.98, 42.06, n)
    longitude = rng.uniform(-93.69, -93.58, n)
    log_price = 3.0 + 0.6 * np.log10(gr_liv_area) + 0.004 * (year_built - 1900) + rng.normal(0, 0.05, n)

    return pd.DataFrame({
        'sale_price': 10 ** log_price,
        'log_sale_price': log_price,
        'gr_liv_area': gr_liv_area,
        'year_built': year_built,
        'neighborhood': neighborhood,
        'bldg_type': bldg_type,
        'latitude': latitude,
        'longitude': longitude,
    })
