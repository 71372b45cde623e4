import numpy as np
import pandas as pd
from sklearn.metrics import (r2_score, mean_squared_error, mean_absolute_error,
                             mean_absolute_percentage_error)


def _values(data: pd.DataFrame, truth: str, estimate: str):
    missing = [c for c in (truth, estimate) if c not in data.columns]
    if missing:
        raise KeyError(f"Columns not found in dataframe: {missing}")
    pairs = data[[truth, estimate]].dropna()
    return pairs[truth].to_numpy(dtype=float), pairs[estimate].to_numpy(dtype=float)


def _result(name: str, value: float) -> pd.DataFrame:
    return pd.DataFrame({'.metric': [name], '.estimator': ['standard'], '.estimate': [float(value)]})


def rmse(data, truth, estimate):
    y, y_hat = _values(data, truth, estimate)
    return _result('rmse', np.sqrt(mean_squared_error(y, y_hat)))


def rsq(data, truth, estimate):
    """Squared correlation between truth and estimate."""
    y, y_hat = _values(data, truth, estimate)
    return _result('rsq', np.corrcoef(y, y_hat)[0, 1] ** 2)


def rsq_trad(data, truth, estimate):
    """Traditional R², 1 - SSE/SST; can be negative."""
    y, y_hat = _values(data, truth, estimate)
    return _result('rsq_trad', r2_score(y, y_hat))


def mae(data, truth, estimate):
    y, y_hat = _values(data, truth, estimate)
    return _result('mae', mean_absolute_error(y, y_hat))


def mape(data, truth, estimate):
    y, y_hat = _values(data, truth, estimate)
    return _result('mape', 100 * mean_absolute_percentage_error(y, y_hat))


METRICS = {
    'rmse': rmse,
    'rsq': rsq,
    'rsq_trad': rsq_trad,
    'mae': mae,
    'mape': mape,
}


def metric_set(*metrics):
    """
    Bundle several metrics into one callable.

    Accepts metric names ('rmse', 'rsq', ...) or metric functions. The
    returned function takes (data, truth, estimate) and stacks the results.
    """
    if not metrics:
        metrics = ('rmse', 'rsq', 'mae')

    fns = []
    for m in metrics:
        if callable(m):
            fns.append(m)
        elif m in METRICS:
            fns.append(METRICS[m])
        else:
            raise ValueError(f"Unknown metric '{m}'. Choose from: {', '.join(METRICS)}")

    def compute(data, truth, estimate):
        return pd.concat([fn(data, truth, estimate) for fn in fns], ignore_index=True)

    compute.metrics = [fn.__name__ for fn in fns]
    return compute
