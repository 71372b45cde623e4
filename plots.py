import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from matplotlib.ticker import FuncFormatter
import seaborn as sns
from scipy import stats

from typing import Optional

from settings import get_logger

logger = get_logger("ModelingPlots")


def freedman_diaconis_bins(x: np.ndarray) -> int:
    """Histogram bin count from the Freedman-Diaconis rule; used when a plot gets bins=None."""
    x = x[~np.isnan(x)]
    if len(x) < 2:
        return 10
    iqr = np.subtract(*np.percentile(x, [75, 25]))
    if iqr == 0:
        return int(np.sqrt(len(x)))
    h = 2 * iqr * (len(x) ** (-1/3))
    if h <= 0:
        return int(np.sqrt(len(x)))
    return max(10, int(np.ceil((x.max() - x.min()) / h)))


def _finish(fig, show: bool):
    fig.tight_layout()
    if show:
        plt.show()
    return fig


def plot_price_histogram(df: pd.DataFrame, column: str = 'sale_price', bins: Optional[int] = 50,
                         log_scale: bool = False, show: bool = True):
    """
    Histogram of a price column.

    On the natural scale the axis is labelled in thousands of dollars
    ($100k); with log_scale=True the bins are spaced evenly in log10 so the
    right skew of the prices disappears.
    """
    if column not in df.columns:
        raise KeyError(f"Column '{column}' not found in dataframe.")
    values = df[column].dropna().to_numpy(dtype=float)
    if bins is None:
        bins = freedman_diaconis_bins(values)

    fig, ax = plt.subplots(figsize=(10, 5))
    if log_scale:
        if (values <= 0).any():
            raise ValueError(f"Column '{column}' has non-positive values; cannot use a log axis.")
        edges = np.logspace(np.log10(values.min()), np.log10(values.max()), bins + 1)
        ax.hist(values, bins=edges, edgecolor='white')
        ax.set_xscale('log')
        ax.set_title(f"{column} distribution (log10 scale)")
    else:
        ax.hist(values, bins=bins, edgecolor='white')
        ax.xaxis.set_major_formatter(FuncFormatter(lambda v, _: f"${v * 1e-3:,.0f}k"))
        ax.set_title(f"{column} distribution (bins={bins})")
    ax.set_xlabel(column)
    ax.set_ylabel("count")
    return _finish(fig, show)


def plot_group_scatter(df: pd.DataFrame, x: str, y: str, group: str,
                       xlabel: Optional[str] = None, ylabel: Optional[str] = None, show: bool = True):
    """Scatter plot with a separate least-squares line for every group."""
    levels = sorted(df[group].dropna().unique())
    palette = sns.color_palette("Paired", n_colors=max(len(levels), 2))
    markers = ['o', '^', 's', 'D', 'v', 'P', 'X']

    fig, ax = plt.subplots(figsize=(8, 5))
    for i, level in enumerate(levels):
        sub = df[df[group] == level]
        sns.regplot(data=sub, x=x, y=y, ax=ax, ci=None, color=palette[i],
                    marker=markers[i % len(markers)], label=str(level),
                    scatter_kws={'s': 30}, line_kws={'alpha': 0.5})
    ax.legend(title=group)
    ax.set_xlabel(xlabel or x)
    ax.set_ylabel(ylabel or y)
    return _finish(fig, show)


def plot_correlations(table: pd.DataFrame, outcome: Optional[str] = None, show: bool = True):
    """Correlation estimates with their confidence intervals, ordered by estimate."""
    t = table.sort_values('estimate')
    fig, ax = plt.subplots(figsize=(8, max(3, 0.4 * len(t))))
    xerr = [t['estimate'] - t['conf_low'], t['conf_high'] - t['estimate']]
    ax.errorbar(t['estimate'], t['predictor'], xerr=xerr, fmt='o', capsize=3)
    ax.axvline(0, color='grey', linestyle='--', linewidth=1)
    ax.set_xlabel(f"Correlation with {outcome}" if outcome else "Correlation")
    ax.set_ylabel(None)
    return _finish(fig, show)


def plot_locations(df: pd.DataFrame, lon: str = 'longitude', lat: str = 'latitude',
                   hue: Optional[str] = 'neighborhood', show: bool = True):
    missing = [c for c in (lon, lat) if c not in df.columns]
    if missing:
        raise KeyError(f"Coordinate columns not found in dataframe: {missing}")

    fig, ax = plt.subplots(figsize=(9, 8))
    legend = hue is not None and df[hue].nunique() <= 12
    sns.scatterplot(data=df, x=lon, y=lat, hue=hue, s=8, alpha=0.7, ax=ax, legend=legend)
    ax.set_title("House locations" + (f" by {hue}" if hue else ""))
    return _finish(fig, show)


def plot_split_distribution(split, column: str, show: bool = True):
    """Overlaid densities of a column in each partition of a split."""
    parts = {'training': split.training(), 'testing': split.testing()}
    if split.val_id is not None:
        parts['validation'] = split.validation()

    fig, ax = plt.subplots(figsize=(8, 4))
    for name, part in parts.items():
        sns.kdeplot(part[column].dropna(), ax=ax, label=f"{name} (n={len(part)})", fill=False)
    ax.set_title(f"{column}: partition distributions")
    ax.legend()
    return _finish(fig, show)


def plot_diagnostics(fit, show: bool = True):
    """Residuals vs fitted, normal Q-Q and scale-location panels for a fitted model."""
    fitted = np.asarray(fit.fitted(), dtype=float)
    resid = np.asarray(fit.residuals(), dtype=float)
    std_resid = resid / resid.std(ddof=1)

    fig, axs = plt.subplots(1, 3, figsize=(16, 4.5))
    axs[0].scatter(fitted, resid, s=10, alpha=0.6)
    axs[0].axhline(0, color='red', linestyle='--')
    axs[0].set_xlabel("Fitted values")
    axs[0].set_ylabel("Residuals")
    axs[0].set_title("Residuals vs Fitted")

    stats.probplot(std_resid, dist="norm", plot=axs[1])
    axs[1].set_title("Normal Q-Q")

    axs[2].scatter(fitted, np.sqrt(np.abs(std_resid)), s=10, alpha=0.6)
    axs[2].set_xlabel("Fitted values")
    axs[2].set_ylabel("sqrt(|standardized residuals|)")
    axs[2].set_title("Scale-Location")
    return _finish(fig, show)


def plot_pca_scree(pca_step, show: bool = True):
    """Scree plot for a trained PCA recipe step."""
    if pca_step.pca is None:
        raise RuntimeError("PCA step not trained. Prep the recipe first.")
    evr = pca_step.pca.explained_variance_ratio_
    cumsum = np.cumsum(evr)

    fig, ax = plt.subplots(figsize=(10, 4))
    ax.bar(range(1, len(evr) + 1), evr, alpha=0.6, label='Individual')
    ax.plot(range(1, len(evr) + 1), cumsum, marker='o', color='black', label='Cumulative')
    ax.axhline(0.85, color='red', linestyle='--', label='85%')
    ax.set_xlabel('Principal Component')
    ax.set_ylabel('Explained Variance Ratio')
    ax.set_title('PCA Scree and Cumulative Explained Variance')
    ax.legend()
    logger.info(f"PCA components: {len(evr)}, cumulative explained variance: {cumsum[-1]:.4f}")
    return _finish(fig, show)
