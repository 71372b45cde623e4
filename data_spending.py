"""
Spending the data budget: train/test, train/validation/test, time-ordered
and v-fold partitions of a dataframe.

All partitions are stored as row positions into the original frame, so a
split is cheap to keep around and the partitions are always disjoint.
"""

from typing import Optional, Sequence, List

import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split, KFold, StratifiedKFold

from settings import RANDOM_STATE, get_logger

logger = get_logger("DataSpending")

MIN_ROWS_PER_STRATUM = 20


class DataSplit:
    """Row positions of the training, testing and (optional) validation sets."""

    def __init__(self, data: pd.DataFrame, in_id, out_id, val_id=None, id: Optional[str] = None):
        self.data = data
        self.in_id = np.asarray(in_id, dtype=int)
        self.out_id = np.asarray(out_id, dtype=int)
        self.val_id = None if val_id is None else np.asarray(val_id, dtype=int)
        self.id = id

    def training(self) -> pd.DataFrame:
        return self.data.iloc[self.in_id].copy()

    def testing(self) -> pd.DataFrame:
        return self.data.iloc[self.out_id].copy()

    def validation(self) -> pd.DataFrame:
        if self.val_id is None:
            raise RuntimeError("This split has no validation set. Use initial_validation_split().")
        return self.data.iloc[self.val_id].copy()

    # resampling vocabulary
    analysis = training
    assessment = testing

    def dim(self) -> dict:
        out = {'analysis': len(self.in_id), 'assessment': len(self.out_id)}
        if self.val_id is not None:
            out['validation'] = len(self.val_id)
        out['n'] = len(self.data)
        out['p'] = self.data.shape[1]
        return out

    def __repr__(self):
        if self.val_id is None:
            header = "<Training/Testing/Total>"
            counts = f"<{len(self.in_id)}/{len(self.out_id)}/{len(self.data)}>"
        else:
            header = "<Training/Validation/Testing/Total>"
            counts = f"<{len(self.in_id)}/{len(self.val_id)}/{len(self.out_id)}/{len(self.data)}>"
        prefix = f"{self.id} " if self.id else ""
        return f"{prefix}{header}\n{counts}"


def make_strata(x: pd.Series, breaks: int = 4, pool: float = 0.1) -> Optional[pd.Series]:
    """
    Turn a column into stratum labels for sampling.

    Numeric columns are cut into quantile bins; nominal columns keep their
    levels, with levels rarer than `pool` lumped together. Returns None when
    the column cannot support stratification.
    """
    n = len(x)
    if pd.api.types.is_numeric_dtype(x) and not pd.api.types.is_bool_dtype(x):
        n_bins = min(breaks, n // MIN_ROWS_PER_STRATUM)
        if n_bins < 2:
            logger.warning(f"Too little data to stratify ({n} rows); using a simple random split.")
            return None
        if n_bins < breaks:
            logger.warning(f"Fewer than {MIN_ROWS_PER_STRATUM} rows per quantile; "
                           f"stratifying with {n_bins} breaks instead of {breaks}.")
        bins = pd.qcut(x, q=n_bins, labels=False, duplicates='drop')
        strata = bins.fillna(-1).astype(int).astype(str)
    else:
        strata = x.astype(object).fillna('missing').astype(str)
        freq = strata.value_counts(normalize=True)
        small = freq[freq < pool].index
        if len(small) > 0:
            strata = strata.where(~strata.isin(small), '_pooled')
            counts = strata.value_counts()
            if counts.get('_pooled', 0) < 2 and len(counts) > 1:
                strata = strata.replace('_pooled', counts.drop('_pooled').idxmax())

    counts = strata.value_counts()
    if len(counts) < 2 or counts.min() < 2:
        logger.warning("Strata are too sparse for stratified sampling; using a simple random split.")
        return None
    return strata


def _check_prop(prop: float):
    if not 0 < prop < 1:
        raise ValueError(f"prop must be between 0 and 1, got {prop}")


def _strata_for(data: pd.DataFrame, strata: Optional[str], breaks: int, pool: float):
    if strata is None:
        return None
    if strata not in data.columns:
        raise KeyError(f"Strata column '{strata}' not found in dataframe.")
    groups = make_strata(data[strata], breaks=breaks, pool=pool)
    return None if groups is None else groups.to_numpy()


def _usable_strata(groups, *sizes):
    """Drop stratification when a partition is smaller than the number of strata."""
    if groups is None:
        return None
    counts = pd.Series(groups).value_counts()
    if min(sizes) < len(counts) or counts.min() < 2:
        logger.warning(f"{len(counts)} strata cannot be spread over partitions of {list(sizes)} rows; "
                       f"using a simple random split.")
        return None
    return groups


def initial_split(data: pd.DataFrame, prop: float = 0.75, strata: Optional[str] = None,
                  breaks: int = 4, pool: float = 0.1,
                  random_state: Optional[int] = RANDOM_STATE) -> DataSplit:
    """
    Randomly split `data` into training and testing sets.

    Parameters
    ----------
    data : pd.DataFrame
        Data to split.
    prop : float, default=0.75
        Proportion of rows allocated to training; floor(n * prop) rows.
    strata : str, optional
        Column used for stratified sampling. Numeric columns are binned
        into `breaks` quantiles first.
    breaks : int, default=4
        Number of quantile bins for a numeric strata column.
    pool : float, default=0.1
        Nominal strata with a smaller share than this are lumped together.
    random_state : int, optional
        Seed for reproducible splits.

    Returns
    -------
    DataSplit
    """
    _check_prop(prop)
    n = len(data)
    n_train = int(np.floor(n * prop))
    groups = _usable_strata(_strata_for(data, strata, breaks, pool), n_train, n - n_train)

    train_idx, test_idx = train_test_split(
        np.arange(n),
        train_size=n_train,
        test_size=n - n_train,
        random_state=random_state,
        stratify=groups
    )
    split = DataSplit(data, np.sort(train_idx), np.sort(test_idx))
    logger.info(f"Initial split {split.dim()['analysis']}/{split.dim()['assessment']} "
                f"(strata={strata})")
    return split


def initial_validation_split(data: pd.DataFrame, prop: Sequence[float] = (0.6, 0.2),
                             strata: Optional[str] = None, breaks: int = 4, pool: float = 0.1,
                             random_state: Optional[int] = RANDOM_STATE) -> DataSplit:
    """Three-way split; `prop` gives the training and validation shares."""
    if len(prop) != 2:
        raise ValueError("prop must hold two values: training and validation proportions")
    if min(prop) <= 0 or sum(prop) >= 1:
        raise ValueError(f"prop values must be positive and sum to less than 1, got {tuple(prop)}")

    n = len(data)
    n_train = int(np.floor(n * prop[0]))
    n_val = int(np.floor(n * prop[1]))
    groups = _usable_strata(_strata_for(data, strata, breaks, pool), n_train, n - n_train)

    train_idx, rest_idx = train_test_split(
        np.arange(n),
        train_size=n_train,
        test_size=n - n_train,
        random_state=random_state,
        stratify=groups
    )
    rest_groups = None if groups is None else groups[rest_idx]
    rest_groups = _usable_strata(rest_groups, n_val, len(rest_idx) - n_val)
    val_idx, test_idx = train_test_split(
        rest_idx,
        train_size=n_val,
        test_size=len(rest_idx) - n_val,
        random_state=random_state,
        stratify=rest_groups
    )
    return DataSplit(data, np.sort(train_idx), np.sort(test_idx), val_id=np.sort(val_idx))


def initial_time_split(data: pd.DataFrame, prop: float = 0.75) -> DataSplit:
    """The first floor(n * prop) rows train, the rest test; row order is kept."""
    _check_prop(prop)
    n = len(data)
    n_train = int(np.floor(n * prop))
    train_idx, test_idx = train_test_split(
        np.arange(n),
        train_size=n_train,
        test_size=n - n_train,
        shuffle=False
    )
    return DataSplit(data, train_idx, test_idx)


def vfold_cv(data: pd.DataFrame, v: int = 10, strata: Optional[str] = None, repeats: int = 1,
             breaks: int = 4, pool: float = 0.1,
             random_state: Optional[int] = RANDOM_STATE) -> List[DataSplit]:
    """V-fold cross-validation; each row is assessed once per repeat."""
    positions = np.arange(len(data))
    groups = _strata_for(data, strata, breaks, pool)

    folds = []
    for r in range(repeats):
        seed = None if random_state is None else random_state + r
        if groups is None:
            iterator = KFold(n_splits=v, shuffle=True, random_state=seed).split(positions)
        else:
            iterator = StratifiedKFold(n_splits=v, shuffle=True, random_state=seed).split(positions, groups)

        for fold, (train_idx, test_idx) in enumerate(iterator, 1):
            fold_id = f"Fold{fold:02d}" if repeats == 1 else f"Repeat{r + 1}/Fold{fold:02d}"
            folds.append(DataSplit(data, train_idx, test_idx, id=fold_id))

    logger.info(f"Created {len(folds)} resamples ({v}-fold, {repeats} repeat(s))")
    return folds


def compare_distributions(split: DataSplit, column: str,
                          probs: Sequence[float] = (0.0, 0.25, 0.5, 0.75, 1.0)) -> pd.DataFrame:
    """Quantiles of `column` in each partition, one column per partition."""
    if column not in split.data.columns:
        raise KeyError(f"Column '{column}' not found in dataframe.")

    parts = {'training': split.training(), 'testing': split.testing()}
    if split.val_id is not None:
        parts['validation'] = split.validation()

    return pd.DataFrame({
        name: part[column].quantile(list(probs)).values
        for name, part in parts.items()
    }, index=pd.Index(list(probs), name='quantile'))
