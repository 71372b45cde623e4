"""
Linear regression with interchangeable engines and calling conventions.

A model is first *specified* (`linear_reg()`), then fitted either through a
formula (`spec.fit("y ~ x1 + x2", data)`) or through a predictor frame and
an outcome vector (`spec.fit_xy(X, y)`). Both return a `ModelFit` whose
predictions, coefficient tables and fit statistics come back as tidy
dataframes whatever engine produced them.

Engines
-------
statsmodels : ordinary least squares with standard errors and intervals.
sklearn     : LinearRegression, or Ridge / Lasso / ElasticNet when a
              penalty is given.
"""

from typing import Optional

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
import statsmodels.formula.api as smf
from statsmodels.stats.anova import anova_lm
from scipy import stats
from sklearn.linear_model import LinearRegression, Ridge, Lasso, ElasticNet

from settings import get_logger

logger = get_logger("LinearModels")

ENGINES = ('statsmodels', 'sklearn')
PREDICTION_TYPES = ('numeric', 'conf_int', 'pred_int')


class ModelSpec:
    """Specification of a linear regression: what to fit and with which engine."""

    def __init__(self, penalty: Optional[float] = None, mixture: Optional[float] = None,
                 engine: Optional[str] = None):
        self.penalty = penalty
        self.mixture = mixture
        self.mode = 'regression'
        self.engine = None
        self.set_engine(engine or ('statsmodels' if penalty is None else 'sklearn'))

    def set_engine(self, engine: str) -> 'ModelSpec':
        if engine not in ENGINES:
            raise ValueError(f"engine must be one of {ENGINES}, got '{engine}'")
        if self.penalty is not None and engine != 'sklearn':
            raise ValueError("A penalized linear model requires the 'sklearn' engine.")
        self.engine = engine
        return self

    def _estimator(self):
        if self.penalty is None:
            return LinearRegression()
        # mixture follows glmnet: 0 is pure ridge, 1 (the default) is pure lasso
        mixture = 1 if self.mixture is None else self.mixture
        if mixture == 0:
            return Ridge(alpha=self.penalty)
        if mixture == 1:
            return Lasso(alpha=self.penalty)
        return ElasticNet(alpha=self.penalty, l1_ratio=mixture)

    def translate(self) -> str:
        if self.engine == 'statsmodels':
            return ("Linear Regression Model Specification (regression)\n"
                    "Computational engine: statsmodels\n"
                    "Model fit template:\n"
                    "  formula: statsmodels.formula.api.ols(formula, data=data).fit()\n"
                    "  x/y:     statsmodels.api.OLS(y, add_constant(x)).fit()")
        est = self._estimator()
        params = ', '.join(f"{k}={v}" for k, v in est.get_params().items()
                           if k in ('alpha', 'l1_ratio'))
        return ("Linear Regression Model Specification (regression)\n"
                "Computational engine: sklearn\n"
                "Model fit template:\n"
                f"  sklearn.linear_model.{type(est).__name__}({params}).fit(x, y)")

    def fit(self, formula: str, data: pd.DataFrame) -> 'ModelFit':
        """Fit through a patsy formula such as 'rate ~ temp + species'."""
        if self.engine == 'statsmodels':
            results = smf.ols(formula, data=data).fit()
            return ModelFit(self, results, outcome=results.model.endog_names,
                            feature_names=list(results.params.index), formula=formula)

        y, X = patsy.dmatrices(formula, data, return_type='dataframe')
        x_design = X.design_info
        X = X.drop(columns='Intercept', errors='ignore')
        estimator = self._estimator().fit(X, y.iloc[:, 0])
        return ModelFit(self, estimator, outcome=y.columns[0], feature_names=list(X.columns),
                        formula=formula, x_design=x_design, training=(X, y.iloc[:, 0]))

    def fit_xy(self, x, y) -> 'ModelFit':
        """Fit from a predictor frame and an outcome vector, no formula involved."""
        x = pd.DataFrame(x).copy()
        x.columns = [str(c) for c in x.columns]
        # rows pair up by position; the outcome takes the predictors' index
        y = pd.Series(np.asarray(y), index=x.index, name=getattr(y, 'name', None))
        outcome = y.name if y.name is not None else '.outcome'

        if self.engine == 'statsmodels':
            results = sm.OLS(y, sm.add_constant(x, has_constant='add')).fit()
            return ModelFit(self, results, outcome=outcome, feature_names=list(x.columns))

        estimator = self._estimator().fit(x, y)
        return ModelFit(self, estimator, outcome=outcome, feature_names=list(x.columns),
                        training=(x, y))

    def __repr__(self):
        args = []
        if self.penalty is not None:
            args.append(f"penalty={self.penalty}")
        if self.mixture is not None:
            args.append(f"mixture={self.mixture}")
        return f"linear_reg({', '.join(args)}) [engine={self.engine}]"


def linear_reg(penalty: Optional[float] = None, mixture: Optional[float] = None,
               engine: Optional[str] = None) -> ModelSpec:
    return ModelSpec(penalty=penalty, mixture=mixture, engine=engine)


class ModelFit:
    """A fitted linear model plus what is needed to predict on new data."""

    def __init__(self, spec: ModelSpec, fit, outcome: str, feature_names=None,
                 formula: Optional[str] = None, x_design=None, training=None):
        self.spec = spec
        self.fit = fit
        self.outcome = outcome
        self.feature_names = feature_names or []
        self.formula = formula
        self.x_design = x_design
        self._training = training

    def extract_fit_engine(self):
        return self.fit

    def _design(self, new_data: pd.DataFrame) -> pd.DataFrame:
        if self.x_design is not None:
            X = patsy.build_design_matrices([self.x_design], new_data, NA_action='raise',
                                            return_type='dataframe')[0]
            X.index = new_data.index
            return X.drop(columns='Intercept', errors='ignore')

        names = [c for c in self.feature_names if c != 'const']
        missing = [c for c in names if c not in new_data.columns]
        if missing:
            raise ValueError(f"new_data is missing predictor columns: {missing}")
        return new_data[names]

    def predict(self, new_data: pd.DataFrame, type: str = 'numeric', level: float = 0.95) -> pd.DataFrame:
        """
        Predict on new data.

        type='numeric' returns a '.pred' column; 'conf_int' and 'pred_int'
        return '.pred_lower'/'.pred_upper' for the mean response and for a
        new observation (statsmodels engine only).
        """
        if type not in PREDICTION_TYPES:
            raise ValueError(f"type must be one of {PREDICTION_TYPES}, got '{type}'")

        if self.spec.engine == 'sklearn':
            if type != 'numeric':
                raise ValueError("Interval predictions require the 'statsmodels' engine.")
            pred = self.fit.predict(self._design(new_data))
            return pd.DataFrame({'.pred': pred}, index=new_data.index)

        if self.formula is not None:
            exog = new_data
        else:
            exog = sm.add_constant(self._design(new_data), has_constant='add')

        if type == 'numeric':
            pred = self.fit.predict(exog)
            return pd.DataFrame({'.pred': np.asarray(pred)}, index=new_data.index)

        frame = self.fit.get_prediction(exog).summary_frame(alpha=1 - level)
        prefix = 'mean_ci' if type == 'conf_int' else 'obs_ci'
        return pd.DataFrame({
            '.pred_lower': frame[f'{prefix}_lower'].to_numpy(),
            '.pred_upper': frame[f'{prefix}_upper'].to_numpy(),
        }, index=new_data.index)

    def tidy(self, conf_int: bool = False, level: float = 0.95) -> pd.DataFrame:
        """Coefficient table: one row per model term."""
        if self.spec.engine == 'statsmodels':
            res = self.fit
            out = pd.DataFrame({
                'term': [('Intercept' if t == 'const' else t) for t in res.params.index],
                'estimate': res.params.values,
                'std_error': res.bse.values,
                'statistic': res.tvalues.values,
                'p_value': res.pvalues.values,
            })
            if conf_int:
                ci = res.conf_int(alpha=1 - level)
                out['conf_low'] = ci.iloc[:, 0].values
                out['conf_high'] = ci.iloc[:, 1].values
            return out

        est = self.fit
        out = pd.DataFrame({
            'term': ['Intercept'] + list(self.feature_names),
            'estimate': np.r_[np.ravel(est.intercept_), np.ravel(est.coef_)],
        })
        if self.spec.penalty is not None:
            out['penalty'] = self.spec.penalty
        return out

    def glance(self) -> pd.DataFrame:
        """One-row summary of the whole fit."""
        if self.spec.engine == 'statsmodels':
            res = self.fit
            return pd.DataFrame([{
                'r_squared': res.rsquared,
                'adj_r_squared': res.rsquared_adj,
                'sigma': np.sqrt(res.scale),
                'statistic': res.fvalue,
                'p_value': res.f_pvalue,
                'df': res.df_model,
                'log_lik': res.llf,
                'aic': res.aic,
                'bic': res.bic,
                'deviance': res.ssr,
                'df_residual': res.df_resid,
                'nobs': int(res.nobs),
            }])

        X, y = self._training
        resid = y.to_numpy() - self.fit.predict(X)
        n, p = X.shape
        df_residual = n - p - 1
        return pd.DataFrame([{
            'r_squared': self.fit.score(X, y),
            'sigma': np.sqrt(np.sum(resid ** 2) / df_residual) if df_residual > 0 else np.nan,
            'deviance': float(np.sum(resid ** 2)),
            'df_residual': df_residual,
            'nobs': n,
        }])

    def augment(self, new_data: pd.DataFrame) -> pd.DataFrame:
        out = new_data.copy()
        out['.pred'] = self.predict(new_data)['.pred']
        if self.outcome in new_data.columns:
            out['.resid'] = out[self.outcome] - out['.pred']
        return out

    def residuals(self) -> pd.Series:
        if self.spec.engine == 'statsmodels':
            return self.fit.resid
        X, y = self._training
        return y - self.fit.predict(X)

    def fitted(self) -> pd.Series:
        if self.spec.engine == 'statsmodels':
            return self.fit.fittedvalues
        X, y = self._training
        return pd.Series(self.fit.predict(X), index=y.index)

    def summary(self) -> str:
        if self.spec.engine == 'statsmodels':
            return str(self.fit.summary())
        header = f"{type(self.fit).__name__} fit of '{self.outcome}' ({len(self.feature_names)} predictors)"
        return header + "\n" + self.tidy().to_string(index=False)

    def __repr__(self):
        how = f"formula='{self.formula}'" if self.formula else "x/y"
        coefs = self.tidy().set_index('term')['estimate']
        return f"<ModelFit engine={self.spec.engine} {how}>\nCoefficients:\n{coefs.to_string()}"


def compare_nested(*fits: ModelFit) -> pd.DataFrame:
    """ANOVA F-tests between nested least-squares fits, smallest model first."""
    if len(fits) < 2:
        raise ValueError("compare_nested needs at least two fitted models.")
    if any(f.spec.engine != 'statsmodels' for f in fits):
        raise ValueError("compare_nested only supports models fitted with the 'statsmodels' engine.")

    table = anova_lm(*[f.fit for f in fits])
    table.index = [f.formula or f"model {i}" for i, f in enumerate(fits, 1)]
    return table


def fit_by_group(data: pd.DataFrame, group: str, formula: str,
                 spec: Optional[ModelSpec] = None) -> pd.DataFrame:
    """Fit the same formula within each group and stack the coefficient tables."""
    if group not in data.columns:
        raise KeyError(f"Group column '{group}' not found in dataframe.")
    spec = spec or linear_reg()

    frames = []
    for level, sub in data.groupby(group, sort=True, observed=True):
        coefs = spec.fit(formula, sub).tidy()
        coefs.insert(0, group, level)
        frames.append(coefs)
        logger.info(f"Fitted '{formula}' for {group}={level} ({len(sub)} rows)")
    return pd.concat(frames, ignore_index=True)


def correlation_table(data: pd.DataFrame, outcome: str, columns=None,
                      level: float = 0.95) -> pd.DataFrame:
    """
    Pearson correlation test of every numeric column against `outcome`.

    Parameters
    ----------
    data : pd.DataFrame
        Source data; rows with a missing value in either column are dropped
        pairwise.
    outcome : str
        Column every predictor is correlated with.
    columns : list of str, optional
        Predictors to test (default: every other numeric column).
    level : float
        Confidence level of the interval on the correlation.

    Returns
    -------
    pd.DataFrame
        One row per predictor, sorted by estimate.
    """
    if outcome not in data.columns:
        raise KeyError(f"Column '{outcome}' not found in dataframe.")
    if columns is None:
        columns = [c for c in data.select_dtypes(include=[np.number]).columns if c != outcome]

    rows = []
    for col in columns:
        pair = data[[col, outcome]].dropna()
        res = stats.pearsonr(pair[col], pair[outcome])
        ci = res.confidence_interval(confidence_level=level)
        r = float(res.statistic)
        dof = len(pair) - 2
        rows.append({
            'predictor': col,
            'estimate': r,
            'statistic': r * np.sqrt(dof / (1 - r ** 2)) if abs(r) < 1 else np.inf * np.sign(r),
            'p_value': float(res.pvalue),
            'parameter': dof,
            'conf_low': float(ci.low),
            'conf_high': float(ci.high),
            'method': "Pearson's product-moment correlation",
        })
    return pd.DataFrame(rows).sort_values('estimate').reset_index(drop=True)
