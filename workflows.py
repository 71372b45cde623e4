"""
Workflows bundle a model specification with its preprocessing.

The preprocessor is exactly one of: a formula, a set of outcome/predictor
variables, or a recipe. Fitting a workflow fits the preprocessor and the
model together, and predicting applies the same preprocessing to new data.
"""

from typing import Optional, List

import numpy as np
import pandas as pd

from data_spending import DataSplit
from feature_recipes import Recipe
from linear_models import ModelSpec, ModelFit
from model_metrics import metric_set
from settings import get_logger

logger = get_logger("Workflows")


class Workflow:
    def __init__(self):
        self.model: Optional[ModelSpec] = None
        self.preprocessor = None
        self.preprocessor_type: Optional[str] = None

    def add_model(self, spec: ModelSpec) -> 'Workflow':
        if self.model is not None:
            raise ValueError("A model has already been added to this workflow.")
        self.model = spec
        return self

    def update_model(self, spec: ModelSpec) -> 'Workflow':
        self.model = spec
        return self

    def _set_preprocessor(self, kind: str, value) -> 'Workflow':
        if self.preprocessor is not None:
            raise ValueError(f"A {self.preprocessor_type} preprocessor has already been added; "
                             f"call remove_preprocessor() first.")
        self.preprocessor = value
        self.preprocessor_type = kind
        return self

    def add_formula(self, formula: str) -> 'Workflow':
        return self._set_preprocessor('formula', formula)

    def add_variables(self, outcome: str, predictors: List[str]) -> 'Workflow':
        return self._set_preprocessor('variables', (outcome, list(predictors)))

    def add_recipe(self, rec: Recipe) -> 'Workflow':
        return self._set_preprocessor('recipe', rec)

    def remove_preprocessor(self) -> 'Workflow':
        self.preprocessor = None
        self.preprocessor_type = None
        return self

    def fit(self, data: pd.DataFrame) -> 'WorkflowFit':
        if self.model is None:
            raise ValueError("The workflow has no model. Call add_model() first.")
        if self.preprocessor is None:
            raise ValueError("The workflow has no preprocessor. Add a formula, variables or a recipe.")

        if self.preprocessor_type == 'formula':
            model_fit = self.model.fit(self.preprocessor, data)
            return WorkflowFit(self, model_fit, outcome=model_fit.outcome)

        if self.preprocessor_type == 'variables':
            outcome, predictors = self.preprocessor
            model_fit = self.model.fit_xy(data[predictors], data[outcome])
            return WorkflowFit(self, model_fit, outcome=outcome)

        # each fit gets its own trained copy so earlier fits keep their state
        rec = self.preprocessor.untrained().prep(data)
        baked = rec.juice()
        outcome = rec.outcomes[0]
        model_fit = self.model.fit_xy(baked.drop(columns=rec.outcomes), baked[outcome])
        return WorkflowFit(self, model_fit, outcome=outcome, recipe=rec)

    def __repr__(self):
        lines = ["== Workflow ==", f"Preprocessor: {self.preprocessor_type or 'None'}",
                 f"Model: {self.model!r}"]
        if self.preprocessor_type == 'formula':
            lines.append(f"Formula: {self.preprocessor}")
        elif self.preprocessor_type == 'variables':
            outcome, predictors = self.preprocessor
            lines.append(f"Outcome: {outcome}; Predictors: {', '.join(predictors)}")
        elif self.preprocessor_type == 'recipe':
            lines.append(f"Recipe steps: {', '.join(s.name for s in self.preprocessor.steps) or '<none>'}")
        return "\n".join(lines)


def workflow() -> Workflow:
    return Workflow()


class WorkflowFit:
    def __init__(self, workflow: Workflow, model_fit: ModelFit, outcome: str,
                 recipe: Optional[Recipe] = None):
        self.workflow = workflow
        self.fit = model_fit
        self.outcome = outcome
        self.recipe = recipe

    def _model_input(self, new_data: pd.DataFrame) -> pd.DataFrame:
        kind = self.workflow.preprocessor_type
        if kind == 'recipe':
            baked = self.recipe.bake(new_data)
            return baked.drop(columns=[c for c in self.recipe.outcomes if c in baked.columns])
        if kind == 'variables':
            return new_data[self.workflow.preprocessor[1]]
        return new_data

    def predict(self, new_data: pd.DataFrame, type: str = 'numeric', level: float = 0.95) -> pd.DataFrame:
        out = self.fit.predict(self._model_input(new_data), type=type, level=level)
        out.index = new_data.index
        return out

    def augment(self, new_data: pd.DataFrame) -> pd.DataFrame:
        out = new_data.copy()
        out['.pred'] = self.predict(new_data)['.pred']
        if self.outcome in new_data.columns:
            out['.resid'] = out[self.outcome] - out['.pred']
        return out

    def tidy(self, **kwargs) -> pd.DataFrame:
        return self.fit.tidy(**kwargs)

    def glance(self) -> pd.DataFrame:
        return self.fit.glance()

    def extract_fit_parsnip(self) -> ModelFit:
        return self.fit

    def extract_fit_engine(self):
        return self.fit.extract_fit_engine()

    def extract_recipe(self) -> Recipe:
        if self.recipe is None:
            raise ValueError("This workflow was not fitted with a recipe.")
        return self.recipe

    def extract_preprocessor(self):
        return self.recipe if self.recipe is not None else self.workflow.preprocessor


class LastFit:
    """Model fitted on the training set and evaluated once on the test set."""

    def __init__(self, fit: WorkflowFit, metrics: pd.DataFrame, predictions: pd.DataFrame):
        self.fit = fit
        self.metrics = metrics
        self.predictions = predictions

    def collect_metrics(self) -> pd.DataFrame:
        return self.metrics.copy()

    def collect_predictions(self) -> pd.DataFrame:
        return self.predictions.copy()

    def extract_workflow(self) -> WorkflowFit:
        return self.fit


def last_fit(wf: Workflow, split: DataSplit, metrics=None) -> LastFit:
    metrics = metrics or metric_set('rmse', 'rsq')
    train, test = split.training(), split.testing()

    wf_fit = wf.fit(train)
    if wf_fit.outcome not in test.columns:
        raise ValueError(f"Outcome '{wf_fit.outcome}' is not a column of the test data; "
                         f"transform the outcome before building the workflow.")

    predictions = wf_fit.predict(test)
    predictions[wf_fit.outcome] = test[wf_fit.outcome]
    predictions['.row'] = split.out_id
    return LastFit(wf_fit, metrics(predictions, truth=wf_fit.outcome, estimate='.pred'), predictions)


class ResampleResults:
    def __init__(self, metrics: pd.DataFrame, predictions: pd.DataFrame):
        self.metrics = metrics
        self.predictions = predictions

    def collect_metrics(self, summarize: bool = True) -> pd.DataFrame:
        if not summarize:
            return self.metrics.copy()
        return (self.metrics.groupby(['.metric', '.estimator'])['.estimate']
                .agg(mean='mean', std='std', n='count')
                .assign(std_err=lambda d: d['std'] / np.sqrt(d['n']))
                .reset_index())

    def collect_predictions(self) -> pd.DataFrame:
        return self.predictions.copy()


def fit_resamples(wf: Workflow, folds: List[DataSplit], metrics=None) -> ResampleResults:
    """Fit and evaluate the workflow on every resample."""
    metrics = metrics or metric_set('rmse', 'rsq')
    per_fold, predictions = [], []

    for i, fold in enumerate(folds, 1):
        result = last_fit(wf, fold, metrics)
        fold_id = fold.id or f"Fold{i:02d}"
        per_fold.append(result.collect_metrics().assign(id=fold_id))
        predictions.append(result.collect_predictions().assign(id=fold_id))
        summary = ', '.join(f"{m}={v:.4f}" for m, v in
                            zip(result.metrics['.metric'], result.metrics['.estimate']))
        logger.info(f"{fold_id}: {summary}")

    return ResampleResults(pd.concat(per_fold, ignore_index=True),
                           pd.concat(predictions, ignore_index=True))
