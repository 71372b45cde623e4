"""
Feature-engineering recipes.

A recipe starts from a formula and a template dataframe that define the
variables and their roles (outcome or predictor). Preprocessing steps are
then added one at a time:

    rec = (recipe("sale_price ~ neighborhood + gr_liv_area + bldg_type", train)
           .step_log("gr_liv_area", base=10)
           .step_other("neighborhood", threshold=0.01)
           .step_dummy(all_nominal_predictors())
           .step_interact("gr_liv_area:starts_with('bldg_type_')"))

`prep()` estimates what every step needs (levels, medians, loadings,
spline knots) from the training data, in order, and `bake()` applies the
same transformations to any new data. Columns are chosen either by name or
with selectors such as `all_nominal_predictors()` or `starts_with()`. They
are resolved against the data as it looks when the step is trained, so a
selector can pick up columns created by earlier steps.
"""

import copy
import re
from itertools import product
from typing import Optional, List

import numpy as np
import pandas as pd
import patsy
from sklearn.preprocessing import StandardScaler, SplineTransformer
from sklearn.decomposition import PCA

from settings import RANDOM_STATE, get_logger

logger = get_logger("Recipes")


# -----------------------
# Variable types and selectors
# -----------------------
def _is_numeric(s: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(s) and not pd.api.types.is_bool_dtype(s)


def _var_type(s: pd.Series) -> str:
    return 'numeric' if _is_numeric(s) else 'nominal'


class Selector:
    """Deferred column selection, resolved against data when a step is prepped."""

    def __init__(self, description: str, fn):
        self.description = description
        self.fn = fn

    def resolve(self, data: pd.DataFrame, roles: dict) -> List[str]:
        return [c for c in data.columns if self.fn(c, data[c], roles.get(c))]

    def __repr__(self):
        return self.description


def all_predictors() -> Selector:
    return Selector("all_predictors()", lambda name, s, role: role == 'predictor')


def all_outcomes() -> Selector:
    return Selector("all_outcomes()", lambda name, s, role: role == 'outcome')


def all_numeric_predictors() -> Selector:
    return Selector("all_numeric_predictors()",
                    lambda name, s, role: role == 'predictor' and _is_numeric(s))


def all_nominal_predictors() -> Selector:
    return Selector("all_nominal_predictors()",
                    lambda name, s, role: role == 'predictor' and not _is_numeric(s))


def starts_with(prefix: str) -> Selector:
    return Selector(f"starts_with('{prefix}')", lambda name, s, role: name.startswith(prefix))


def ends_with(suffix: str) -> Selector:
    return Selector(f"ends_with('{suffix}')", lambda name, s, role: name.endswith(suffix))


def contains(text: str) -> Selector:
    return Selector(f"contains('{text}')", lambda name, s, role: text in name)


def matches(pattern: str) -> Selector:
    regex = re.compile(pattern)
    return Selector(f"matches('{pattern}')", lambda name, s, role: regex.search(name) is not None)


SELECTORS = {
    'all_predictors': all_predictors,
    'all_outcomes': all_outcomes,
    'all_numeric_predictors': all_numeric_predictors,
    'all_nominal_predictors': all_nominal_predictors,
    'starts_with': starts_with,
    'ends_with': ends_with,
    'contains': contains,
    'matches': matches,
}


def _parse_selector(text: str):
    """'starts_with("bldg_type_")' -> Selector, plain names are returned unchanged."""
    text = text.strip()
    call = re.match(r'^(\w+)\((.*)\)$', text)
    if call is None:
        return text
    fn_name, arg = call.group(1), call.group(2).strip().strip('"\'')
    if fn_name not in SELECTORS:
        raise ValueError(f"Unknown selector '{fn_name}' in '{text}'")
    return SELECTORS[fn_name](arg) if arg else SELECTORS[fn_name]()


def _resolve(terms, data: pd.DataFrame, roles: dict) -> List[str]:
    columns = []
    for term in terms:
        if isinstance(term, Selector):
            found = term.resolve(data, roles)
        else:
            if term not in data.columns:
                raise ValueError(f"Column '{term}' not found in the data.")
            found = [term]
        columns.extend(c for c in found if c not in columns)
    return columns


def _describe(terms) -> str:
    return ', '.join(str(t) for t in terms)


def _clean_level(level) -> str:
    return re.sub(r'[^0-9a-zA-Z]+', '_', str(level)).strip('_') or 'blank'


def _check_present(data: pd.DataFrame, columns: List[str], step_name: str):
    missing = [c for c in columns if c not in data.columns]
    if missing:
        raise ValueError(f"{step_name}: columns missing from the data: {missing}")


# -----------------------
# Steps
# -----------------------
class Step:
    name = 'step'
    label = 'Step'
    requires = None  # 'numeric' | 'nominal' | None

    def __init__(self, *terms, skip: bool = False, id: Optional[str] = None):
        self.terms = terms
        self.skip = skip
        self.id = id
        self.trained = False
        self.columns = []

    def _select(self, data: pd.DataFrame, roles: dict) -> List[str]:
        columns = _resolve(self.terms, data, roles)
        if self.requires == 'numeric':
            wrong = [c for c in columns if not _is_numeric(data[c])]
        elif self.requires == 'nominal':
            wrong = [c for c in columns if _is_numeric(data[c])]
        else:
            wrong = []
        if wrong:
            raise ValueError(f"{self.name} needs {self.requires} columns; got {wrong}")
        return columns

    def prep(self, data: pd.DataFrame, roles: dict) -> 'Step':
        self.columns = self._select(data, roles)
        self._fit(data)
        self.trained = True
        return self

    def _fit(self, data: pd.DataFrame):
        pass

    def bake(self, data: pd.DataFrame) -> pd.DataFrame:
        _check_present(data, self.columns, self.name)
        return self._apply(data.copy())

    def _apply(self, data: pd.DataFrame) -> pd.DataFrame:
        return data

    def tidy(self) -> pd.DataFrame:
        terms = self.columns if self.trained else [str(t) for t in self.terms]
        return pd.DataFrame({'terms': terms, 'id': self.id})

    def describe(self) -> str:
        cols = ', '.join(self.columns) if self.trained else _describe(self.terms)
        status = " [trained]" if self.trained else ""
        return f"{self.label} on: {cols}{status}"


class StepLog(Step):
    name = 'log'
    label = 'Log transformation'
    requires = 'numeric'

    def __init__(self, *terms, base: float = np.e, offset: float = 0, **kwargs):
        super().__init__(*terms, **kwargs)
        self.base = base
        self.offset = offset

    def _apply(self, data):
        for c in self.columns:
            data[c] = np.log(data[c] + self.offset) / np.log(self.base)
        return data

    def tidy(self):
        out = super().tidy()
        out.insert(1, 'base', self.base)
        return out


class StepOther(Step):
    name = 'other'
    label = 'Collapsing factor levels'
    requires = 'nominal'

    def __init__(self, *terms, threshold: float = 0.05, other: str = 'other', **kwargs):
        super().__init__(*terms, **kwargs)
        self.threshold = threshold
        self.other = other
        self.retained = {}

    def _fit(self, data):
        for c in self.columns:
            # threshold < 1 is a proportion, otherwise a minimum count
            counts = data[c].value_counts(normalize=self.threshold < 1)
            self.retained[c] = counts[counts >= self.threshold].index.tolist()

    def _apply(self, data):
        for c in self.columns:
            col = data[c].astype(object)
            keep = col.isin(self.retained[c]) | col.isna()
            data[c] = col.where(keep, self.other)
        return data

    def tidy(self):
        rows = [{'terms': c, 'retained': lvl, 'id': self.id}
                for c, levels in self.retained.items() for lvl in levels]
        return pd.DataFrame(rows, columns=['terms', 'retained', 'id'])


class StepUnknown(Step):
    name = 'unknown'
    label = 'Unknown factor level assignment'
    requires = 'nominal'

    def __init__(self, *terms, new_level: str = 'unknown', **kwargs):
        super().__init__(*terms, **kwargs)
        self.new_level = new_level

    def _fit(self, data):
        clashing = [c for c in self.columns if (data[c] == self.new_level).any()]
        if clashing:
            raise ValueError(f"Level '{self.new_level}' already exists in: {clashing}")

    def _apply(self, data):
        for c in self.columns:
            data[c] = data[c].astype(object).where(data[c].notna(), self.new_level)
        return data


class StepDummy(Step):
    name = 'dummy'
    label = 'Dummy variables from'
    requires = 'nominal'

    def __init__(self, *terms, one_hot: bool = False, **kwargs):
        super().__init__(*terms, **kwargs)
        self.one_hot = one_hot
        self.levels = {}

    def _fit(self, data):
        for c in self.columns:
            s = data[c]
            if isinstance(s.dtype, pd.CategoricalDtype):
                levels = [lvl for lvl in s.cat.categories if (s == lvl).any()]
            else:
                levels = sorted(s.dropna().unique().tolist(), key=str)
            self.levels[c] = levels

    def dummy_names(self, column: str) -> List[str]:
        levels = self.levels[column] if self.one_hot else self.levels[column][1:]
        return [f"{column}_{_clean_level(lvl)}" for lvl in levels]

    def _apply(self, data):
        for c in self.columns:
            levels = self.levels[c]
            cat = pd.Categorical(data[c], categories=levels)
            # values unseen during prep (and missing values) encode as all zeros
            dummies = pd.get_dummies(cat, dtype=float)
            dummies.columns = [f"{c}_{_clean_level(lvl)}" for lvl in levels]
            dummies.index = data.index
            if not self.one_hot:
                dummies = dummies.iloc[:, 1:]
            data = pd.concat([data.drop(columns=c), dummies], axis=1)
        return data

    def tidy(self):
        rows = [{'terms': c, 'columns': name, 'id': self.id}
                for c in self.columns for name in self.dummy_names(c)]
        return pd.DataFrame(rows, columns=['terms', 'columns', 'id'])


class StepInteract(Step):
    """Products of columns; each term is written like 'a:b' or 'a:starts_with("b_")'."""
    name = 'interact'
    label = 'Interactions with'

    def __init__(self, terms, sep: str = '_x_', **kwargs):
        specs = [terms] if isinstance(terms, str) else list(terms)
        parsed = []
        for spec in specs:
            for term in spec.lstrip('~ ').split('+'):
                parts = [_parse_selector(p) for p in term.split(':')]
                if len(parts) < 2:
                    raise ValueError(f"Interaction term '{term.strip()}' needs at least two parts")
                parsed.append(parts)
        super().__init__(*specs, **kwargs)
        self.parsed = parsed
        self.sep = sep
        self.interactions = []

    def prep(self, data, roles):
        self.interactions = []
        for parts in self.parsed:
            resolved = [_resolve([p], data, roles) for p in parts]
            if any(len(r) == 0 for r in resolved):
                logger.warning(f"Interaction {':'.join(map(str, parts))} selected no columns; skipped.")
                continue
            self.interactions.extend(combo for combo in product(*resolved) if len(set(combo)) == len(combo))
        self.columns = sorted({c for combo in self.interactions for c in combo})
        self.trained = True
        return self

    def _apply(self, data):
        for combo in self.interactions:
            data[self.sep.join(combo)] = data[list(combo)].prod(axis=1)
        return data

    def tidy(self):
        return pd.DataFrame({'terms': [self.sep.join(c) for c in self.interactions], 'id': self.id})


class StepNs(Step):
    """Natural cubic spline basis (patsy `cr`), `deg_free` columns per variable."""
    name = 'ns'
    label = 'Natural splines on'
    requires = 'numeric'

    def __init__(self, *terms, deg_free: int = 2, **kwargs):
        super().__init__(*terms, **kwargs)
        self.deg_free = deg_free
        self.design = {}

    def _fit(self, data):
        spline = f"cr(x, df={self.deg_free}, constraints='center') - 1"
        for c in self.columns:
            basis = patsy.dmatrix(spline, {'x': data[c].to_numpy()}, NA_action='raise')
            self.design[c] = basis.design_info

    def _apply(self, data):
        for c in self.columns:
            basis = patsy.build_design_matrices([self.design[c]], {'x': data[c].to_numpy()},
                                                NA_action='raise', return_type='dataframe')[0]
            basis.columns = [f"{c}_ns_{i:02d}" for i in range(1, basis.shape[1] + 1)]
            basis.index = data.index
            data = pd.concat([data.drop(columns=c), basis], axis=1)
        return data


class StepBs(Step):
    """B-spline basis (scikit-learn SplineTransformer), `deg_free` columns per variable."""
    name = 'bs'
    label = 'B-splines on'
    requires = 'numeric'

    def __init__(self, *terms, deg_free: int = 3, degree: int = 3, **kwargs):
        if deg_free < degree:
            raise ValueError(f"deg_free ({deg_free}) must be at least degree ({degree})")
        super().__init__(*terms, **kwargs)
        self.deg_free = deg_free
        self.degree = degree
        self.transformers = {}

    def _fit(self, data):
        for c in self.columns:
            # without the bias column the basis has n_knots + degree - 2 columns
            spline = SplineTransformer(n_knots=self.deg_free - self.degree + 2, degree=self.degree,
                                       include_bias=False, extrapolation='linear')
            self.transformers[c] = spline.fit(data[[c]].to_numpy())

    def _apply(self, data):
        for c in self.columns:
            values = self.transformers[c].transform(data[[c]].to_numpy())
            names = [f"{c}_bs_{i:02d}" for i in range(1, values.shape[1] + 1)]
            basis = pd.DataFrame(values, columns=names, index=data.index)
            data = pd.concat([data.drop(columns=c), basis], axis=1)
        return data


class StepPCA(Step):
    name = 'pca'
    label = 'PCA extraction with'
    requires = 'numeric'

    def __init__(self, *terms, num_comp: int = 5, threshold: Optional[float] = None,
                 prefix: str = 'PC', **kwargs):
        super().__init__(*terms, **kwargs)
        self.num_comp = num_comp
        self.threshold = threshold
        self.prefix = prefix
        self.pca = None

    def _fit(self, data):
        X = data[self.columns].to_numpy(dtype=float)
        if self.threshold is not None:
            n_components = self.threshold
        else:
            n_components = min(self.num_comp, X.shape[0], X.shape[1])
        self.pca = PCA(n_components=n_components, random_state=RANDOM_STATE).fit(X)
        logger.info(f"PCA kept {self.pca.n_components_} components, explained variance: "
                    f"{self.pca.explained_variance_ratio_.sum():.4f}")

    def component_names(self) -> List[str]:
        n = self.pca.n_components_
        width = len(str(n))
        return [f"{self.prefix}{i:0{width}d}" for i in range(1, n + 1)]

    def _apply(self, data):
        scores = self.pca.transform(data[self.columns].to_numpy(dtype=float))
        components = pd.DataFrame(scores, columns=self.component_names(), index=data.index)
        return pd.concat([data.drop(columns=self.columns), components], axis=1)

    def tidy(self):
        loadings = pd.DataFrame(self.pca.components_.T, index=self.columns,
                                columns=self.component_names())
        out = loadings.reset_index().melt(id_vars='index', var_name='component', value_name='value')
        out = out.rename(columns={'index': 'terms'})
        out['id'] = self.id
        return out


class StepNormalize(Step):
    name = 'normalize'
    label = 'Centering and scaling for'
    requires = 'numeric'

    def __init__(self, *terms, **kwargs):
        super().__init__(*terms, **kwargs)
        self.scaler = None

    def _fit(self, data):
        self.scaler = StandardScaler().fit(data[self.columns])

    def _apply(self, data):
        data[self.columns] = self.scaler.transform(data[self.columns])
        return data

    def tidy(self):
        return pd.concat([
            pd.DataFrame({'terms': self.columns, 'statistic': 'mean', 'value': self.scaler.mean_}),
            pd.DataFrame({'terms': self.columns, 'statistic': 'sd', 'value': self.scaler.scale_}),
        ], ignore_index=True).assign(id=self.id)


class StepZv(Step):
    name = 'zv'
    label = 'Zero variance filter on'

    def __init__(self, *terms, **kwargs):
        super().__init__(*terms, **kwargs)
        self.removed = []

    def prep(self, data, roles):
        candidates = self._select(data, roles)
        self.removed = [c for c in candidates if data[c].nunique(dropna=True) <= 1]
        # only the removed columns need to exist at bake time
        self.columns = self.removed
        self.trained = True
        return self

    def _apply(self, data):
        return data.drop(columns=self.removed)

    def describe(self):
        if self.trained:
            return f"{self.label}: removed {', '.join(self.removed) or '<none>'} [trained]"
        return super().describe()


class StepImputeMedian(Step):
    name = 'impute_median'
    label = 'Median imputation for'
    requires = 'numeric'

    def __init__(self, *terms, **kwargs):
        super().__init__(*terms, **kwargs)
        self.medians = {}

    def _fit(self, data):
        self.medians = data[self.columns].median().to_dict()

    def _apply(self, data):
        return data.fillna(value=self.medians)

    def tidy(self):
        return pd.DataFrame({'terms': list(self.medians), 'value': list(self.medians.values()),
                             'id': self.id})


# -----------------------
# Recipe
# -----------------------
def _parse_formula(formula: str, data: pd.DataFrame):
    if '~' not in formula:
        raise ValueError(f"Recipe formula must contain '~': '{formula}'")
    lhs, rhs = formula.split('~', 1)
    outcomes = [t.strip() for t in lhs.split('+') if t.strip()]
    terms = [t.strip() for t in rhs.split('+') if t.strip()]

    for name in outcomes:
        if name not in data.columns:
            raise ValueError(f"Outcome '{name}' not found in the data.")

    predictors = []
    for term in terms:
        if term == '.':
            predictors.extend(c for c in data.columns if c not in outcomes and c not in predictors)
        elif term in data.columns:
            if term not in predictors:
                predictors.append(term)
        else:
            raise ValueError(f"Recipe formulas only accept column names and '.'; "
                             f"'{term}' is not a column of the data.")
    return outcomes, predictors


class Recipe:
    def __init__(self, formula: str, data: pd.DataFrame):
        self.formula = formula
        self.outcomes, self.predictors = _parse_formula(formula, data)
        self.template = data[self.predictors + self.outcomes].copy()
        self.var_info = pd.DataFrame({
            'variable': self.predictors + self.outcomes,
            'type': [_var_type(data[c]) for c in self.predictors + self.outcomes],
            'role': ['predictor'] * len(self.predictors) + ['outcome'] * len(self.outcomes),
            'source': 'original',
        })
        self.steps: List[Step] = []
        # untrained copies of the steps, as they were added
        self._definitions: List[Step] = []
        self.trained = False
        self.term_info = None
        self._juiced = None

    # step builders, each returns the recipe so calls chain
    def add_step(self, step: Step) -> 'Recipe':
        if step.id is None:
            step.id = f"{step.name}_{len(self.steps) + 1}"
        self.steps.append(step)
        self._definitions.append(copy.deepcopy(step))
        self.trained = False
        return self

    def untrained(self) -> 'Recipe':
        """
        Copy of the recipe with every step back in its untrained state.

        Trained steps can hold state that does not copy (patsy design info),
        so the copy is rebuilt from the step definitions instead.
        """
        clone = copy.copy(self)
        clone.steps = [copy.deepcopy(step) for step in self._definitions]
        clone._definitions = list(self._definitions)
        clone.trained = False
        clone.term_info = None
        clone._juiced = None
        return clone

    def step_log(self, *terms, base=np.e, offset=0, skip=False, id=None):
        return self.add_step(StepLog(*terms, base=base, offset=offset, skip=skip, id=id))

    def step_other(self, *terms, threshold=0.05, other='other', skip=False, id=None):
        return self.add_step(StepOther(*terms, threshold=threshold, other=other, skip=skip, id=id))

    def step_unknown(self, *terms, new_level='unknown', skip=False, id=None):
        return self.add_step(StepUnknown(*terms, new_level=new_level, skip=skip, id=id))

    def step_dummy(self, *terms, one_hot=False, skip=False, id=None):
        return self.add_step(StepDummy(*terms, one_hot=one_hot, skip=skip, id=id))

    def step_interact(self, terms, sep='_x_', skip=False, id=None):
        return self.add_step(StepInteract(terms, sep=sep, skip=skip, id=id))

    def step_ns(self, *terms, deg_free=2, skip=False, id=None):
        return self.add_step(StepNs(*terms, deg_free=deg_free, skip=skip, id=id))

    def step_bs(self, *terms, deg_free=3, degree=3, skip=False, id=None):
        return self.add_step(StepBs(*terms, deg_free=deg_free, degree=degree, skip=skip, id=id))

    def step_pca(self, *terms, num_comp=5, threshold=None, prefix='PC', skip=False, id=None):
        return self.add_step(StepPCA(*terms, num_comp=num_comp, threshold=threshold,
                                     prefix=prefix, skip=skip, id=id))

    def step_normalize(self, *terms, skip=False, id=None):
        return self.add_step(StepNormalize(*terms, skip=skip, id=id))

    def step_zv(self, *terms, skip=False, id=None):
        return self.add_step(StepZv(*terms, skip=skip, id=id))

    def step_impute_median(self, *terms, skip=False, id=None):
        return self.add_step(StepImputeMedian(*terms, skip=skip, id=id))

    def _roles(self) -> dict:
        return dict(zip(self.var_info['variable'], self.var_info['role']))

    def prep(self, training: Optional[pd.DataFrame] = None, retain: bool = True) -> 'Recipe':
        """Estimate every step, in order, on `training` (default: the template data)."""
        data = self.template if training is None else training
        _check_present(data, self.predictors + self.outcomes, 'prep')
        data = data[self.predictors + self.outcomes].copy()

        roles = self._roles()
        for step in self.steps:
            step.prep(data, roles)
            data = step.bake(data)
            roles = {c: roles.get(c, 'predictor') for c in data.columns}

        self.term_info = pd.DataFrame({
            'variable': list(data.columns),
            'type': [_var_type(data[c]) for c in data.columns],
            'role': [roles[c] for c in data.columns],
            'source': ['original' if c in self.template.columns else 'derived' for c in data.columns],
        })
        self._juiced = data if retain else None
        self.trained = True
        logger.info(f"Recipe prepped on {len(data)} rows: {len(self.steps)} steps, "
                    f"{data.shape[1]} output columns")
        return self

    def bake(self, new_data: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """Apply the trained steps to new data; `None` returns the processed training set."""
        if not self.trained:
            raise RuntimeError("Recipe has not been prepped. Call prep() first.")
        if new_data is None:
            if self._juiced is None:
                raise RuntimeError("Training data was not retained. Call prep(retain=True).")
            return self._juiced.copy()

        _check_present(new_data, self.predictors, 'bake')
        columns = self.predictors + [c for c in self.outcomes if c in new_data.columns]
        data = new_data[columns].copy()
        for step in self.steps:
            if step.skip:
                continue
            data = step.bake(data)
        return data

    def juice(self) -> pd.DataFrame:
        return self.bake(None)

    def summary(self) -> pd.DataFrame:
        return (self.term_info if self.trained else self.var_info).copy()

    def tidy(self, number: Optional[int] = None) -> pd.DataFrame:
        """Step table, or the details of step `number` (1-based)."""
        if number is not None:
            return self.steps[number - 1].tidy()
        return pd.DataFrame({
            'number': range(1, len(self.steps) + 1),
            'operation': 'step',
            'type': [s.name for s in self.steps],
            'trained': [s.trained for s in self.steps],
            'skip': [s.skip for s in self.steps],
            'id': [s.id for s in self.steps],
        })

    def __repr__(self):
        counts = self.var_info['role'].value_counts()
        lines = ["Recipe", "", "Inputs:"]
        lines += [f"  {role}: {count}" for role, count in counts.items()]
        if self.trained:
            lines += ["", f"Training data contained {len(self._juiced) if self._juiced is not None else '?'} data points"]
        if self.steps:
            lines += ["", "Operations:"]
            lines += [f"  {step.describe()}" for step in self.steps]
        return "\n".join(lines)


def recipe(formula: str, data: pd.DataFrame) -> Recipe:
    return Recipe(formula, data)
