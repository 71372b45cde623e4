import sys
import warnings
warnings.filterwarnings('ignore')

import numpy as np
import pandas as pd

from ames_data import load_ames, load_crickets, add_log_target, glimpse, level_counts
from data_spending import initial_split, vfold_cv, compare_distributions
from feature_recipes import recipe, all_nominal_predictors, all_numeric_predictors
from linear_models import linear_reg, compare_nested, fit_by_group, correlation_table
from model_metrics import metric_set
from plots import (plot_price_histogram, plot_group_scatter, plot_correlations,
                   plot_locations, plot_split_distribution, plot_diagnostics)
from settings import RANDOM_STATE, CV_FOLDS, TRAIN_PROP, AMES_CSV, configure_plotting
from workflows import workflow, last_fit, fit_resamples

# Predictors used by the modeling chapters, when present in the data
BASE_PREDICTORS = ['neighborhood', 'gr_liv_area', 'year_built', 'bldg_type']
COORDINATES = ['latitude', 'longitude']


def banner(title):
    print("\n" + "=" * 80)
    print(title)
    print("=" * 80)


class TidyModelingNotebook:
    """
    Chapter-by-chapter walk through the modeling workflow on the Ames data:
    formulas and tidy output, data loading and log target, data spending,
    linear model fitting, recipes, and test-set evaluation.
    """

    def __init__(self, filepath=AMES_CSV, target_column='sale_price', show_plots=True):
        self.filepath = filepath
        self.target_column = target_column
        self.log_target = f"log_{target_column}"
        self.show_plots = show_plots
        self.df = None
        self.split = None
        self.folds = None
        self.recipe = None
        self.fits = {}
        self.results = {}

    def _require_data(self):
        if self.df is None:
            raise RuntimeError("Data not loaded. Call load_and_analyze() first.")

    def _require_split(self):
        if self.split is None:
            raise RuntimeError("Data not split. Call spend_data() first.")

    def _predictors(self):
        wanted = BASE_PREDICTORS + COORDINATES
        return [c for c in wanted if c in self.df.columns]

    # -----------------------
    # Formulas and tidy output (crickets)
    # -----------------------
    def explore_crickets(self):
        banner("CRICKETS - R-STYLE FORMULAS AND TIDY MODEL OUTPUT")
        crickets = load_crickets()
        print(f"\nDataset dimensions: {crickets.shape[0]} observations, {crickets.shape[1]} columns")
        print(crickets.groupby('species')[['temp', 'rate']].describe().round(2))

        plot_group_scatter(crickets, x='temp', y='rate', group='species',
                           xlabel="Temp (C)", ylabel="Chirp Rate (per minute)", show=self.show_plots)

        spec = linear_reg()
        interaction_fit = spec.fit("rate ~ (temp + species)**2", crickets)
        main_effect_fit = spec.fit("rate ~ temp + species", crickets)
        print(f"\n--- Interaction model ---\n{interaction_fit}")
        plot_diagnostics(interaction_fit, show=self.show_plots)

        anova = compare_nested(main_effect_fit, interaction_fit)
        print(f"\n--- Main effects vs interaction (ANOVA) ---")
        print(anova)
        p_interaction = anova['Pr(>F)'].iloc[-1]
        print(f"Interaction term p-value: {p_interaction:.4f}")

        print(f"\n--- Main effect model summary ---")
        print(main_effect_fit.summary())

        new_values = pd.DataFrame({'species': 'O. exclamationis', 'temp': np.arange(15, 21)})
        predictions = pd.concat([new_values, main_effect_fit.predict(new_values),
                                 main_effect_fit.predict(new_values, type='pred_int')], axis=1)
        print(f"\n--- Predictions for O. exclamationis, 15-20 C ---")
        print(predictions.round(2).to_string(index=False))

        by_species = fit_by_group(crickets, 'species', "rate ~ temp")
        print(f"\n--- Separate model per species ---")
        print(by_species.round(4).to_string(index=False))

        self.results['crickets'] = {
            'interaction_p_value': p_interaction,
            'main_effect_coefs': main_effect_fit.tidy(),
            'by_species': by_species,
        }
        return self

    # -----------------------
    # Loading and target transformation
    # -----------------------
    def load_and_analyze(self):
        banner("AMES HOUSING DATASET - LOADING AND INITIAL ANALYSIS")
        self.df = load_ames(self.filepath)

        print(f"\nDataset dimensions: {self.df.shape[0]} observations, {self.df.shape[1]} features")
        print(f"\nData type distribution:")
        print(self.df.dtypes.value_counts())
        print(f"\n--- Glimpse ---")
        print(glimpse(self.df).head(15).to_string(index=False))

        if 'ms_sub_class' in self.df.columns:
            print(f"\n--- ms_sub_class levels ---")
            print(level_counts(self.df, 'ms_sub_class').to_string())

        missing = self.df.isnull().sum()
        missing_pct = (missing / len(self.df)) * 100
        missing_df = pd.DataFrame({'Missing_Count': missing, 'Percentage': missing_pct})
        missing_df = missing_df[missing_df['Missing_Count'] > 0].sort_values('Percentage', ascending=False)
        if len(missing_df) > 0:
            print(f"\nMissing values detected in {len(missing_df)} features:")
            print(missing_df.head(10))
        else:
            print("\nNo missing values detected.")

        if self.target_column not in self.df.columns:
            raise KeyError(f"Target column '{self.target_column}' not found after cleaning names.")
        print(f"\n--- Target Variable: {self.target_column} ---")
        print(self.df[self.target_column].describe())
        print(f"  Skewness: {self.df[self.target_column].skew():.4f}")
        if abs(self.df[self.target_column].skew()) > 0.75:
            print(f"  Note: High skewness detected. Log transformation recommended.")

        plot_price_histogram(self.df, self.target_column, show=self.show_plots)
        if all(c in self.df.columns for c in COORDINATES):
            plot_locations(self.df, show=self.show_plots)
        return self

    def transform_target(self):
        self._require_data()
        banner("TARGET TRANSFORMATION")
        target_skew = self.df[self.target_column].skew()
        self.df = add_log_target(self.df, self.target_column, base=10)
        new_skew = self.df[self.log_target].skew()

        print(f"Applied log10 transformation to {self.target_column}")
        print(f"  Original skewness: {target_skew:.4f}")
        print(f"  Transformed skewness: {new_skew:.4f}")
        plot_price_histogram(self.df, self.target_column, log_scale=True, show=self.show_plots)

        self.results['target'] = {'skew': target_skew, 'log_skew': new_skew}
        return self

    # -----------------------
    # Data spending
    # -----------------------
    def spend_data(self, prop=TRAIN_PROP, n_folds=CV_FOLDS):
        self._require_data()
        banner("SPENDING THE DATA - STRATIFIED TRAIN/TEST SPLIT")
        outcome = self.log_target if self.log_target in self.df.columns else self.target_column

        self.split = initial_split(self.df, prop=prop, strata=outcome, random_state=RANDOM_STATE)
        print(self.split)
        train, test = self.split.training(), self.split.testing()
        print(f"\nTraining rows: {len(train)} | Testing rows: {len(test)} | "
              f"Sum equals total: {len(train) + len(test) == len(self.df)}")

        quantiles = compare_distributions(self.split, outcome)
        print(f"\n--- {outcome} quantiles by partition ---")
        print(quantiles.round(4))
        plot_split_distribution(self.split, outcome, show=self.show_plots)

        self.folds = vfold_cv(train, v=n_folds, strata=outcome, random_state=RANDOM_STATE)
        print(f"\nCreated {len(self.folds)} cross-validation folds on the training set")

        self.results['split'] = {
            'n_train': len(train), 'n_test': len(test),
            'max_quantile_gap': float((quantiles['training'] - quantiles['testing']).abs().iloc[1:-1].max()),
        }
        return self

    # -----------------------
    # Linear models
    # -----------------------
    def fit_linear_models(self):
        self._require_split()
        banner("FITTING LINEAR MODELS - FORMULA, X/Y AND ENGINES")
        train = self.split.training()
        outcome = self.log_target

        spec = linear_reg()
        print(spec.translate())

        if all(c in train.columns for c in COORDINATES):
            formula = f"{outcome} ~ longitude + latitude"
        else:
            formula = f"{outcome} ~ gr_liv_area + year_built"
        formula_fit = spec.fit(formula, train)
        predictors = [t for t in formula_fit.tidy()['term'] if t != 'Intercept']

        xy_fit = spec.fit_xy(train[predictors], train[outcome])
        sk_fit = linear_reg(engine='sklearn').fit_xy(train[predictors], train[outcome])

        print(f"\n--- Formula interface ---")
        print(formula_fit.tidy(conf_int=True).round(5).to_string(index=False))
        print(f"\n--- x/y interface ---")
        print(xy_fit.tidy().round(5).to_string(index=False))
        print(f"\n--- scikit-learn engine ---")
        print(sk_fit.tidy().round(5).to_string(index=False))
        print(f"\n--- Fit statistics ---")
        print(formula_fit.glance().round(4).T.to_string(header=False))

        corr = correlation_table(train, outcome,
                                 columns=[c for c in train.select_dtypes(include=[np.number]).columns
                                          if c not in (outcome, self.target_column)])
        corr = corr.dropna(subset=['estimate'])
        print(f"\n--- Strongest correlations with {outcome} ---")
        print(corr.tail(10).round(4)[['predictor', 'estimate', 'conf_low', 'conf_high', 'p_value']]
              .to_string(index=False))
        plot_correlations(corr.tail(15), outcome=outcome, show=self.show_plots)

        self.fits.update({'formula': formula_fit, 'xy': xy_fit, 'sklearn': sk_fit})
        return self

    # -----------------------
    # Recipes
    # -----------------------
    def build_recipe(self, spline_df=20, use_pca=False, pca_components=5):
        self._require_split()
        banner("FEATURE ENGINEERING WITH RECIPES")
        train = self.split.training()
        predictors = self._predictors()
        formula = f"{self.log_target} ~ {' + '.join(predictors)}"
        print(f"Recipe formula: {formula}")

        rec = recipe(formula, train)
        if 'gr_liv_area' in predictors:
            rec = rec.step_log('gr_liv_area', base=10)
        if 'neighborhood' in predictors:
            rec = rec.step_other('neighborhood', threshold=0.01)
        rec = rec.step_dummy(all_nominal_predictors())
        if 'gr_liv_area' in predictors and 'bldg_type' in predictors:
            rec = rec.step_interact("gr_liv_area:starts_with('bldg_type_')")
        coords = [c for c in COORDINATES if c in predictors]
        if coords:
            rec = rec.step_ns(*coords, deg_free=spline_df)
        rec = rec.step_zv(all_numeric_predictors())
        if use_pca:
            rec = rec.step_normalize(all_numeric_predictors()).step_pca(all_numeric_predictors(),
                                                                         num_comp=pca_components)

        rec.prep(train)
        print(rec)
        print(f"\n--- Processed training data: {rec.juice().shape} ---")
        print(rec.tidy().to_string(index=False))
        self.recipe = rec
        return self

    # -----------------------
    # Evaluation
    # -----------------------
    def evaluate(self):
        self._require_split()
        if self.recipe is None:
            raise RuntimeError("No recipe built. Call build_recipe() first.")
        banner("MODEL EVALUATION - RESAMPLING AND TEST SET")
        metrics = metric_set('rmse', 'rsq', 'mae')
        wf = workflow().add_model(linear_reg()).add_recipe(self.recipe)

        resamples = fit_resamples(wf, self.folds, metrics=metrics)
        per_fold = resamples.collect_metrics(summarize=False) \
            .pivot(index='id', columns='.metric', values='.estimate')
        cv_summary = resamples.collect_metrics()

        print(f"\n--- Cross-Validation Results ---")
        print(f"{'Fold':<8} {'RMSE (log)':<15} {'R² Score':<15} {'MAE (log)':<15}")
        print("-" * 60)
        for fold_id, row in per_fold.iterrows():
            print(f"{fold_id:<8} {row['rmse']:>13.4f}  {row['rsq']:>13.4f}  {row['mae']:>13.4f}")
        print("-" * 60)
        means = cv_summary.set_index('.metric')['mean']
        stds = cv_summary.set_index('.metric')['std']
        print(f"Mean     {means['rmse']:>13.4f}  {means['rsq']:>13.4f}  {means['mae']:>13.4f}")
        print(f"Std Dev  {stds['rmse']:>13.4f}  {stds['rsq']:>13.4f}  {stds['mae']:>13.4f}")

        final = last_fit(wf, self.split, metrics=metrics)
        test_metrics = final.collect_metrics().set_index('.metric')['.estimate']
        print(f"\n--- Test set ---")
        print(final.collect_metrics().round(4).to_string(index=False))
        plot_diagnostics(final.extract_workflow().extract_fit_parsnip(), show=self.show_plots)

        mean_rsq = means['rsq']
        if mean_rsq > 0.85:
            verdict = "EXCELLENT - Very strong predictive performance"
        elif mean_rsq > 0.75:
            verdict = "VERY GOOD - Strong predictive performance"
        elif mean_rsq > 0.65:
            verdict = "GOOD - Solid predictive performance"
        else:
            verdict = "FAIR - Moderate predictive performance"
        print(f"\nOverall verdict: {verdict}")

        self.results['regression'] = {
            'cv_rmse': means['rmse'], 'cv_rsq': mean_rsq, 'cv_mae': means['mae'],
            'std_rmse': stds['rmse'], 'std_rsq': stds['rsq'],
            'test_rmse': test_metrics['rmse'], 'test_rsq': test_metrics['rsq'],
            'verdict': verdict,
        }
        return self

    def generate_summary(self):
        banner("TIDY MODELING NOTEBOOK SUMMARY - AMES HOUSING")

        if 'crickets' in self.results:
            print("\n[1] FORMULAS (CRICKETS)")
            print("-" * 80)
            print(f"Interaction term p-value: {self.results['crickets']['interaction_p_value']:.4f}")

        if self.df is not None:
            print("\n[2] DATA")
            print("-" * 80)
            print(f"Dimensions: {self.df.shape}")
            if 'target' in self.results:
                t = self.results['target']
                print(f"Skewness {self.target_column}: {t['skew']:.4f} -> {self.log_target}: {t['log_skew']:.4f}")

        if 'split' in self.results:
            s = self.results['split']
            print("\n[3] DATA SPENDING")
            print("-" * 80)
            print(f"Training: {s['n_train']} | Testing: {s['n_test']}")
            print(f"Largest inner-quantile gap between partitions: {s['max_quantile_gap']:.4f}")

        if 'regression' in self.results:
            reg = self.results['regression']
            print("\n[4] LINEAR MODEL WITH RECIPE")
            print("-" * 80)
            print(f"  R² (CV): {reg['cv_rsq']:.4f} ± {reg['std_rsq']:.4f}")
            print(f"  RMSE (CV, log scale): {reg['cv_rmse']:.4f} ± {reg['std_rmse']:.4f}")
            print(f"  RMSE (test, log scale): {reg['test_rmse']:.4f}")
            print(f"\nVerdict: {reg['verdict']}")
        return self

    def run_full_notebook(self, use_pca=False):
        banner("TIDY MODELING WITH THE AMES HOUSING DATA")
        self.explore_crickets()
        self.load_and_analyze()
        self.transform_target()
        self.spend_data()
        self.fit_linear_models()
        self.build_recipe(use_pca=use_pca)
        self.evaluate()
        self.generate_summary()
        return self


if __name__ == "__main__":
    configure_plotting()
    filepath = sys.argv[1] if len(sys.argv) > 1 else AMES_CSV

    notebook = TidyModelingNotebook(filepath=filepath, target_column='sale_price')
    notebook.run_full_notebook()

    print("\n" + "=" * 80)
    print("END OF ANALYSIS")
    print("=" * 80)
