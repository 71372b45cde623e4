import numpy as np
import pytest

from data_spending import initial_split, vfold_cv
from feature_recipes import recipe, all_nominal_predictors, all_numeric_predictors
from linear_models import linear_reg
from model_metrics import metric_set
from workflows import workflow, last_fit, fit_resamples

FORMULA = "log_sale_price ~ neighborhood + gr_liv_area + year_built + bldg_type"


def _ames_recipe(data):
    return (recipe(FORMULA, data)
            .step_log('gr_liv_area', base=10)
            .step_other('neighborhood', threshold=0.01)
            .step_dummy(all_nominal_predictors()))


def test_formula_workflow_matches_direct_fit(housing):
    wf_fit = workflow().add_model(linear_reg()).add_formula("log_sale_price ~ gr_liv_area").fit(housing)
    direct = linear_reg().fit("log_sale_price ~ gr_liv_area", housing)
    assert np.allclose(wf_fit.tidy()['estimate'], direct.tidy()['estimate'])


def test_variables_workflow(housing):
    wf = workflow().add_model(linear_reg()).add_variables('log_sale_price', ['gr_liv_area', 'year_built'])
    wf_fit = wf.fit(housing)
    pred = wf_fit.predict(housing.head(5))
    assert list(pred.columns) == ['.pred']
    assert list(pred.index) == list(housing.head(5).index)
    assert set(wf_fit.tidy()['term']) == {'Intercept', 'gr_liv_area', 'year_built'}


def test_recipe_workflow_fit_and_predict(housing):
    wf = workflow().add_model(linear_reg()).add_recipe(_ames_recipe(housing))
    wf_fit = wf.fit(housing)

    rec = wf_fit.extract_recipe()
    assert rec.trained
    assert not wf.preprocessor.trained

    new = housing.head(3).assign(neighborhood='Brand_New')
    pred = wf_fit.predict(new)
    assert pred['.pred'].notna().all()

    aug = wf_fit.augment(housing.head(10))
    assert {'.pred', '.resid'} <= set(aug.columns)
    assert wf_fit.glance()['nobs'].iloc[0] == len(housing)


def test_workflow_requires_model_and_preprocessor(housing):
    with pytest.raises(ValueError):
        workflow().add_formula("log_sale_price ~ gr_liv_area").fit(housing)
    with pytest.raises(ValueError):
        workflow().add_model(linear_reg()).fit(housing)


def test_single_preprocessor_and_model(housing):
    wf = workflow().add_model(linear_reg()).add_formula("log_sale_price ~ gr_liv_area")
    with pytest.raises(ValueError):
        wf.add_recipe(_ames_recipe(housing))
    with pytest.raises(ValueError):
        wf.add_model(linear_reg(engine='sklearn'))

    wf.remove_preprocessor().add_variables('log_sale_price', ['gr_liv_area'])
    wf.update_model(linear_reg(engine='sklearn'))
    assert wf.preprocessor_type == 'variables'
    assert wf.model.engine == 'sklearn'
    assert "Predictors: gr_liv_area" in repr(wf)


def test_extractors(housing):
    wf_fit = workflow().add_model(linear_reg()).add_formula("log_sale_price ~ gr_liv_area").fit(housing)
    assert wf_fit.extract_fit_parsnip() is wf_fit.fit
    assert hasattr(wf_fit.extract_fit_engine(), 'params')
    assert wf_fit.extract_preprocessor() == "log_sale_price ~ gr_liv_area"
    with pytest.raises(ValueError):
        wf_fit.extract_recipe()


def test_last_fit(housing):
    split = initial_split(housing, prop=0.8, strata='log_sale_price')
    wf = workflow().add_model(linear_reg()).add_recipe(_ames_recipe(housing))
    result = last_fit(wf, split)

    metrics = result.collect_metrics()
    assert list(metrics['.metric']) == ['rmse', 'rsq']
    assert metrics.set_index('.metric').loc['rsq', '.estimate'] > 0.5

    preds = result.collect_predictions()
    assert len(preds) == len(split.out_id)
    assert list(preds['.row']) == list(split.out_id)
    assert {'.pred', 'log_sale_price'} <= set(preds.columns)
    assert result.extract_workflow().recipe.trained


def test_last_fit_needs_outcome_in_test_set(housing):
    split = initial_split(housing.drop(columns=['log_sale_price']), prop=0.8)
    wf = workflow().add_model(linear_reg()).add_formula("np.log10(sale_price) ~ gr_liv_area")
    with pytest.raises(ValueError):
        last_fit(wf, split)


def test_fit_resamples(housing):
    split = initial_split(housing, prop=0.8)
    folds = vfold_cv(split.training(), v=5)
    wf = workflow().add_model(linear_reg()).add_formula("log_sale_price ~ gr_liv_area + year_built + bldg_type")
    results = fit_resamples(wf, folds, metrics=metric_set('rmse', 'rsq', 'mae'))

    per_fold = results.collect_metrics(summarize=False)
    assert len(per_fold) == 5 * 3
    assert set(per_fold['id']) == {f"Fold{i:02d}" for i in range(1, 6)}

    summary = results.collect_metrics()
    assert list(summary.columns) == ['.metric', '.estimator', 'mean', 'std', 'n', 'std_err']
    assert (summary['n'] == 5).all()
    assert len(results.collect_predictions()) == len(split.training())


def _ns_recipe(data):
    return (recipe("log_sale_price ~ gr_liv_area + latitude + longitude", data)
            .step_ns('latitude', 'longitude', deg_free=4))


def _bs_recipe(data):
    return recipe("log_sale_price ~ gr_liv_area + year_built", data).step_bs('gr_liv_area', deg_free=5)


def _pca_recipe(data):
    return (recipe("log_sale_price ~ gr_liv_area + year_built + latitude + longitude", data)
            .step_normalize(all_numeric_predictors())
            .step_pca(all_numeric_predictors(), num_comp=2))


def test_workflow_fit_on_prepped_spline_recipe(housing):
    rec = _ns_recipe(housing).prep()
    design = rec.steps[0].design['latitude']
    wf = workflow().add_model(linear_reg()).add_recipe(rec)

    wf_fit = wf.fit(housing.iloc[:300])
    pred = wf_fit.predict(housing.iloc[300:])
    assert pred['.pred'].notna().all()

    assert wf_fit.extract_recipe() is not rec
    assert len(wf_fit.extract_recipe().juice()) == 300
    assert rec.steps[0].design['latitude'] is design
    assert len(rec.juice()) == len(housing)


@pytest.mark.parametrize('build', [_ns_recipe, _bs_recipe, _pca_recipe])
def test_resampling_with_trained_step_state(housing, build):
    rec = build(housing).prep()
    wf = workflow().add_model(linear_reg()).add_recipe(rec)
    split = initial_split(housing, prop=0.8)
    folds = vfold_cv(split.training(), v=3)

    summary = fit_resamples(wf, folds).collect_metrics()
    assert (summary['n'] == 3).all()
    assert summary['mean'].notna().all()

    final = last_fit(wf, split)
    fitted = final.extract_workflow().extract_recipe()
    assert fitted.steps[-1] is not rec.steps[-1]
    assert fitted.steps[-1].trained
    assert len(fitted.juice()) == len(split.training())
    assert len(final.collect_predictions()) == len(split.out_id)

    assert rec.trained
    assert len(rec.juice()) == len(housing)
