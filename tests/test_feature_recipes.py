import numpy as np
import pandas as pd
import pytest

from feature_recipes import (recipe, all_predictors, all_outcomes, all_numeric_predictors,
                             all_nominal_predictors, starts_with, matches)

FORMULA = "log_sale_price ~ neighborhood + gr_liv_area + year_built + bldg_type"


def test_roles_before_prep(housing):
    rec = recipe(FORMULA, housing)
    info = rec.summary()
    assert list(info['variable']) == ['neighborhood', 'gr_liv_area', 'year_built', 'bldg_type',
                                      'log_sale_price']
    assert info.set_index('variable').loc['log_sale_price', 'role'] == 'outcome'
    assert info.set_index('variable').loc['neighborhood', 'type'] == 'nominal'


def test_dot_formula_uses_every_other_column(housing):
    rec = recipe("sale_price ~ .", housing)
    assert 'sale_price' not in rec.predictors
    assert len(rec.predictors) == housing.shape[1] - 1


def test_formula_rejects_expressions(housing):
    with pytest.raises(ValueError):
        recipe("log_sale_price ~ log(gr_liv_area)", housing)
    with pytest.raises(ValueError):
        recipe("price ~ gr_liv_area", housing)


def test_selectors_resolve_by_role_and_type(housing):
    rec = recipe(FORMULA, housing)
    roles = rec._roles()
    assert all_nominal_predictors().resolve(housing, roles) == ['neighborhood', 'bldg_type']
    assert all_numeric_predictors().resolve(housing, roles) == ['gr_liv_area', 'year_built']
    assert all_outcomes().resolve(housing, roles) == ['log_sale_price']
    assert len(all_predictors().resolve(housing, roles)) == 4
    assert matches('^year').resolve(housing, roles) == ['year_built']


def test_step_log(housing):
    baked = recipe(FORMULA, housing).step_log('gr_liv_area', base=10).prep().juice()
    assert np.allclose(baked['gr_liv_area'], np.log10(housing['gr_liv_area']))


def test_step_log_requires_numeric(housing):
    rec = recipe(FORMULA, housing).step_log('neighborhood')
    with pytest.raises(ValueError):
        rec.prep()


def test_step_other_pools_rare_levels(housing):
    rec = recipe(FORMULA, housing).step_other('neighborhood', threshold=0.01).prep()
    juiced = rec.juice()
    assert 'Rare_Hood' not in set(juiced['neighborhood'])
    assert (juiced['neighborhood'] == 'other').sum() == 3

    new = housing.head(2).assign(neighborhood=['Brand_New', 'Old_Town'])
    assert list(rec.bake(new)['neighborhood']) == ['other', 'Old_Town']


def test_step_other_count_threshold(housing):
    rec = recipe(FORMULA, housing).step_other('neighborhood', threshold=5).prep()
    retained = rec.tidy(number=1)['retained']
    assert 'Rare_Hood' not in set(retained)
    assert len(retained) == 5


def test_step_dummy_names_and_reference_level(housing):
    rec = recipe(FORMULA, housing).step_dummy('bldg_type').prep()
    juiced = rec.juice()
    assert 'bldg_type' not in juiced.columns
    assert [c for c in juiced.columns if c.startswith('bldg_type_')] == [
        'bldg_type_OneFam', 'bldg_type_Twnhs', 'bldg_type_TwoFmCon']
    duplex = housing['bldg_type'] == 'Duplex'
    assert (juiced.loc[duplex, ['bldg_type_OneFam', 'bldg_type_Twnhs', 'bldg_type_TwoFmCon']] == 0).all().all()


def test_step_dummy_one_hot_and_unseen_levels(housing):
    rec = recipe(FORMULA, housing).step_dummy(all_nominal_predictors(), one_hot=True).prep()
    juiced = rec.juice()
    bldg = [c for c in juiced.columns if c.startswith('bldg_type_')]
    assert len(bldg) == 4
    assert (juiced[bldg].sum(axis=1) == 1).all()

    new = housing.head(1).assign(bldg_type='Castle')
    baked = rec.bake(new)
    assert (baked[bldg] == 0).all().all()


def test_step_interact_with_selector(housing):
    rec = (recipe(FORMULA, housing)
           .step_dummy(all_nominal_predictors())
           .step_interact("gr_liv_area:starts_with('bldg_type_')")
           .prep())
    juiced = rec.juice()
    names = [c for c in juiced.columns if '_x_' in c]
    assert names == ['gr_liv_area_x_bldg_type_OneFam', 'gr_liv_area_x_bldg_type_Twnhs',
                     'gr_liv_area_x_bldg_type_TwoFmCon']
    assert np.allclose(juiced['gr_liv_area_x_bldg_type_OneFam'],
                       juiced['gr_liv_area'] * juiced['bldg_type_OneFam'])


def test_step_interact_needs_two_parts():
    from feature_recipes import StepInteract
    with pytest.raises(ValueError):
        StepInteract("gr_liv_area")


def test_step_ns_columns(housing):
    formula = "log_sale_price ~ latitude + longitude"
    rec = recipe(formula, housing).step_ns('latitude', 'longitude', deg_free=4).prep()
    juiced = rec.juice()
    assert [c for c in juiced.columns if c.startswith('latitude')] == [
        'latitude_ns_01', 'latitude_ns_02', 'latitude_ns_03', 'latitude_ns_04']
    assert len([c for c in juiced.columns if c.startswith('longitude_ns_')]) == 4

    baked = rec.bake(housing.head(10))
    assert baked.shape == (10, 9)


def test_step_bs_columns(housing):
    rec = recipe("log_sale_price ~ gr_liv_area", housing).step_bs('gr_liv_area', deg_free=5).prep()
    juiced = rec.juice()
    assert [c for c in juiced.columns if c != 'log_sale_price'] == [
        f'gr_liv_area_bs_{i:02d}' for i in range(1, 6)]

    wider = pd.DataFrame({'gr_liv_area': [100.0, 5000.0]})
    assert rec.bake(wider).shape == (2, 5)


def test_step_bs_rejects_small_deg_free(housing):
    with pytest.raises(ValueError):
        recipe("log_sale_price ~ gr_liv_area", housing).step_bs('gr_liv_area', deg_free=2)


def test_step_normalize_and_pca(housing):
    rec = (recipe("log_sale_price ~ gr_liv_area + year_built + latitude + longitude", housing)
           .step_normalize(all_numeric_predictors())
           .step_pca(all_numeric_predictors(), num_comp=2)
           .prep())
    juiced = rec.juice()
    assert list(juiced.columns) == ['log_sale_price', 'PC1', 'PC2']

    scaler_stats = rec.tidy(number=1)
    assert set(scaler_stats['statistic']) == {'mean', 'sd'}

    loadings = rec.tidy(number=2)
    assert len(loadings) == 4 * 2
    assert set(loadings['component']) == {'PC1', 'PC2'}


def test_step_normalize_centers(housing):
    juiced = recipe(FORMULA, housing).step_normalize('gr_liv_area').prep().juice()
    assert juiced['gr_liv_area'].mean() == pytest.approx(0, abs=1e-9)


def test_step_zv_removes_constant_columns(housing):
    data = housing.assign(flat=1.0)
    rec = recipe("log_sale_price ~ gr_liv_area + flat", data).step_zv(all_predictors()).prep()
    assert 'flat' not in rec.juice().columns
    assert 'flat' not in rec.bake(data.head(5)).columns


def test_step_impute_median(housing):
    data = housing.copy()
    data.loc[:9, 'gr_liv_area'] = np.nan
    rec = recipe(FORMULA, data).step_impute_median('gr_liv_area').prep()
    juiced = rec.juice()
    assert juiced['gr_liv_area'].notna().all()
    assert juiced.loc[0, 'gr_liv_area'] == pytest.approx(data['gr_liv_area'].median())


def test_step_unknown(housing):
    data = housing.copy()
    data.loc[0, 'bldg_type'] = np.nan
    juiced = recipe(FORMULA, data).step_unknown('bldg_type').prep().juice()
    assert juiced.loc[0, 'bldg_type'] == 'unknown'

    clash = recipe(FORMULA, housing).step_unknown('bldg_type', new_level='Duplex')
    with pytest.raises(ValueError):
        clash.prep()


def test_bake_new_data_matches_training_columns(housing):
    train, test = housing.iloc[:300], housing.iloc[300:]
    rec = (recipe(FORMULA, train)
           .step_log('gr_liv_area', base=10)
           .step_other('neighborhood', threshold=0.01)
           .step_dummy(all_nominal_predictors())
           .step_interact("gr_liv_area:starts_with('bldg_type_')")
           .prep())
    assert list(rec.bake(test).columns) == list(rec.juice().columns)


def test_bake_before_prep_raises(housing):
    with pytest.raises(RuntimeError):
        recipe(FORMULA, housing).bake(housing)


def test_juice_without_retain_raises(housing):
    rec = recipe(FORMULA, housing).step_log('gr_liv_area').prep(retain=False)
    with pytest.raises(RuntimeError):
        rec.juice()
    assert len(rec.bake(housing.head(3))) == 3


def test_skipped_step_only_applies_to_training(housing):
    rec = recipe(FORMULA, housing).step_log('gr_liv_area', base=10, skip=True).prep()
    assert np.allclose(rec.juice()['gr_liv_area'], np.log10(housing['gr_liv_area']))
    assert np.allclose(rec.bake(housing)['gr_liv_area'], housing['gr_liv_area'])


def test_bake_without_outcome(housing):
    rec = recipe(FORMULA, housing).step_dummy(all_nominal_predictors()).prep()
    baked = rec.bake(housing.drop(columns=['log_sale_price']))
    assert 'log_sale_price' not in baked.columns
    with pytest.raises(ValueError):
        rec.bake(housing.drop(columns=['gr_liv_area']))


def test_prep_uses_training_argument(housing):
    rec = recipe(FORMULA, housing).step_other('neighborhood', threshold=0.01)
    rec.prep(housing.iloc[3:])
    assert len(rec.juice()) == len(housing) - 3


def test_tidy_and_summary_after_prep(housing):
    rec = (recipe(FORMULA, housing)
           .step_log('gr_liv_area', base=10)
           .step_dummy(all_nominal_predictors()))
    steps = rec.tidy()
    assert list(steps['type']) == ['log', 'dummy']
    assert list(steps['id']) == ['log_1', 'dummy_2']
    assert not steps['trained'].any()

    rec.prep()
    assert rec.tidy()['trained'].all()
    assert rec.tidy(number=1)['base'].iloc[0] == 10
    info = rec.summary()
    derived = info[info['source'] == 'derived']
    assert set(derived['variable']) >= {'bldg_type_OneFam', 'neighborhood_Old_Town'}
    assert (info.set_index('variable').loc['bldg_type_OneFam', 'role'] == 'predictor')
    assert "Operations:" in repr(rec)


def test_selector_created_by_earlier_step(housing):
    rec = (recipe(FORMULA, housing)
           .step_dummy('bldg_type')
           .step_normalize(starts_with('bldg_type_'))
           .prep())
    assert rec.steps[1].columns == ['bldg_type_OneFam', 'bldg_type_Twnhs', 'bldg_type_TwoFmCon']


def test_untrained_copy_resets_learned_state(housing):
    rec = (recipe("log_sale_price ~ gr_liv_area + latitude", housing)
           .step_ns('latitude', deg_free=3)
           .step_bs('gr_liv_area', deg_free=4))
    rec.prep()

    clone = rec.untrained()
    assert not clone.trained
    assert not any(step.trained for step in clone.steps)
    assert clone.steps[0] is not rec.steps[0]
    assert clone.steps[0].design == {}

    clone.prep(housing.iloc[:200])
    assert len(clone.juice()) == 200
    assert len(rec.juice()) == len(housing)
    assert list(clone.juice().columns) == list(rec.juice().columns)
    assert rec.steps[0].design['latitude'] is not clone.steps[0].design['latitude']
