import numpy as np
import pytest

from ion_networks.correlation import (
    ANTI_OVERLAP,
    MIN_FEATURES_REQUIREMENT_NOT_MET,
    OUT_OF_RT_RANGE,
    CorrelationConfig,
    R2RCorrelationData,
    R2RMap,
    correlate_pair,
    correlate_rows,
    correlations_to_frame,
    corr_feature_shape,
)
from ion_networks.errors import ScanMismatchError
from ion_networks.lcms_utils import RTTolerance
from ion_networks.model import Feature, FeatureTable, Row
from ion_networks.similarity import CorrelationData


def _feature(sample, mz, height, *, center=10.0, width=3.0, rt=5.0, scans=None):
    scans = np.arange(21) if scans is None else np.asarray(scans)
    inten = height * np.exp(-((scans - center) ** 2) / (2 * width**2))
    return Feature(sample=sample, mz=mz, rt=rt, height=height, scans=scans, intensities=inten)


def _row(row_id, mz, height, **kw):
    return Row(id=row_id, features={s: _feature(s, mz, height, **kw) for s in ("s1", "s2")})


def test_co_eluting_rows_are_accepted():
    rows = [
        _row(1, 301.0, 1e6),
        _row(2, 323.0, 5e5),
        _row(3, 500.0, 8e5, center=16.0, width=2.0),
    ]
    table = FeatureTable(rows)
    corr_map, diag = correlate_rows(table, CorrelationConfig())
    assert (1, 2) in corr_map
    assert (1, 3) not in corr_map
    assert (2, 3) not in corr_map
    r2r = corr_map.get(2, 1)
    assert r2r.accepted
    assert r2r.avg_shape_r == pytest.approx(1.0)
    assert r2r.shape_samples == ["s1", "s2"]
    assert diag["n_accepted"] == 1
    assert diag["n_errors"] == 0

    df = correlations_to_frame(corr_map)
    assert list(df[["row_a", "row_b"]].iloc[0]) == [1, 2]


def test_correlate_pair_is_symmetric():
    a = _row(1, 301.0, 1e6)
    b = _row(2, 323.0, 5e5, center=11.0)
    cfg = CorrelationConfig()
    ab = correlate_pair(a, b, ["s1", "s2"], cfg)
    ba = correlate_pair(b, a, ["s1", "s2"], cfg)
    assert ab.key == ba.key == (1, 2)
    assert ab.accepted == ba.accepted
    assert ab.negative_markers == ba.negative_markers
    assert ab.avg_shape_r == pytest.approx(ba.avg_shape_r)


def test_anti_overlap_marker():
    a = _row(1, 301.0, 1e6)
    b = _row(2, 323.0, 5e4)
    r2r = correlate_pair(a, b, ["s1", "s2"], CorrelationConfig())
    assert not r2r.accepted
    assert r2r.negative_markers == (ANTI_OVERLAP,)


def test_out_of_rt_range_marker():
    a = _row(1, 301.0, 1e6, rt=5.0)
    b = _row(2, 323.0, 1e6, rt=5.5)
    r2r = correlate_pair(a, b, ["s1", "s2"], CorrelationConfig())
    assert not r2r.accepted
    assert r2r.negative_markers == (OUT_OF_RT_RANGE,)


def test_apex_on_profile_edge_is_not_correlated():
    fa = _feature("s1", 301.0, 1e6, center=0.0)
    fb = _feature("s1", 323.0, 5e5, center=0.0)
    assert corr_feature_shape(fa, fb, noise_level=1e4, min_data_points=5, min_data_points_on_edge=2) is None
    c = corr_feature_shape(fa, fb, noise_level=1e4, min_data_points=5, min_data_points_on_edge=0)
    assert c is not None and c.r == pytest.approx(1.0)


def test_scan_mismatch_is_counted_not_raised():
    fa = _feature("s1", 301.0, 1e6)
    fb = _feature("s1", 323.0, 5e5, scans=np.arange(0, 21, 2))
    with pytest.raises(ScanMismatchError):
        corr_feature_shape(fa, fb, noise_level=1e4, min_data_points=5)

    table = FeatureTable([Row(id=1, features={"s1": fa}), Row(id=2, features={"s1": fb})])
    corr_map, diag = correlate_rows(table, CorrelationConfig())
    assert len(corr_map) == 0
    assert diag["n_errors"] == 1


def test_r2r_map_uses_unordered_keys():
    m = R2RMap()
    m.add(5, 2, "x")
    m.add(1, 3, "y")
    assert m.get(2, 5) == "x"
    assert (5, 2) in m
    assert list(m) == [(1, 3), (2, 5)]
    assert m.values() == ["y", "x"]


def test_total_correlation_filter_rejects_inconsistent_ratios():
    # each sample is perfectly correlated, but the intensity ratio flips between samples
    a = Row(id=1, features={"s1": _feature("s1", 301.0, 2e6), "s2": _feature("s2", 301.0, 2e5)})
    b = Row(id=2, features={"s1": _feature("s1", 323.0, 2e5), "s2": _feature("s2", 323.0, 2e6)})
    samples = ["s1", "s2"]
    plain = correlate_pair(a, b, samples, CorrelationConfig())
    assert plain.accepted
    assert plain.avg_shape_r == pytest.approx(1.0)
    assert plain.total_similarity < 0.5

    strict = correlate_pair(a, b, samples, CorrelationConfig(use_total_correlation_filter=True))
    assert not strict.accepted
    assert strict.negative_markers == ()


def test_min_samples_marker():
    a = _row(1, 301.0, 1e6)
    b = Row(id=2, features={"s1": _feature("s1", 323.0, 5e5)})
    cfg = CorrelationConfig(min_samples=2)
    r2r = correlate_pair(a, b, ["s1", "s2"], cfg)
    assert not r2r.accepted
    assert r2r.negative_markers == (MIN_FEATURES_REQUIREMENT_NOT_MET,)
    assert correlate_pair(a, b, ["s1", "s2"], CorrelationConfig()).accepted

    # row 2 is not eligible for the pair search at all
    corr_map, diag = correlate_rows(FeatureTable([a, b]), cfg)
    assert len(corr_map) == 0
    assert diag["n_compared"] == 0


def test_parallel_correlation_matches_serial():
    rows = [_row(i, 300.0 + i, 1e6 / i, center=10.0 + (i % 3)) for i in range(1, 8)]
    serial, _ = correlate_rows(FeatureTable(rows), CorrelationConfig())
    parallel, diag = correlate_rows(FeatureTable(rows), CorrelationConfig(n_jobs=3))
    assert list(parallel) == list(serial)
    assert len(serial) > 0
    assert diag["n_compared"] == 21


def test_height_similarity_uses_configured_measure():
    data = CorrelationData(np.array([1.0, 2.0, 3.0]), np.array([1.0, 2.0, 5.0]))
    assert R2RCorrelationData(1, 2, height=data).height_similarity == pytest.approx(data.r)
    by_cosine = R2RCorrelationData(1, 2, height=data, height_measure="cosine")
    assert by_cosine.height_similarity == pytest.approx(data.cosine)
    assert data.cosine != pytest.approx(data.r)

    r2r = correlate_pair(_row(1, 301.0, 1e6), _row(2, 323.0, 5e5), ["s1", "s2"], CorrelationConfig(height_measure="cos"))
    assert r2r.height_measure == "cosine"


def test_rows_outside_rt_window_are_not_compared():
    rows = [_row(1, 301.0, 1e6, rt=1.0), _row(2, 323.0, 5e5, rt=5.0), _row(3, 500.0, 8e5, rt=9.0)]
    corr_map, diag = correlate_rows(FeatureTable(rows), CorrelationConfig())
    assert len(corr_map) == 0
    assert diag["n_compared"] == 0


def test_rt_window_uses_every_feature_of_a_row():
    # row 1 elutes late in s2 only; its pair with row 2 is found through that sample
    a = Row(id=1, features={"s1": _feature("s1", 301.0, 1e6, rt=5.0), "s2": _feature("s2", 301.0, 1e6, rt=9.0)})
    b = Row(id=2, features={"s1": _feature("s1", 323.0, 5e5, rt=8.0), "s2": _feature("s2", 323.0, 5e5, rt=9.05)})
    corr_map, diag = correlate_rows(FeatureTable([a, b]), CorrelationConfig())
    assert (1, 2) in corr_map
    assert diag["n_compared"] == 1


def test_rt_upper_limit():
    assert RTTolerance(0.1).upper_limit(5.0) == pytest.approx(5.1)
    tol = RTTolerance(10.0, relative=True)
    limit = tol.upper_limit(9.0)
    assert limit == pytest.approx(10.0)
    assert tol.check_within(9.0, limit - 1e-9)
    assert not tol.check_within(9.0, limit + 1e-6)
