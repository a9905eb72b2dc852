import numpy as np
import pytest

import ion_networks.pipeline as pipeline_mod
from ion_networks.config import IonNetworkConfig
from ion_networks.errors import ConfigurationError
from ion_networks.ion_types import H, NA, IonType
from ion_networks.model import Feature, FeatureTable, Row
from ion_networks.pipeline import IonNetworkPipeline, run_ion_networking
from ion_networks.tasks import TaskMonitor

M = 300.0


def _feature(sample, mz, height, center=10.0):
    scans = np.arange(21)
    inten = height * np.exp(-((scans - center) ** 2) / 18.0)
    return Feature(sample=sample, mz=mz, rt=5.0, height=height, scans=scans, intensities=inten)


def _table():
    rows = []
    for rid, mz, height in (
        (1, IonType(H).mz(M), 1e6),
        (2, IonType(NA).mz(M), 5e5),
    ):
        rows.append(Row(id=rid, features={s: _feature(s, mz, height * f) for s, f in (("s1", 1.0), ("s2", 0.6))}))
    # unrelated compound eluting later
    far = {s: Feature(sample=s, mz=455.2, rt=9.0, height=8e5, scans=np.arange(21), intensities=8e5 * np.exp(-((np.arange(21) - 10.0) ** 2) / 18.0)) for s in ("s1", "s2")}
    rows.append(Row(id=3, features=far))
    return FeatureTable(rows)


def test_full_run_builds_network():
    seen = []
    monitor = TaskMonitor(on_progress=seen.append)
    table = _table()
    result = IonNetworkPipeline(IonNetworkConfig(), monitor=monitor).run(table)
    assert result.status == "finished"
    assert result.is_finished
    assert result.error_message is None
    assert (1, 2) in result.correlations
    assert [g.row_ids for g in result.groups] == [(1, 2)]

    match = [n for n in result.networks if n.row_ids == [1, 2]]
    assert match
    net = match[0]
    assert net.identity(1).ion_type == IonType(H)
    assert net.identity(2).ion_type == IonType(NA)
    assert net.neutral_mass == pytest.approx(M, abs=1e-4)
    assert table.row(1).preferred_identity.ion_type == IonType(H)
    assert not table.row(3).has_ion_identity

    assert seen == sorted(seen)
    assert seen[-1] == pytest.approx(1.0)
    assert result.diag["refinement"]["n_networks"] == len(result.networks)


def test_empty_table_finishes_without_networks():
    result = run_ion_networking(FeatureTable([]))
    assert result.status == "finished"
    assert result.networks == []
    assert result.groups == []


def test_cancel_keeps_partial_results():
    pipe = IonNetworkPipeline(IonNetworkConfig())
    pipe.cancel()
    result = pipe.run(_table())
    assert result.status == "canceled"
    assert result.is_canceled
    assert result.correlations is not None
    assert result.networks == []


def test_stage_failure_reports_error(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("grouping exploded")

    monkeypatch.setattr(pipeline_mod, "group_rows", boom)
    result = IonNetworkPipeline(IonNetworkConfig()).run(_table())
    assert result.status == "error"
    assert result.is_error
    assert "grouping exploded" in result.error_message
    assert (1, 2) in result.correlations


def test_invalid_configuration_fails_before_run():
    with pytest.raises(ConfigurationError):
        IonNetworkPipeline(IonNetworkConfig(max_charge=0))
    with pytest.raises(ConfigurationError):
        IonNetworkPipeline(IonNetworkConfig(polarity="neutral"))


def test_parallel_run_matches_serial():
    serial = IonNetworkPipeline(IonNetworkConfig()).run(_table())
    parallel = IonNetworkPipeline(IonNetworkConfig(n_jobs=4)).run(_table())
    assert parallel.status == "finished"
    assert list(parallel.correlations) == list(serial.correlations)
    assert [g.row_ids for g in parallel.groups] == [g.row_ids for g in serial.groups]
    assert [n.row_ids for n in parallel.networks] == [n.row_ids for n in serial.networks]
