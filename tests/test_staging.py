import os

import numpy as np
import pandas as pd
import pytest

from popstruct_pipeline.errors import StagingError
from popstruct_pipeline.runner import TrialResult, TrialStatus
from popstruct_pipeline.stages import Trial
from popstruct_pipeline.staging import (
    ResultStager,
    canonical_name,
    extract_clumpp_q,
    extract_structure_q,
    read_metric_table,
    read_q_matrix,
    write_metric_table,
    write_run_metric_table,
)

STRUCTURE_F = """\
Run parameters:
   3 individuals

Estimated Ln Prob of Data   = -1234.5

Inferred ancestry of individuals:
        Label (%Miss) :  Inferred clusters
  1     IND1    (0)   :  0.900 0.100
  2     IND2    (5)   :  0.250 0.750    (0.100,0.400) (0.600,0.900)
  3     IND3    (0)   :  0.500 0.500

Estimated Allele Frequencies in each cluster
"""

CLUMPP_IND = """\
  1   1 (0)   1 :  0.1000 0.9000
  2   2 (0)   1 :  0.6000 0.4000
"""


def _result(stage, k, run, artifact, status=TrialStatus.SUCCESS, metric=None):
    trial = Trial(stage=stage, k=k, run=run, seed=1, workdir=os.path.dirname(artifact))
    return TrialResult(trial=trial, status=status, artifacts=[artifact], metric=metric)


def _write_q(path, rows):
    with open(path, 'w') as f:
        for row in rows:
            f.write(' '.join(str(v) for v in row) + '\n')
    return str(path)


def test_canonical_name():
    assert canonical_name(3, 2) == 'K3_run2.Q'
    assert canonical_name(5, 1, 'output') == 'K5_run1.output'


def test_stage_copies_successful_results(tmp_path):
    sources = {k: _write_q(tmp_path / f"sample.{k}.Q", [[1.0 / k] * k] * 4) for k in (2, 3)}
    failed = _result('admixture', 4, 1, str(tmp_path / "sample.4.Q"), status=TrialStatus.FAILURE)
    results = {(k, 1): _result('admixture', k, 1, path) for k, path in sources.items()}
    results[(4, 1)] = failed

    stager = ResultStager()
    staged = stager.stage(results, str(tmp_path / "prepared"))

    assert [a.path for a in staged] == [str(tmp_path / "prepared" / "K2_run1.Q"),
                                       str(tmp_path / "prepared" / "K3_run1.Q")]
    assert sorted(os.listdir(tmp_path / "prepared")) == ['K2_run1.Q', 'K3_run1.Q']
    assert stager.warnings == []


def test_missing_artifact_becomes_warning(tmp_path):
    good = _write_q(tmp_path / "sample.2.Q", [[0.5, 0.5]] * 3)
    results = {
        (2, 1): _result('admixture', 2, 1, good),
        (3, 1): _result('admixture', 3, 1, str(tmp_path / "gone.3.Q")),
    }
    stager = ResultStager()
    staged = stager.stage(results, str(tmp_path / "prepared"))

    assert [(a.k, a.run) for a in staged] == [(2, 1)]
    assert len(stager.warnings) == 1
    warning = stager.warnings[0]
    assert isinstance(warning, StagingError)
    assert (warning.k, warning.run) == (3, 1)


def test_wrong_column_count_is_not_staged(tmp_path):
    bad = _write_q(tmp_path / "sample.3.Q", [[0.5, 0.5]] * 3)
    stager = ResultStager()
    staged = stager.stage({(3, 1): _result('admixture', 3, 1, bad)}, str(tmp_path / "prepared"))

    assert staged == []
    assert 'expected 3 columns' in stager.warnings[0].reason
    assert not os.path.exists(tmp_path / "prepared" / "K3_run1.Q")


def test_extract_structure_q(tmp_path):
    source = tmp_path / "K2_run1_out_f"
    source.write_text(STRUCTURE_F)
    dest = tmp_path / "K2_run1.Q"
    extract_structure_q(str(source), str(dest), 2)

    q = read_q_matrix(str(dest))
    assert list(q.columns) == ['K1', 'K2']
    np.testing.assert_allclose(q.values, [[0.9, 0.1], [0.25, 0.75], [0.5, 0.5]])


def test_extract_structure_q_without_section(tmp_path):
    source = tmp_path / "K2_run1_out_f"
    source.write_text("Estimated Ln Prob of Data   = -1.0\n")
    with pytest.raises(ValueError):
        extract_structure_q(str(source), str(tmp_path / "out.Q"), 2)


def test_extract_clumpp_q(tmp_path):
    source = tmp_path / "ClumppIndFile.output"
    source.write_text(CLUMPP_IND)
    dest = tmp_path / "K2_run1.Q"
    extract_clumpp_q(str(source), str(dest), 2)
    np.testing.assert_allclose(read_q_matrix(str(dest)).values, [[0.1, 0.9], [0.6, 0.4]])


def test_metric_table_uses_na_for_missing_values(tmp_path):
    results = {
        (2, 1): _result('admixture', 2, 1, 'a', metric=0.52),
        (3, 1): _result('admixture', 3, 1, 'b', metric=None),
        (4, 1): _result('admixture', 4, 1, 'c', status=TrialStatus.FAILURE, metric=0.40),
    }
    path = tmp_path / "cv_errors.txt"
    write_metric_table(results, [2, 3, 4], str(path), 'CV_Error')

    lines = path.read_text().splitlines()
    assert lines == ['K CV_Error', '2 0.52', '3 NA', '4 NA']

    table = read_metric_table(str(path))
    assert table['K'].tolist() == [2, 3, 4]
    assert pd.isna(table.loc[1, 'CV_Error'])


def test_run_metric_table(tmp_path):
    results = {
        (2, 2): _result('structure', 2, 2, 'a', metric=-1022.0),
        (2, 1): _result('structure', 2, 1, 'b', metric=-1021.0),
    }
    path = tmp_path / "ln_prob.txt"
    write_run_metric_table(results, str(path), 'LnP(D)')
    assert path.read_text().splitlines() == ['K run LnP(D)', '2 1 -1021.0', '2 2 -1022.0']
    assert read_metric_table(str(tmp_path / "absent.txt")) is None
