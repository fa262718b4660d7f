import os

import pytest

from popstruct_pipeline.config import PipelineConfig
from popstruct_pipeline.dataset import Dataset
from popstruct_pipeline.errors import (
    InsufficientDataError,
    MissingDependencyError,
    MissingInputError,
)
from popstruct_pipeline.validator import PreconditionValidator


def test_missing_sample_index_is_named(plink_dataset):
    os.remove(f"{plink_dataset.prefix}.fam")
    with pytest.raises(MissingInputError) as excinfo:
        PreconditionValidator().check_inputs(Dataset(plink_dataset.prefix))
    assert excinfo.value.missing == [f"{plink_dataset.prefix}.fam"]
    assert 'sample.fam' in str(excinfo.value)


def test_all_missing_files_reported(tmp_path):
    prefix = str(tmp_path / "absent")
    with pytest.raises(MissingInputError) as excinfo:
        PreconditionValidator().check_inputs(Dataset(prefix))
    assert excinfo.value.missing == [f"{prefix}.bed", f"{prefix}.bim", f"{prefix}.fam"]


def test_small_dataset_reports_every_violation(tmp_path, write_dataset):
    prefix = tmp_path / "tiny"
    write_dataset(prefix, n_samples=3, n_variants=4)
    with pytest.raises(InsufficientDataError) as excinfo:
        PreconditionValidator().check_shape(Dataset(str(prefix)))
    checks = {check: (measured, threshold)
              for check, measured, threshold in excinfo.value.violations}
    assert checks['variant records'] == (4, '>= 10')
    assert checks['sample records'] == (3, '>= 5')
    assert 'BED file size (bytes)' in checks


def test_bed_inconsistent_with_counts(plink_dataset):
    with open(f"{plink_dataset.prefix}.fam", 'a') as f:
        for i in range(8):
            f.write(f"EXTRA{i} EXTRA{i} 0 0 0 -9\n")
    with pytest.raises(InsufficientDataError) as excinfo:
        PreconditionValidator().check_shape(Dataset(plink_dataset.prefix))
    assert excinfo.value.violations[0][0] == 'BED size vs BIM/FAM counts'


def test_valid_dataset_passes_shape_checks(plink_dataset):
    PreconditionValidator().check_shape(Dataset(plink_dataset.prefix))


def test_missing_dependencies_aggregated(plink_dataset, tmp_path, monkeypatch):
    empty_bin = tmp_path / "empty_bin"
    empty_bin.mkdir()
    monkeypatch.setenv('PATH', str(empty_bin))
    config = PipelineConfig(plink_dataset.prefix, 2, 4,
                            viz_script=str(tmp_path / "missing.R"))

    with pytest.raises(MissingDependencyError) as excinfo:
        PreconditionValidator().check_dependencies(config)
    missing = excinfo.value.missing
    for name in ('admixture', 'structure', 'perl', 'R/Rscript', 'CLUMPAK.pl'):
        assert name in missing
    assert str(tmp_path / "missing.R") in missing


def test_skipped_stages_need_no_software(plink_dataset, tmp_path, monkeypatch):
    monkeypatch.setenv('PATH', str(tmp_path))
    config = PipelineConfig(plink_dataset.prefix, 2, 4,
                            skip_admixture=True, skip_structure=True,
                            skip_clumpak=True, skip_visualization=True)
    PreconditionValidator().check_dependencies(config)


def test_validation_is_idempotent(make_config):
    config = make_config()
    validator = PreconditionValidator()
    dataset = Dataset(config.input_prefix)
    validator.validate(dataset, config)
    validator.validate(Dataset(config.input_prefix), config)

    os.remove(f"{config.input_prefix}.bim")
    outcomes = []
    for _ in range(2):
        with pytest.raises(MissingInputError) as excinfo:
            validator.validate(Dataset(config.input_prefix), config)
        outcomes.append(excinfo.value.missing)
    assert outcomes[0] == outcomes[1]


def test_unreadable_sample_index_is_reported(plink_dataset):
    with open(f"{plink_dataset.prefix}.fam", 'wb') as f:
        f.write(b'\xff\xfe\xfa\xfb garbage\n' * 10)
    with pytest.raises(InsufficientDataError) as excinfo:
        PreconditionValidator().check_shape(Dataset(plink_dataset.prefix))
    checks = [check for check, _, _ in excinfo.value.violations]
    assert checks == ['BIM/FAM records']
