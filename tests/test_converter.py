import numpy as np
import pandas as pd

from popstruct_pipeline.converter import PlinkStructureConverter
from popstruct_pipeline.dataset import Dataset


def test_genotype_decoding(plink_dataset):
    genotypes = Dataset(plink_dataset.prefix).read_genotypes()
    assert genotypes.shape == (plink_dataset.n_samples, plink_dataset.n_variants)

    expected = np.array([2, -1, 1, 0])[plink_dataset.codes].T
    np.testing.assert_array_equal(genotypes, expected)


def test_structure_file_layout(plink_dataset, tmp_path):
    output = tmp_path / "out" / "sample_structure.txt"
    n_ind, n_loci = PlinkStructureConverter().convert(Dataset(plink_dataset.prefix), str(output))
    assert (n_ind, n_loci) == (plink_dataset.n_samples, plink_dataset.n_variants)

    lines = output.read_text().splitlines()
    assert lines[0].split() == [f"rs{j + 1}" for j in range(n_loci)]
    assert len(lines) == 1 + 2 * n_ind

    rows = pd.read_csv(output, sep=' ', header=None, skiprows=1)
    assert list(rows[0][:4]) == ['IND1', 'IND1', 'IND2', 'IND2']

    alleles = rows.iloc[:, 1:].values
    codes = plink_dataset.codes.T
    first, second = alleles[0::2], alleles[1::2]

    hom1 = codes == 0
    assert (first[hom1] == 1).all() and (second[hom1] == 1).all()
    het = codes == 2
    assert (first[het] == 1).all() and (second[het] == 2).all()
    hom2 = codes == 3
    assert (first[hom2] == 2).all() and (second[hom2] == 2).all()
    missing = codes == 1
    assert (first[missing] == -9).all() and (second[missing] == -9).all()


def test_population_column(plink_dataset, tmp_path):
    fam = pd.read_csv(f"{plink_dataset.prefix}.fam", sep=' ', header=None)
    fam[0] = ['POP_A' if i < 10 else 'POP_B' for i in range(len(fam))]
    fam.to_csv(f"{plink_dataset.prefix}.fam", sep=' ', header=False, index=False)

    output = tmp_path / "with_pop.txt"
    PlinkStructureConverter().convert(Dataset(plink_dataset.prefix), str(output), popdata=True)

    rows = pd.read_csv(output, sep=' ', header=None, skiprows=1)
    assert list(rows[1][:2]) == [1, 1]
    assert list(rows[1][20:22]) == [2, 2]
    assert rows.shape[1] == 2 + plink_dataset.n_variants
