"""
Format Converter Module
Converts a PLINK binary dataset into STRUCTURE input format.

STRUCTURE format (ONEROWPERIND 0, MARKERNAMES 1):
    rs1 rs2 rs3 ...
    IND1 1 2 -9 ...
    IND1 1 1 -9 ...
"""

import logging
import os
from typing import Tuple

import numpy as np
import pandas as pd

from .dataset import Dataset

logger = logging.getLogger(__name__)

MISSING = -9


class PlinkStructureConverter:
    """
    Writes a STRUCTURE input file with two rows per individual.

    Any object with a compatible ``convert(dataset, output_path)`` method
    can replace this one, e.g. a wrapper around ``plink --recode structure``.
    """

    def convert(self, dataset: Dataset, output_path: str,
                popdata: bool = False) -> Tuple[int, int]:
        """
        Convert a dataset to STRUCTURE format.

        Args:
            dataset: PLINK dataset to convert
            output_path: Destination STRUCTURE input file
            popdata: Add a population column (1-based code per family ID)

        Returns:
            Tuple of (number of individuals, number of loci)
        """
        logger.info(f"Converting {dataset.prefix} to STRUCTURE format: {output_path}")

        genotypes = dataset.read_genotypes()
        n_individuals, n_loci = genotypes.shape

        # Allele1 dosage 2 -> (1, 1), 1 -> (1, 2), 0 -> (2, 2)
        first = np.where(genotypes >= 1, 1, 2)
        second = np.where(genotypes == 2, 1, 2)
        missing = genotypes < 0
        first[missing] = MISSING
        second[missing] = MISSING

        # Interleave the two allele rows of each individual
        alleles = np.empty((2 * n_individuals, n_loci), dtype=np.int64)
        alleles[0::2] = first
        alleles[1::2] = second

        labels = np.repeat(dataset.fam['IID'].astype(str).values, 2)
        rows = pd.DataFrame(alleles)
        rows.insert(0, 'label', labels)
        if popdata:
            codes, _ = pd.factorize(dataset.fam['FID'].astype(str))
            rows.insert(1, 'popdata', np.repeat(codes + 1, 2))

        output_dir = os.path.dirname(output_path)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

        with open(output_path, 'w') as f:
            f.write(' '.join(dataset.bim['rsid'].astype(str)) + '\n')
            rows.to_csv(f, sep=' ', header=False, index=False)

        logger.info(f"Wrote {n_individuals} individuals x {n_loci} loci")
        return n_individuals, n_loci
