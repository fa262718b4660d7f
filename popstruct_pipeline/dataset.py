"""
Dataset Module
Read-only access to a PLINK binary dataset (.bed/.bim/.fam) identified by its prefix.
"""

import os
from typing import Dict, Optional

import numpy as np
import pandas as pd

# First three bytes of a SNP-major PLINK .bed file
BED_MAGIC = bytes([0x6c, 0x1b, 0x01])

FAM_COLUMNS = ['FID', 'IID', 'PID', 'MID', 'Sex', 'Phenotype']
BIM_COLUMNS = ['chromosome', 'rsid', 'genetic_distance', 'position', 'allele1', 'allele2']


def _read_table(filepath: str, names) -> pd.DataFrame:
    try:
        return pd.read_csv(filepath, sep=r'\s+', header=None, names=names,
                           dtype=str)
    except pd.errors.EmptyDataError:
        return pd.DataFrame(columns=names)


class Dataset:
    """
    A named collection of per-sample records plus a fixed set of variant loci.

    The three companion files must all exist and agree on record counts;
    the pipeline never writes to them.
    """

    EXTENSIONS = ('bed', 'bim', 'fam')

    def __init__(self, prefix: str):
        self.prefix = prefix
        self._fam = None
        self._bim = None

    @property
    def name(self) -> str:
        return os.path.basename(self.prefix)

    def path(self, ext: str) -> str:
        return f"{self.prefix}.{ext}"

    @property
    def bed_path(self) -> str:
        return self.path('bed')

    @property
    def bim_path(self) -> str:
        return self.path('bim')

    @property
    def fam_path(self) -> str:
        return self.path('fam')

    def missing_files(self):
        return [self.path(ext) for ext in self.EXTENSIONS
                if not os.path.isfile(self.path(ext))]

    @property
    def fam(self) -> pd.DataFrame:
        if self._fam is None:
            self._fam = _read_table(self.fam_path, FAM_COLUMNS)
        return self._fam

    @property
    def bim(self) -> pd.DataFrame:
        if self._bim is None:
            self._bim = _read_table(self.bim_path, BIM_COLUMNS)
        return self._bim

    @property
    def n_samples(self) -> int:
        return len(self.fam)

    @property
    def n_variants(self) -> int:
        return len(self.bim)

    @property
    def bed_size(self) -> int:
        try:
            return os.path.getsize(self.bed_path)
        except OSError:
            return 0

    @property
    def expected_bed_size(self) -> int:
        """Size of a SNP-major .bed for the current .bim/.fam record counts."""
        bytes_per_variant = (self.n_samples + 3) // 4
        return len(BED_MAGIC) + self.n_variants * bytes_per_variant

    def has_bed_magic(self) -> bool:
        try:
            with open(self.bed_path, 'rb') as f:
                return f.read(len(BED_MAGIC)) == BED_MAGIC
        except OSError:
            return False

    def read_genotypes(self) -> np.ndarray:
        """
        Decode the .bed file into a genotype matrix.

        Returns:
            Array of shape (samples, variants) with allele1 counts 0/1/2,
            and -1 for missing calls.
        """
        n_samples = self.n_samples
        bytes_per_variant = (n_samples + 3) // 4

        raw = np.fromfile(self.bed_path, dtype=np.uint8)
        if raw[:len(BED_MAGIC)].tobytes() != BED_MAGIC:
            raise ValueError(f"Not a SNP-major PLINK .bed file: {self.bed_path}")

        packed = raw[len(BED_MAGIC):].reshape(self.n_variants, bytes_per_variant)

        # Four 2-bit calls per byte, lowest bits first
        shifts = np.array([0, 2, 4, 6], dtype=np.uint8)
        codes = (packed[:, :, None] >> shifts) & 0b11
        codes = codes.reshape(self.n_variants, -1)[:, :n_samples]

        # 00 = hom allele1, 01 = missing, 10 = het, 11 = hom allele2
        lookup = np.array([2, -1, 1, 0], dtype=np.int8)
        return lookup[codes].T

    def describe(self) -> Dict[str, Optional[int]]:
        return {
            'prefix': self.prefix,
            'individuals': self.n_samples,
            'variants': self.n_variants,
            'bed_bytes': self.bed_size,
        }
