"""
Precondition Validator Module
Read-only checks run once before any stage: input files, data shape, external software.
"""

import logging
import os
import shutil
from typing import List, Tuple

from .config import (
    PipelineConfig,
    STAGE_ADMIXTURE,
    STAGE_CLUMPAK,
    STAGE_STRUCTURE,
    STAGE_VISUALIZATION,
)
from .dataset import Dataset
from .errors import InsufficientDataError, MissingDependencyError, MissingInputError

logger = logging.getLogger(__name__)

MIN_BED_BYTES = 100
MIN_VARIANTS = 10
MIN_SAMPLES = 5


class PreconditionValidator:
    """
    Validates a dataset and the software environment before a pipeline run.

    Every check aggregates all of its violations before raising, so one
    run reports the complete set of problems.
    """

    def __init__(self,
                 min_bed_bytes: int = MIN_BED_BYTES,
                 min_variants: int = MIN_VARIANTS,
                 min_samples: int = MIN_SAMPLES):
        self.min_bed_bytes = min_bed_bytes
        self.min_variants = min_variants
        self.min_samples = min_samples

    def check_inputs(self, dataset: Dataset):
        """
        Verify the .bed/.bim/.fam companion files exist.

        Raises:
            MissingInputError: naming every absent file
        """
        logger.info("Validating input files...")
        missing = dataset.missing_files()
        for path in missing:
            logger.error(f"Input file not found: {path}")
        if missing:
            raise MissingInputError(missing)

    def check_shape(self, dataset: Dataset):
        """
        Verify the dataset is large enough and internally consistent.

        Raises:
            InsufficientDataError: listing measured value and threshold per violation
        """
        bed_size = dataset.bed_size
        try:
            n_variants = dataset.n_variants
            n_samples = dataset.n_samples
        except (OSError, ValueError) as e:
            logger.error(f"Could not read BIM/FAM records: {e}")
            raise InsufficientDataError([
                ('BIM/FAM records', f"unreadable ({type(e).__name__})",
                 'whitespace-delimited PLINK text'),
            ]) from e

        logger.info("Input summary:")
        logger.info(f"  BED file size: {bed_size} bytes")
        logger.info(f"  Number of variants: {n_variants}")
        logger.info(f"  Number of individuals: {n_samples}")

        violations: List[Tuple[str, object, object]] = []
        if bed_size < self.min_bed_bytes:
            violations.append(('BED file size (bytes)', bed_size, f">= {self.min_bed_bytes}"))
        if n_variants < self.min_variants:
            violations.append(('variant records', n_variants, f">= {self.min_variants}"))
        if n_samples < self.min_samples:
            violations.append(('sample records', n_samples, f">= {self.min_samples}"))

        if not dataset.has_bed_magic():
            violations.append(('BED header', 'not SNP-major PLINK', 'magic bytes 6c 1b 01'))
        elif bed_size != dataset.expected_bed_size:
            violations.append(('BED size vs BIM/FAM counts', bed_size,
                               f"== {dataset.expected_bed_size}"))

        if violations:
            raise InsufficientDataError(violations)

    def required_software(self, config: PipelineConfig) -> List[Tuple[str, str]]:
        """
        List (label, executable) pairs needed by the enabled stages.
        """
        required = []
        if config.is_enabled(STAGE_ADMIXTURE):
            required.append(('admixture', config.executable('admixture')))
        if config.is_enabled(STAGE_STRUCTURE):
            required.append(('structure', config.executable('structure')))
        if config.is_enabled(STAGE_CLUMPAK):
            required.append(('perl', config.executable('perl')))
        if config.is_enabled(STAGE_VISUALIZATION):
            required.append(('R/Rscript', config.executable('rscript')))
        return required

    def check_dependencies(self, config: PipelineConfig):
        """
        Resolve every external executable and helper script needed by enabled stages.

        Raises:
            MissingDependencyError: listing all unresolved software
        """
        logger.info("Checking software dependencies...")
        missing = []

        for label, executable in self.required_software(config):
            if shutil.which(executable) is None:
                logger.error(f"Required command '{executable}' not found in PATH")
                missing.append(label)

        if config.is_enabled(STAGE_CLUMPAK):
            script = config.clumpak_script
            if script is None or not os.path.isfile(script):
                logger.error(f"CLUMPAK executable not found: {script or '(no --clumpak-dir given)'}")
                missing.append('CLUMPAK.pl')

        if config.is_enabled(STAGE_VISUALIZATION) and not os.path.isfile(config.viz_script):
            logger.error(f"Visualization script not found: {config.viz_script}")
            missing.append(config.viz_script)

        if missing:
            raise MissingDependencyError(missing)

        logger.info("All required software found")

    def validate(self, dataset: Dataset, config: PipelineConfig):
        """
        Run every precondition check. Inputs are checked first since the
        shape checks read them.
        """
        self.check_inputs(dataset)
        self.check_shape(dataset)
        self.check_dependencies(config)
