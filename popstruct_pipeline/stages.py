"""
Analysis Stages Module
Describes how each external tool is invoked for one (K, run) trial and where
its primary output lands.
"""

import glob
import logging
import os
import re
import zipfile
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .config import PipelineConfig, STAGE_ADMIXTURE, STAGE_CLUMPAK, STAGE_STRUCTURE
from .converter import PlinkStructureConverter
from .dataset import Dataset

logger = logging.getLogger(__name__)

NUMBER = r'(-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)'


def derive_seed(base_seed: int, k: int, run: int) -> int:
    """Deterministic per-trial seed, distinct for every (K, run) pair."""
    state = np.random.SeedSequence([base_seed, k, run]).generate_state(1)
    return int(state[0]) % (2 ** 31 - 1)


@dataclass(frozen=True)
class Trial:
    stage: str
    k: int
    run: int
    seed: int
    workdir: str

    @property
    def stem(self) -> str:
        return f"K{self.k}_run{self.run}"


class AnalysisStage:
    """
    Base class for an external analysis stage swept over K.

    Subclasses define the command line, the expected primary artifact and
    the pattern of the scalar metric printed by the tool.
    """

    name = ''
    label = ''
    metric_name: Optional[str] = None
    metric_pattern: Optional[str] = None
    native_ext = 'Q'

    def __init__(self, config: PipelineConfig, dataset: Dataset):
        self.config = config
        self.dataset = dataset

    @property
    def runs_per_k(self) -> int:
        return 1

    @property
    def stage_dir(self) -> str:
        return os.path.abspath(self.config.stage_dir(self.name))

    def prepare(self):
        """One-time setup before the sweep starts."""

    def workdir(self, k: int, run: int) -> str:
        raise NotImplementedError

    def make_trial(self, k: int, run: int) -> Trial:
        return Trial(
            stage=self.name,
            k=k,
            run=run,
            seed=derive_seed(self.config.seed, k, run),
            workdir=self.workdir(k, run),
        )

    def prepare_trial(self, trial: Trial):
        """Write per-trial inputs. Files written here must be unique to the trial."""
        os.makedirs(trial.workdir, exist_ok=True)

    def build_command(self, trial: Trial) -> List[str]:
        raise NotImplementedError

    def cwd(self, trial: Trial) -> str:
        return trial.workdir

    def expected_artifact(self, trial: Trial) -> str:
        raise NotImplementedError

    def log_path(self, trial: Trial) -> str:
        return os.path.join(trial.workdir, f"{trial.stem}.log")

    def extract_metric(self, text: str) -> Optional[float]:
        """
        Pull the stage metric out of tool output.

        Returns None ("NA") when the pattern is absent or unparseable.
        """
        if not self.metric_pattern or not text:
            return None
        match = re.search(self.metric_pattern, text)
        if match is None:
            return None
        try:
            return float(match.group(1))
        except (TypeError, ValueError):
            return None


class AdmixtureStage(AnalysisStage):
    """ADMIXTURE maximum-likelihood ancestry estimation with cross-validation."""

    name = STAGE_ADMIXTURE
    label = 'ADMIXTURE'
    metric_name = 'CV_Error'
    metric_pattern = r'CV error \(K=\d+\):\s*' + NUMBER

    def workdir(self, k: int, run: int) -> str:
        return os.path.join(self.stage_dir, 'runs', f"K{k}_run{run}")

    def build_command(self, trial: Trial) -> List[str]:
        cmd = [self.config.executable('admixture')]
        if self.config.supervised:
            cmd.append('--supervised')
        cmd += [
            f"--cv={self.config.admixture_cv}",
            f"--seed={trial.seed}",
            f"-j{self.config.threads}",
            os.path.abspath(self.dataset.bed_path),
            str(trial.k),
        ]
        return cmd

    def expected_artifact(self, trial: Trial) -> str:
        # ADMIXTURE writes <basename>.<K>.Q into its working directory
        return os.path.join(trial.workdir, f"{self.dataset.name}.{trial.k}.Q")


class StructureStage(AnalysisStage):
    """STRUCTURE Bayesian clustering, several independent runs per K."""

    name = STAGE_STRUCTURE
    label = 'STRUCTURE'
    metric_name = 'LnP(D)'
    metric_pattern = r'Estimated Ln Prob of Data\s*=\s*' + NUMBER

    def __init__(self, config: PipelineConfig, dataset: Dataset,
                 converter: Optional[PlinkStructureConverter] = None):
        super().__init__(config, dataset)
        self.converter = converter or PlinkStructureConverter()
        self.n_individuals = 0
        self.n_loci = 0

    @property
    def runs_per_k(self) -> int:
        return self.config.structure_runs

    @property
    def input_path(self) -> str:
        return os.path.join(self.stage_dir, f"{self.dataset.name}_structure.txt")

    def prepare(self):
        os.makedirs(self.stage_dir, exist_ok=True)
        self.n_individuals, self.n_loci = self.converter.convert(
            self.dataset, self.input_path, popdata=bool(self.config.popflag))
        logger.info(f"Individuals: {self.n_individuals}")
        logger.info(f"Loci: {self.n_loci}")

    def workdir(self, k: int, run: int) -> str:
        return os.path.join(self.stage_dir, f"K{k}")

    def params_paths(self, trial: Trial) -> Tuple[str, str]:
        base = os.path.join(trial.workdir, trial.stem)
        return f"{base}_mainparams", f"{base}_extraparams"

    def output_prefix(self, trial: Trial) -> str:
        return os.path.join(trial.workdir, f"{trial.stem}_out")

    def mainparams(self, trial: Trial) -> List[Tuple[str, object]]:
        return [
            ('MAXPOPS', trial.k),
            ('BURNIN', self.config.burnin),
            ('NUMREPS', self.config.numreps),
            ('INFILE', self.input_path),
            ('OUTFILE', self.output_prefix(trial)),
            ('NUMINDS', self.n_individuals),
            ('NUMLOCI', self.n_loci),
            ('MISSING', -9),
            ('ONEROWPERIND', 0),
            ('LABEL', 1),
            ('POPDATA', self.config.popflag),
            ('POPFLAG', 0),
            ('LOCDATA', 0),
            ('PHENOTYPE', 0),
            ('EXTRACOLS', 0),
            ('MARKERNAMES', 1),
            ('MAPDISTANCES', 0),
            ('NOADMIX', 0),
            ('LINKAGE', 0),
            ('USEPOPINFO', 0),
            ('LOCPRIOR', 0),
            ('FREQSCORR', self.config.freqscorr),
            ('ONEFST', 0),
            ('INFERALPHA', 1),
            ('POPALPHAS', 0),
            ('ALPHA', self.config.admixalpha),
            ('INFERLAMBDA', 0),
            ('POPSPECIFICLAMBDA', 0),
            ('LAMBDA', 1.0),
        ]

    def extraparams(self, trial: Trial) -> List[Tuple[str, object]]:
        return [
            ('PLOIDY', 2),
            ('RECESSIVEALLELES', 0),
            ('PHASEINFO', 0),
            ('PHASED', 0),
            ('RANDOMIZE', 0),
            ('SEED', trial.seed),
            ('METROFREQ', 10),
            ('PRINTQHAT', 1),
            ('PRINTQSUM', 1),
            ('PRINTFHAT', 1),
            ('PRINTFSUM', 1),
            ('ANCESTDIST', 0),
            ('STARTATPOPINFO', 0),
            ('COMPUTEPROB', 1),
            ('PFROMPOPFLAGONLY', 0),
        ]

    def prepare_trial(self, trial: Trial):
        super().prepare_trial(trial)
        os.makedirs(self.cwd(trial), exist_ok=True)
        main_path, extra_path = self.params_paths(trial)
        for path, params in ((main_path, self.mainparams(trial)),
                             (extra_path, self.extraparams(trial))):
            with open(path, 'w') as f:
                for key, value in params:
                    f.write(f"#define {key} {value}\n")

    def build_command(self, trial: Trial) -> List[str]:
        main_path, extra_path = self.params_paths(trial)
        return [
            self.config.executable('structure'),
            '-m', main_path,
            '-e', extra_path,
            '-K', str(trial.k),
            '-i', self.input_path,
            '-o', self.output_prefix(trial),
            '-D', str(trial.seed),
        ]

    def cwd(self, trial: Trial) -> str:
        # Runs of one K share workdir; each gets its own scratch directory
        return os.path.join(trial.workdir, trial.stem)

    def expected_artifact(self, trial: Trial) -> str:
        # STRUCTURE appends _f to OUTFILE
        return f"{self.output_prefix(trial)}_f"


class ClumpakStage(AnalysisStage):
    """
    CLUMPAK alignment of every prepared Q matrix of one K.

    Inputs are the prepared ADMIXTURE and STRUCTURE artifacts; each K is one
    trial whose input archive is built right before the invocation.
    """

    name = STAGE_CLUMPAK
    label = 'CLUMPAK'
    native_ext = 'output'

    SOURCE_STAGES = (STAGE_ADMIXTURE, STAGE_STRUCTURE)

    def workdir(self, k: int, run: int) -> str:
        return os.path.join(self.stage_dir, 'runs', f"K{k}")

    def archive_path(self, k: int) -> str:
        return os.path.join(self.stage_dir, 'inputs', f"K{k}.zip")

    def input_files(self, k: int) -> List[str]:
        files = []
        for stage in self.SOURCE_STAGES:
            prepared = os.path.abspath(self.config.prepared_dir(stage))
            files.extend(sorted(glob.glob(os.path.join(prepared, f"K{k}_run*.Q"))))
        return files

    def prepare_trial(self, trial: Trial):
        super().prepare_trial(trial)
        files = self.input_files(trial.k)
        if not files:
            raise FileNotFoundError(f"No prepared Q files for K={trial.k}")

        archive = self.archive_path(trial.k)
        os.makedirs(os.path.dirname(archive), exist_ok=True)
        with zipfile.ZipFile(archive, 'w') as zf:
            for path in files:
                # Keep the source stage in the member name to avoid collisions
                stage = os.path.basename(os.path.dirname(os.path.dirname(path)))
                zf.write(path, arcname=f"{stage}_{os.path.basename(path)}")
        logger.debug(f"Packed {len(files)} Q files for K={trial.k} into {archive}")

    def build_command(self, trial: Trial) -> List[str]:
        return [
            self.config.executable('perl'),
            os.path.abspath(self.config.clumpak_script),
            '--id', str(trial.k),
            '--dir', trial.workdir,
            '--file', self.archive_path(trial.k),
            '--inputtype', 'admixture',
            '--mclthreshold', str(self.config.clumpak_threshold),
        ]

    def cwd(self, trial: Trial) -> str:
        # CLUMPAK resolves its bundled helpers relative to its own directory
        return os.path.abspath(self.config.clumpak_dir)

    def expected_artifact(self, trial: Trial) -> str:
        return os.path.join(trial.workdir, f"K={trial.k}", 'MajorCluster',
                            'CLUMPP.files', 'ClumppIndFile.output')
