"""
Population Structure Clustering Pipeline
Orchestrates ADMIXTURE, STRUCTURE and CLUMPAK over a PLINK dataset and reports the results.
"""

__version__ = "1.0.0"

from .config import PipelineConfig
from .dataset import Dataset
from .estimator import estimate_runtime
from .pipeline import PipelineRun, PipelineState
from .runner import StageRunner, TrialResult, TrialStatus
from .staging import ResultStager, StagedArtifact
from .validator import PreconditionValidator

__all__ = [
    'PipelineConfig',
    'Dataset',
    'estimate_runtime',
    'PipelineRun',
    'PipelineState',
    'StageRunner',
    'TrialResult',
    'TrialStatus',
    'ResultStager',
    'StagedArtifact',
    'PreconditionValidator',
]
