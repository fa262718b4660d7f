"""
Stage Runner Module
Executes one external analysis stage across a sweep of K values and runs.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import PipelineCancelledError, TrialExecutionError
from .stages import AnalysisStage, Trial

logger = logging.getLogger(__name__)


class TrialStatus(Enum):
    SUCCESS = 'success'
    FAILURE = 'failure'


@dataclass
class TrialResult:
    """Outcome of one (stage, K, run) trial."""

    trial: Trial
    status: TrialStatus
    artifacts: List[str] = field(default_factory=list)
    metric: Optional[float] = None
    output: str = ''
    error: Optional[TrialExecutionError] = None
    returncode: Optional[int] = None
    duration: float = 0.0
    resumed: bool = False

    @property
    def k(self) -> int:
        return self.trial.k

    @property
    def run(self) -> int:
        return self.trial.run

    @property
    def succeeded(self) -> bool:
        return self.status is TrialStatus.SUCCESS

    @property
    def primary_artifact(self) -> Optional[str]:
        return self.artifacts[0] if self.artifacts else None


StageResults = Dict[Tuple[int, int], TrialResult]


def artifact_ready(path: str) -> bool:
    """A trial output counts only when it exists and is nonempty."""
    return os.path.isfile(path) and os.path.getsize(path) > 0


def _read_text(path: str) -> str:
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()
    except OSError:
        return ''


def _kill_process_group(proc: subprocess.Popen):
    """Kill a trial process together with any helpers it started."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        # Group already gone
        proc.kill()


def unsatisfied_configs(results: StageResults, k_values: Iterable[int]) -> List[int]:
    """K values without at least one successful trial."""
    satisfied = {key[0] for key, result in results.items() if result.succeeded}
    return [k for k in k_values if k not in satisfied]


class StageRunner:
    """
    Runs the trials of a stage and classifies each one.

    A failed trial never stops the sweep. Whether the stage as a whole is
    satisfied is decided by the caller.
    """

    def __init__(self, timeout: Optional[float] = None, workers: int = 1,
                 resume: bool = False):
        """
        Args:
            timeout: Per-trial wall-clock limit in seconds (None = unlimited)
            workers: Maximum number of concurrently running trials
            resume: Reuse existing nonempty trial outputs instead of re-running
        """
        self.timeout = timeout
        self.workers = max(1, workers)
        self.resume = resume
        self._cancel_event = threading.Event()
        self._processes = set()
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self):
        """Stop scheduling trials and kill the ones in flight."""
        self._cancel_event.set()
        with self._lock:
            processes = list(self._processes)
        for proc in processes:
            logger.warning(f"Killing process group {proc.pid}")
            _kill_process_group(proc)

    def run_stage(self, stage: AnalysisStage, k_values: Iterable[int],
                  runs_per_k: Optional[int] = None) -> StageResults:
        """
        Run every (K, run) trial of a stage.

        Args:
            stage: Stage to run
            k_values: K values to sweep
            runs_per_k: Independent runs per K (defaults to the stage's own)

        Returns:
            Mapping of (K, run) to TrialResult

        Raises:
            PipelineCancelledError: if cancelled before or during the sweep
        """
        runs = runs_per_k or stage.runs_per_k
        trials = [stage.make_trial(k, run)
                  for k in k_values for run in range(1, runs + 1)]

        logger.info(f"{stage.label}: {len(trials)} trial(s), {self.workers} worker(s)")

        results: StageResults = {}
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [executor.submit(self._run_trial, stage, trial) for trial in trials]
            try:
                for future in futures:
                    result = future.result()
                    if result is not None:
                        results[(result.k, result.run)] = result
            except KeyboardInterrupt:
                logger.warning("Interrupted, cancelling remaining trials...")
                self.cancel()

        if self.cancelled:
            raise PipelineCancelledError(f"{stage.label} cancelled")

        n_ok = sum(1 for r in results.values() if r.succeeded)
        logger.info(f"{stage.label}: {n_ok}/{len(trials)} trial(s) succeeded")
        return results

    def _failure(self, trial: Trial, reason: str, **kwargs) -> TrialResult:
        error = TrialExecutionError(trial.stage, trial.k, trial.run, reason)
        return TrialResult(trial=trial, status=TrialStatus.FAILURE, error=error, **kwargs)

    def _run_trial(self, stage: AnalysisStage, trial: Trial) -> Optional[TrialResult]:
        if self.cancelled:
            return None
        try:
            return self._execute_trial(stage, trial)
        except Exception as e:
            logger.exception(f"✗ K={trial.k} run={trial.run} raised an unexpected error")
            return self._failure(trial, f"unexpected error: {e}")

    def _execute_trial(self, stage: AnalysisStage, trial: Trial) -> TrialResult:
        artifact = stage.expected_artifact(trial)
        log_path = stage.log_path(trial)

        if self.resume and artifact_ready(artifact):
            metric = stage.extract_metric(_read_text(log_path))
            if metric is None:
                metric = stage.extract_metric(_read_text(artifact))
            logger.info(f"✓ {stage.label} K={trial.k} run={trial.run} reused from previous run")
            return TrialResult(trial=trial, status=TrialStatus.SUCCESS,
                               artifacts=[artifact], metric=metric, resumed=True)

        logger.info(f"Running {stage.label} for K={trial.k} (run {trial.run})...")

        try:
            stage.prepare_trial(trial)
            if os.path.exists(artifact):
                os.remove(artifact)
        except (OSError, ValueError) as e:
            return self._failure(trial, f"could not prepare inputs: {e}")

        cmd = stage.build_command(trial)
        logger.debug(f"Running: {' '.join(cmd)}")

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=stage.cwd(trial),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding='utf-8',
                errors='replace',
                start_new_session=True,
            )
        except OSError as e:
            return self._failure(trial, f"could not start {cmd[0]}: {e}")

        with self._lock:
            self._processes.add(proc)
        if self.cancelled:
            _kill_process_group(proc)
        timed_out = False
        try:
            try:
                output, _ = proc.communicate(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                _kill_process_group(proc)
                output, _ = proc.communicate()
        finally:
            with self._lock:
                self._processes.discard(proc)
        duration = time.monotonic() - start
        output = output or ''

        try:
            with open(log_path, 'w', encoding='utf-8') as f:
                f.write(output)
        except OSError as e:
            logger.warning(f"Could not save trial output to {log_path}: {e}")

        common = dict(output=output, returncode=proc.returncode, duration=duration)

        if timed_out:
            result = self._failure(trial, f"timed out after {self.timeout}s", **common)
        elif self.cancelled and not artifact_ready(artifact):
            result = self._failure(trial, "cancelled", **common)
        elif artifact_ready(artifact):
            result = TrialResult(trial=trial, status=TrialStatus.SUCCESS,
                                 artifacts=[artifact], **common)
        else:
            result = self._failure(
                trial,
                f"expected output {artifact} missing or empty (exit code {proc.returncode})",
                **common,
            )

        result.metric = stage.extract_metric(output)
        if result.metric is None and result.succeeded:
            result.metric = stage.extract_metric(_read_text(artifact))
        if result.metric is None and stage.metric_name:
            logger.debug(f"{stage.label} K={trial.k} run={trial.run}: "
                         f"{stage.metric_name} not found, recorded as NA")

        if result.succeeded:
            metric = 'NA' if result.metric is None else result.metric
            logger.info(f"✓ K={trial.k} run={trial.run} completed successfully "
                        f"({stage.metric_name or 'metric'}: {metric})")
        else:
            logger.warning(f"✗ K={trial.k} run={trial.run} failed: {result.error.reason}")
            logger.debug(f"{stage.label} output:\n{output}")

        return result
