"""Parallel diagnosis executor.

Each design point is evaluated independently: instantiate a design from the
point's parameters, simulate it, then diagnose the simulated rows. A failure
at any stage marks that point FAILED and the batch carries on. Results are
indexed by point position, so the returned order is the expansion order no
matter which worker finishes first.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from design_foundry.errors import InstantiationError
from design_foundry.params.expand import DesignSpacePoint

from .evaluator import DesignerEvaluator, normalize_rows
from .pool import CancellationToken, SerialPool, WorkerPool
from .result import DiagnosisResult, FailureStage, PointResult, PointStatus
from .spec import SimulationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointTask:
    """Everything a worker needs to evaluate one point; must be picklable."""

    point: DesignSpacePoint
    evaluator: DesignerEvaluator
    n_simulations: int
    n_bootstrap_simulations: int


@dataclass(slots=True)
class BatchProgress:
    """Progress tracking for a diagnosis run.

    Attributes:
        total: Total number of design points.
        completed: Number of points evaluated successfully.
        failed: Number of failed points.
        start_time: Monotonic start time of the run.
    """

    total: int
    completed: int = 0
    failed: int = 0
    start_time: float | None = None

    @property
    def finished(self) -> int:
        return self.completed + self.failed

    @property
    def percent_complete(self) -> float:
        """Percentage of points finished."""
        if self.total == 0:
            return 100.0
        return 100.0 * self.finished / self.total

    @property
    def elapsed_sec(self) -> float:
        """Elapsed time since the run started."""
        if self.start_time is None:
            return 0.0
        return time.monotonic() - self.start_time

    @property
    def estimated_remaining_sec(self) -> float | None:
        """Estimated remaining time based on current progress."""
        if self.finished == 0:
            return None
        return self.elapsed_sec / self.finished * (self.total - self.finished)


ProgressCallback = Callable[[BatchProgress], None]


def evaluate_point(task: PointTask) -> PointResult:
    """Evaluate one design point, capturing any failure on the result."""
    point = task.point
    parameters = point.parameters
    start_time = time.monotonic()
    stage: FailureStage = "instantiate"
    try:
        design = task.evaluator.instantiate(parameters)
        stage = "simulate"
        simulation_rows = normalize_rows(
            task.evaluator.simulate(design, task.n_simulations),
            stage="simulate",
        )
        stage = "diagnose"
        diagnosands_rows = normalize_rows(
            task.evaluator.diagnose(simulation_rows, task.n_bootstrap_simulations),
            stage="diagnose",
        )
    except InstantiationError as e:
        error = str(e) or type(e).__name__
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
    else:
        return PointResult(
            index=point.index,
            parameters=parameters,
            status=PointStatus.COMPLETED,
            simulation_rows=simulation_rows,
            diagnosands_rows=diagnosands_rows,
            execution_time_sec=time.monotonic() - start_time,
        )

    logger.warning("Design point %d (%s) failed during %s: %s", point.index, point.label, stage, error)
    return PointResult(
        index=point.index,
        parameters=parameters,
        status=PointStatus.FAILED,
        error=error,
        stage=stage,
        execution_time_sec=time.monotonic() - start_time,
    )


class DiagnosisExecutor:
    """Runs simulate-then-diagnose for every design point on a worker pool.

    Example:
        >>> executor = DiagnosisExecutor(ThreadPool(max_workers=4))
        >>> result = executor.evaluate(points, evaluator, config)
        >>> print(f"Completed: {result.n_completed}/{len(points)}")
    """

    def __init__(self, pool: WorkerPool | None = None) -> None:
        self.pool = pool or SerialPool()
        self._progress_lock = threading.Lock()

    def evaluate(
        self,
        points: Sequence[DesignSpacePoint],
        evaluator: DesignerEvaluator,
        config: SimulationConfig,
        *,
        cancel_token: CancellationToken | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> DiagnosisResult:
        """Evaluate every point.

        Args:
            points: Design points in expansion order.
            evaluator: Designer evaluator capability.
            config: Simulation configuration.
            cancel_token: Optional token; cancelling abandons the run.
            progress_callback: Optional callback for progress updates.

        Returns:
            DiagnosisResult with one PointResult per point, in input order.

        Raises:
            EvaluationCancelled: If ``cancel_token`` is cancelled mid-run.
        """
        if not points:
            return DiagnosisResult(points=[])

        tasks = [
            PointTask(
                point=point,
                evaluator=evaluator,
                n_simulations=config.n_simulations,
                n_bootstrap_simulations=config.n_bootstrap_simulations,
            )
            for point in points
        ]
        progress = BatchProgress(total=len(tasks), start_time=time.monotonic())
        self._notify(progress_callback, progress)

        def on_result(index: int, result: PointResult) -> None:
            with self._progress_lock:
                if result.status == PointStatus.COMPLETED:
                    progress.completed += 1
                else:
                    progress.failed += 1
            self._notify(progress_callback, progress)

        def on_error(index: int, exc: BaseException) -> PointResult:
            point = points[index]
            logger.exception("Design point %d raised unexpected exception", point.index)
            return PointResult(
                index=point.index,
                parameters=point.parameters,
                status=PointStatus.FAILED,
                error=f"{type(exc).__name__}: {exc}",
            )

        logger.info(
            "Evaluating %d design points with %d workers",
            len(tasks),
            getattr(self.pool, "max_workers", 1),
        )
        start_time = time.monotonic()
        results = self.pool.map(
            evaluate_point,
            tasks,
            cancel_token=cancel_token,
            on_result=on_result,
            on_error=on_error,
        )
        total_time = time.monotonic() - start_time

        result = DiagnosisResult(points=list(results), total_time_sec=total_time)
        logger.info(
            "Diagnosis completed: %d/%d successful in %.2f seconds",
            result.n_completed,
            len(result.points),
            total_time,
        )
        return result

    @staticmethod
    def _notify(callback: ProgressCallback | None, progress: BatchProgress) -> None:
        if callback is None:
            return
        try:
            callback(progress)
        except Exception:
            logger.exception("Progress callback raised exception")
