"""
Observability Metrics
Stage timings, row counts and run counters for the basket analysis pipeline
"""
from typing import Dict, List, Any, Optional
import logging
import time
import threading
import statistics
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, asdict, field

logger = logging.getLogger(__name__)


@dataclass
class StageMetric:
    """Metrics for a single pipeline stage"""
    stage_name: str
    start_time: float
    end_time: float = 0.0
    duration_ms: float = 0.0
    input_count: int = 0
    output_count: int = 0
    drop_count: int = 0
    success: bool = False
    error_message: Optional[str] = None


@dataclass
class RunMetrics:
    """Complete metrics for one analysis run"""
    run_id: str
    start_time: float
    end_time: float = 0.0
    total_duration_ms: float = 0.0
    stages: List[StageMetric] = field(default_factory=list)
    pairs_published: int = 0
    success: bool = False


class MetricsCollector:
    """Collects per-stage metrics for analysis runs"""

    def __init__(self):
        self.run_metrics: Dict[str, RunMetrics] = {}
        self.historical_metrics = deque(maxlen=200)
        self.stage_timings = defaultdict(list)  # stage_name -> [duration_ms]
        self.counters = {
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "total_pairs_published": 0,
        }
        self._lock = threading.Lock()

    def start_run(self, run_id: str) -> None:
        with self._lock:
            self.run_metrics[run_id] = RunMetrics(run_id=run_id, start_time=time.time())
            self.counters["total_runs"] += 1
        logger.info(f"Started metrics tracking for analysis run: {run_id}")

    @contextmanager
    def stage_timer(self, run_id: str, stage_name: str, input_count: int = 0):
        """Time a pipeline stage; callers set output_count on the yielded metric."""
        metric = StageMetric(stage_name=stage_name, start_time=time.time(), input_count=input_count)
        try:
            yield metric
            metric.success = True
        except Exception as e:
            metric.error_message = str(e)
            logger.error(f"Stage {stage_name} failed for run {run_id}: {e}")
            raise
        finally:
            metric.end_time = time.time()
            metric.duration_ms = (metric.end_time - metric.start_time) * 1000
            if metric.input_count > 0:
                metric.drop_count = max(0, metric.input_count - metric.output_count)
            with self._lock:
                if run_id in self.run_metrics:
                    self.run_metrics[run_id].stages.append(metric)
                self.stage_timings[stage_name].append(metric.duration_ms)
            logger.info(
                f"Stage {stage_name} run={run_id} in={metric.input_count} "
                f"out={metric.output_count} durMs={metric.duration_ms:.1f}"
            )

    def finish_run(self, run_id: str, pairs_published: int, success: bool) -> Dict[str, Any]:
        """Close a run and return its summary (empty if the run is unknown)."""
        with self._lock:
            run = self.run_metrics.pop(run_id, None)
            if run is None:
                logger.warning(f"No metrics found for analysis run: {run_id}")
                return {}
            run.end_time = time.time()
            run.total_duration_ms = (run.end_time - run.start_time) * 1000
            run.pairs_published = pairs_published
            run.success = success

            if success:
                self.counters["successful_runs"] += 1
            else:
                self.counters["failed_runs"] += 1
            self.counters["total_pairs_published"] += pairs_published
            self.historical_metrics.append(run)

            return self._generate_run_summary(run)

    def get_stage_diagnostics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                stage: {
                    "count": len(timings),
                    "avg_ms": round(statistics.mean(timings), 2),
                    "p50_ms": round(statistics.median(timings), 2),
                    "max_ms": round(max(timings), 2),
                }
                for stage, timings in self.stage_timings.items()
                if timings
            }

    def _generate_run_summary(self, run: RunMetrics) -> Dict[str, Any]:
        return {
            "run_id": run.run_id,
            "success": run.success,
            "total_duration_ms": round(run.total_duration_ms, 2),
            "pairs_published": run.pairs_published,
            "stages": [
                {
                    "stage": s.stage_name,
                    "duration_ms": round(s.duration_ms, 2),
                    "input_count": s.input_count,
                    "output_count": s.output_count,
                    "drop_count": s.drop_count,
                    "success": s.success,
                }
                for s in run.stages
            ],
        }

    def export(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self.counters),
                "recent_runs": [asdict(r) for r in list(self.historical_metrics)[-10:]],
            }


# Global metrics collector instance
metrics_collector = MetricsCollector()
