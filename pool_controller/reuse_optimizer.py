"""
Job-signature pattern learning and container selection.

The Reuse Optimizer groups jobs by signature, remembers how each container
performed on each signature, and scores available containers for a new job:
historical performance on matching patterns, assignment history on those
patterns, and current resource fit against the job's hints. It also decides
when a container has degraded enough to be recycled rather than reused.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pool_common.config import PoolConfig, parse_cpu_limit, parse_memory_limit
from pool_common.events import EventBus, EventType
from pool_common.models import (
    Container,
    ContainerState,
    JobDescriptor,
    JobOutcome,
    JobPattern,
    ResourceHints,
)
from pool_common.repository import PoolRepository

from .store import ContainerStore
from .tasks import PeriodicTask

logger = logging.getLogger(__name__)


def jaccard(a: tuple[str, ...] | set[str], b: tuple[str, ...] | set[str]) -> float:
    left, right = set(a), set(b)
    if not left and not right:
        return 1.0
    return len(left & right) / len(left | right)


@dataclass(frozen=True)
class ContainerScore:
    container_id: str
    total: float
    performance: float
    history: float
    fit: float


class ReuseOptimizer:
    """
    Scores containers for reuse based on job-pattern history.

    Scoring is a pure function of the pattern table, the candidate container
    records, the job and the usage metrics passed in: identical inputs always
    select the same container.
    """

    def __init__(
        self,
        config: PoolConfig,
        store: ContainerStore,
        bus: EventBus,
        repository: PoolRepository | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config.reuse
        self.store = store
        self.bus = bus
        self.repository = repository
        self.clock = clock

        self.quota_cores = parse_cpu_limit(config.quota.cpus) / 1e9
        self.quota_memory_mb = parse_memory_limit(config.quota.memory) / 1024**2

        self.patterns: dict[str, JobPattern] = {}
        self.pattern_hits = 0
        self.pattern_misses = 0
        self.evictions = 0
        self.recycle_recommendations = 0
        self.last_review: dict[str, Any] | None = None

        self.task = PeriodicTask(
            "reuse-optimizer",
            self.review_once,
            self.config.pruning_interval,
            clock=clock,
            run_immediately=False,
        )

    async def start(self) -> None:
        await self.task.start()
        logger.info("Reuse optimizer started")

    async def stop(self) -> None:
        await self.task.stop()
        logger.info("Reuse optimizer stopped")

    async def load_patterns(self) -> int:
        """Load persisted patterns into memory. Returns the number loaded."""
        if self.repository is None:
            return 0
        patterns = await self.repository.load_patterns(limit=self.config.max_patterns)
        for pattern in patterns:
            self.patterns[pattern.signature] = pattern
        logger.info(f"Loaded {len(patterns)} job patterns")
        return len(patterns)

    # ========================================================================
    # Similarity and scoring
    # ========================================================================

    def similarity(self, job: JobDescriptor, pattern: JobPattern) -> float:
        """Weighted similarity between a job and a stored pattern, in [0, 1]."""
        cfg = self.config
        if job.dependency_fingerprint == pattern.dependency_fingerprint:
            dependency = 1.0
        else:
            dependency = 0.0
        score = (
            cfg.repository_weight * (job.repository == pattern.repository)
            + cfg.workflow_weight * (job.workflow == pattern.workflow)
            + cfg.labels_weight * jaccard(job.labels, pattern.labels)
            + cfg.dependency_weight * dependency
        )
        total_weight = (
            cfg.repository_weight
            + cfg.workflow_weight
            + cfg.labels_weight
            + cfg.dependency_weight
        )
        return score / total_weight if total_weight else 0.0

    def find_matching_patterns(
        self, job: JobDescriptor
    ) -> list[tuple[JobPattern, float]]:
        """Patterns at or above the similarity threshold, best match first."""
        matches = []
        for pattern in self.patterns.values():
            sim = self.similarity(job, pattern)
            if sim >= self.config.similarity_threshold:
                matches.append((pattern, sim))
        matches.sort(key=lambda item: (-item[1], item[0].signature))
        return matches

    def _resource_fit(self, usage: dict[str, float], hints: ResourceHints) -> float:
        cpu_headroom = min(1.0, max(0.0, 1.0 - usage.get("cpu", 0.0) / 100.0))
        mem_headroom = min(1.0, max(0.0, 1.0 - usage.get("memory", 0.0) / 100.0))

        if hints.cpu:
            need = min(1.0, hints.cpu / self.quota_cores)
            cpu_fit = 1.0 if cpu_headroom >= need else cpu_headroom / need
        else:
            cpu_fit = cpu_headroom

        if hints.memory_mb:
            need = min(1.0, hints.memory_mb / self.quota_memory_mb)
            mem_fit = 1.0 if mem_headroom >= need else mem_headroom / need
        else:
            mem_fit = mem_headroom

        return (cpu_fit + mem_fit) / 2

    def score_container(
        self,
        container: Container,
        matches: list[tuple[JobPattern, float]],
        hints: ResourceHints,
        usage: dict[str, float],
    ) -> ContainerScore:
        """Score one candidate against the matching patterns."""
        slow = self.config.slow_execution_threshold
        perf_sum = perf_weight = 0.0
        history_num = history_den = 0.0

        for pattern, sim in matches:
            perf_weight += sim
            history_den += sim * pattern.total_jobs
            stats = pattern.container_stats.get(container.id)
            if not stats or not stats.get("jobs"):
                continue
            success = stats["successes"] / stats["jobs"]
            avg = stats.get("avg_duration", 0.0)
            speed = max(0.0, 1.0 - avg / slow) if slow > 0 else 0.0
            perf_sum += sim * (0.7 * success + 0.3 * speed)
            history_num += sim * stats["jobs"]

        performance = perf_sum / perf_weight if perf_weight else 0.0
        history = history_num / history_den if history_den else 0.0
        fit = self._resource_fit(usage, hints)

        total = (
            self.config.performance_weight * performance
            + self.config.history_weight * history
            + self.config.fit_weight * fit
        )
        return ContainerScore(container.id, round(total, 6), performance, history, fit)

    def rank(
        self,
        candidates: list[Container],
        job: JobDescriptor,
        metrics: dict[str, dict[str, float]],
        matches: list[tuple[JobPattern, float]] | None = None,
    ) -> list[ContainerScore]:
        """Score every candidate, best first. Ties go to the most recently idle."""
        if matches is None:
            matches = self.find_matching_patterns(job)
        by_id = {c.id: c for c in candidates}
        scores = [
            self.score_container(c, matches, job.resource_hints, metrics.get(c.id, {}))
            for c in candidates
        ]
        scores.sort(
            key=lambda s: (
                -s.total,
                -(by_id[s.container_id].last_idle_at or 0.0),
                s.container_id,
            )
        )
        return scores

    def select(
        self,
        candidates: list[Container],
        job: JobDescriptor,
        metrics: dict[str, dict[str, float]] | None = None,
    ) -> Container | None:
        """
        Pick the best candidate for a job.

        Returns:
            The chosen container, or None when no pattern matches the job (the
            caller then falls back to least-recently-used)
        """
        if not candidates:
            return None
        matches = self.find_matching_patterns(job)
        if not matches:
            self.pattern_misses += 1
            return None

        self.pattern_hits += 1
        ranked = self.rank(candidates, job, metrics or {}, matches)
        best = ranked[0]
        logger.debug(
            f"Selected {best.container_id} for job {job.job_id} "
            f"(score {best.total:.3f}, {len(matches)} matching patterns)"
        )
        return next(c for c in candidates if c.id == best.container_id)

    # ========================================================================
    # Learning
    # ========================================================================

    async def record_outcome(
        self,
        container: Container,
        job: JobDescriptor,
        outcome: JobOutcome,
        duration: float,
        usage: dict[str, float] | None = None,
    ) -> JobPattern:
        """Update the job's pattern with a completed execution and persist it."""
        now = self.clock()
        signature = job.signature
        pattern = self.patterns.get(signature)
        if pattern is None:
            self._evict_if_full()
            pattern = JobPattern(
                signature=signature,
                repository=job.repository,
                workflow=job.workflow,
                labels=job.labels,
                dependency_fingerprint=job.dependency_fingerprint,
                created_at=now,
            )
            self.patterns[signature] = pattern
            logger.info(
                f"New job pattern {signature} for {job.repository}/{job.workflow}"
            )

        pattern.total_jobs += 1
        if outcome.success:
            pattern.successes += 1
        pattern.avg_duration += (duration - pattern.avg_duration) / pattern.total_jobs
        pattern.last_seen = now

        for metric, value in (usage or {}).items():
            previous = pattern.resource_profile.get(metric)
            pattern.resource_profile[metric] = (
                value if previous is None else previous + (value - previous) / pattern.total_jobs
            )

        stats = pattern.container_stats.setdefault(
            container.id, {"jobs": 0, "successes": 0, "avg_duration": 0.0}
        )
        stats["jobs"] += 1
        if outcome.success:
            stats["successes"] += 1
        stats["avg_duration"] += (duration - stats["avg_duration"]) / stats["jobs"]
        if container.id not in pattern.container_ids:
            pattern.container_ids.append(container.id)

        if self.repository is not None:
            try:
                await self.repository.save_pattern(pattern)
            except Exception as e:
                logger.error(f"Failed to persist pattern {signature}: {e}", exc_info=True)

        return pattern

    def _evict_if_full(self) -> None:
        while len(self.patterns) >= self.config.max_patterns:
            victim = min(
                self.patterns.values(), key=lambda p: (p.last_seen, p.total_jobs)
            )
            del self.patterns[victim.signature]
            self.evictions += 1
            logger.debug(f"Evicted job pattern {victim.signature}")

    # ========================================================================
    # Efficiency and recycling
    # ========================================================================

    def evaluate_efficiency(
        self, container: Container, usage: dict[str, float] | None = None
    ) -> float:
        """
        Efficiency in [0, 1] from failure rate and resource drift since the baseline.

        Drift is the mean absolute change of cpu/memory percent against the
        usage recorded when the container was (re)created.
        """
        if container.execution_count:
            failure_rate = min(1.0, container.failure_count / container.execution_count)
        else:
            failure_rate = 0.0

        drift = 0.0
        if usage and container.baseline_usage:
            deltas = [
                abs(usage[m] - container.baseline_usage[m]) / 100.0
                for m in ("cpu", "memory")
                if m in usage and m in container.baseline_usage
            ]
            if deltas:
                drift = min(1.0, sum(deltas) / len(deltas))

        return round(max(0.0, (1.0 - failure_rate) * (1.0 - drift)), 4)

    def recycle_reason(self, container: Container, now: float) -> str | None:
        """Why the container should be recycled instead of reused, or None."""
        cfg = self.config
        if container.execution_count >= cfg.max_reuse_count:
            return f"reuse limit reached ({container.execution_count} executions)"
        age = now - container.created_at
        if age >= cfg.max_container_age:
            return f"max age reached ({age:.0f}s)"
        if (
            container.execution_count >= cfg.efficiency_min_executions
            and container.efficiency_score < cfg.efficiency_threshold
        ):
            return (
                f"efficiency {container.efficiency_score:.2f} below "
                f"{cfg.efficiency_threshold:.2f}"
            )
        return None

    async def review_once(self) -> dict[str, Any]:
        """
        Prune stale per-container stats and recommend recycling degraded containers.

        Publishes recycle_recommended per container and optimization_completed
        with a summary.
        """
        now = self.clock()
        recommended = []
        for container in self.store.in_state(ContainerState.AVAILABLE):
            if self.store.has_operation(container.id):
                continue
            reason = self.recycle_reason(container, now)
            if reason:
                recommended.append(container.id)
                self.recycle_recommendations += 1
                self.bus.publish(
                    EventType.RECYCLE_RECOMMENDED,
                    {"container_id": container.id, "reason": reason},
                    source="reuse_optimizer",
                )

        pruned = 0
        for pattern in self.patterns.values():
            for container_id in list(pattern.container_stats):
                if container_id not in self.store:
                    del pattern.container_stats[container_id]
                    pruned += 1

        summary = {
            "patterns": len(self.patterns),
            "recommended_recycles": recommended,
            "pruned_container_stats": pruned,
            "timestamp": now,
        }
        self.last_review = summary
        self.bus.publish(
            EventType.OPTIMIZATION_COMPLETED, summary, source="reuse_optimizer"
        )
        if recommended:
            logger.info(f"Recommended recycling {len(recommended)} container(s)")
        return summary

    def get_efficiency_report(self) -> dict[str, Any]:
        containers = [
            c
            for c in self.store
            if c.state in (ContainerState.AVAILABLE, ContainerState.BUSY)
        ]
        scores = [c.efficiency_score for c in containers]
        below = [
            c.id for c in containers if c.efficiency_score < self.config.efficiency_threshold
        ]
        lookups = self.pattern_hits + self.pattern_misses
        return {
            "average_efficiency": round(sum(scores) / len(scores), 4) if scores else None,
            "below_threshold": below,
            "pattern_hit_rate": round(self.pattern_hits / lookups, 4) if lookups else None,
            "patterns": len(self.patterns),
            "top_patterns": [
                p.to_dict()
                for p in sorted(
                    self.patterns.values(), key=lambda p: (-p.total_jobs, p.signature)
                )[:5]
            ],
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            "patterns": len(self.patterns),
            "pattern_hits": self.pattern_hits,
            "pattern_misses": self.pattern_misses,
            "evictions": self.evictions,
            "recycle_recommendations": self.recycle_recommendations,
            "last_review": self.last_review,
        }
