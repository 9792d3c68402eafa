from __future__ import annotations

from dataclasses import dataclass, field

COMPLETION_SPREAD_THRESHOLD = 600
MIN_RESTART_INTERVAL = 300
WAKE_UP_BUFFER = 120
MIN_HIBERNATION = 300
CLUSTER_TOLERANCE = 300


@dataclass
class CompletionCluster:
    times: list[float] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.times)

    @property
    def average(self) -> float:
        return sum(self.times) / len(self.times) if self.times else 0.0


@dataclass
class HibernationPlan:
    sleep_sec: float
    strategy: str
    clusters: list[CompletionCluster] = field(default_factory=list)

    @property
    def worthwhile(self) -> bool:
        return self.sleep_sec > MIN_HIBERNATION


def cluster_completions(
    remaining: list[float], tolerance: float = CLUSTER_TOLERANCE
) -> list[CompletionCluster]:
    clusters: list[CompletionCluster] = []
    for t in sorted(remaining):
        for cluster in clusters:
            if abs(cluster.average - t) <= tolerance:
                cluster.times.append(t)
                break
        else:
            clusters.append(CompletionCluster([t]))
    clusters.sort(key=lambda c: c.average)
    return clusters


def plan_hibernation(remaining: list[float]) -> HibernationPlan:
    """How long an instance can sleep given its marches' seconds-to-completion.

    Close finishes are waited out together; a wide spread wakes for the
    first cluster worth restarting for.
    """
    if not remaining:
        return HibernationPlan(0.0, "no active marches")
    times = sorted(remaining)
    spread = times[-1] - times[0]
    if spread <= COMPLETION_SPREAD_THRESHOLD:
        return HibernationPlan(max(0.0, times[-1] - WAKE_UP_BUFFER), "all complete together")

    clusters = cluster_completions(times)
    first = clusters[0]
    if first.size >= 2 or first.average >= MIN_RESTART_INTERVAL:
        return HibernationPlan(max(0.0, first.average - WAKE_UP_BUFFER), "first cluster", clusters)

    for cluster in clusters[1:]:
        if cluster.average - first.average >= MIN_RESTART_INTERVAL and cluster.size >= 2:
            return HibernationPlan(max(0.0, cluster.average - WAKE_UP_BUFFER), "later cluster", clusters)

    return HibernationPlan(max(0.0, first.average - WAKE_UP_BUFFER), "first completion", clusters)
