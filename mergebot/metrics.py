import logging
import os

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, push_to_gateway

logger = logging.getLogger(__name__)


def build_registry() -> CollectorRegistry:
    """Build the registry pushed at the end of a run."""
    return CollectorRegistry()


REGISTRY: CollectorRegistry = build_registry()

# Dispatch metrics
dispatch_runs_total = Counter(
    "dispatch_runs_total",
    "Workflow runs by action and result",
    labelnames=("action", "result"),
    registry=REGISTRY,
)
comments_posted_total = Counter(
    "comments_posted_total",
    "PR comments posted by kind",
    labelnames=("kind",),
    registry=REGISTRY,
)

# Eligibility metrics
eligibility_evaluations_total = Counter(
    "eligibility_evaluations_total",
    "Eligibility evaluations by verdict",
    labelnames=("result",),
    registry=REGISTRY,
)
eligibility_problems_total = Counter(
    "eligibility_problems_total",
    "Blocking problems reported by the evaluator",
    labelnames=("problem",),
    registry=REGISTRY,
)

# Pipeline metrics
enqueue_requests_total = Counter(
    "enqueue_requests_total",
    "Test pipeline enqueue requests by result",
    labelnames=("result",),
    registry=REGISTRY,
)

# Lock metrics
merge_lock_acquired_total = Counter(
    "merge_lock_acquired_total",
    "Per-PR merge lock acquisitions",
    registry=REGISTRY,
)
merge_lock_contended_total = Counter(
    "merge_lock_contended_total",
    "Merge attempts refused because another run held the PR lock",
    registry=REGISTRY,
)

# GitHub API metrics
github_api_requests_total = Counter(
    "github_api_requests_total",
    "Outbound GitHub API requests",
    labelnames=("endpoint", "status"),
    registry=REGISTRY,
)
github_api_latency_seconds = Histogram(
    "github_api_latency_seconds",
    "Latency of GitHub API requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
github_rate_limit_remaining = Gauge(
    "github_rate_limit_remaining",
    "GitHub REST API remaining requests",
    registry=REGISTRY,
)
github_rate_limit_reset = Gauge(
    "github_rate_limit_reset",
    "Epoch seconds when GitHub rate limit resets",
    registry=REGISTRY,
)

# Merge behavior metrics
merge_attempts_total = Counter(
    "merge_attempts_total",
    "Merge attempts by method and result",
    labelnames=("method", "result"),
    registry=REGISTRY,
)
merges_success_total = Counter(
    "merges_success_total",
    "Successful merges by method",
    labelnames=("method",),
    registry=REGISTRY,
)
merges_failed_total = Counter(
    "merges_failed_total",
    "Failed merges by reason",
    labelnames=("reason",),
    registry=REGISTRY,
)
consistency_wait_seconds = Histogram(
    "consistency_wait_seconds",
    "Time spent waiting for GitHub to reflect a merge",
    labelnames=("phase",),
    registry=REGISTRY,
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120),
)

# Build info (set from environment)
service_info = Gauge(
    "service_info",
    "Service build/version info labeled on 1",
    labelnames=("version",),
    registry=REGISTRY,
)
service_info.labels(version=os.getenv("SERVICE_VERSION", "dev")).set(1)


def push_metrics(gateway_url: str, job: str = "mergebot") -> bool:
    """Push the registry to a Prometheus Pushgateway; failures never fail the run."""
    if not gateway_url:
        return False
    try:
        push_to_gateway(gateway_url, job=job, registry=REGISTRY)
    except OSError as e:
        logger.warning("Failed to push metrics to %s: %s", gateway_url, e)
        return False
    return True
