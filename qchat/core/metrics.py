"""
qchat :: Prometheus Metrics

Metrics:
  - qchat_sessions_total: generation sessions started
  - qchat_tokens_generated_total: tokens sampled
  - qchat_tokens_prompt_total: prompt tokens prefilled
  - qchat_finished_total{reason}: sessions by stop reason (eos, length, cancelled, error)
  - qchat_session_duration_seconds: session latency histogram
  - qchat_time_per_token_seconds: decode latency per output token

INL - 2025
"""

import time
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, start_http_server


class ChatMetrics:
    """Prometheus metrics for generation sessions."""

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        port: Optional[int] = None,
    ):
        self.registry = registry if registry is not None else REGISTRY

        # Counters
        self.sessions_total = Counter(
            "qchat_sessions_total", "Generation sessions started", registry=self.registry
        )
        self.tokens_generated = Counter(
            "qchat_tokens_generated_total", "Total tokens generated", registry=self.registry
        )
        self.tokens_prompt = Counter(
            "qchat_tokens_prompt_total", "Total prompt tokens processed", registry=self.registry
        )
        self.finished = Counter(
            "qchat_finished_total", "Finished sessions by stop reason",
            ["reason"], registry=self.registry,
        )

        # Histograms
        self.session_duration = Histogram(
            "qchat_session_duration_seconds",
            "Generation session latency",
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
            registry=self.registry,
        )
        self.time_per_token = Histogram(
            "qchat_time_per_token_seconds",
            "Time per output token",
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5],
            registry=self.registry,
        )

        if port is not None:
            start_http_server(port, registry=self.registry)

    def on_session_start(self) -> float:
        """Called when a generation session starts."""
        self.sessions_total.inc()
        return time.perf_counter()

    def on_session_end(self, start_time: float, prompt_tokens: int, output_tokens: int, reason: str):
        """Called when a session stops (normally or with an error)."""
        elapsed = time.perf_counter() - start_time
        self.session_duration.observe(elapsed)
        self.tokens_generated.inc(output_tokens)
        self.tokens_prompt.inc(prompt_tokens)
        self.finished.labels(reason=reason).inc()
        if output_tokens > 0:
            self.time_per_token.observe(elapsed / output_tokens)
