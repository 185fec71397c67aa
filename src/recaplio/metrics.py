"""
Request metrics for the reading-companion service.

Tracks per-stage latency, answers and errors by stage, token usage with
estimated cost, and process memory. Each finished request is appended to
metrics.jsonl under METRICS_LOG_DIR.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import defaultdict
from pathlib import Path

import psutil

from .config import METRICS_LOG_DIR, TIER_MODEL_NAMES
from .observability import get_logger

logger = get_logger(__name__)

# Groq pricing per million tokens (USD).
_GROQ_PRICING: dict[str, dict[str, float]] = {
    "llama-3.3-70b-versatile": {"input": 0.59, "output": 0.79},
    "llama-3.1-8b-instant": {"input": 0.05, "output": 0.08},
    "_default": {"input": 0.30, "output": 0.40},
}


def _get_pricing(model: str) -> dict[str, float]:
    return _GROQ_PRICING.get(model, _GROQ_PRICING["_default"])


class _StageStats:
    __slots__ = ("count", "total_ms", "min_ms", "max_ms")

    def __init__(self):
        self.count = 0
        self.total_ms = 0.0
        self.min_ms = float("inf")
        self.max_ms = 0.0

    def add(self, latency_ms: float):
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)

    def to_dict(self) -> dict:
        if not self.count:
            return {"count": 0, "avg_ms": 0.0, "min_ms": 0.0, "max_ms": 0.0}
        return {
            "count": self.count,
            "avg_ms": round(self.total_ms / self.count, 2),
            "min_ms": round(self.min_ms, 2),
            "max_ms": round(self.max_ms, 2),
        }


class MetricsCollector:
    """Thread-safe request metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_LOG_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        self._stages: dict[str, _StageStats] = defaultdict(_StageStats)
        self._errors: dict[str, int] = defaultdict(int)
        self._requests: dict[str, int] = defaultdict(int)

        self._total_input_tokens: int = 0
        self._total_output_tokens: int = 0
        self._total_cost_usd: float = 0.0

        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_stage(self, stage: str, latency_ms: float) -> None:
        with self._lock:
            self._stages[stage].add(float(latency_ms))

    def record_request(
        self,
        operation: str,
        latency_ms: float,
        success: bool,
        *,
        tier: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
        error_stage: str | None = None,
    ) -> None:
        """Records one finished request and appends it to the JSONL log."""
        model = TIER_MODEL_NAMES.get(tier, "") if tier else ""
        pricing = _get_pricing(model)
        cost_usd = (
            (input_tokens / 1_000_000) * pricing["input"]
            + (output_tokens / 1_000_000) * pricing["output"]
        )
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "operation": operation,
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "tier": tier or None,
            "error_stage": error_stage,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost_usd": round(cost_usd, 8),
        }

        with self._lock:
            self._requests[operation] += 1
            self._stages[f"{operation}_total"].add(float(latency_ms))
            if not success:
                self._errors[error_stage or "unknown"] += 1
            self._total_input_tokens += input_tokens
            self._total_output_tokens += output_tokens
            self._total_cost_usd += cost_usd

        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_log_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            requests = dict(self._requests)
            stages = {name: stats.to_dict() for name, stats in self._stages.items()}
            errors = dict(self._errors)
            in_tok = self._total_input_tokens
            out_tok = self._total_output_tokens
            cost = self._total_cost_usd

        total = sum(requests.values())
        error_count = sum(errors.values())
        uptime_s = time.time() - self._start_time
        mem_info = self._process.memory_info()

        return {
            "throughput": {
                "total_requests": total,
                "by_operation": requests,
                "requests_per_second": round(total / uptime_s, 4) if uptime_s > 0 else 0.0,
                "uptime_seconds": round(uptime_s, 1),
            },
            "latency": stages,
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
            "cost": {
                "total_usd": round(cost, 6),
                "avg_per_query_usd": round(cost / total, 6) if total > 0 else 0.0,
                "total_input_tokens": in_tok,
                "total_output_tokens": out_tok,
            },
            "errors": {
                "count": error_count,
                "by_stage": errors,
                "rate_percent": round((error_count / total * 100) if total > 0 else 0.0, 2),
            },
        }
