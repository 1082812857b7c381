from __future__ import annotations

import threading
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Iterable, Tuple


def _percentile(sorted_values: List[float], p: float) -> float:
    if not sorted_values:
        return float("nan")
    k = (len(sorted_values) - 1) * (p / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_values[int(k)]
    d0 = sorted_values[f] * (c - k)
    d1 = sorted_values[c] * (k - f)
    return d0 + d1


def pct_summary(values: Iterable[float]) -> Dict[str, float]:
    vals = sorted(v for v in values if v is not None)
    if not vals:
        return {"count": 0, "min": float("nan"), "p50": float("nan"),
                "p95": float("nan"), "max": float("nan")}
    return {
        "count": len(vals),
        "min": vals[0],
        "p50": _percentile(vals, 50),
        "p95": _percentile(vals, 95),
        "max": vals[-1],
    }


@dataclass
class Metrics:
    lock: threading.Lock = field(default_factory=threading.Lock)

    # rows written through each path
    inserts_bulk: int = 0
    inserts_fallback: int = 0
    flushes_bulk: int = 0
    flushes_fallback: int = 0

    # delete statements issued
    deletes_grouped: int = 0
    deletes_single: int = 0

    # encoder re-chose a delimiter set
    delimiter_retries: int = 0

    # stage -> list of durations
    stage_durations: Dict[str, List[float]] = field(
        default_factory=lambda: defaultdict(list))
    copy_rows_per_sec: List[float] = field(default_factory=list)

    # fallback reason -> count
    fallback_reasons: Counter[str] = field(default_factory=Counter)
    errors_by_type: Counter[str] = field(default_factory=Counter)

    def inc(self, attr: str, value: int = 1) -> None:
        with self.lock:
            setattr(self, attr, getattr(self, attr) + value)

    def observe_stage(self, stage: str, duration: float) -> None:
        with self.lock:
            self.stage_durations[stage].append(duration)

    def observe_copy_rps(self, rps: float) -> None:
        with self.lock:
            self.copy_rows_per_sec.append(rps)

    def record_fallback(self, reason: str) -> None:
        with self.lock:
            self.fallback_reasons[reason] += 1

    def record_error(self, exc: BaseException) -> None:
        with self.lock:
            self.errors_by_type[type(exc).__name__] += 1

    def summary(self) -> Tuple[str, Dict]:
        with self.lock:
            stage_stats = {
                stage: pct_summary(durations)
                for stage, durations in self.stage_durations.items()
            }
            copy_rps_stats = pct_summary(self.copy_rows_per_sec)
            res = {
                "inserts_bulk": self.inserts_bulk,
                "inserts_fallback": self.inserts_fallback,
                "flushes_bulk": self.flushes_bulk,
                "flushes_fallback": self.flushes_fallback,
                "deletes_grouped": self.deletes_grouped,
                "deletes_single": self.deletes_single,
                "delimiter_retries": self.delimiter_retries,
                "stage_stats": stage_stats,
                "copy_rows_per_sec": copy_rps_stats,
                "fallback_reasons": dict(self.fallback_reasons),
                "errors_by_type": dict(self.errors_by_type),
            }

        lines = []
        lines.append("===== METRICS SUMMARY =====")
        lines.append(f"Inserts    : bulk={res['inserts_bulk']:,}  "
                     f"fallback={res['inserts_fallback']:,}")
        lines.append(f"Flushes    : bulk={res['flushes_bulk']}  "
                     f"fallback={res['flushes_fallback']}")
        lines.append(f"Deletes    : grouped={res['deletes_grouped']}  "
                     f"single={res['deletes_single']}")
        lines.append(f"Delimiters : retries={res['delimiter_retries']}")
        if stage_stats:
            lines.append("")
            lines.append("Per-stage timings (seconds):")
            for stage, stats in stage_stats.items():
                lines.append(
                    f"  {stage:20s} "
                    f"count={stats['count']:6d}  "
                    f"min={stats['min']:.4f}  p50={stats['p50']:.4f}  "
                    f"p95={stats['p95']:.4f}  max={stats['max']:.4f}"
                )
        if copy_rps_stats["count"]:
            lines.append("")
            lines.append("COPY rows/sec:")
            lines.append(
                f"  p50={copy_rps_stats['p50']:.2f}  "
                f"p95={copy_rps_stats['p95']:.2f}  "
                f"max={copy_rps_stats['max']:.2f}"
            )
        if res["fallback_reasons"]:
            lines.append("")
            lines.append("Fallback reasons:")
            for k, v in sorted(res["fallback_reasons"].items(), key=lambda kv: kv[1], reverse=True):
                lines.append(f"  {k}: {v}")
        if res["errors_by_type"]:
            lines.append("")
            lines.append("Errors by type:")
            for k, v in sorted(res["errors_by_type"].items(), key=lambda kv: kv[1], reverse=True):
                lines.append(f"  {k}: {v}")

        return "\n".join(lines), res
