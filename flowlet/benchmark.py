"""Wall-clock benchmarking of nodes, flows and arbitrary coroutines."""
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List

import structlog

from .context import Context

logger = structlog.get_logger(__name__)


@dataclass
class BenchmarkResult:
    name: str
    iterations: int
    total_time_ms: float
    avg_time_ms: float
    min_time_ms: float
    max_time_ms: float
    std_dev_ms: float
    throughput: float  # ops/sec


class BenchmarkSuite:
    def __init__(self):
        self.results: List[BenchmarkResult] = []

    async def benchmark(self, name: str, iterations: int, fn: Callable[[], Awaitable[Any]]) -> BenchmarkResult:
        """Await ``fn()`` ``iterations`` times and record timing statistics."""
        if iterations < 1:
            raise ValueError(f"iterations must be at least 1, got {iterations}")
        logger.info("benchmark_start", name=name, iterations=iterations)
        times = []
        start_total = time.perf_counter()
        for _ in range(iterations):
            start = time.perf_counter()
            await fn()
            times.append((time.perf_counter() - start) * 1000.0)
        total = (time.perf_counter() - start_total) * 1000.0

        avg = sum(times) / len(times)
        std_dev = math.sqrt(sum((t - avg) ** 2 for t in times) / len(times))
        result = BenchmarkResult(
            name=name,
            iterations=iterations,
            total_time_ms=total,
            avg_time_ms=avg,
            min_time_ms=min(times),
            max_time_ms=max(times),
            std_dev_ms=std_dev,
            throughput=iterations / (total / 1000.0) if total > 0 else float("inf"),
        )
        self.results.append(result)
        logger.info("benchmark_done", name=name, avg_ms=round(avg, 3), min_ms=round(result.min_time_ms, 3),
                    max_ms=round(result.max_time_ms, 3), throughput=round(result.throughput))
        return result

    async def benchmark_node(self, name: str, node, iterations: int = 100) -> BenchmarkResult:
        # One Context shared across iterations, as a node would see inside a loop
        ctx = Context()
        return await self.benchmark(name, iterations, lambda: node._invoke(ctx))

    async def benchmark_flow(self, name: str, flow, iterations: int = 100) -> BenchmarkResult:
        return await self.benchmark(name, iterations, lambda: flow.run(Context()))

    def summary_table(self) -> str:
        header = f"{'Benchmark':<30} {'Iterations':>10} {'Avg (ms)':>12} {'Min (ms)':>12} {'Max (ms)':>12} {'Ops/sec':>12}"
        lines = ["=" * 80, "BENCHMARK SUMMARY", "=" * 80, header, "-" * 80]
        for r in self.results:
            lines.append(f"{r.name:<30} {r.iterations:>10} {r.avg_time_ms:>12.2f} {r.min_time_ms:>12.2f} "
                         f"{r.max_time_ms:>12.2f} {r.throughput:>12.0f}")
        lines.append("=" * 80)
        return "\n".join(lines)

    def to_dict(self) -> List[Dict[str, Any]]:
        return [asdict(r) for r in self.results]

    def compare(self, baseline: str) -> Dict[str, Dict[str, float]]:
        """Average-time ratio and percent difference of every other result against ``baseline``.

        Negative ``percent_diff`` means faster than the baseline.
        """
        base = next((r for r in self.results if r.name == baseline), None)
        if base is None:
            raise ValueError(f"Baseline '{baseline}' not found")
        comparison = {}
        for r in self.results:
            if r.name == baseline:
                continue
            ratio = r.avg_time_ms / base.avg_time_ms if base.avg_time_ms > 0 else float("inf")
            comparison[r.name] = {"ratio": ratio, "percent_diff": (ratio - 1.0) * 100.0}
        return comparison
