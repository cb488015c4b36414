"""The analyzer capability: the opaque unit of work run once per operation.

An analyzer gets the operation's request and an AnalysisHooks object, and
reports back only through the hooks. It never touches the queue or the
store. It may run for hours and may use its own concurrency internally.
Raising from analyze() marks the operation as failed; it is never retried.

The real GitHub analyzer lives outside this service and is plugged in with
ANALYZER=package.module:factory. DemoAnalyzer is the default, so the service
runs end-to-end in development.
"""

import asyncio
import hashlib
import importlib
import logging
import os
from typing import Any, Protocol

from stardust.executor.schemas import AnalysisRequest, PhaseType

logger = logging.getLogger(__name__)

ANALYZER = os.environ.get("ANALYZER", "stardust.executor.analyzer:DemoAnalyzer")


class AnalysisHooks(Protocol):
    """Mutation surface handed to the analyzer for one operation."""

    def on_progress(self, patch: dict[str, Any]) -> None:
        """Merge phaseIndex / phaseCount / fraction / error into the progress."""
        ...

    def on_funnel(self, entry: dict[str, Any]) -> None:
        """Append a {size, stage, source} funnel entry."""
        ...

    def on_filters(self, filters: list[str]) -> None:
        ...

    async def on_output(self, phase: PhaseType, data: Any) -> None:
        """Publish a phase result. The scheduler decides how it is stored."""
        ...


class Analyzer(Protocol):
    async def analyze(self, request: AnalysisRequest, hooks: AnalysisHooks) -> None:
        ...


class DemoAnalyzer:
    """Walks through the analysis phases with synthetic data."""

    def __init__(self, step_delay: float = 0.5):
        self.step_delay = step_delay

    async def analyze(self, request: AnalysisRequest, hooks: AnalysisHooks) -> None:
        phases = list(PhaseType)
        hooks.on_progress({"phase_count": len(phases)})
        seed = int(hashlib.sha1(request.op_query.encode("utf-8")).hexdigest()[:8], 16)
        size = min(request.max_results, 20 + seed % 30)

        for phase in phases:
            hooks.on_progress({"phase_index": int(phase), "fraction": 0.0})
            await asyncio.sleep(self.step_delay)

            if phase == PhaseType.RESOLVE_INPUT:
                hooks.on_funnel({"size": 1, "stage": "input", "source": request.op_query})
            elif phase == PhaseType.RESOLVE_COMPARISONS:
                hooks.on_funnel({"size": size * 4, "stage": "comparisons", "source": "stars"})
            elif phase == PhaseType.SKIM_COMPARISONS:
                if request.increase_snr:
                    hooks.on_filters(["doc-only", "non-org"])
                hooks.on_funnel({"size": size, "stage": "skimmed", "source": "stars"})
            elif phase == PhaseType.TOPICS_STATS:
                topics = {f"topic-{i}": (seed >> i) % 100 for i in range(5)}
                await hooks.on_output(phase, topics)
            elif phase == PhaseType.STATS:
                rows = [
                    {
                        "repo": f"{request.op_query}-{i}",
                        "stars": (seed + i * 7919) % 50000,
                        "relevance": round(1.0 - i / size, 3),
                    }
                    for i in range(size)
                ]
                await hooks.on_output(phase, rows)

            hooks.on_progress({"fraction": 1.0})

        logger.info(f"Demo analysis of '{request.op_query}' produced {size} rows")


def load_analyzer(path: str = ANALYZER) -> Analyzer:
    """Instantiate an analyzer from a 'package.module:attribute' path.

    The attribute may be a class or a zero-argument factory.
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"ANALYZER must look like 'package.module:attribute', got '{path}'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    analyzer = factory()
    if not callable(getattr(analyzer, "analyze", None)):
        raise TypeError(f"{path} did not produce an object with an analyze() method")
    logger.info(f"Loaded analyzer {path}")
    return analyzer
