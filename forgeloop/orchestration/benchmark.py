from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from ..core.errors import SearchError
from ..core.logging import get_logger
from .builder import GenerationBuilder, GenerationResult

logger = get_logger(name=__name__)

Evaluator = Callable[[Any, str], "float | bool"]


@dataclass(slots=True)
class BenchmarkResult:
    model: str
    score: float
    result: GenerationResult[Any] | None = None
    error: str | None = None


async def benchmark_models(
    builder: GenerationBuilder,
    models: Sequence[str],
    schema: Any,
    evaluate: Evaluator,
) -> list[BenchmarkResult]:
    """Generate with every model concurrently and rank by ``evaluate``; failures score 0."""

    async def run_one(model: str) -> BenchmarkResult:
        try:
            result = await builder.model(model).generate(schema)
        except Exception as exc:
            logger.warning("benchmark_model_failed", model=model, error=str(exc))
            return BenchmarkResult(model=model, score=0.0, error=str(exc))
        score = 0.0 if result.engine_result.errors else float(evaluate(result.output, model))
        return BenchmarkResult(model=model, score=score, result=result)

    results = list(await asyncio.gather(*(run_one(model) for model in models)))
    results.sort(key=lambda item: item.score, reverse=True)
    return results


class EliminationTournament:
    """Drop the worst-ranked model after each round until one remains."""

    def __init__(self, models: Sequence[str]) -> None:
        self.models = list(models)
        self.round = 0

    def winner(self) -> str | None:
        return self.models[0] if len(self.models) == 1 else None

    def submit(self, results: Sequence[BenchmarkResult]) -> None:
        """``results`` must be sorted best first, as :func:`benchmark_models` returns them."""
        if self.winner() is not None:
            raise SearchError("Tournament is already decided")
        if not results:
            raise ValueError("No results submitted")
        self.round += 1
        worst = results[-1]
        if worst.score >= 1:
            logger.info("tournament_no_elimination", round=self.round)
            return
        logger.info("tournament_eliminate", round=self.round, model=worst.model, score=worst.score)
        self.eliminate(worst.model)

    def eliminate(self, model: str) -> None:
        self.models = [name for name in self.models if name != model]


@dataclass(slots=True, frozen=True)
class SPRTResult:
    winner: str
    loser: str
    samples_taken: int


class SPRTEliminationTournament(EliminationTournament, ABC):
    """Pairwise sequential probability ratio tests; the model with most losses leaves each round.

    Subclasses implement :meth:`run_model`, returning a score in ``[0, 1]``.
    Scores are cached per (round, iteration, model) so every pairing within a
    round compares the same samples.
    """

    alpha = 0.10
    beta = 0.10
    delta = 0.05
    variance = 0.05
    max_iters_per_pair = 10
    use_cache = True

    def __init__(self, models: Sequence[str]) -> None:
        super().__init__(models)
        self.iteration = 0
        self._cached: dict[tuple[int, int, str], float] = {}

    @abstractmethod
    async def run_model(self, model: str) -> float: ...

    async def run_tournament(self) -> str:
        if not self.models:
            raise ValueError("Tournament needs at least one model")
        while self.winner() is None:
            await self.run_round()
        winner = self.winner()
        logger.info("tournament_winner", model=winner, rounds=self.round)
        return winner  # type: ignore[return-value]

    async def run_round(self) -> None:
        self.round += 1
        losses: dict[str, int] = {}
        for i, model_a in enumerate(self.models):
            for model_b in self.models[i + 1 :]:
                result = await self.run_sprt(model_a, model_b)
                logger.info(
                    "tournament_pair",
                    round=self.round,
                    winner=result.winner,
                    loser=result.loser,
                    samples=result.samples_taken,
                )
                losses[result.loser] = losses.get(result.loser, 0) + 1
        worst = max(losses.items(), key=lambda item: item[1])[0]
        logger.info("tournament_eliminate", round=self.round, model=worst)
        self.eliminate(worst)

    def likelihood_ratio(self, score_a: float, score_b: float) -> float:
        diff = score_a - score_b
        h0 = math.exp(-(diff**2) / (4 * self.variance))
        h1 = math.exp(-((diff - self.delta) ** 2) / (4 * self.variance))
        return h1 / h0

    async def run_sprt(self, model_a: str, model_b: str) -> SPRTResult:
        lower = math.log(self.beta / (1 - self.alpha))
        upper = math.log((1 - self.beta) / self.alpha)
        total = 0.0
        samples = 0
        for iteration in range(self.max_iters_per_pair):
            self.iteration = iteration
            samples += 1
            score_a, score_b = await asyncio.gather(self._run_cached(model_a), self._run_cached(model_b))
            if math.isnan(score_a):
                return SPRTResult(winner=model_b, loser=model_a, samples_taken=samples)
            if math.isnan(score_b):
                return SPRTResult(winner=model_a, loser=model_b, samples_taken=samples)
            score_a = min(1.0, max(0.0, score_a))
            score_b = min(1.0, max(0.0, score_b))
            total += math.log(self.likelihood_ratio(score_a, score_b))
            if total <= lower:
                return SPRTResult(winner=model_b, loser=model_a, samples_taken=samples)
            if total >= upper:
                return SPRTResult(winner=model_a, loser=model_b, samples_taken=samples)
        if total >= 0:
            return SPRTResult(winner=model_a, loser=model_b, samples_taken=samples)
        return SPRTResult(winner=model_b, loser=model_a, samples_taken=samples)

    async def _run_cached(self, model: str) -> float:
        key = (self.round, self.iteration, model)
        if self.use_cache and key in self._cached:
            return self._cached[key]
        try:
            score = float(await self.run_model(model))
        except Exception as exc:
            logger.warning("tournament_model_failed", model=model, error=str(exc))
            return math.nan
        if self.use_cache:
            self._cached[key] = score
        return score


__all__ = [
    "BenchmarkResult",
    "benchmark_models",
    "EliminationTournament",
    "SPRTResult",
    "SPRTEliminationTournament",
]
