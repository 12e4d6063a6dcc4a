"""Ordered fallback chains for credential material.

Token and CA acquisition each try a list of strategies in order until one
yields a non-empty value. A strategy either returns a StrategyOutcome or
raises UpstreamUnavailableError; both count as a failed attempt and the
chain moves on. DeadlineExceededError is never absorbed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from opshub_access.errors import CredentialMaterialMissingError, UpstreamUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyOutcome:
    """Tagged result of one strategy attempt."""

    value: str = ""
    error: str = ""

    @property
    def ok(self) -> bool:
        return bool(self.value)

    @classmethod
    def success(cls, value: str) -> StrategyOutcome:
        return cls(value=value)

    @classmethod
    def failure(cls, reason: str) -> StrategyOutcome:
        return cls(error=reason)


@dataclass(frozen=True)
class Strategy:
    name: str
    run: Callable[[], StrategyOutcome]


def run_chain(material: str, strategies: list[Strategy]) -> str:
    """Run *strategies* in order and return the first non-empty value.

    Raises:
        CredentialMaterialMissingError: If every strategy failed. The
            error's ``attempts`` lists each strategy and why it failed.
    """
    attempts: list[str] = []
    for strategy in strategies:
        try:
            outcome = strategy.run()
        except UpstreamUnavailableError as exc:
            outcome = StrategyOutcome.failure(str(exc))

        if outcome.ok:
            logger.debug("Acquired %s via %s", material, strategy.name)
            return outcome.value

        reason = outcome.error or "empty result"
        logger.debug("Strategy %s for %s failed: %s", strategy.name, material, reason)
        attempts.append(f"{strategy.name}: {reason}")

    raise CredentialMaterialMissingError(material, attempts)
