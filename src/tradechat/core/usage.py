"""Token usage estimation and reconciliation."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from tradechat.errors import MESSAGE_TOO_LONG, ChatError
from tradechat.llm.models import context_window
from tradechat.types import ErrorType, Usage, UsageCounters

_logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4) if text else 0


@dataclass
class _RoundUsage:
    input_estimate: int = 0
    output_estimate: int = 0
    input_exact: int | None = None
    output_exact: int | None = None

    @property
    def input_tokens(self) -> int:
        return self.input_exact if self.input_exact is not None else self.input_estimate

    @property
    def output_tokens(self) -> int:
        return self.output_exact if self.output_exact is not None else self.output_estimate


class UsageAccountant:
    """Tracks per-round estimates and overwrites them with exact counts.

    Parameters
    ----------
    budget_ratio:
        Fraction of the model context window an input may occupy.
    """

    def __init__(self, budget_ratio: float = 0.8) -> None:
        self._budget_ratio = budget_ratio
        self._rounds: list[_RoundUsage] = []

    @staticmethod
    def estimate(text: str) -> int:
        return estimate_tokens(text)

    def check_budget(self, model: str, input_text: str) -> int:
        """Reject inputs larger than the model's budget.

        Returns the estimated input token count.

        Raises
        ------
        ChatError
            With ``BAD_REQUEST`` when the estimate exceeds the budget.
        """
        estimated = estimate_tokens(input_text)
        limit = int(context_window(model) * self._budget_ratio)
        if estimated > limit:
            _logger.warning(
                "Input too long for %s: ~%d tokens (limit %d)",
                model, estimated, limit,
            )
            raise ChatError(
                ErrorType.BAD_REQUEST,
                f"estimated {estimated} tokens exceeds {limit}",
                user_message=MESSAGE_TOO_LONG,
            )
        return estimated

    def begin_round(self, input_text: str) -> None:
        self._rounds.append(_RoundUsage(input_estimate=estimate_tokens(input_text)))

    def add_output(self, text: str) -> None:
        if not self._rounds:
            self._rounds.append(_RoundUsage())
        self._rounds[-1].output_estimate += estimate_tokens(text)

    def reconcile(self, usage: Usage | None) -> None:
        """Overwrite the current round's estimates with exact counts."""
        if usage is None or not self._rounds:
            return
        current = self._rounds[-1]
        if usage.input_tokens is not None:
            current.input_exact = usage.input_tokens
        if usage.output_tokens is not None:
            current.output_exact = usage.output_tokens

    def totals(self) -> UsageCounters:
        return UsageCounters(
            input_tokens=sum(r.input_tokens for r in self._rounds),
            output_tokens=sum(r.output_tokens for r in self._rounds),
        )
