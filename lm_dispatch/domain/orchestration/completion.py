"""Decides, after each turn, whether a conversation continues or stops.

The explicit sentinels are authoritative. The phrase heuristics are a fuzzy
fallback for models that omit them and will produce false positives and
negatives; prefer SentinelOnlySignals when the prompt is under your control.
"""

from typing import Optional, Sequence
import re

import structlog

from lm_dispatch.domain.models.conversation import Outcome, OutcomeReason, ToolCall
from lm_dispatch.domain.tool.tool_call_codec import GOAL_ACHIEVED_SENTINEL, CONTINUING_SENTINEL

logger = structlog.get_logger(__name__)


class CompletionSignals:
    """Strategy for reading completion/continuation intent out of model text"""

    def has_completion_sentinel(self, text: str) -> bool:
        return GOAL_ACHIEVED_SENTINEL.lower() in text.lower()

    def has_continuation_sentinel(self, text: str) -> bool:
        return CONTINUING_SENTINEL.lower() in text.lower()

    def indicates_completion(self, text: Optional[str]) -> bool:
        raise NotImplementedError

    def indicates_continuation(self, text: Optional[str]) -> bool:
        raise NotImplementedError


class SentinelOnlySignals(CompletionSignals):
    """Only the explicit sentinels count"""

    def indicates_completion(self, text: Optional[str]) -> bool:
        return bool(text) and self.has_completion_sentinel(text)

    def indicates_continuation(self, text: Optional[str]) -> bool:
        return bool(text) and self.has_continuation_sentinel(text)


class HeuristicCompletionSignals(CompletionSignals):
    """Sentinels first, then natural-language phrase matching"""

    COMPLETION_PHRASES = [
        re.compile(r"\btask\b.*?\b(?P<word>complete[d]?|done|finished)\b", re.IGNORECASE | re.DOTALL),
        re.compile(r"\bgoal\b.*?\b(?P<word>achieved|reached|accomplished)\b", re.IGNORECASE | re.DOTALL),
        re.compile(r"\bmission\b.*?\b(?P<word>complete[d]?|success(?:ful(?:ly)?)?)\b", re.IGNORECASE | re.DOTALL),
        re.compile(r"\b(?P<word>successfully)\s+(?:completed|finished)\b", re.IGNORECASE),
    ]

    CONTINUATION_PHRASE = re.compile(
        r"next\s+(?:step|action)|\bi['’]ll\b|\bi\s+will\b|\blet\s+me\b|\bcontinu|\bproceed",
        re.IGNORECASE,
    )

    # A negation directly before the completion word, optionally with one
    # filler word in between ("not yet complete", "isn't fully done")
    NEGATION_BEFORE = re.compile(
        r"\b(?:not|never|no|isn't|aren't|wasn't|weren't|hasn't|haven't|hadn't|cannot|can't)"
        r"(?:\s+\w+)?\s+$",
        re.IGNORECASE,
    )

    def _negated(self, text: str, position: int) -> bool:
        return bool(self.NEGATION_BEFORE.search(text[max(0, position - 40):position]))

    def _matches_completion_phrase(self, text: str) -> bool:
        for pattern in self.COMPLETION_PHRASES:
            for match in pattern.finditer(text):
                if not self._negated(text, match.start("word")):
                    return True
        return False

    def indicates_completion(self, text: Optional[str]) -> bool:
        if not text:
            return False
        if self.has_completion_sentinel(text):
            return True
        # An explicit "still working" beats a loose completion phrase
        if self.has_continuation_sentinel(text):
            return False
        return self._matches_completion_phrase(text)

    def indicates_continuation(self, text: Optional[str]) -> bool:
        if not text:
            return False
        return self.has_continuation_sentinel(text) or bool(self.CONTINUATION_PHRASE.search(text))


DEFAULT_SIGNALS = HeuristicCompletionSignals()


def determine_outcome(
    text: Optional[str],
    tool_calls: Sequence[ToolCall],
    turn: int,
    max_turns: int,
    signals: Optional[CompletionSignals] = None,
) -> Outcome:
    """Decide whether the conversation continues after `turn`.

    Precedence: turn budget exceeded, tool calls, completion, continuation,
    natural stop. A decision to continue on the last allowed turn becomes
    max-turns-reached.
    """
    signals = signals or DEFAULT_SIGNALS

    if turn > max_turns:
        return Outcome.stop(OutcomeReason.MAX_TURNS_REACHED)

    if tool_calls:
        if text and signals.has_completion_sentinel(text):
            logger.warning("Model emitted tool calls together with the completion sentinel", turn=turn)
        outcome = Outcome.proceed(OutcomeReason.TOOLS_EXECUTING)
    elif signals.indicates_completion(text):
        return Outcome.stop(OutcomeReason.TASK_COMPLETE)
    elif signals.indicates_continuation(text):
        outcome = Outcome.proceed(OutcomeReason.AGENT_CONTINUING)
    else:
        return Outcome.stop(OutcomeReason.AGENT_FINISHED)

    if turn >= max_turns:
        return Outcome.stop(OutcomeReason.MAX_TURNS_REACHED)
    return outcome
