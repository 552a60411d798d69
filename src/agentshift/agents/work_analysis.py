"""Heuristics for spotting agent runs that stopped before the work was done."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Sequence

from .types import AgentOutputEvent

IncompleteReason = Literal["multi-phase", "todo-items", "continuation-signal", "approval-needed", "token-limit"]

RECENT_EVENTS = 100
FINAL_EVENTS = 20

_TODO_LINE_RE = re.compile(r"TODO:|FIXME:|^\s*[-*]\s+", re.IGNORECASE)


@dataclass(frozen=True)
class PatternGroup:
    reason: IncompleteReason
    patterns: tuple[str, ...]
    # "recent" searches the last RECENT_EVENTS messages, "final" only the last FINAL_EVENTS
    scope: Literal["recent", "final"]
    details: str | None
    next_steps: tuple[str, ...] = ()

    def search(self, text: str) -> re.Match[str] | None:
        for pattern in self.patterns:
            match = re.search(pattern, text, re.IGNORECASE)
            if match:
                return match
        return None


# Checked in order; the first group with a match wins
PATTERN_GROUPS: tuple[PatternGroup, ...] = (
    PatternGroup(
        "multi-phase",
        (
            r"phase\s+(\d+)\s+of\s+(\d+)",
            r"step\s+(\d+)\s+of\s+(\d+)",
            r"(\d+)\s+(?:phases?|steps?)\s+(?:remaining|left)",
            r"completed?\s+(?:phase|step)\s+(\d+)",
            r"next\s+(?:phase|step)\s+(?:will be|is)",
            r"in\s+the\s+next\s+iteration",
            r"continuing\s+in\s+next",
        ),
        "recent",
        None,
        ("Review the completed phase", "Continue with the next phase by re-prompting the task"),
    ),
    PatternGroup(
        "todo-items",
        (
            r"TODO:",
            r"FIXME:",
            r"still\s+need\s+to",
            r"next\s+steps?:",
            r"remaining\s+work:",
            r"additional\s+tasks?:",
            r"follow-?up\s+required:",
        ),
        "final",
        "Agent indicated remaining tasks or TODO items",
    ),
    PatternGroup(
        "continuation-signal",
        (
            r"(?:i'll|i will)\s+continue",
            r"let'?s\s+continue\s+with",
            r"moving\s+on\s+to",
            r"proceeding\s+to\s+(?:the\s+)?next",
            r"will\s+implement\s+next",
            r"(?:should|shall)\s+(?:we|i)\s+proceed",
        ),
        "recent",
        "Agent indicated intention to continue work",
        ("Confirm completion or re-prompt to continue", "Review what was completed so far"),
    ),
    PatternGroup(
        "approval-needed",
        (
            r"should\s+i\s+continue\s*\?",
            r"would\s+you\s+like\s+me\s+to",
            r"shall\s+i\s+proceed\s+with",
            r"do\s+you\s+want\s+me\s+to",
            r"waiting\s+for\s+approval",
            r"please\s+(?:confirm|approve)",
        ),
        "final",
        "Agent is asking for approval to continue",
        ("Review the work completed so far", "Decide whether to approve continuation or modify the approach"),
    ),
    PatternGroup(
        "token-limit",
        (
            r"due\s+to\s+(?:response|output|token)\s+length",
            r"to\s+avoid\s+(?:token|output)\s+limits?",
            r"splitting\s+into\s+multiple",
            r"breaking\s+(?:this|it)\s+into\s+parts",
            r"reached\s+(?:output|token)\s+limit",
        ),
        "recent",
        "Agent hit output limits and may have more to say",
        ("Re-prompt to continue the work",),
    ),
)


@dataclass(frozen=True)
class IncompleteWork:
    is_incomplete: bool
    reason: IncompleteReason | None = None
    details: str | None = None
    suggested_next_steps: list[str] = field(default_factory=list)


def detect_incomplete_work(events: Sequence[AgentOutputEvent]) -> IncompleteWork:
    """Scan a run's output for signs that the agent stopped part way."""
    recent = list(events)[-RECENT_EVENTS:]
    texts = {
        "recent": "\n".join(e.message for e in recent),
        "final": "\n".join(e.message for e in recent[-FINAL_EVENTS:]),
    }

    for group in PATTERN_GROUPS:
        text = texts[group.scope]
        match = group.search(text)
        if match is None:
            continue
        next_steps = list(group.next_steps)
        if group.reason == "todo-items":
            next_steps = [line for line in text.split("\n") if _TODO_LINE_RE.search(line)][:5]
        return IncompleteWork(
            is_incomplete=True,
            reason=group.reason,
            details=group.details or match.group(0),
            suggested_next_steps=next_steps,
        )
    return IncompleteWork(is_incomplete=False)
