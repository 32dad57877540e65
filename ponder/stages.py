"""Keyword classification of reasoning text into coarse cognitive stages.

Stages are checked top to bottom; the first family with a word-boundary match
wins, so late-stage verbs ("verify", "execute") take precedence over earlier
ones ("plan", "analyze") when several co-occur. Anything unmatched is
``Analyzing``.
"""

import re
from dataclasses import dataclass
from enum import Enum


class Stage(str, Enum):
    ANALYZING = "analyzing"
    PLANNING = "planning"
    DECIDING = "deciding"
    EXECUTING = "executing"
    EVALUATING = "evaluating"

    @property
    def label(self) -> str:
        return STAGE_VISUALS[self].label


# Ordered by priority. Adding a stage or keyword is a data change only.
STAGE_PATTERNS: list[tuple[Stage, list[str]]] = [
    (Stage.EVALUATING, [r"\bevaluat\w*", r"\bvalidat\w*", r"\bverif\w*", r"\bcheck\w*"]),
    # Only "implement", "implementing" and "implemented"; not "implementation".
    (
        Stage.EXECUTING,
        [r"\bexecut\w*", r"\bimplement(?:ing|ed)?\b", r"\bwrit(?:ing|e|ten)\b"],
    ),
    (Stage.DECIDING, [r"\bdecid\w*", r"\bchoos\w*", r"\bselect\w*", r"\bdetermin\w*"]),
    (Stage.PLANNING, [r"\bplan\w*", r"\bdesign\w*", r"\bapproach\w*", r"\bstrateg\w*"]),
]

DEFAULT_STAGE = Stage.ANALYZING

_COMPILED: list[tuple[Stage, re.Pattern]] = [
    (stage, re.compile("|".join(patterns), re.IGNORECASE))
    for stage, patterns in STAGE_PATTERNS
]


def classify(text: str) -> Stage:
    """Return the highest-priority stage whose keywords appear in text."""
    if not text:
        return DEFAULT_STAGE
    for stage, regex in _COMPILED:
        if regex.search(text):
            return stage
    return DEFAULT_STAGE


@dataclass(frozen=True)
class StageVisual:
    icon: str
    style: str
    label: str


STAGE_VISUALS: dict[Stage, StageVisual] = {
    Stage.ANALYZING: StageVisual("\U0001f914", "cyan", "Analyzing"),
    Stage.PLANNING: StageVisual("\U0001f4cb", "blue", "Planning"),
    Stage.DECIDING: StageVisual("\U0001f4a1", "magenta", "Deciding"),
    Stage.EXECUTING: StageVisual("\u26a1", "yellow", "Executing"),
    Stage.EVALUATING: StageVisual("\u2713", "green", "Evaluating"),
}
