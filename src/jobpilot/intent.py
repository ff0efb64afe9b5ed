"""Intent classification: size the iteration budget from the request text.

Each intent owns a few weighted regex families. Every match adds the
family weight to that intent's score; the best score wins, ties go to the
earlier intent in ``PRIORITY``, and text that matches nothing is treated
as a build request.
"""

import re
from enum import Enum


class Intent(Enum):
    """What the user is asking the agent to do."""

    BUILD = "build"
    FIX = "fix"
    DIAGNOSTIC = "diagnostic"
    CASUAL = "casual"


PRIORITY: tuple[Intent, ...] = (Intent.BUILD, Intent.FIX, Intent.DIAGNOSTIC, Intent.CASUAL)


def _family(pattern: str, weight: int) -> tuple[re.Pattern, int]:
    return re.compile(pattern, re.IGNORECASE), weight


PATTERNS: dict[Intent, list[tuple[re.Pattern, int]]] = {
    Intent.BUILD: [
        _family(r"\b(build|create|make|scaffold|generate|bootstrap|set ?up)\b", 3),
        _family(r"\b(add|implement|develop|write|introduce|new)\b", 2),
        _family(
            r"\b(app|application|website|site|page|component|feature|api|endpoint|"
            r"service|dashboard|module|cli|form)s?\b",
            1,
        ),
    ],
    Intent.FIX: [
        _family(r"\b(fix|fixes|fixed|fixing|repair|resolve|patch|correct)\b", 3),
        _family(
            r"\b(bug|bugs|issue|issues|error|errors|broken|crash|crashes|crashing|"
            r"fails?|failing|failure|exception|regression|wrong)\b",
            2,
        ),
        _family(r"\b(not working|doesn'?t work|does not work|isn'?t working|stopped working)\b", 2),
    ],
    Intent.DIAGNOSTIC: [
        _family(
            r"\b(diagnose|diagnostic|debug|investigate|troubleshoot|inspect|analy[sz]e|audit|"
            r"profile)\b",
            3,
        ),
        _family(r"\b(why|what'?s wrong|what is wrong|check|status|health|logs?)\b", 2),
        _family(r"\b(slow|performance|memory leak|latency|timeout)\b", 1),
    ],
    Intent.CASUAL: [
        _family(
            r"^\s*(hi|hey|hello|yo|sup|howdy|greetings|good (morning|afternoon|evening))\b", 3
        ),
        _family(r"\b(thanks|thank you|thx|cheers)\b", 3),
        _family(r"\b(how are you|what'?s up|who are you|nice|cool|awesome|lol)\b", 2),
        _family(r"^\s*(yes|no|ok|okay|sure|yep|yeah|nope|nah)\s*[.!?]*\s*$", 2),
    ],
}


def score(text: str) -> dict[Intent, int]:
    """Weighted match count per intent."""
    scores = {intent: 0 for intent in PRIORITY}
    if not text:
        return scores
    for intent, families in PATTERNS.items():
        for pattern, weight in families:
            scores[intent] += weight * len(pattern.findall(text))
    return scores


def classify(text: str) -> Intent:
    """Map a request to an intent. Unmatched text is a build request."""
    scores = score(text)
    best = max(scores.values())
    if best == 0:
        return Intent.BUILD
    for intent in PRIORITY:
        if scores[intent] == best:
            return intent
    return Intent.BUILD


def iteration_budget(intent: Intent, iterations) -> int:
    """Look up the loop budget for ``intent`` in an ``IterationConfig``."""
    return int(getattr(iterations, intent.value))


_SIMPLE_PATTERNS = [
    re.compile(r"^(hi|hey|hello|yo|sup|howdy|greetings)[\s!.]*$"),
    re.compile(r"^(thanks?|thank you|thx|ty)[\s!.]*$"),
    re.compile(r"^(yes|no|ok|okay|nope|yep|yeah|nah)[\s!.]*$"),
    re.compile(r"^(who are you|what (are|can) you( do)?|what do you do)[\s?!.]*$"),
]
_ACTION_WORDS = re.compile(
    r"\b(fix|check|diagnose|update|deploy|commit|push|build|create|add|make|write|run|test)\b"
)


def is_simple_message(text: str) -> bool:
    """True for chit-chat that should be answered without starting a job."""
    trimmed = text.strip().lower()
    if any(p.match(trimmed) for p in _SIMPLE_PATTERNS):
        return True
    return len(trimmed) < 15 and not _ACTION_WORDS.search(trimmed)
