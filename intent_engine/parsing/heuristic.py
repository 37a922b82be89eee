"""
Heuristic Parser — deterministic keyword/regex intent classifier.

No network, no model. Always available as the degraded path when the
language model times out, returns garbage, or its circuit is open.

Scoring: each keyword set that matches scores +1, each regex pattern +2,
and a static boost (x0.5) breaks ties between overlapping vocabularies,
e.g. ownership phrases beat generic "assign"/"move" phrasing.
Confidence is score/10, capped at the configured ceiling so a heuristic
result never outranks a language-model result.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

from intent_engine.models.entities import EntityType
from intent_engine.models.intent import (
    TARGETLESS_INTENTS,
    ContextEntities,
    EntityDescriptor,
    IntentLabel,
    ParsedIntent,
    ParseSource,
)

_INTENT_RULES: dict = {}

MIN_SCORE = 1.5
MAX_SCORE = 10.0


def _kw(*words: str) -> re.Pattern:
    """Build a regex that matches if ALL words appear (in any order)."""
    parts = [rf"(?=.*\b{re.escape(w)}\b)" for w in words]
    return re.compile("".join(parts), re.IGNORECASE)


def _any_kw(*words: str) -> re.Pattern:
    """Build a regex that matches if ANY word appears."""
    escaped = [re.escape(w) for w in words]
    return re.compile(r"\b(?:" + "|".join(escaped) + r")\b", re.IGNORECASE)


def _build_rules() -> dict:
    """Build classification rules for each intent label."""
    rules = {}

    # --- ownership ---
    rules[IntentLabel.TAKE_OWNERSHIP] = {
        "keywords": [
            _kw("take", "ownership"),
            _kw("assign", "me"),
            _any_kw("claim", "grab"),
            _kw("pick", "up"),
        ],
        "patterns": [
            re.compile(r"\btake\s+ownership\s+of\b", re.I),
            re.compile(r"\bassign\s+(?:.+?\s+)?to\s+me\b", re.I),
            re.compile(r"\b(?:i'?ll|i\s+will|let\s+me)\s+(?:take|handle|own)\b", re.I),
            re.compile(r"\b(?:claim|grab|pick\s+up)\b", re.I),
        ],
        "boost": 2,
    }

    rules[IntentLabel.RELEASE_OWNERSHIP] = {
        "keywords": [
            _any_kw("unassign", "release"),
            _kw("remove", "me"),
            _kw("give", "up"),
        ],
        "patterns": [
            re.compile(r"\b(?:unassign|release)\b", re.I),
            re.compile(r"\bdrop\s+ownership\b", re.I),
            re.compile(r"\bremove\s+me\s+(?:from|as)\b", re.I),
        ],
        "boost": 2,
    }

    # --- status transitions ---
    rules[IntentLabel.START_WORK] = {
        "keywords": [
            _any_kw("start", "begin"),
            _kw("working", "on"),
        ],
        "patterns": [
            re.compile(r"\b(?:start|begin)\s+(?:working\s+on\s+)?", re.I),
            re.compile(r"\bi'?m\s+(?:now\s+)?working\s+on\b", re.I),
        ],
        "boost": 1,
    }

    rules[IntentLabel.COMPLETE_TASK] = {
        "keywords": [
            _any_kw("complete", "completed", "finish", "finished"),
            _kw("done"),
        ],
        "patterns": [
            re.compile(r"\bmark\s+.+?\s+(?:as\s+)?(?:complete|completed|done|finished)\b", re.I),
            re.compile(r"\b(?:complete|finish)\s+(?:the\s+)?\w", re.I),
            re.compile(r"\bi(?:'ve|\s+have)?\s+finished\b", re.I),
        ],
        "boost": 1,
    }

    rules[IntentLabel.UPDATE_STATUS] = {
        "keywords": [
            _kw("status"),
            _kw("move", "to"),
        ],
        "patterns": [
            re.compile(
                r"\b(?:move|set|change|mark|put)\s+.+?\s+(?:to|as|in|into)\s+"
                r"(?:ready|in\s*progress|in\s*review|review|done|todo|to\s*do)\b",
                re.I,
            ),
        ],
        "boost": 0,
    }

    rules[IntentLabel.ASSIGN_TASK] = {
        "keywords": [
            _any_kw("assign", "reassign"),
        ],
        "patterns": [
            re.compile(r"\b(?:re)?assign\s+.+?\s+to\s+@?\w+", re.I),
            re.compile(r"\bhand\s+.+?\s+(?:over\s+)?to\s+@?\w+", re.I),
        ],
        "boost": 0,
    }

    # --- creation ---
    rules[IntentLabel.CREATE_ITEM] = {
        "keywords": [
            _any_kw("create", "add", "new"),
        ],
        "patterns": [
            re.compile(
                r"\b(?:create|add|make|open)\s+(?:a\s+)?(?:new\s+)?"
                r"(?:story|task|bug|item|ticket|subtask)\b",
                re.I,
            ),
        ],
        "boost": 0,
    }

    rules[IntentLabel.CREATE_SPRINT] = {
        "keywords": [
            _kw("create", "sprint"),
            _kw("new", "sprint"),
            _kw("plan", "sprint"),
        ],
        "patterns": [
            re.compile(
                r"\b(?:create|add|make|plan|start)\s+(?:a\s+)?(?:new\s+)?sprint\b"
                r"(?!\s+(?:report|summary))",
                re.I,
            ),
        ],
        "boost": 2,
    }

    # --- sprint lifecycle ---
    rules[IntentLabel.CLOSE_SPRINT] = {
        "keywords": [
            _kw("close", "sprint"),
            _kw("end", "sprint"),
            _kw("complete", "sprint"),
            _kw("finish", "sprint"),
        ],
        "patterns": [
            re.compile(
                r"\b(?:close|end|complete|finish|wrap\s+up)\s+"
                r"(?:the\s+|this\s+|current\s+|our\s+)*sprint\b",
                re.I,
            ),
        ],
        "boost": 3,
    }

    rules[IntentLabel.MOVE_TO_SPRINT] = {
        "keywords": [
            _kw("move", "sprint"),
            _kw("add", "sprint"),
        ],
        "patterns": [
            re.compile(
                r"\b(?:move|add|put|pull)\s+.+?\s+(?:in)?to\s+(?:the\s+)?"
                r"(?:next\s+|current\s+|this\s+)?sprint\b",
                re.I,
            ),
        ],
        "boost": 1,
    }

    # --- edits ---
    rules[IntentLabel.UPDATE_PRIORITY] = {
        "keywords": [
            _any_kw("priority", "prioritize", "prioritise", "deprioritize"),
        ],
        "patterns": [
            re.compile(r"\b(?:set|change|raise|lower|bump|make)\s+(?:the\s+)?priority\b", re.I),
            re.compile(r"\bpriority\s+(?:of\s+.+?\s+)?(?:to\s+)?(?:p)?[1-5]\b", re.I),
            re.compile(r"\b(?:de)?prioriti[sz]e\b", re.I),
        ],
        "boost": 1,
    }

    rules[IntentLabel.ADD_COMMENT] = {
        "keywords": [
            _any_kw("comment", "note"),
        ],
        "patterns": [
            re.compile(r"\b(?:add|leave|post)\s+(?:a\s+)?(?:comment|note)\b", re.I),
            re.compile(r"\bcomment\s+on\b", re.I),
        ],
        "boost": 1,
    }

    rules[IntentLabel.ARCHIVE] = {
        "keywords": [
            _any_kw("archive", "delete", "remove"),
        ],
        "patterns": [
            re.compile(r"\b(?:archive|delete|remove)\s+(?:the\s+|this\s+)?\w", re.I),
        ],
        "boost": 1,
    }

    # --- read-only ---
    rules[IntentLabel.QUERY_STATUS] = {
        "keywords": [
            _kw("status", "of"),
            _kw("what", "status"),
            _kw("how", "going"),
        ],
        "patterns": [
            re.compile(r"\bwhat(?:'s|\s+is)\s+the\s+status\b", re.I),
            re.compile(r"\bstatus\s+of\b", re.I),
            re.compile(r"\bhow\s+is\s+.+?\s+going\b", re.I),
            re.compile(r"\bwhere\s+are\s+we\s+(?:on|with)\b", re.I),
        ],
        "boost": 1,
    }

    rules[IntentLabel.SEARCH_ITEMS] = {
        "keywords": [
            _any_kw("find", "search", "list"),
            _kw("show", "me"),
        ],
        "patterns": [
            re.compile(r"\b(?:find|search\s+for|look\s+for|list)\b", re.I),
            re.compile(r"\bshow\s+me\s+(?:all\s+)?(?:the\s+)?\w", re.I),
        ],
        "boost": 0,
    }

    rules[IntentLabel.GENERATE_REPORT] = {
        "keywords": [
            _any_kw("report", "summary", "burndown", "velocity"),
        ],
        "patterns": [
            re.compile(
                r"\b(?:generate|create|give\s+me|show|build)\s+(?:a\s+|the\s+|me\s+)?"
                r"(?:\w+\s+)?(?:report|summary)\b",
                re.I,
            ),
            re.compile(r"\b(?:burndown|velocity)\b", re.I),
        ],
        "boost": 3,
    }

    return rules


def _get_rules() -> dict:
    """Lazy-load rules on first use."""
    global _INTENT_RULES
    if not _INTENT_RULES:
        _INTENT_RULES = _build_rules()
    return _INTENT_RULES


def score_intents(text: str) -> List[Tuple[IntentLabel, float]]:
    """All matching intents with their scores, best first. Ties keep rule order."""
    scores: List[Tuple[IntentLabel, float]] = []
    for label, rule in _get_rules().items():
        base_score = 0.0
        for kw_pattern in rule["keywords"]:
            if kw_pattern.search(text):
                base_score += 1.0
        for pattern in rule["patterns"]:
            if pattern.search(text):
                base_score += 2.0
        if base_score > 0:
            scores.append((label, base_score + rule["boost"] * 0.5))
    scores.sort(key=lambda x: x[1], reverse=True)
    return scores


# --- Descriptor and parameter extraction ---

_ENTITY_NOUNS = {
    "story": EntityType.STORY,
    "stories": EntityType.STORY,
    "task": EntityType.TASK,
    "tasks": EntityType.TASK,
    "bug": EntityType.TASK,
    "ticket": EntityType.TASK,
    "subtask": EntityType.TASK,
    "sprint": EntityType.SPRINT,
    "project": EntityType.PROJECT,
}

_TYPE_NOUN = re.compile(
    r"\b(story|stories|tasks?|sprint|project|ticket|subtask)\b", re.I
)
_BUG_NOUN = re.compile(r"\bbugs?\b", re.I)

_ACTION_PHRASES = re.compile(
    r"\b(?:take\s+ownership\s+of|drop\s+ownership\s+of|ownership|"
    r"(?:re|un)?assign(?:ed)?|claim|grab|pick\s+up|release|hand\s+over|"
    r"start(?:ed)?|begin|working\s+on|work\s+on|mark(?:ed)?|complete(?:d)?|"
    r"finish(?:ed)?|wrap\s+up|done|move|set|change|put|pull|close|end|archive|delete|remove|"
    r"create|add|make|open|new|plan|comment|note|leave|post|priority|"
    r"(?:de)?prioriti[sz]e|raise|lower|bump|find|search\s+for|look\s+for|"
    r"list|show|status|what'?s|what|where|how|is|are|going|report|summary|"
    r"generate|give|in\s*progress|in\s*review|review|ready|todo|to\s*do|"
    r"next|current|backlog)\b",
    re.I,
)

_FILLER = re.compile(
    r"\b(?:please|can|could|would|you|i'?ll|i'?m|i'?ve|i|me|my|we|our|let|to|"
    r"the|a|an|of|on|for|as|this|that|it|with|from|into|in|be|now|up|and|"
    r"will|have|all|about|p[1-5]|[1-5])\b",
    re.I,
)

_QUOTED = re.compile(r"(?:^|(?<=\s))[\"“']([^\"”']{1,200})[\"”'](?=$|[\s.,!?])")
_MENTION = re.compile(r"@(\w[\w.-]*)")
_KEY_VALUE = re.compile(r"\b(\w+)=(\"[^\"]*\"|\S+)")
_ITEM_KEY = re.compile(r"\b[A-Z][A-Z0-9]+-\d+\b")

_STATUS_WORDS = [
    (re.compile(r"\bin\s*review\b|\breview\b", re.I), "InReview"),
    (re.compile(r"\bin\s*progress\b|\bstarted\b", re.I), "InProgress"),
    (re.compile(r"\bdone\b|\bcomplete(?:d)?\b|\bfinished\b", re.I), "Done"),
    (re.compile(r"\bready\b|\bto\s*do\b|\btodo\b", re.I), "Ready"),
]

_PRIORITY_WORDS = {
    "critical": 1,
    "highest": 1,
    "urgent": 1,
    "high": 2,
    "medium": 3,
    "normal": 3,
    "low": 4,
    "lowest": 5,
}


def _infer_entity_type(text: str) -> Optional[EntityType]:
    match = _TYPE_NOUN.search(text)
    if match:
        return _ENTITY_NOUNS[match.group(1).lower()]
    if _BUG_NOUN.search(text):
        return EntityType.TASK
    return None


def _extract_status(text: str, intent: IntentLabel) -> Optional[str]:
    if intent == IntentLabel.COMPLETE_TASK:
        return "Done"
    if intent == IntentLabel.START_WORK:
        return "InProgress"
    target = re.search(r"\b(?:to|as|in|into)\s+(.+)$", text, re.I)
    scope = target.group(1) if target else text
    for pattern, status in _STATUS_WORDS:
        if pattern.search(scope):
            return status
    return None


def _extract_priority(text: str) -> Optional[int]:
    numeric = re.search(r"\bpriority\s+(?:of\s+.+?\s+)?(?:to\s+)?p?([1-5])\b", text, re.I)
    if numeric is None:
        numeric = re.search(r"\bp([1-5])\b", text, re.I)
    if numeric:
        return int(numeric.group(1))
    for word, value in _PRIORITY_WORDS.items():
        if re.search(rf"\b{word}\b", text, re.I):
            return value
    return None


def _extract_title(text: str, intent: IntentLabel) -> Optional[str]:
    quoted = _QUOTED.search(text)
    if quoted:
        return quoted.group(1).strip()
    if intent == IntentLabel.CREATE_SPRINT:
        named = re.search(r"\bsprint\s+(?:called|named|titled)\s+(.+)$", text, re.I)
        return named.group(1).strip() if named else None
    named = re.search(
        r"\b(?:story|task|bug|item|ticket|subtask)\s+(?:called|named|titled|to|for)\s+(.+)$",
        text,
        re.I,
    )
    if named:
        return named.group(1).strip()
    trailing = re.search(
        r"\b(?:create|add|make|open)\s+(?:a\s+)?(?:new\s+)?"
        r"(?:story|task|bug|item|ticket|subtask)\s*:?\s+(.+)$",
        text,
        re.I,
    )
    return trailing.group(1).strip() if trailing else None


def _extract_comment(text: str) -> Optional[str]:
    quoted = _QUOTED.search(text)
    if quoted:
        return quoted.group(1).strip()
    after_colon = re.search(r"(?:comment|note)[^:]*:\s*(.+)$", text, re.I)
    if after_colon:
        return after_colon.group(1).strip()
    saying = re.search(r"\b(?:saying|that says)\s+(.+)$", text, re.I)
    return saying.group(1).strip() if saying else None


def _extract_parameters(text: str, intent: IntentLabel) -> Dict[str, Any]:
    params: Dict[str, Any] = {}

    if intent in (
        IntentLabel.UPDATE_STATUS,
        IntentLabel.COMPLETE_TASK,
        IntentLabel.START_WORK,
    ):
        status = _extract_status(text, intent)
        if status:
            params["new_status"] = status

    if intent in (IntentLabel.UPDATE_PRIORITY, IntentLabel.CREATE_ITEM):
        priority = _extract_priority(text)
        if priority is not None:
            params["priority"] = priority

    if intent in (IntentLabel.CREATE_ITEM, IntentLabel.CREATE_SPRINT):
        title = _extract_title(text, intent)
        if title:
            params["title"] = title
        if intent == IntentLabel.CREATE_ITEM:
            item_type = _infer_entity_type(text) or EntityType.TASK
            params["item_type"] = item_type.value

    if intent == IntentLabel.ADD_COMMENT:
        comment = _extract_comment(text)
        if comment:
            params["comment"] = comment

    if intent == IntentLabel.ASSIGN_TASK:
        mention = _MENTION.search(text)
        target = re.search(r"\bto\s+@?(\w[\w.-]*)\s*$", text, re.I)
        if mention:
            params["assignee"] = mention.group(1)
        elif target:
            params["assignee"] = target.group(1)

    for key, value in _KEY_VALUE.findall(text):
        params.setdefault(key, value.strip('"'))

    return params


def _strip_to_descriptor(text: str) -> str:
    """Remove verbs, filler and type nouns; what remains names the work item."""
    residue = _QUOTED.sub(" ", text)
    residue = _KEY_VALUE.sub(" ", residue)
    residue = _MENTION.sub(" ", residue)
    residue = _ACTION_PHRASES.sub(" ", residue)
    residue = _TYPE_NOUN.sub(" ", residue)
    residue = _FILLER.sub(" ", residue)
    residue = re.sub(r"[^\w\s-]", " ", residue)
    return " ".join(residue.split())


def extract_descriptors(
    text: str, intent: IntentLabel, parameters: Dict[str, Any]
) -> List[EntityDescriptor]:
    if intent in TARGETLESS_INTENTS or intent == IntentLabel.UNKNOWN:
        return []

    working = text
    if intent == IntentLabel.ASSIGN_TASK and parameters.get("assignee"):
        working = re.sub(
            rf"\bto\s+@?{re.escape(parameters['assignee'])}\b", " ", working, flags=re.I
        )
    if intent == IntentLabel.ADD_COMMENT and parameters.get("comment"):
        working = working.replace(parameters["comment"], " ")
        working = re.sub(r"\b(?:saying|that says)\b|:", " ", working, flags=re.I)
    if intent == IntentLabel.MOVE_TO_SPRINT:
        # The destination sprint is a parameter, not the target
        working = re.split(r"\b(?:in)?to\s+(?:the\s+)?(?:\w+\s+)?sprint\b", working, flags=re.I)[0]

    entity_type = _infer_entity_type(working)
    if intent == IntentLabel.CLOSE_SPRINT:
        entity_type = EntityType.SPRINT

    descriptors = [
        EntityDescriptor(text=key, entity_type=entity_type)
        for key in _ITEM_KEY.findall(working)
    ]
    residue = _strip_to_descriptor(_ITEM_KEY.sub(" ", working))
    if residue:
        descriptors.append(EntityDescriptor(text=residue, entity_type=entity_type))
    elif not descriptors and entity_type is not None:
        descriptors.append(
            EntityDescriptor(text=f"current {entity_type.value}", entity_type=entity_type)
        )
    return descriptors


class HeuristicParser:
    """
    Deterministic fallback. Same input always yields the same ParsedIntent.
    Cannot fail: unrecognizable input comes back as IntentLabel.UNKNOWN.
    """

    def __init__(self, confidence_ceiling: float = 0.5):
        self.confidence_ceiling = confidence_ceiling

    def parse(
        self, utterance: str, context: Optional[ContextEntities] = None
    ) -> ParsedIntent:
        text = (utterance or "").strip()
        if not text:
            return self._unknown()

        scores = score_intents(text)
        if not scores or scores[0][1] < MIN_SCORE:
            return self._unknown()

        best_label, best_score = scores[0]
        confidence = min(best_score / MAX_SCORE, 1.0)
        if len(scores) >= 2 and best_score - scores[1][1] >= 2.0:
            confidence = min(confidence + 0.1, 1.0)
        confidence = min(confidence, self.confidence_ceiling)

        parameters = _extract_parameters(text, best_label)
        descriptors = extract_descriptors(text, best_label, parameters)
        if best_label == IntentLabel.MOVE_TO_SPRINT and context and context.sprint_id:
            parameters.setdefault("sprint_id", context.sprint_id)

        return ParsedIntent(
            intent=best_label,
            confidence=round(confidence, 2),
            descriptors=descriptors,
            parameters=parameters,
            source=ParseSource.HEURISTIC,
        )

    def _unknown(self) -> ParsedIntent:
        return ParsedIntent(
            intent=IntentLabel.UNKNOWN,
            confidence=0.0,
            descriptors=[],
            parameters={},
            source=ParseSource.HEURISTIC,
        )
