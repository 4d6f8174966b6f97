"""
Task complexity scoring.

Scores a prompt 0-100 from lexical and structural signals and buckets it
into simple/medium/complex:

- Prompt length (0-20)
- Context size (0-15)
- Lexical diversity (0-15)
- Average word length (0-10)
- Special content: numbers, code-like text, symbols (0-15)
- Task intent: reasoning, creativity, analysis keywords (0-25)

Score -> level mapping:
- 0-29: simple
- 30-69: medium
- 70-100: complex

Whether a task requires the premium backend is decided by its declared
task type alone, never by the score.
"""

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from .types import BackendKind, ComplexityLevel, ComplexityProfile

SIMPLE_THRESHOLD = 30
COMPLEX_THRESHOLD = 70

DEFAULT_HIGH_QUALITY_TASK_TYPES = frozenset({
    "core-self-reflection",
    "ethical-reasoning",
    "creative-generation",
    # core cognition
    "daily-thought",
    "weekly-reflection",
    "milestone-check",
    "self-reflection",
    "personal-growth",
    "identity-exploration",
    "value-alignment",
    "life-meaning",
    # ethical reasoning
    "ethical-analysis",
    "moral-judgment",
    "value-evaluation",
    "decision-ethics",
    "consequence-analysis",
    "principle-alignment",
    # creative generation
    "creative-work",
    "artistic-expression",
    "story-generation",
    "poem-creation",
    "idea-brainstorm",
    "novel-concept",
})

# Known task labels by category, used for audit and reports
TASK_CATALOG: Dict[str, FrozenSet[str]] = {
    "core-cognition": frozenset({
        "core-self-reflection", "daily-thought", "weekly-reflection",
        "milestone-check", "self-reflection", "personal-growth",
        "identity-exploration", "value-alignment", "life-meaning",
    }),
    "ethical-reasoning": frozenset({
        "ethical-reasoning", "ethical-analysis", "moral-judgment",
        "value-evaluation", "decision-ethics", "consequence-analysis",
        "principle-alignment",
    }),
    "creative-generation": frozenset({
        "creative-generation", "creative-work", "artistic-expression",
        "story-generation", "poem-creation", "idea-brainstorm", "novel-concept",
    }),
    "auxiliary": frozenset({
        "summarization", "formatting", "translation", "data-extraction",
        "list-generation", "template-filling", "categorization", "tagging",
    }),
    "structural": frozenset({
        "json-parsing", "data-validation", "format-conversion",
        "regex-matching", "simple-calculation", "field-extraction",
    }),
}

REASONING_KEYWORDS = (
    "why", "how", "analyze", "explain", "reason", "logic",
    "deduce", "infer", "conclude",
)
CREATIVITY_KEYWORDS = (
    "create", "generate", "imagine", "invent", "design", "story",
    "poem", "idea", "creative", "novel",
)
ANALYSIS_KEYWORDS = (
    "analyze", "analyse", "compare", "contrast", "evaluate", "assess",
    "review", "examine", "study",
)

_CODE_PATTERN = re.compile(r"[{}\[\]<>]|\b(?:function|class|def|import|export)\b")
_SPECIAL_CHARS_PATTERN = re.compile(r"[^\w\s.,!?]")
_NUMBER_PATTERN = re.compile(r"\d")


def _keyword_pattern(keywords: Iterable[str]) -> "re.Pattern":
    # Prefix match so "analyzed" and "explaining" count
    return re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")")


_REASONING_PATTERN = _keyword_pattern(REASONING_KEYWORDS)
_CREATIVITY_PATTERN = _keyword_pattern(CREATIVITY_KEYWORDS)
_ANALYSIS_PATTERN = _keyword_pattern(ANALYSIS_KEYWORDS)


def normalize_task_type(task_type: Optional[str]) -> Optional[str]:
    """Normalize a task label: lowercase, underscores and spaces to hyphens."""
    if task_type is None:
        return None
    normalized = re.sub(r"[\s_]+", "-", task_type.strip().lower())
    return normalized or None


def category_for(task_type: Optional[str]) -> Optional[str]:
    """Return the catalog category of a task label, if it is known."""
    normalized = normalize_task_type(task_type)
    if normalized is None:
        return None
    for category, labels in TASK_CATALOG.items():
        if normalized in labels:
            return category
    return None


@dataclass(frozen=True)
class ComplexityFactors:
    """Raw signals extracted from a prompt."""
    prompt_length: int
    context_size: int
    word_count: int
    unique_words: int
    average_word_length: float
    has_numbers: bool
    has_code: bool
    has_special_chars: bool
    requires_reasoning: bool
    requires_creativity: bool
    requires_analysis: bool

    @property
    def diversity_ratio(self) -> float:
        if self.word_count == 0:
            return 0.0
        return self.unique_words / self.word_count


class ComplexityClassifier:
    """Pure, stateless scorer for generation requests."""

    def __init__(self, high_quality_task_types: Optional[Iterable[str]] = None):
        """Initialize the classifier.

        Args:
            high_quality_task_types: Task labels that always require the
                premium backend. Defaults to the built-in allow-list.
        """
        labels = (
            DEFAULT_HIGH_QUALITY_TASK_TYPES
            if high_quality_task_types is None
            else high_quality_task_types
        )
        self.high_quality_task_types = frozenset(
            normalize_task_type(label) for label in labels if normalize_task_type(label)
        )

    def classify(
        self,
        prompt: str,
        context: Optional[Sequence[str]] = None,
        task_type: Optional[str] = None,
    ) -> ComplexityProfile:
        """Score a request and build its complexity profile.

        Args:
            prompt: Prompt text
            context: Optional prior context strings
            task_type: Optional declared task-type label

        Returns:
            ComplexityProfile for the request
        """
        normalized_type = normalize_task_type(task_type)
        requires_high_quality = normalized_type in self.high_quality_task_types
        category = category_for(normalized_type)

        factors = self.extract_factors(prompt or "", context)
        if factors.word_count == 0:
            return ComplexityProfile(
                score=0,
                level=ComplexityLevel.SIMPLE,
                confidence=0.5,
                recommended_kind=BackendKind.LOCAL_ECONOMY,
                requires_high_quality=requires_high_quality,
                prompt_length=factors.prompt_length,
                task_type=normalized_type,
                category=category,
            )

        score = self.score(factors)
        level = level_for_score(score)

        return ComplexityProfile(
            score=score,
            level=level,
            confidence=self._confidence(factors),
            recommended_kind=self._recommend_kind(level, factors),
            requires_high_quality=requires_high_quality,
            requires_creativity=factors.requires_creativity,
            requires_reasoning=factors.requires_reasoning,
            requires_analysis=factors.requires_analysis,
            has_code=factors.has_code,
            prompt_length=factors.prompt_length,
            task_type=normalized_type,
            category=category,
        )

    def extract_factors(self, prompt: str, context: Optional[Sequence[str]] = None) -> ComplexityFactors:
        """Extract lexical and structural signals from a prompt."""
        words = prompt.lower().split()
        word_count = len(words)
        average_word_length = (
            sum(len(word) for word in words) / word_count if word_count else 0.0
        )
        lowered = prompt.lower()

        return ComplexityFactors(
            prompt_length=len(prompt),
            context_size=len(context) if context else 0,
            word_count=word_count,
            unique_words=len(set(words)),
            average_word_length=average_word_length,
            has_numbers=bool(_NUMBER_PATTERN.search(prompt)),
            has_code=bool(_CODE_PATTERN.search(prompt)),
            has_special_chars=bool(_SPECIAL_CHARS_PATTERN.search(prompt)),
            requires_reasoning=bool(_REASONING_PATTERN.search(lowered)),
            requires_creativity=bool(_CREATIVITY_PATTERN.search(lowered)),
            requires_analysis=bool(_ANALYSIS_PATTERN.search(lowered)),
        )

    @staticmethod
    def score(factors: ComplexityFactors) -> int:
        """Combine factor scores into a 0-100 complexity score."""
        score = 0.0

        score += min(20.0, (factors.prompt_length / 100) * 2)
        score += min(15.0, factors.context_size * 2)

        ratio = factors.diversity_ratio
        score += 15.0 if ratio > 0.5 else ratio * 30

        score += min(10.0, factors.average_word_length)

        special = 0
        if factors.has_numbers:
            special += 3
        if factors.has_code:
            special += 7
        if factors.has_special_chars:
            special += 5
        score += min(15, special)

        intent = 0
        if factors.requires_reasoning:
            intent += 10
        if factors.requires_creativity:
            intent += 10
        if factors.requires_analysis:
            intent += 5
        score += min(25, intent)

        return min(100, int(round(score)))

    @staticmethod
    def _confidence(factors: ComplexityFactors) -> float:
        confidence = 0.5
        if factors.prompt_length > 50:
            confidence += 0.2
        if factors.prompt_length > 200:
            confidence += 0.1
        if factors.diversity_ratio > 0.5:
            confidence += 0.1
        return min(1.0, round(confidence, 2))

    @staticmethod
    def _recommend_kind(level: ComplexityLevel, factors: ComplexityFactors) -> BackendKind:
        if level == ComplexityLevel.SIMPLE:
            return BackendKind.LOCAL_ECONOMY
        if level == ComplexityLevel.MEDIUM:
            # Code generation or long creative prompts are promoted to premium
            if factors.has_code or (factors.requires_creativity and factors.prompt_length > 1000):
                return BackendKind.PREMIUM
            return BackendKind.LOCAL_ZERO_COST
        return BackendKind.PREMIUM

    def analyze_batch(self, prompts: Iterable[str]) -> List[ComplexityProfile]:
        return [self.classify(prompt) for prompt in prompts]

    @staticmethod
    def statistics(profiles: Sequence[ComplexityProfile]) -> Dict[str, object]:
        """Summarize a batch of profiles."""
        if not profiles:
            return {
                "average_score": 0.0,
                "min_score": 0,
                "max_score": 0,
                "simple_count": 0,
                "medium_count": 0,
                "complex_count": 0,
                "recommended_kinds": {},
            }

        scores = [profile.score for profile in profiles]
        recommended: Dict[str, int] = {}
        for profile in profiles:
            key = profile.recommended_kind.value
            recommended[key] = recommended.get(key, 0) + 1

        return {
            "average_score": sum(scores) / len(scores),
            "min_score": min(scores),
            "max_score": max(scores),
            "simple_count": sum(1 for p in profiles if p.level == ComplexityLevel.SIMPLE),
            "medium_count": sum(1 for p in profiles if p.level == ComplexityLevel.MEDIUM),
            "complex_count": sum(1 for p in profiles if p.level == ComplexityLevel.COMPLEX),
            "recommended_kinds": recommended,
        }


def level_for_score(score: int) -> ComplexityLevel:
    """Bucket a 0-100 score."""
    if score < SIMPLE_THRESHOLD:
        return ComplexityLevel.SIMPLE
    if score < COMPLEX_THRESHOLD:
        return ComplexityLevel.MEDIUM
    return ComplexityLevel.COMPLEX
