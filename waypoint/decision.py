"""Confidence-scored decisions: knowledge lookup first, then generative reasoning."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from pydantic import BaseModel
from pydantic_ai import Agent

from .config import DecisionConfig
from .contracts import Decision, DecisionSource, to_decision_value
from .errors import GenerationError

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were",
        "what", "how", "when", "where", "who", "why",
        "should", "could", "would", "will", "can",
        "do", "does", "did", "have", "has", "had",
        "be", "been", "being", "am", "to", "from",
        "in", "on", "at", "by", "for", "with", "about",
        "as", "of", "or", "and", "but", "if", "then",
    }
)  # fmt: skip

CERTAINTY_WORDS = ("definitely", "clearly", "certain", "confident", "sure")
HEDGING_WORDS = ("maybe", "perhaps", "might", "possibly", "unsure", "unclear")
MISSING_CONTEXT_WORDS = ("missing", "insufficient", "need more")

# checked in order; first hit wins
TEXT_CONFIDENCE_RULES: Tuple[Tuple[Tuple[str, ...], float], ...] = (
    (("definitely", "clearly"), 0.7),
    (("probably", "likely"), 0.6),
    (("maybe", "perhaps"), 0.4),
    (("unsure", "unclear"), 0.3),
)

SYSTEM_PROMPT = (
    "You are an autonomous decision-making assistant. "
    "Provide clear decisions with confidence assessments."
)


def _contains_any(text: str, words: Tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(w)}\b", text) for w in words)


def extract_keywords(question: str) -> List[str]:
    return [
        word
        for word in re.split(r"\W+", question.lower())
        if len(word) > 2 and word not in STOP_WORDS
    ]


def match_score(content: str, keywords: List[str]) -> float:
    """Fraction of ``keywords`` present in ``content``."""
    if not keywords:
        return 0.0
    lower = content.lower()
    return sum(1 for k in keywords if k in lower) / len(keywords)


class KnowledgeMatch(BaseModel):
    answer: str
    source: str
    score: float


class KnowledgeBase:
    """Fixed corpus of markdown documents keyed by name.

    Use :meth:`from_directory` to load ``*.md`` files from disk, or pass a
    mapping of name to content directly.
    """

    def __init__(
        self, documents: Optional[Mapping[str, str]] = None, threshold: float = 0.5
    ) -> None:
        self.documents: Dict[str, str] = dict(documents or {})
        self.threshold = threshold

    @classmethod
    def from_directory(cls, path: str | Path, threshold: float = 0.5) -> "KnowledgeBase":
        root = Path(path)
        if not root.is_dir():
            logger.debug(f"Knowledge directory {root} not found; corpus is empty")
            return cls(threshold=threshold)
        documents = {
            p.name: p.read_text(encoding="utf-8") for p in sorted(root.glob("*.md"))
        }
        logger.info(f"Loaded {len(documents)} knowledge documents from {root}")
        return cls(documents, threshold=threshold)

    def lookup(self, question: str) -> Optional[KnowledgeMatch]:
        keywords = extract_keywords(question)
        for name, content in self.documents.items():
            score = match_score(content, keywords)
            if score > self.threshold:
                return KnowledgeMatch(answer=content.strip(), source=name, score=score)
        return None


class Generation(BaseModel):
    """Raw text produced by a generative backend."""

    text: str


class GenerativeBackend(Protocol):
    """Anything that can turn a prompt into text."""

    async def generate(self, prompt: str, temperature: float) -> Generation:
        ...


class PydanticAIBackend:
    """Generative backend driven by a ``pydantic_ai.Agent``."""

    def __init__(self, agent: Agent | str) -> None:
        if isinstance(agent, str):
            agent = Agent(agent, system_prompt=SYSTEM_PROMPT)
        self.agent = agent

    async def generate(self, prompt: str, temperature: float) -> Generation:
        try:
            result = await self.agent.run(
                prompt, model_settings={"temperature": temperature}
            )
        except Exception as e:
            raise GenerationError(f"Generative backend failed: {e}", cause=e)
        output = result.output
        return Generation(text=output if isinstance(output, str) else str(output))


def build_prompt(question: str, context: Mapping[str, Any]) -> str:
    context_str = "\n".join(
        f"{key}: {json.dumps(value, default=str)}" for key, value in context.items()
    )
    return (
        f"Question: {question}\n\n"
        f"Context:\n{context_str}\n\n"
        "Please provide a decision for this question. In your response, include:\n"
        "1. Your decision/answer\n"
        "2. Your confidence level (0.0-1.0)\n"
        "3. Your reasoning\n\n"
        "Format your response as JSON:\n"
        "{\n"
        '  "decision": "your decision here",\n'
        '  "confidence": 0.8,\n'
        '  "reasoning": "your reasoning here"\n'
        "}"
    )


class DecisionEngine:
    """Produce a :class:`Decision` with a calibrated confidence.

    Knowledge documents answer with ``knowledge_confidence``. Otherwise the
    generative backend is asked and its self-reported confidence is
    recalibrated from the wording into ``[min_confidence, max_confidence]``.
    """

    def __init__(
        self,
        backend: Optional[GenerativeBackend] = None,
        knowledge: Optional[KnowledgeBase] = None,
        config: Optional[DecisionConfig] = None,
    ) -> None:
        self.config = config or DecisionConfig()
        self.backend = backend
        self.knowledge = knowledge or KnowledgeBase(
            threshold=self.config.knowledge_match_threshold
        )

    @property
    def threshold(self) -> float:
        return self.config.escalation_threshold

    def requires_escalation(self, decision: Decision) -> bool:
        return decision.confidence < self.config.escalation_threshold

    async def attempt_decision(
        self, question: str, context: Optional[Dict[str, Any]] = None
    ) -> Decision:
        """Decide ``question``.

        Raises:
            GenerationError: If the generative backend fails.
        """
        context = dict(context or {})

        match = self.knowledge.lookup(question)
        if match is not None:
            decision = Decision(
                question=question,
                decision=to_decision_value(match.answer),
                confidence=self.config.knowledge_confidence,
                reasoning=f"Found explicit answer in knowledge document: {match.source}",
                source=DecisionSource.KNOWLEDGE_BASE,
                context=context,
            )
            self._log(decision)
            return decision

        if self.backend is None:
            decision = self._unresolved(question, context, "No generative backend configured")
            self._log(decision)
            return decision

        try:
            generation = await self.backend.generate(
                build_prompt(question, context), self.config.temperature
            )
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(
                f"Generative backend failed: {e}",
                context={"question": question},
                cause=e,
            )

        if not generation.text or not generation.text.strip():
            decision = self._unresolved(question, context, "Generative backend returned no output")
        else:
            value, confidence, reasoning = self.parse_generation(generation.text)
            decision = Decision(
                question=question,
                decision=to_decision_value(value),
                confidence=confidence,
                reasoning=reasoning,
                source=DecisionSource.GENERATIVE_REASONING,
                context=context,
            )

        if self.requires_escalation(decision):
            decision = decision.model_copy(
                update={
                    "reasoning": f"{decision.reasoning} [ESCALATION REQUIRED: confidence "
                    f"{decision.confidence:.2f} < threshold {self.threshold}]"
                }
            )
        self._log(decision)
        return decision

    def parse_generation(self, text: str) -> Tuple[Any, float, str]:
        """Return ``(value, confidence, reasoning)`` from backend text."""
        found = re.search(r"\{[\s\S]*\}", text)
        if found:
            try:
                parsed = json.loads(found.group(0))
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                raw = parsed.get("confidence")
                try:
                    raw_confidence = float(raw) if raw is not None else 0.5
                except (TypeError, ValueError):
                    raw_confidence = 0.5
                raw_confidence = max(0.0, min(1.0, raw_confidence))
                value = parsed.get("decision")
                reasoning = parsed.get("reasoning") or "No reasoning provided"
                return value, self.recalibrate(raw_confidence, value, reasoning), reasoning

        return (
            text.strip(),
            self.confidence_from_text(text),
            "Unable to parse structured response, using text analysis",
        )

    def recalibrate(self, raw_confidence: float, value: Any, reasoning: str) -> float:
        text = f"{value} {reasoning}".lower()
        adjustment = 0.0
        if _contains_any(text, CERTAINTY_WORDS):
            adjustment += self.config.certainty_bonus
        if _contains_any(text, HEDGING_WORDS):
            adjustment -= self.config.hedging_penalty
        if _contains_any(text, MISSING_CONTEXT_WORDS):
            adjustment -= self.config.missing_context_penalty
        return self._clamp(raw_confidence + adjustment)

    def confidence_from_text(self, text: str) -> float:
        lower = text.lower()
        confidence = 0.5
        for words, score in TEXT_CONFIDENCE_RULES:
            if _contains_any(lower, words):
                confidence = score
                break
        return self._clamp(confidence)

    def _clamp(self, confidence: float) -> float:
        return round(
            max(self.config.min_confidence, min(self.config.max_confidence, confidence)),
            4,
        )

    @staticmethod
    def _unresolved(question: str, context: Dict[str, Any], reason: str) -> Decision:
        return Decision(
            question=question,
            decision=None,
            confidence=0.0,
            reasoning=reason,
            source=DecisionSource.UNRESOLVED,
            context=context,
        )

    def _log(self, decision: Decision) -> None:
        logger.info(
            f"Decision ({decision.source.value}) confidence={decision.confidence:.2f} "
            f"escalate={self.requires_escalation(decision)} question={decision.question!r}"
        )
