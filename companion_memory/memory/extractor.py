from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models import FACT_CATEGORIES, SpecialMoment, utc_now_iso
from ..prompts.memory import build_memory_extraction_prompt
from ..services.protocols import CompletionBackend
from .rules import DEFAULT_EXTRACTION_RULES, SENTENCE_SPLIT_RE, ExtractionRules


logger = logging.getLogger("companion_memory")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _normalize_key(text: str) -> str:
    collapsed = re.sub(r"\s+", " ", text.strip().casefold())
    cleaned = re.sub(r"[^\w'\-:\s]", "", collapsed, flags=re.UNICODE)
    return cleaned[:100].strip()


def _strip_json_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
        cleaned = re.sub(r"```$", "", cleaned).strip()
    return cleaned


_VALUE_TRIM = " \t\r\n，,。.!！?？;；:：\"'“”‘’"


@dataclass(slots=True)
class CandidateFact:
    category: str
    key: str
    value: str
    confidence: float
    source: str = "pattern"


@dataclass(slots=True)
class ExtractionDiagnostics:
    backend_name: str
    model_name: str
    latency_ms: int
    llm_attempted: bool
    llm_ok: bool
    json_valid: bool
    pattern_fact_count: int = 0
    llm_fact_count: int = 0
    returned_fact_count: int = 0
    error: str = ""


@dataclass(slots=True)
class ExtractionResult:
    facts: List[CandidateFact] = field(default_factory=list)
    episodes: List[str] = field(default_factory=list)
    # section -> field -> str (single fields) or list of str (list fields)
    profile: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    topics: Dict[str, List[str]] = field(default_factory=dict)
    importance: float = 1.0
    special_moment: Optional[SpecialMoment] = None
    diagnostics: Optional[ExtractionDiagnostics] = None


class LLMPayloadError(ValueError):
    pass


class FactExtractor:
    """Pulls candidate facts, profile fields, topics and importance out of one exchange.

    The pattern tables always run. When a completion backend is configured the
    exchange is also sent to it in JSON mode; its answer is parsed strictly and
    discarded as a whole on any schema violation. Upstream failures never raise.
    """

    def __init__(
        self,
        llm: CompletionBackend | None = None,
        *,
        rules: ExtractionRules = DEFAULT_EXTRACTION_RULES,
        llm_enabled: bool = True,
        default_confidence: float = 0.8,
        candidate_limit: int = 12,
        importance_threshold: float = 4.0,
        timeout_seconds: float = 15.0,
        temperature: float = 0.3,
        max_tokens: int = 500,
    ) -> None:
        self.llm = llm
        self.rules = rules
        self.llm_enabled = bool(llm_enabled) and llm is not None
        self.default_confidence = _clamp(float(default_confidence), 0.0, 1.0)
        self.candidate_limit = max(1, int(candidate_limit))
        self.importance_threshold = float(importance_threshold)
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.temperature = float(temperature)
        self.max_tokens = max(64, int(max_tokens))

    @property
    def backend_name(self) -> str:
        if self.llm is None:
            return "patterns"
        raw = str(getattr(self.llm, "backend_name", "") or "").strip().lower()
        return raw or "llm"

    @property
    def model_name(self) -> str:
        return str(getattr(self.llm, "model", "") or "").strip()

    # deterministic path

    def _clean_value(self, raw: str) -> str:
        value = " ".join(str(raw or "").split()).strip(_VALUE_TRIM)
        return value[: self.rules.max_value_chars].strip()

    def extract_profile(self, message: str) -> tuple[Dict[str, Dict[str, Any]], List[CandidateFact]]:
        profile: Dict[str, Dict[str, Any]] = {}
        singles: Dict[str, CandidateFact] = {}
        multis: Dict[tuple[str, str], CandidateFact] = {}

        for rule in self.rules.profile_rules:
            for match in rule.pattern.finditer(message):
                value = self._clean_value(match.group(rule.group))
                if not value:
                    continue
                section = profile.setdefault(rule.section, {})
                if rule.multi:
                    values = section.setdefault(rule.field, [])
                    if value.casefold() in {v.casefold() for v in values}:
                        continue
                    values.append(value)
                    key = f"{rule.field}:{_normalize_key(value)}"
                    multis[(rule.category, key)] = CandidateFact(
                        category=rule.category,
                        key=key,
                        value=value,
                        confidence=self.default_confidence,
                    )
                else:
                    section[rule.field] = value
                    singles[rule.field] = CandidateFact(
                        category=rule.category,
                        key=rule.field,
                        value=value,
                        confidence=self.default_confidence,
                    )
        return profile, [*singles.values(), *multis.values()]

    def classify_topics(self, message: str) -> Dict[str, List[str]]:
        topics: Dict[str, List[str]] = {}
        for raw_sentence in SENTENCE_SPLIT_RE.split(message):
            sentence = raw_sentence.strip()
            if len(sentence) <= self.rules.min_topic_sentence_chars:
                continue
            lowered = sentence.casefold()
            for bucket, keywords in self.rules.topic_keywords.items():
                if any(keyword.casefold() in lowered for keyword in keywords):
                    items = topics.setdefault(bucket, [])
                    if sentence not in items:
                        items.append(sentence)
        return topics

    def score_importance(self, message: str) -> float:
        rules = self.rules.importance
        lowered = message.casefold()
        score = rules.base
        score += rules.high_weight * sum(1 for w in rules.high if w.casefold() in lowered)
        score += rules.medium_weight * sum(1 for w in rules.medium if w.casefold() in lowered)
        score += rules.low_weight * sum(1 for w in rules.low if w.casefold() in lowered)
        score += rules.milestone_weight * sum(1 for w in rules.milestones if w.casefold() in lowered)
        return _clamp(score, rules.floor, rules.ceiling)

    # LLM path

    def _parse_llm_payload(self, raw: str) -> tuple[List[CandidateFact], List[str]]:
        try:
            payload = json.loads(_strip_json_fences(raw or ""))
        except json.JSONDecodeError as exc:
            raise LLMPayloadError(f"invalid JSON: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise LLMPayloadError("payload is not an object")

        long_term = payload.get("longTerm", [])
        episodic = payload.get("episodic", [])
        if not isinstance(long_term, list):
            raise LLMPayloadError("longTerm must be a list")
        if not isinstance(episodic, list):
            raise LLMPayloadError("episodic must be a list")

        facts: List[CandidateFact] = []
        for index, item in enumerate(long_term):
            if not isinstance(item, dict):
                raise LLMPayloadError(f"longTerm[{index}] is not an object")
            category = item.get("category")
            if not isinstance(category, str) or category.strip().lower() not in FACT_CATEGORIES:
                raise LLMPayloadError(f"longTerm[{index}].category is invalid")
            value = item.get("value")
            if not isinstance(value, str) or not value.strip():
                raise LLMPayloadError(f"longTerm[{index}].value is invalid")
            key = item.get("key", "")
            if key is not None and not isinstance(key, str):
                raise LLMPayloadError(f"longTerm[{index}].key is invalid")
            confidence = item.get("confidence", self.default_confidence)
            if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
                raise LLMPayloadError(f"longTerm[{index}].confidence is invalid")
            if not 0.0 <= float(confidence) <= 1.0:
                raise LLMPayloadError(f"longTerm[{index}].confidence out of range")
            value_clean = self._clean_value(value)
            facts.append(
                CandidateFact(
                    category=category.strip().lower(),
                    key=_normalize_key(key or "") or _normalize_key(value_clean),
                    value=value_clean,
                    confidence=float(confidence),
                    source="llm",
                )
            )

        episodes: List[str] = []
        for index, item in enumerate(episodic):
            if not isinstance(item, str) or not item.strip():
                raise LLMPayloadError(f"episodic[{index}] is invalid")
            episodes.append(" ".join(item.split()))
        return facts, episodes

    @staticmethod
    def _merge_candidates(candidates: List[CandidateFact]) -> List[CandidateFact]:
        unique: Dict[tuple[str, str], CandidateFact] = {}
        for candidate in candidates:
            if not candidate.key or not candidate.value:
                continue
            slot = (candidate.category, candidate.key)
            prev = unique.get(slot)
            if prev is None or candidate.confidence > prev.confidence:
                unique[slot] = candidate
        return sorted(unique.values(), key=lambda item: item.confidence, reverse=True)

    async def extract(self, user_message: str, agent_reply: str | None = None) -> ExtractionResult:
        message = " ".join(str(user_message or "").split())
        if not message:
            return ExtractionResult()

        started = time.perf_counter()
        profile, pattern_facts = self.extract_profile(message)
        topics = self.classify_topics(message)
        importance = self.score_importance(message)
        special_moment = None
        if importance >= self.importance_threshold:
            special_moment = SpecialMoment(
                content=message[:200],
                timestamp=utc_now_iso(),
                importance=importance,
            )

        llm_facts: List[CandidateFact] = []
        episodes: List[str] = []
        llm_ok = False
        json_valid = False
        error_text = ""
        if self.llm_enabled and self.llm is not None:
            prompt = build_memory_extraction_prompt(message, " ".join(str(agent_reply or "").split()))
            try:
                raw = await asyncio.wait_for(
                    self.llm.complete(
                        prompt,
                        temperature=self.temperature,
                        max_tokens=self.max_tokens,
                        json_mode=True,
                    ),
                    timeout=self.timeout_seconds,
                )
                llm_ok = True
                llm_facts, episodes = self._parse_llm_payload(raw)
                json_valid = True
            except asyncio.CancelledError:
                raise
            except LLMPayloadError as exc:
                error_text = f"schema: {exc}"[:220]
                llm_facts, episodes = [], []
            except Exception as exc:
                error_text = (str(exc) or exc.__class__.__name__)[:220]
                llm_facts, episodes = [], []
            if error_text:
                logger.warning("[memory.extract] llm contribution dropped: %s", error_text)

        facts = self._merge_candidates([*pattern_facts, *llm_facts])[: self.candidate_limit]
        diagnostics = ExtractionDiagnostics(
            backend_name=self.backend_name,
            model_name=self.model_name,
            latency_ms=max(0, int((time.perf_counter() - started) * 1000)),
            llm_attempted=self.llm_enabled,
            llm_ok=llm_ok,
            json_valid=json_valid,
            pattern_fact_count=len(pattern_facts),
            llm_fact_count=len(llm_facts),
            returned_fact_count=len(facts),
            error=error_text,
        )
        return ExtractionResult(
            facts=facts,
            episodes=episodes,
            profile=profile,
            topics=topics,
            importance=importance,
            special_moment=special_moment,
            diagnostics=diagnostics,
        )
