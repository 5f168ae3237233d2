from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from maestro.models import Task
from maestro.oracle.base import Oracle, OracleError
from maestro.oracle.decode import decode_reply, dumps_for_prompt
from maestro.state.audit import AuditTrail

LOGGER = logging.getLogger(__name__)

DecisionSource = Literal["heuristic_only", "heuristic_dominate", "llm_preferred"]

HEURISTIC_CONFIDENCE = 0.6

DEFAULT_EXECUTORS = (
    "CodeAgent",
    "FileAgent",
    "FixAgent",
    "ResearchAgent",
)

# First matching rule wins.
KEYWORD_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("fix", "bug", "error", "traceback", "exception", "broken", "crash"), "FixAgent"),
    (("file", "directory", "folder", "rename", "path"), "FileAgent"),
    (
        ("research", "explain", "analy", "compare", "investigate", "summar", "design"),
        "ResearchAgent",
    ),
    (("code", "implement", "function", "refactor", "script", "class", "generate"), "CodeAgent"),
)

ARBITRATION_SYSTEM_PROMPT = """
You pick the executor that should handle one step of a task.
Choose only from the candidate list. The heuristic suggestion is non-binding.
Reply with JSON only:
{"primary": "...", "secondary": ["..."], "reason": "...", "confidence": 0.0}
""".strip()

_WORD_RE = re.compile(r"[a-z]+")


@dataclass(slots=True)
class ArbitrationDecision:
    primary: str
    secondary: list[str] = field(default_factory=list)
    reason: str = ""
    confidence: float = HEURISTIC_CONFIDENCE
    source: DecisionSource = "heuristic_only"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class _OracleChoice:
    primary: str
    secondary: list[str]
    reason: str
    confidence: float


class Arbiter:
    """Chooses the executor for a step by merging a keyword heuristic with an oracle opinion."""

    def __init__(
        self,
        oracle: Oracle,
        audit: AuditTrail,
        *,
        default_executors: list[str] | tuple[str, ...] = DEFAULT_EXECUTORS,
        heuristic_confidence: float = HEURISTIC_CONFIDENCE,
    ) -> None:
        self.oracle = oracle
        self.audit = audit
        self.default_executors = list(default_executors)
        self.heuristic_confidence = heuristic_confidence

    def heuristic(
        self,
        task: Task,
        candidates: list[str],
        signals: dict[str, Any] | None = None,
    ) -> ArbitrationDecision:
        signals = signals or {}
        pinned = signals.get("preferred_executor") or task.details.get("executor")
        if isinstance(pinned, str) and pinned in candidates:
            return self._heuristic_decision(pinned, candidates, f"explicit executor pin {pinned}")

        step_title = str(signals.get("step_title") or "")
        matched = self._match_keywords(step_title, candidates)
        if matched:
            executor, keyword = matched
            return self._heuristic_decision(executor, candidates, f"step keyword '{keyword}'")

        blueprint_executor = signals.get("blueprint_executor")
        if isinstance(blueprint_executor, str) and blueprint_executor in candidates:
            return self._heuristic_decision(
                blueprint_executor, candidates, "blueprint executor"
            )

        matched = self._match_keywords(f"{task.category} {task.goal}", candidates)
        if matched:
            executor, keyword = matched
            return self._heuristic_decision(executor, candidates, f"task keyword '{keyword}'")
        return self._heuristic_decision(candidates[0], candidates, "first candidate")

    @staticmethod
    def _match_keywords(text: str, candidates: list[str]) -> tuple[str, str] | None:
        words = _WORD_RE.findall(text.lower())
        for keywords, executor in KEYWORD_RULES:
            if executor not in candidates:
                continue
            for keyword in keywords:
                if any(word.startswith(keyword) for word in words):
                    return executor, keyword
        return None

    def _heuristic_decision(
        self, primary: str, candidates: list[str], reason: str
    ) -> ArbitrationDecision:
        return ArbitrationDecision(
            primary=primary,
            secondary=[name for name in candidates if name != primary][:2],
            reason=f"heuristic: {reason}",
            confidence=self.heuristic_confidence,
            source="heuristic_only",
        )

    def _candidates(self, candidates: list[str] | None, signals: dict[str, Any]) -> list[str]:
        ordered: list[str] = []
        blueprint_executor = signals.get("blueprint_executor")
        for name in [*(candidates or self.default_executors), blueprint_executor]:
            if isinstance(name, str) and name and name not in ordered:
                ordered.append(name)
        return ordered

    async def _ask_oracle(
        self,
        task: Task,
        candidates: list[str],
        suggestion: ArbitrationDecision,
        signals: dict[str, Any],
    ) -> _OracleChoice | None:
        prompt = (
            f"Task category: {task.category}\n"
            f"Task goal: {task.goal}\n"
            f"Step title: {signals.get('step_title') or ''}\n"
            f"Candidates: {', '.join(candidates)}\n\n"
            f"Heuristic suggestion:\n{dumps_for_prompt(suggestion.to_dict(), 1000)}"
        )
        try:
            raw = await self.oracle.generate(ARBITRATION_SYSTEM_PROMPT, prompt)
        except OracleError as exc:
            LOGGER.info("Arbitration oracle unavailable, keeping heuristic: %s", exc)
            return None

        def _parse(payload: dict[str, Any]) -> _OracleChoice:
            primary = payload["primary"]
            if not isinstance(primary, str) or primary not in candidates:
                raise ValueError(f"oracle primary {primary!r} is not a candidate")
            secondary = payload.get("secondary") or []
            if not isinstance(secondary, list):
                secondary = [secondary]
            confidence = payload.get("confidence")
            return _OracleChoice(
                primary=primary,
                secondary=[str(name) for name in secondary if str(name) != primary],
                reason=str(payload.get("reason") or ""),
                confidence=float(confidence) if confidence is not None else 0.0,
            )

        return decode_reply(raw, _parse, None, label="arbitration reply")

    async def decide(
        self,
        task: Task,
        candidates: list[str] | None = None,
        signals: dict[str, Any] | None = None,
    ) -> ArbitrationDecision:
        signals = signals or {}
        pool = self._candidates(candidates, signals)
        if not pool:
            raise ValueError("Arbitration needs at least one candidate executor")
        heuristic = self.heuristic(task, pool, signals)
        choice = await self._ask_oracle(task, pool, heuristic, signals)

        if choice is None:
            decision = heuristic
        elif choice.confidence < heuristic.confidence:
            decision = ArbitrationDecision(
                primary=heuristic.primary,
                secondary=heuristic.secondary,
                reason=f"{heuristic.reason}; oracle suggested {choice.primary} "
                f"with lower confidence {choice.confidence:.2f}",
                confidence=heuristic.confidence,
                source="heuristic_dominate",
            )
        else:
            decision = ArbitrationDecision(
                primary=choice.primary,
                secondary=choice.secondary,
                reason=choice.reason or "oracle preference",
                confidence=max(heuristic.confidence, choice.confidence),
                source="llm_preferred",
            )

        self.audit.record(
            "arbitration_decisions",
            {
                "task_id": task.id,
                "category": task.category,
                "step_title": signals.get("step_title"),
                "candidates": pool,
                "heuristic": heuristic.to_dict(),
                "decision": decision.to_dict(),
            },
        )
        return decision
