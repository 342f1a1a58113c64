"""
Hybrid condition evaluator — used by routes, steps, transitions and guidelines.

A condition is one of three shapes:
  - predicate: a callable (or a declarative RuleCondition) evaluated locally
  - text:      a natural-language fragment forwarded to the model as context
  - all_of:    an ordered mixture of the above

Evaluation never calls the model. Predicates are combined with the logic the
caller asks for (AND for `when`, OR for `skip_if`); descriptive text is
collected into ai_context_strings for prompt building.
"""
from __future__ import annotations

import inspect
import operator as op
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import structlog

from models.schemas import ConditionEvaluationResult, HistoryEvent, RuleCondition, SessionState

logger = structlog.get_logger()


OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "contains": lambda a, b: b in str(a),
    "regex": lambda a, b: bool(re.search(str(b), str(a))),
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
}


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'order.status'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def evaluate_condition(condition: RuleCondition, data: dict[str, Any]) -> bool:
    """Evaluate a single rule condition against data."""
    val = get_nested_value(data, condition.field)
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    try:
        if isinstance(condition.value, (int, float)) and not isinstance(condition.value, bool) and isinstance(val, str):
            val = float(val)
        return fn(val, condition.value)
    except (TypeError, ValueError):
        return False


# ──────────────────────────────────────────────────────────────
#  Condition variant
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ConditionContext:
    """What a predicate can look at."""
    context: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)
    session: Optional[SessionState] = None
    history: tuple[HistoryEvent, ...] = ()

    @classmethod
    def build(
        cls,
        context: dict[str, Any] = None,
        data: dict[str, Any] = None,
        session: SessionState = None,
        history: Iterable[HistoryEvent] = None,
    ) -> "ConditionContext":
        return cls(
            context=dict(context or {}),
            data=dict(data if data is not None else (session.data if session else {})),
            session=session,
            history=tuple(history or ()),
        )

    def lookup_scope(self) -> dict[str, Any]:
        """Flat view for RuleCondition field paths; `context.x` reads agent context."""
        return {"context": self.context, **self.data}


Predicate = Callable[[ConditionContext], Any]


class ConditionKind(str, Enum):
    PREDICATE = "predicate"
    TEXT = "text"
    ALL = "all"


class ConditionLogic(str, Enum):
    AND = "AND"       # eligibility: every predicate must hold
    OR = "OR"         # exclusion: any predicate suppresses


@dataclass(frozen=True)
class Condition:
    kind: ConditionKind
    fn: Optional[Predicate] = None
    value: str = ""
    parts: tuple["Condition", ...] = ()
    label: str = ""

    @classmethod
    def predicate(cls, fn: Predicate, label: str = "") -> "Condition":
        return cls(kind=ConditionKind.PREDICATE, fn=fn, label=label or getattr(fn, "__name__", "predicate"))

    @classmethod
    def text(cls, value: str) -> "Condition":
        return cls(kind=ConditionKind.TEXT, value=value)

    @classmethod
    def all_of(cls, items: Iterable[Any]) -> "Condition":
        parts = tuple(c for c in (cls.of(i) for i in items) if c is not None)
        return cls(kind=ConditionKind.ALL, parts=parts)

    @classmethod
    def rule(cls, field: str, operator: str, value: Any = None) -> "Condition":
        return cls.from_rule(RuleCondition(field=field, operator=operator, value=value))

    @classmethod
    def from_rule(cls, rule: RuleCondition) -> "Condition":
        def check(ctx: ConditionContext) -> bool:
            return evaluate_condition(rule, ctx.lookup_scope())
        return cls.predicate(check, label=f"{rule.field} {rule.operator} {rule.value!r}")

    @classmethod
    def of(cls, raw: Any) -> Optional["Condition"]:
        """Turn author input (callable, str, rule, dict, list) into a Condition."""
        if raw is None:
            return None
        if isinstance(raw, Condition):
            return raw
        if isinstance(raw, str):
            return cls.text(raw)
        if isinstance(raw, RuleCondition):
            return cls.from_rule(raw)
        if isinstance(raw, dict) and "field" in raw and "operator" in raw:
            return cls.from_rule(RuleCondition(**raw))
        if isinstance(raw, (list, tuple)):
            return cls.all_of(raw)
        if isinstance(raw, bool):
            return cls.predicate(lambda _ctx, _v=raw: _v, label=str(raw).lower())
        if callable(raw):
            return cls.predicate(raw)
        raise TypeError(f"Unsupported condition type: {type(raw).__name__}")


def _neutral(logic: ConditionLogic) -> bool:
    return logic == ConditionLogic.AND


class ConditionEvaluator:
    """
    Evaluates conditions against one ConditionContext.
    Pure: the same condition and context always produce the same result.
    """

    def __init__(self, ctx: ConditionContext):
        self._ctx = ctx

    def evaluate(
        self,
        condition: Optional[Condition],
        logic: ConditionLogic = ConditionLogic.AND,
    ) -> ConditionEvaluationResult:
        if condition is None:
            return ConditionEvaluationResult(programmatic_result=_neutral(logic))

        if condition.kind == ConditionKind.TEXT:
            return ConditionEvaluationResult(
                programmatic_result=_neutral(logic),
                ai_context_strings=[condition.value],
                evaluation_details=[{"type": "text", "condition": condition.value}],
            )

        if condition.kind == ConditionKind.PREDICATE:
            outcome = self._run_predicate(condition)
            return ConditionEvaluationResult(
                programmatic_result=outcome,
                has_programmatic_conditions=True,
                evaluation_details=[{"type": "predicate", "condition": condition.label, "result": outcome}],
            )

        return self._evaluate_all(condition, logic)

    def _evaluate_all(self, condition: Condition, logic: ConditionLogic) -> ConditionEvaluationResult:
        strings: list[str] = []
        details: list[dict[str, Any]] = [{"type": "all", "condition": f"all_of[{len(condition.parts)}]"}]
        outcomes: list[bool] = []

        for part in condition.parts:
            sub = self.evaluate(part, logic)
            strings.extend(sub.ai_context_strings)
            details.extend(sub.evaluation_details)
            if sub.has_programmatic_conditions:
                outcomes.append(sub.programmatic_result)

        if not outcomes:
            result = _neutral(logic)
        elif logic == ConditionLogic.AND:
            result = all(outcomes)
        else:
            result = any(outcomes)

        return ConditionEvaluationResult(
            programmatic_result=result,
            ai_context_strings=strings,
            has_programmatic_conditions=bool(outcomes),
            evaluation_details=details,
        )

    def _run_predicate(self, condition: Condition) -> bool:
        try:
            result = condition.fn(self._ctx)
        except Exception as e:
            logger.warning("condition_predicate_failed", condition=condition.label, error=str(e))
            return False
        if inspect.isawaitable(result):
            # predicates run synchronously; coroutine functions are an authoring bug
            if hasattr(result, "close"):
                result.close()
            logger.warning("condition_predicate_async_unsupported", condition=condition.label)
            return False
        return bool(result)


def evaluate_when(condition: Optional[Condition], ctx: ConditionContext) -> ConditionEvaluationResult:
    return ConditionEvaluator(ctx).evaluate(condition, ConditionLogic.AND)


def evaluate_skip_if(condition: Optional[Condition], ctx: ConditionContext) -> ConditionEvaluationResult:
    return ConditionEvaluator(ctx).evaluate(condition, ConditionLogic.OR)


def extract_ai_context_strings(condition: Optional[Condition]) -> list[str]:
    """Descriptive fragments of a condition, without evaluating anything."""
    if condition is None:
        return []
    if condition.kind == ConditionKind.TEXT:
        return [condition.value]
    if condition.kind == ConditionKind.ALL:
        return [s for part in condition.parts for s in extract_ai_context_strings(part)]
    return []


def has_programmatic_conditions(condition: Optional[Condition]) -> bool:
    if condition is None:
        return False
    if condition.kind == ConditionKind.ALL:
        return any(has_programmatic_conditions(p) for p in condition.parts)
    return condition.kind == ConditionKind.PREDICATE
