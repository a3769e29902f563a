"""Composite rule grammar.

A rule's `conditions` document is a ConditionGroup:

    {"operator": "AND", "criteria": [
        {"type": "keywords", "values": ["woolworths"], "mode": "ANY"},
        {"type": "amount", "conditions": [{"op": "BETWEEN", "value": 1000, "value2": 20000}]},
        {"type": "linked", "required": true, "conditions": {"operator": "AND", "criteria": [...]}}
    ]}

Criteria form a closed tagged union discriminated by `type`. Documents are
validated here, before any evaluation; see reconciler.services.rules for the
evaluator.
"""

from __future__ import annotations

import re
from datetime import date
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from reconciler.errors import ValidationError


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ComparisonOp(str, Enum):
    EQ = "="
    NE = "!="
    LT = "<"
    GT = ">"
    LE = "<="
    GE = ">="
    BETWEEN = "BETWEEN"
    IN = "IN"


_OP_ALIASES = {
    "==": "=",
    "≠": "!=",
    "<>": "!=",
    "≤": "<=",
    "≥": ">=",
    "EQ": "=",
    "NE": "!=",
    "LT": "<",
    "GT": ">",
    "LE": "<=",
    "GE": ">=",
}


def _normalize_op(value: Any) -> Any:
    if isinstance(value, str):
        cleaned = value.strip()
        upper = cleaned.upper()
        return _OP_ALIASES.get(upper, _OP_ALIASES.get(cleaned, upper))
    return value


class _GrammarModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class AmountCondition(_GrammarModel):
    """One comparison against |amount| in minor units."""

    op: ComparisonOp
    value: int | None = None
    value2: int | None = None
    values: list[int] | None = None

    _normalize = field_validator("op", mode="before")(_normalize_op)

    @model_validator(mode="after")
    def _check_operands(self) -> AmountCondition:
        _check_operands(self.op, self.value, self.value2, self.values)
        return self


class KeywordsCriterion(_GrammarModel):
    type: Literal["keywords"] = "keywords"
    values: list[str] = Field(min_length=1)
    mode: Literal["ANY", "ALL"] = "ANY"
    case_insensitive: bool = True

    @field_validator("values")
    @classmethod
    def _strip_blank(cls, values: list[str]) -> list[str]:
        cleaned = [value.strip() for value in values if value and value.strip()]
        if not cleaned:
            raise ValueError("keywords criterion needs at least one non-blank value")
        return cleaned


class AmountCriterion(_GrammarModel):
    type: Literal["amount"] = "amount"
    operator: LogicalOperator = LogicalOperator.AND
    conditions: list[AmountCondition] = Field(min_length=1)


class AccountCriterion(_GrammarModel):
    type: Literal["account"] = "account"
    match: Literal["EXACT", "PATTERN", "IN"] = "EXACT"
    values: list[str] = Field(min_length=1)

    _patterns: tuple[re.Pattern[str], ...] = PrivateAttr(default=())

    @model_validator(mode="after")
    def _compile_patterns(self) -> AccountCriterion:
        if self.match == "PATTERN":
            try:
                self._patterns = tuple(re.compile(value) for value in self.values)
            except re.error as exc:
                raise ValueError(f"invalid account pattern: {exc}") from exc
        return self

    @property
    def patterns(self) -> tuple[re.Pattern[str], ...]:
        return self._patterns


class FlowCriterion(_GrammarModel):
    type: Literal["flow"] = "flow"
    direction: Literal["IN", "OUT", "BOTH"]


class DateField(str, Enum):
    DATE = "DATE"
    DAY_OF_MONTH = "DAY_OF_MONTH"
    DAY_OF_WEEK = "DAY_OF_WEEK"
    MONTH = "MONTH"
    QUARTER = "QUARTER"


_DERIVED_RANGES = {
    DateField.DAY_OF_MONTH: (1, 31),
    DateField.DAY_OF_WEEK: (0, 6),  # Monday == 0
    DateField.MONTH: (1, 12),
    DateField.QUARTER: (1, 4),
}


class DateCriterion(_GrammarModel):
    type: Literal["date"] = "date"
    field: DateField = DateField.DATE
    source: Literal["TRANSACTION", "POSTED"] = "TRANSACTION"
    op: ComparisonOp
    value: date | int | None = None
    value2: date | int | None = None
    values: list[date | int] | None = None

    _normalize = field_validator("op", mode="before")(_normalize_op)

    @model_validator(mode="after")
    def _check_operand_types(self) -> DateCriterion:
        _check_operands(self.op, self.value, self.value2, self.values)
        operands = [v for v in (self.value, self.value2, *(self.values or [])) if v is not None]
        if self.field == DateField.DATE:
            if any(not isinstance(v, date) for v in operands):
                raise ValueError("DATE comparisons take ISO dates")
        else:
            low, high = _DERIVED_RANGES[self.field]
            for v in operands:
                if isinstance(v, date) or not low <= v <= high:
                    raise ValueError(f"{self.field.value} comparisons take integers in [{low}, {high}]")
        return self


class ScriptCriterion(_GrammarModel):
    """Opaque predicate evaluated by the sandboxed script collaborator."""

    type: Literal["script"] = "script"
    code: str = Field(min_length=1)


class LinkedCriterion(_GrammarModel):
    """Nested group evaluated against the paired (linked) transaction."""

    type: Literal["linked"] = "linked"
    required: bool = True
    conditions: ConditionGroup


Criterion = Annotated[
    Union[
        KeywordsCriterion,
        AmountCriterion,
        AccountCriterion,
        FlowCriterion,
        DateCriterion,
        LinkedCriterion,
        ScriptCriterion,
    ],
    Field(discriminator="type"),
]


class ConditionGroup(_GrammarModel):
    operator: LogicalOperator = LogicalOperator.AND
    criteria: list[Criterion] = Field(default_factory=list)

    def depth(self) -> int:
        """Nesting depth; a flat group is 1."""
        nested = [c.conditions.depth() for c in self.criteria if isinstance(c, LinkedCriterion)]
        return 1 + max(nested, default=0)

    def has_linked_criterion(self) -> bool:
        return any(isinstance(c, LinkedCriterion) for c in self.criteria)


LinkedCriterion.model_rebuild()


def _check_operands(
    op: ComparisonOp,
    value: Any,
    value2: Any,
    values: list[Any] | None,
) -> None:
    if op == ComparisonOp.BETWEEN:
        if value is None or value2 is None:
            raise ValueError("BETWEEN needs value and value2")
        if type(value) is not type(value2):
            raise ValueError("BETWEEN bounds must have the same type")
        if value > value2:
            raise ValueError("BETWEEN lower bound exceeds upper bound")
    elif op == ComparisonOp.IN:
        if not values:
            raise ValueError("IN needs a non-empty values list")
    elif value is None:
        raise ValueError(f"{op.value} needs a value")


class RuleDefinition(_GrammarModel):
    """Validated, evaluation-ready view of a CategorizationRule row."""

    id: str
    name: str
    subcategory_id: int
    priority: int = 0
    confidence: float = Field(ge=0.0, le=1.0)
    enabled: bool = True
    conditions: ConditionGroup

    @classmethod
    def from_model(cls, rule: Any, *, max_depth: int) -> RuleDefinition:
        """Validate an ORM rule; raises ValidationError on malformed documents."""
        try:
            definition = cls(
                id=rule.id,
                name=rule.name,
                subcategory_id=rule.subcategory_id,
                priority=rule.priority,
                confidence=rule.confidence,
                enabled=rule.enabled,
                conditions=rule.conditions or {},
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Rule {rule.id} is malformed: {exc}") from exc
        definition.check_depth(max_depth)
        return definition

    def check_depth(self, max_depth: int) -> None:
        depth = self.conditions.depth()
        if depth > max_depth:
            raise ValidationError(f"Rule {self.id} nests {depth} levels (max {max_depth})")


def parse_conditions(raw: dict[str, Any], *, max_depth: int) -> ConditionGroup:
    """Validate a bare ConditionGroup document."""
    try:
        group = ConditionGroup.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed condition group: {exc}") from exc
    depth = group.depth()
    if depth > max_depth:
        raise ValidationError(f"Condition group nests {depth} levels (max {max_depth})")
    return group
