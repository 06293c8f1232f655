"""Program definitions - step types and validation."""
import json
import re
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError


class ProgramDefinitionError(ValueError):
    """Raised when a program definition is malformed."""


class Condition(BaseModel):
    type: Literal["equals", "contains", "starts_with", "regex", "number_range"]
    value: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    next_step_id: str

    def matches(self, reply: str) -> bool:
        text = reply.strip().lower()
        if self.type == "number_range":
            number = _parse_number(reply)
            return number is not None and self.min <= number <= self.max
        value = (self.value or "").lower()
        if self.type == "equals":
            return text == value.strip()
        if self.type == "contains":
            return value in text
        if self.type == "starts_with":
            return text.startswith(value)
        return re.search(self.value or "", reply, re.IGNORECASE) is not None


class Validator(BaseModel):
    type: Literal["required", "min_length", "max_length", "numeric", "email", "phone"]
    value: Optional[int] = None

    def accepts(self, reply: str) -> bool:
        if self.type == "required":
            return bool(reply.strip())
        if self.type == "min_length":
            return len(reply) >= (self.value or 0)
        if self.type == "max_length":
            return self.value is None or len(reply) <= self.value
        if self.type == "numeric":
            return _parse_number(reply) is not None
        if self.type == "email":
            return EMAIL_RE.match(reply.strip()) is not None
        return PHONE_RE.match(reply.strip()) is not None


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-()]+$")
NUMBER_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)")


def _parse_number(text: str) -> Optional[float]:
    # Leading-number parse: "42 apples" -> 42.0, "abc" -> None.
    match = NUMBER_RE.match(text or "")
    return float(match.group(0)) if match else None


class MessageStep(BaseModel):
    id: str
    type: Literal["message"]
    content: str
    next_step_id: Optional[str] = None


class DelayStep(BaseModel):
    id: str
    type: Literal["delay"]
    seconds: int = Field(ge=0)
    next_step_id: Optional[str] = None


class ConditionStep(BaseModel):
    id: str
    type: Literal["condition"]
    conditions: List[Condition] = Field(default_factory=list)
    default_next_step_id: Optional[str] = None

    def next_for(self, reply: str) -> Optional[str]:
        for condition in self.conditions:
            if condition.matches(reply):
                return condition.next_step_id
        return self.default_next_step_id


class InputStep(BaseModel):
    id: str
    type: Literal["input"]
    variable_name: str = "user_input"
    validators: List[Validator] = Field(default_factory=list)
    error_message: Optional[str] = None
    next_step_id: Optional[str] = None

    def accepts(self, reply: str) -> bool:
        return all(validator.accepts(reply) for validator in self.validators)


class AgentConnectStep(BaseModel):
    id: str
    type: Literal["agent_connect"]
    message: Optional[str] = None
    next_step_id: Optional[str] = None


Step = Annotated[
    Union[MessageStep, DelayStep, ConditionStep, InputStep, AgentConnectStep],
    Field(discriminator="type"),
]


class ProgramDefinition(BaseModel):
    start_step_id: Optional[str] = None
    steps: List[Step]

    @property
    def first_step_id(self) -> str:
        return self.start_step_id or self.steps[0].id

    def step_map(self) -> Dict[str, BaseModel]:
        return {step.id: step for step in self.steps}

    def to_json(self) -> str:
        return json.dumps(self.model_dump(exclude_none=True))


def _targets(step) -> List[str]:
    if isinstance(step, ConditionStep):
        targets = [c.next_step_id for c in step.conditions]
        if step.default_next_step_id:
            targets.append(step.default_next_step_id)
        return targets
    return [step.next_step_id] if step.next_step_id else []


def parse_program(data: Union[str, dict]) -> ProgramDefinition:
    """
    Parse and validate a program definition.

    Accepts the stored JSON text or an already decoded dict.

    Raises:
        ProgramDefinitionError: bad JSON, unknown step/condition/validator type,
            duplicate step ids, dangling step references, invalid regex or
            number ranges
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ProgramDefinitionError(f"program_data is not valid JSON: {e}") from e

    try:
        definition = ProgramDefinition.model_validate(data)
    except ValidationError as e:
        raise ProgramDefinitionError(f"Invalid program definition: {e}") from e

    if not definition.steps:
        raise ProgramDefinitionError("Program must have at least one step")

    ids = [step.id for step in definition.steps]
    duplicates = sorted({step_id for step_id in ids if ids.count(step_id) > 1})
    if duplicates:
        raise ProgramDefinitionError(f"Duplicate step ids: {', '.join(duplicates)}")

    known = set(ids)
    if definition.start_step_id and definition.start_step_id not in known:
        raise ProgramDefinitionError(f"start_step_id {definition.start_step_id!r} does not name a step")

    for step in definition.steps:
        for target in _targets(step):
            if target not in known:
                raise ProgramDefinitionError(f"Step {step.id!r} points to unknown step {target!r}")
        if isinstance(step, ConditionStep):
            for condition in step.conditions:
                _check_condition(step.id, condition)
        if isinstance(step, InputStep):
            for validator in step.validators:
                if validator.type in ("min_length", "max_length") and validator.value is None:
                    raise ProgramDefinitionError(f"Step {step.id!r}: {validator.type} needs a value")

    return definition


def _check_condition(step_id: str, condition: Condition) -> None:
    if condition.type == "number_range":
        if condition.min is None or condition.max is None:
            raise ProgramDefinitionError(f"Step {step_id!r}: number_range needs min and max")
        if condition.min > condition.max:
            raise ProgramDefinitionError(f"Step {step_id!r}: number_range min is greater than max")
        return
    if condition.value is None:
        raise ProgramDefinitionError(f"Step {step_id!r}: {condition.type} condition needs a value")
    if condition.type == "regex":
        try:
            re.compile(condition.value)
        except re.error as e:
            raise ProgramDefinitionError(f"Step {step_id!r}: invalid regex {condition.value!r}: {e}") from e
