"""
Field Collection Engine.

Walks an ordered list of field definitions, one answer per turn.

Key features:
1. Sanitize then validate every answer; failures re-prompt in place
2. Back navigation that re-shows the previous answer
3. Direct edit by 1-based field index
4. Draft snapshots kept apart from the live session
5. Confirmation listing of every collected field

State data layout while collecting:
    flow           -- flow name ("new_permit" or "renewal")
    answers        -- {field key: normalized value}
    current_field  -- 0-based index of the field being asked
"""
import logging
from typing import Dict, Any, List, Optional
from datetime import datetime
from dataclasses import dataclass

from app.services.conversation_state import ConversationState, StateType
from app.services.field_validators import (
    Validator,
    validate_full_name, validate_curp_rfc, validate_email, validate_make,
    validate_model, validate_color, validate_model_year, validate_vin,
    validate_engine_number, validate_address
)
from app.services.input_router import sanitize_input, MAX_INPUT_LENGTH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldDefinition:
    """One field to collect. List position defines order and display index."""
    key: str
    label: str
    prompt: str
    validator: Validator
    example: str


PERMIT_FIELDS: List[FieldDefinition] = [
    FieldDefinition("full_name", "Full name", "What is your full name?",
                    validate_full_name, "Juan Pérez García"),
    FieldDefinition("curp_rfc", "CURP or RFC", "What is your CURP or RFC?",
                    validate_curp_rfc, "PEGJ850101HDFRRN09"),
    FieldDefinition("email", "Email", "What email should we send the permit to?",
                    validate_email, "juan.perez@correo.com"),
    FieldDefinition("make", "Make", "What is the vehicle make?",
                    validate_make, "NISSAN"),
    FieldDefinition("model", "Model", "What is the vehicle model?",
                    validate_model, "VERSA"),
    FieldDefinition("color", "Color", "What color is the vehicle?",
                    validate_color, "ROJO"),
    FieldDefinition("model_year", "Model year", "What is the model year?",
                    validate_model_year, "2020"),
    FieldDefinition("vin", "Serial number (VIN)", "What is the serial number (VIN)?",
                    validate_vin, "3N1CN7AD5ZK123456"),
    FieldDefinition("engine_number", "Engine number", "What is the engine number?",
                    validate_engine_number, "HR16-123456"),
    FieldDefinition("address", "Address", "What is your full address?",
                    validate_address, "Av. Juárez 123, Col. Centro, CDMX"),
]

_PERMIT_BY_KEY = {f.key: f for f in PERMIT_FIELDS}

# Renewal edits exclude email; at most nine fields so selection stays one digit
RENEWAL_FIELDS: List[FieldDefinition] = [
    _PERMIT_BY_KEY[key] for key in (
        "full_name", "curp_rfc", "address", "make", "model",
        "color", "model_year", "vin", "engine_number",
    )
]


@dataclass
class StepResult:
    """Outcome of one field-collection operation."""
    accepted: bool
    state: ConversationState
    field: Optional[FieldDefinition] = None
    error: Optional[str] = None
    example: Optional[str] = None
    completed: bool = False
    previous_value: Optional[str] = None


class FieldCollectionEngine:
    """Collects an ordered list of fields into a conversation state."""

    def __init__(
        self,
        fields: List[FieldDefinition],
        flow: str,
        confirmation_context: str,
        max_length: int = MAX_INPUT_LENGTH
    ):
        if not fields:
            raise ValueError("At least one field is required")
        self.fields = list(fields)
        self.flow = flow
        self.confirmation_context = confirmation_context
        self.max_length = max_length

    @property
    def field_count(self) -> int:
        return len(self.fields)

    def initial_data(self, answers: Optional[Dict[str, str]] = None, **extra) -> Dict[str, Any]:
        return {"flow": self.flow, "answers": dict(answers or {}), "current_field": 0, **extra}

    def current_index(self, state: ConversationState) -> int:
        return int(state.data.get("current_field", 0))

    def current_field(self, state: ConversationState) -> Optional[FieldDefinition]:
        index = self.current_index(state)
        if 0 <= index < self.field_count:
            return self.fields[index]
        return None

    def field_at(self, number: int) -> Optional[FieldDefinition]:
        """Field for a 1-based display index."""
        if 1 <= number <= self.field_count:
            return self.fields[number - 1]
        return None

    def _validate(self, field: FieldDefinition, raw: str):
        value = sanitize_input(raw, self.max_length)
        result = field.validator(value)
        if not result.valid:
            logger.info(
                f"Validation failed for field {field.key}",
                extra={"extra_fields": {"event": "field_validation_failed", "field": field.key}}
            )
        return result

    def submit(self, state: ConversationState, raw: str) -> StepResult:
        """
        Validate and store the answer for the current field.

        A rejected answer leaves the index and all answers untouched.
        """
        index = self.current_index(state)
        field = self.current_field(state)
        if field is None:
            return StepResult(accepted=False, state=state, error="No field is pending")

        result = self._validate(field, raw)
        if not result.valid:
            return StepResult(
                accepted=False, state=state, field=field,
                error=result.error, example=field.example
            )

        answers = {**state.data.get("answers", {}), field.key: result.value}
        next_index = index + 1
        updated = state.with_data(answers=answers, current_field=next_index)

        if next_index >= self.field_count:
            return StepResult(
                accepted=True, state=self.to_confirmation(updated), field=field, completed=True
            )
        return StepResult(accepted=True, state=updated, field=self.fields[next_index])

    def back(self, state: ConversationState) -> StepResult:
        """Step back one field, keeping the earlier answer for correction."""
        index = self.current_index(state)
        if index <= 0:
            return StepResult(accepted=False, state=state, field=self.current_field(state),
                              error="Already at the first field")

        previous = self.fields[index - 1]
        updated = state.with_data(current_field=index - 1)
        return StepResult(
            accepted=True, state=updated, field=previous,
            previous_value=state.data.get("answers", {}).get(previous.key)
        )

    def edit(self, state: ConversationState, number: int, raw: str) -> StepResult:
        """Replace the answer at a 1-based index without moving through the flow."""
        field = self.field_at(number)
        if field is None:
            return StepResult(accepted=False, state=state,
                              error=f"Choose a field between 1 and {self.field_count}")

        result = self._validate(field, raw)
        if not result.valid:
            return StepResult(accepted=False, state=state, field=field,
                              error=result.error, example=field.example)

        answers = {**state.data.get("answers", {}), field.key: result.value}
        return StepResult(accepted=True, state=state.with_data(answers=answers), field=field)

    def to_confirmation(self, state: ConversationState) -> ConversationState:
        data = {k: v for k, v in state.data.items() if k not in ("current_field", "editing_field")}
        data["field_count"] = self.field_count
        return state.transition_to(StateType.CONFIRMATION, self.confirmation_context, data)

    def confirmation_items(self, state: ConversationState) -> List[Dict[str, Any]]:
        """Every field with its 1-based display index and collected value."""
        answers = state.data.get("answers", {})
        return [
            {"index": i, "key": f.key, "label": f.label, "value": answers.get(f.key)}
            for i, f in enumerate(self.fields, start=1)
        ]

    def draft_snapshot(self, state: ConversationState) -> Dict[str, Any]:
        """Snapshot progress for the draft slot."""
        return {
            "flow": self.flow,
            "current_field": self.current_index(state),
            "answers": dict(state.data.get("answers", {})),
            "extra": {
                k: v for k, v in state.data.items()
                if k not in ("flow", "answers", "current_field")
            },
            "saved_at": datetime.utcnow().isoformat(),
        }

    def resume(self, state: ConversationState, draft: Dict[str, Any], context: str) -> ConversationState:
        """Rebuild a form state from a draft snapshot."""
        index = min(max(int(draft.get("current_field", 0)), 0), self.field_count - 1)
        return state.transition_to(
            StateType.FORM, context,
            self.initial_data(draft.get("answers"), current_field=index, **draft.get("extra", {}))
        )


def build_engines(max_length: int = MAX_INPUT_LENGTH) -> Dict[str, FieldCollectionEngine]:
    """Field engines keyed by flow name."""
    return {
        "new_permit": FieldCollectionEngine(PERMIT_FIELDS, "new_permit", "permit_data", max_length),
        "renewal": FieldCollectionEngine(RENEWAL_FIELDS, "renewal", "renewal_data", max_length),
    }
