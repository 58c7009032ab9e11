"""
Conversation Engine.

Runs one inbound message through the full turn: sanitize, load the
session, route, execute the flow handler, persist, and hand back reply
references for the transport.

Key features:
1. Table-driven menu and status actions
2. Permit, renewal and draft flows on top of the field collection engine
3. Help detours that return to the exact state they left
4. Collaborator failures degrade to a recoverable error state
5. Navigation history recorded on every screen change
"""
import logging
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field

from app.core.config import Settings
from app.middleware.error_handling import AppException, ExternalServiceException
from app.services.collaborators import PaymentLinkProvider, ApplicationRepository, IdentityResolver
from app.services.conversation_state import (
    ConversationState, StateType, StateKey, create_state, describe_state, is_transition_allowed
)
from app.services.field_collection import FieldCollectionEngine, StepResult, build_engines
from app.services.input_router import RouteKind, RoutingDecision, route, sanitize_input
from app.services.navigation import NavigationHistory, PreservedStateStore
from app.services.replies import Reply, ReplyKey
from app.services.session_store import SessionStore
from app.utils.identity import mask_identity
from app.utils.logging_config import LogContext, log_performance

logger = logging.getLogger(__name__)

FORM_DATA = "form_data"
PERMIT_FORM: StateKey = (StateType.FORM, "new_permit")

MENU_ACTIONS: Dict[tuple, str] = {
    ("main", 1): "start_permit",
    ("main", 2): "open_renewal",
    ("main", 3): "show_status",
    ("main", 4): "open_privacy",
    ("main", 5): "open_help",
    ("privacy", 1): "privacy_policy",
    ("privacy", 2): "data_deletion",
    ("privacy", 3): "main_menu",
    ("quick_actions", 1): "start_permit",
    ("quick_actions", 2): "manage_applications",
    ("quick_actions", 3): "open_renewal",
    ("quick_actions", 4): "open_help",
    ("renewal", 1): "renew_as_is",
    ("renewal", 2): "edit_renewal",
    ("renewal", 3): "main_menu",
    ("draft", 1): "resume_draft",
    ("draft", 2): "review_draft",
    ("draft", 3): "restart_permit",
    ("draft", 4): "delete_draft",
}

STATUS_ACTIONS: Dict[tuple, str] = {
    ("checking", 1): "start_permit",
    ("checking", "crear"): "start_permit",
    ("checking", 2): "open_renewal",
    ("checking", "renovar"): "open_renewal",
    ("checking", 3): "main_menu",
    ("managing", 1): "select_application",
    ("managing", 2): "open_renewal",
    ("managing", 3): "start_permit",
    ("managing", 4): "main_menu",
}


def parse_state_label(label: str) -> StateKey:
    """Split "type:context" into a state key."""
    state_type, context = label.split(":", 1)
    return StateType(state_type), context


@dataclass
class FlowStep:
    """What a flow handler decided."""
    state: ConversationState
    replies: List[Reply] = field(default_factory=list)
    # Restored from history, help or error recovery rather than a forward move
    restored: bool = False
    # Moved by back/forward; the history cursor already points at it
    navigated: bool = False


@dataclass
class TurnResult:
    """Decision bundle for one inbound message."""
    state: ConversationState
    decision: RoutingDecision
    replies: List[Reply] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state_type": self.state.state_type.value,
            "context": self.state.context,
            "route": self.decision.kind.value,
            "replies": [reply.to_dict() for reply in self.replies],
        }


class ConversationEngine:
    """
    Per-message conversation processing.

    All collaborators are injected; the engine owns no global state.
    """

    def __init__(
        self,
        sessions: SessionStore,
        drafts: SessionStore,
        navigation: NavigationHistory,
        preserved: PreservedStateStore,
        payments: PaymentLinkProvider,
        applications: ApplicationRepository,
        identities: IdentityResolver,
        settings: Optional[Settings] = None,
        field_engines: Optional[Dict[str, FieldCollectionEngine]] = None
    ):
        self.sessions = sessions
        self.drafts = drafts
        self.navigation = navigation
        self.preserved = preserved
        self.payments = payments
        self.applications = applications
        self.identities = identities
        self.settings = settings or Settings()
        self.field_engines = field_engines or build_engines(self.settings.max_input_length)

        self._handlers = {
            RouteKind.GLOBAL_COMMAND: self._handle_global_command,
            RouteKind.NO_STATE: self._handle_no_state,
            RouteKind.CONTEXT_COMMAND: self._handle_context_command,
            RouteKind.INVALID_INPUT: self._handle_invalid_input,
            RouteKind.MENU_SELECTION: self._handle_menu_selection,
            RouteKind.FIELD_SELECTION: self._handle_field_selection,
            RouteKind.FORM_TEXT_INPUT: self._handle_form_text,
            RouteKind.DIRECT_EDIT: self._handle_direct_edit,
            RouteKind.CONFIRMATION_OPTION: self._handle_confirmation_option,
            RouteKind.CONFIRMATION_ACTION: self._handle_confirmation_action,
            RouteKind.STATUS_OPTION: self._handle_status_option,
            RouteKind.ITEM_SELECTION: self._handle_item_selection,
            RouteKind.HELP_NAVIGATION: self._handle_help_navigation,
            RouteKind.HELP_QUERY: self._handle_help_query,
            RouteKind.ERROR_RECOVERY: self._handle_error_recovery,
            RouteKind.NOTIFICATION_RESPONSE: self._handle_notification_response,
        }

    # Turn processing

    @log_performance("conversation_turn")
    def process_message(self, identity: str, text: str) -> TurnResult:
        """
        Handle one inbound message against the structured session store.

        Args:
            identity: Normalized identity key
            text: Raw inbound text

        Returns:
            TurnResult with the persisted next state and reply references
        """
        with LogContext(identity=mask_identity(identity)):
            state = self.sessions.get(identity)
            result = self.handle_turn(identity, state, text)
            self.sessions.set(identity, result.state)
            return result

    def handle_turn(self, identity: str, state: Optional[ConversationState], text: str) -> TurnResult:
        """Route and execute one turn without touching the session store."""
        text = sanitize_input(text, self.settings.max_input_length)
        decision = route(state, text)

        try:
            step = self._handlers[decision.kind](identity, state, decision)
        except ExternalServiceException as e:
            step = self._system_error(identity, state, e)

        self._record_navigation(identity, state, step)
        return TurnResult(state=step.state, decision=decision, replies=step.replies)

    def _record_navigation(self, identity: str, previous: Optional[ConversationState], step: FlowStep) -> None:
        new_state = step.state
        if step.navigated:
            return

        if previous is not None and previous.key == new_state.key:
            self.navigation.update_current(identity, new_state.label, new_state.data)
            return

        if previous is not None and not step.restored and not is_transition_allowed(previous.key, new_state.key):
            logger.warning(
                f"Transition {previous.label} -> {new_state.label} is not in the transition table",
                extra={"extra_fields": {
                    "event": "transition_not_in_table",
                    "from": previous.label,
                    "to": new_state.label,
                }}
            )

        self.navigation.push(identity, new_state.label, describe_state(new_state), new_state.data)

    # Shared building blocks

    def _base(self, identity: str, state: Optional[ConversationState]) -> ConversationState:
        return state or create_state(identity, StateType.MENU, "main")

    def _main_menu(self, state: ConversationState, *replies: Reply) -> FlowStep:
        return FlowStep(
            state.transition_to(StateType.MENU, "main"),
            list(replies) + [Reply(ReplyKey.MAIN_MENU)]
        )

    def _engine_for(self, state: ConversationState) -> FieldCollectionEngine:
        return self.field_engines[state.data.get("flow", "new_permit")]

    def _field_prompt(self, engine: FieldCollectionEngine, state: ConversationState,
                      key: ReplyKey = ReplyKey.FIELD_PROMPT, **extra) -> Reply:
        index = engine.current_index(state)
        current = engine.current_field(state)
        answers = state.data.get("answers", {})
        return Reply(key, {
            "index": index + 1,
            "total": engine.field_count,
            "field": current.key,
            "label": current.label,
            "prompt": current.prompt,
            "example": current.example,
            "current_value": answers.get(current.key),
            **extra,
        })

    def _invalid_field(self, result: StepResult) -> Reply:
        return Reply(ReplyKey.FIELD_INVALID, {
            "field": result.field.key if result.field else None,
            "label": result.field.label if result.field else None,
            "error": result.error,
            "example": result.example,
        })

    def _confirmation(self, state: ConversationState) -> Reply:
        engine = self._engine_for(state)
        return Reply(ReplyKey.CONFIRMATION_SUMMARY, {
            "context": state.context,
            "items": engine.confirmation_items(state),
        })

    def _resolve_user_id(self, identity: str, state: ConversationState) -> str:
        user_id = state.data.get("user_id")
        if user_id:
            return user_id
        return self.identities.resolve_user(identity).user_id

    def _system_error(self, identity: str, state: Optional[ConversationState],
                      error: ExternalServiceException) -> FlowStep:
        logger.error(
            f"Collaborator failure during turn for {mask_identity(identity)}: {error.message}",
            extra={"extra_fields": {"event": "collaborator_failed", "code": error.code.value}}
        )
        base = self._base(identity, state)
        data = {}
        if state is not None and state.state_type != StateType.ERROR:
            data["recover_to"] = state.to_dict()
            if state.key == PERMIT_FORM:
                self.preserved.preserve(identity, FORM_DATA, dict(state.data))
        return FlowStep(
            base.transition_to(StateType.ERROR, "system", data),
            [Reply(ReplyKey.SYSTEM_ERROR, {"service": (error.details or {}).get("service")})]
        )

    def _preserved_form(self, identity: str, state: ConversationState) -> Optional[ConversationState]:
        """The permit form set aside before a detour, if one is still held."""
        form_data = self.preserved.get(identity, FORM_DATA)
        if not form_data:
            return None
        return state.transition_to(PERMIT_FORM[0], PERMIT_FORM[1], dict(form_data))

    def _restore(self, identity: str, state: ConversationState,
                 snapshot: Optional[Dict[str, Any]]) -> FlowStep:
        """
        Return to a serialized state.

        Falls back to the preserved permit form when the snapshot is missing
        or unreadable, and to the main menu when neither is available.
        """
        restored = None
        if snapshot:
            try:
                restored = ConversationState.from_dict(snapshot)
            except (AppException, KeyError, ValueError, TypeError) as e:
                logger.warning(f"Could not restore saved state: {e}")

        if restored is None:
            restored = self._preserved_form(identity, state)
            if restored is None:
                return self._main_menu(state)
            logger.info(
                f"Resumed preserved permit form for {mask_identity(identity)}",
                extra={"extra_fields": {"event": "preserved_form_resumed"}}
            )

        replies = [Reply(ReplyKey.RESUMED, {"state": describe_state(restored)})]
        if restored.key == PERMIT_FORM:
            replies.append(self._field_prompt(self._engine_for(restored), restored))
        return FlowStep(restored, replies, restored=True)

    # Route handlers

    def _handle_global_command(self, identity, state, decision) -> FlowStep:
        base = self._base(identity, state)
        if decision.command == "menu":
            step = self._main_menu(base)
            if state is None or state.key != step.state.key:
                self.navigation.home(identity, step.state.label, describe_state(step.state))
                step.navigated = True
            return step
        return self._action_open_help(identity, base)

    def _handle_no_state(self, identity, state, decision) -> FlowStep:
        return self._main_menu(self._base(identity, state))

    def _handle_invalid_input(self, identity, state, decision) -> FlowStep:
        return FlowStep(state, [Reply(ReplyKey.INVALID_INPUT, {
            "options": list(decision.valid_options),
            "state": decision.state_description,
        })])

    def _handle_context_command(self, identity, state, decision) -> FlowStep:
        command = decision.command
        if command in ("back", "forward") and state.state_type != StateType.FORM:
            return self._navigate(identity, state, command)
        if command == "estado":
            return self._action_show_status(identity, state)
        if command == "renovar":
            if state.key == (StateType.MENU, "renewal"):
                return self._action_renew_as_is(identity, state)
            if state.key == (StateType.FORM, "renewal_edit"):
                engine = self._engine_for(state)
                confirmation = engine.to_confirmation(state)
                return FlowStep(confirmation, [self._confirmation(confirmation)])
            return self._submit_application(identity, state, renewal=True)
        return self._form_command(identity, state, command)

    def _form_command(self, identity, state, command) -> FlowStep:
        context = state.context

        if context == "field_edit":
            if command == "save":
                return FlowStep(state, [Reply(ReplyKey.SAVE_NOT_AVAILABLE)])
            return self._return_from_edit(state)

        if context == "new_permit":
            engine = self._engine_for(state)
            if command == "save":
                self.drafts.set(identity, engine.draft_snapshot(state), self.settings.draft_ttl_seconds)
                self.preserved.clear(identity, FORM_DATA)
                answered = len(state.data.get("answers", {}))
                return self._main_menu(state, Reply(ReplyKey.DRAFT_SAVED, {
                    "fields_completed": answered,
                    "total": engine.field_count,
                }))
            if command == "back":
                result = engine.back(state)
                if not result.accepted:
                    return FlowStep(state, [
                        Reply(ReplyKey.ALREADY_AT_FIRST_FIELD),
                        self._field_prompt(engine, state),
                    ])
                return FlowStep(result.state, [
                    self._field_prompt(engine, result.state, previous_value=result.previous_value)
                ])
            self.preserved.clear(identity, FORM_DATA)
            return self._main_menu(state, Reply(ReplyKey.FLOW_CANCELLED))

        if command == "save":
            return FlowStep(state, [Reply(ReplyKey.SAVE_NOT_AVAILABLE)])
        if context == "renewal_edit" and command == "back":
            return FlowStep(
                state.transition_to(StateType.MENU, "renewal", self._without_edit_keys(state.data)),
                [Reply(ReplyKey.RENEWAL_MENU, {"items": self._engine_for(state).confirmation_items(state)})],
                restored=True
            )
        return self._main_menu(state, Reply(ReplyKey.FLOW_CANCELLED))

    def _navigate(self, identity, state, direction) -> FlowStep:
        if direction == "back":
            entry = self.navigation.back(identity)
        else:
            entry = self.navigation.forward(identity)
        if entry is None:
            return FlowStep(state, [Reply(ReplyKey.NO_HISTORY, {"direction": direction})])

        state_type, context = parse_state_label(entry.state)
        data = entry.data
        if (state_type, context) == PERMIT_FORM:
            data = self.preserved.get(identity, FORM_DATA) or data
        restored = state.transition_to(state_type, context, dict(data))
        return FlowStep(restored, [Reply(ReplyKey.NAVIGATED, {
            "title": entry.title,
            "breadcrumbs": self.navigation.breadcrumb_text(identity),
        })], restored=True, navigated=True)

    def _handle_menu_selection(self, identity, state, decision) -> FlowStep:
        action = MENU_ACTIONS[(state.context, decision.option)]
        return getattr(self, f"_action_{action}")(identity, state)

    def _handle_status_option(self, identity, state, decision) -> FlowStep:
        selector = decision.option if decision.option is not None else decision.command
        action = STATUS_ACTIONS[(state.context, selector)]
        return getattr(self, f"_action_{action}")(identity, state)

    def _handle_item_selection(self, identity, state, decision) -> FlowStep:
        items = state.data.get("items", [])
        return FlowStep(state, [Reply(ReplyKey.APPLICATION_DETAIL, {
            "index": decision.option,
            "application": items[decision.option - 1],
        })])

    def _handle_field_selection(self, identity, state, decision) -> FlowStep:
        engine = self._engine_for(state)
        selected = engine.field_at(decision.option)
        if selected is None:
            return FlowStep(state, [Reply(ReplyKey.INVALID_INPUT, {
                "options": [f"1-{engine.field_count}"],
                "state": describe_state(state),
            })])

        data = {**state.data, "editing_field": decision.option, "edit_return": state.label}
        data.pop("field_count", None)
        editing = state.transition_to(StateType.FORM, "field_edit", data)
        return FlowStep(editing, [Reply(ReplyKey.FIELD_EDIT_PROMPT, {
            "index": decision.option,
            "field": selected.key,
            "label": selected.label,
            "prompt": selected.prompt,
            "example": selected.example,
            "current_value": state.data.get("answers", {}).get(selected.key),
        })])

    def _handle_direct_edit(self, identity, state, decision) -> FlowStep:
        result = self._engine_for(state).edit(state, decision.option, decision.value)
        if not result.accepted:
            return FlowStep(state, [self._invalid_field(result)])
        return FlowStep(result.state, [self._confirmation(result.state)])

    def _handle_form_text(self, identity, state, decision) -> FlowStep:
        if state.context == "privacy_consent":
            return self._privacy_consent(identity, state, decision.value)
        if state.context == "field_edit":
            return self._apply_field_edit(state, decision.value)

        engine = self._engine_for(state)
        result = engine.submit(state, decision.value)
        if not result.accepted:
            return FlowStep(state, [self._invalid_field(result)])

        if result.completed:
            return FlowStep(result.state, [self._confirmation(result.state)])

        self.preserved.preserve(identity, FORM_DATA, dict(result.state.data))
        return FlowStep(result.state, [self._field_prompt(engine, result.state)])

    def _privacy_consent(self, identity, state, value) -> FlowStep:
        if value != "1":
            return self._main_menu(state, Reply(ReplyKey.PRIVACY_DECLINED))
        user_id = self._resolve_user_id(identity, state)
        self.identities.record_privacy_consent(user_id)
        return self._begin_form(state, user_id)

    def _apply_field_edit(self, state, value) -> FlowStep:
        number = state.data.get("editing_field")
        if number is None:
            return self._return_from_edit(state)
        engine = self._engine_for(state)
        result = engine.edit(state, int(number), value)
        if not result.accepted:
            return FlowStep(state, [self._invalid_field(result)])
        return self._return_from_edit(result.state)

    @staticmethod
    def _without_edit_keys(data: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in data.items() if k not in ("editing_field", "edit_return", "field_count")}

    def _return_from_edit(self, state) -> FlowStep:
        engine = self._engine_for(state)
        data = self._without_edit_keys(state.data)
        target = parse_state_label(state.data.get("edit_return", f"confirmation:{engine.confirmation_context}"))

        if target == (StateType.FORM, "renewal_edit"):
            editing = state.transition_to(StateType.FORM, "renewal_edit", data)
            return FlowStep(editing, [Reply(ReplyKey.RENEWAL_FIELD_LIST, {
                "items": engine.confirmation_items(editing),
            })])

        confirmation = state.transition_to(
            StateType.CONFIRMATION, engine.confirmation_context,
            {**data, "field_count": engine.field_count}
        )
        return FlowStep(confirmation, [self._confirmation(confirmation)])

    def _handle_confirmation_action(self, identity, state, decision) -> FlowStep:
        renewal = state.context == "renewal_data"
        if decision.command == "confirm":
            return self._submit_application(identity, state, renewal=renewal)
        if decision.command == "edit":
            if renewal:
                return self._action_edit_renewal(identity, state)
            return FlowStep(state, [Reply(ReplyKey.EDIT_HINT, {
                "field_count": state.data.get("field_count"),
            })])
        self.preserved.clear(identity, FORM_DATA)
        return self._main_menu(state, Reply(ReplyKey.FLOW_CANCELLED))

    def _handle_confirmation_option(self, identity, state, decision) -> FlowStep:
        if state.context == "payment":
            if decision.option == 1:
                return FlowStep(state, [Reply(ReplyKey.PAYMENT_LINK, dict(state.data))])
            return self._main_menu(state)

        command = {1: "confirm", 2: "edit", 3: "cancel"}[decision.option]
        return self._handle_confirmation_action(
            identity, state, RoutingDecision(RouteKind.CONFIRMATION_ACTION, command=command)
        )

    def _handle_help_navigation(self, identity, state, decision) -> FlowStep:
        if decision.command == "menu":
            return self._main_menu(state)
        return self._restore(identity, state, state.data.get("return_to"))

    def _handle_help_query(self, identity, state, decision) -> FlowStep:
        return FlowStep(state, [Reply(ReplyKey.HELP_TOPIC, {
            "topic": state.context,
            "query": decision.value,
        })])

    def _handle_error_recovery(self, identity, state, decision) -> FlowStep:
        if state.context == "rate_limit":
            if decision.option == 1:
                return FlowStep(state, [Reply(ReplyKey.RATE_LIMITED_WAIT)])
            return self._main_menu(state)
        return self._restore(identity, state, state.data.get("recover_to"))

    def _handle_notification_response(self, identity, state, decision) -> FlowStep:
        return self._main_menu(state, Reply(ReplyKey.NOTIFICATION_ACK, {"notification": state.context}))

    # Actions

    def _action_main_menu(self, identity, state) -> FlowStep:
        return self._main_menu(state)

    def _action_open_help(self, identity, state) -> FlowStep:
        if state.state_type == StateType.HELP:
            return FlowStep(state, [Reply(ReplyKey.HELP, {"topic": state.context})])

        if state.state_type == StateType.FORM:
            if state.key == PERMIT_FORM:
                self.preserved.preserve(identity, FORM_DATA, dict(state.data))
            context = "form_help"
        elif state.key == (StateType.CONFIRMATION, "payment"):
            context = "payment_help"
        else:
            context = "general"

        helping = state.transition_to(StateType.HELP, context, {"return_to": state.to_dict()})
        return FlowStep(helping, [Reply(ReplyKey.HELP, {
            "topic": context,
            "returning_to": describe_state(state),
            "breadcrumbs": self.navigation.breadcrumb_text(identity),
        })])

    def _action_open_privacy(self, identity, state) -> FlowStep:
        return FlowStep(state.transition_to(StateType.MENU, "privacy"), [Reply(ReplyKey.PRIVACY_MENU)])

    def _action_privacy_policy(self, identity, state) -> FlowStep:
        return FlowStep(state, [Reply(ReplyKey.PRIVACY_POLICY)])

    def _action_data_deletion(self, identity, state) -> FlowStep:
        logger.info(f"Data deletion requested by {mask_identity(identity)}")
        return FlowStep(state, [Reply(ReplyKey.DATA_DELETION_REQUESTED)])

    def _action_start_permit(self, identity, state) -> FlowStep:
        draft = self.drafts.get(identity)
        if draft:
            answered = len(draft.get("answers", {}))
            return FlowStep(state.transition_to(StateType.MENU, "draft"), [Reply(ReplyKey.DRAFT_MENU, {
                "fields_completed": answered,
                "total": self.field_engines["new_permit"].field_count,
                "saved_at": draft.get("saved_at"),
            })])
        return self._begin_permit(identity, state)

    def _begin_permit(self, identity, state) -> FlowStep:
        user = self.identities.resolve_user(identity)
        if not user.privacy_accepted:
            consent = state.transition_to(StateType.FORM, "privacy_consent", {"user_id": user.user_id})
            return FlowStep(consent, [Reply(ReplyKey.PRIVACY_CONSENT_PROMPT)])
        return self._begin_form(state, user.user_id)

    def _begin_form(self, state, user_id) -> FlowStep:
        engine = self.field_engines["new_permit"]
        form = state.transition_to(StateType.FORM, "new_permit", engine.initial_data(user_id=user_id))
        return FlowStep(form, [self._field_prompt(engine, form)])

    def _action_restart_permit(self, identity, state) -> FlowStep:
        self.drafts.clear(identity)
        return self._begin_permit(identity, state)

    def _action_resume_draft(self, identity, state) -> FlowStep:
        draft = self.drafts.get(identity)
        if not draft:
            return self._main_menu(state, Reply(ReplyKey.DRAFT_EXPIRED))
        engine = self.field_engines["new_permit"]
        form = engine.resume(state, draft, "new_permit")
        self.drafts.clear(identity)
        return FlowStep(form, [self._field_prompt(engine, form, resumed=True)])

    def _action_review_draft(self, identity, state) -> FlowStep:
        draft = self.drafts.get(identity) or {}
        answers = draft.get("answers", {})
        items = [
            {"index": i, "label": f.label, "value": answers.get(f.key)}
            for i, f in enumerate(self.field_engines["new_permit"].fields, start=1)
            if f.key in answers
        ]
        return FlowStep(state, [Reply(ReplyKey.DRAFT_SUMMARY, {"items": items})])

    def _action_delete_draft(self, identity, state) -> FlowStep:
        self.drafts.clear(identity)
        return self._main_menu(state, Reply(ReplyKey.DRAFT_DELETED))

    def _action_open_renewal(self, identity, state) -> FlowStep:
        user_id = self._resolve_user_id(identity, state)
        renewable = self.applications.find_renewable(user_id)
        if not renewable:
            return FlowStep(state, [Reply(ReplyKey.NO_RENEWABLE_PERMIT)])

        engine = self.field_engines["renewal"]
        previous = renewable.get("data", {})
        answers = {f.key: previous.get(f.key) for f in engine.fields if previous.get(f.key) is not None}
        if "email" in previous:
            answers["email"] = previous["email"]
        data = {
            "flow": engine.flow,
            "user_id": user_id,
            "renewal_of": str(renewable.get("id")),
            "answers": answers,
        }
        renewal = state.transition_to(StateType.MENU, "renewal", data)
        return FlowStep(renewal, [Reply(ReplyKey.RENEWAL_MENU, {
            "items": engine.confirmation_items(renewal),
        })])

    def _action_renew_as_is(self, identity, state) -> FlowStep:
        confirmation = self._engine_for(state).to_confirmation(state)
        return FlowStep(confirmation, [self._confirmation(confirmation)])

    def _action_edit_renewal(self, identity, state) -> FlowStep:
        editing = state.transition_to(StateType.FORM, "renewal_edit", self._without_edit_keys(state.data))
        return FlowStep(editing, [Reply(ReplyKey.RENEWAL_FIELD_LIST, {
            "items": self._engine_for(editing).confirmation_items(editing),
        })])

    def _list_applications(self, identity, state) -> Dict[str, Any]:
        user_id = self._resolve_user_id(identity, state)
        return {"user_id": user_id, "items": self.applications.list_applications(user_id)}

    def _action_show_status(self, identity, state) -> FlowStep:
        data = self._list_applications(identity, state)
        checking = state.transition_to(StateType.STATUS, "checking", data)
        return FlowStep(checking, [Reply(ReplyKey.APPLICATION_LIST, {"applications": data["items"]})])

    def _action_manage_applications(self, identity, state) -> FlowStep:
        data = self._list_applications(identity, state)
        managing = state.transition_to(StateType.STATUS, "managing", data)
        return FlowStep(managing, [Reply(ReplyKey.MANAGE_MENU, {"count": len(data["items"])})])

    def _action_select_application(self, identity, state) -> FlowStep:
        items = state.data.get("items", [])
        if not items:
            return FlowStep(state, [Reply(ReplyKey.APPLICATION_LIST, {"applications": []})])
        selecting = state.transition_to(StateType.STATUS, "selecting", dict(state.data))
        return FlowStep(selecting, [Reply(ReplyKey.APPLICATION_LIST, {"applications": items})])

    def _submit_application(self, identity, state, renewal: bool = False) -> FlowStep:
        answers = state.data.get("answers", {})
        user_id = self._resolve_user_id(identity, state)
        renewal_of = state.data.get("renewal_of") if renewal else None
        amount = self.settings.renewal_fee if renewal else self.settings.permit_fee

        # Set when an earlier attempt created the record but the payment link failed
        application_id = state.data.get("application_id")
        if not application_id:
            application_id = self.applications.create_application(user_id, answers, renewal_of=renewal_of)
            logger.info(
                f"Application {application_id} created for {mask_identity(identity)}",
                extra={"extra_fields": {"event": "application_created", "renewal": renewal}}
            )

        try:
            url = self.payments.create_payment_link(amount, self.settings.payment_currency, application_id)
        except ExternalServiceException as e:
            return self._system_error(identity, state.with_data(application_id=application_id), e)
        self.preserved.clear(identity, FORM_DATA)

        payment_data = {
            "application_id": application_id,
            "payment_url": url,
            "amount": amount,
            "currency": self.settings.payment_currency,
        }
        payment = state.transition_to(StateType.CONFIRMATION, "payment", payment_data)
        return FlowStep(payment, [Reply(ReplyKey.PAYMENT_LINK, dict(payment_data))])

    # Session management

    def get_state(self, identity: str) -> Optional[ConversationState]:
        return self.sessions.get(identity)

    def reset_session(self, identity: str) -> None:
        """Forget everything held for an identity."""
        self.sessions.clear(identity)
        self.drafts.clear(identity)
        self.navigation.clear(identity)
        self.preserved.clear(identity)
        logger.info(f"Session reset for {mask_identity(identity)}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "sessions": self.sessions.get_statistics(),
            "drafts": self.drafts.get_statistics(),
            "navigation": self.navigation.get_stats(),
            "preserved": self.preserved.get_stats(),
        }
