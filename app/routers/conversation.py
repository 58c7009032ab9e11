"""
Conversation routes.

The transport posts each inbound message here and renders the reply
references it gets back.
"""
import logging
from fastapi import APIRouter, Depends, Request

from app.core.container import ServiceContainer
from app.middleware.error_handling import SessionNotFoundException, error_tracker
from app.middleware.rate_limit import limiter, RATE_LIMIT_MESSAGES
from app.schemas.common import HealthResponse
from app.schemas.conversation import (
    MessageRequest, MessageResponse, ReplySchema,
    SessionStateResponse, BreadcrumbResponse, StatsResponse
)
from app.services.conversation_state import describe_state, format_expected_inputs
from app.services.legacy_adapter import AdapterOutcome
from app.utils.identity import normalize_identity, mask_identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversation", tags=["Conversation"])


def get_container(request: Request) -> ServiceContainer:
    """Service container built in the application lifespan."""
    return request.app.state.container


def _identity_or_404(raw: str) -> str:
    identity = normalize_identity(raw)
    if not identity:
        raise SessionNotFoundException(raw)
    return identity


@router.post("/messages", response_model=MessageResponse)
@limiter.limit(RATE_LIMIT_MESSAGES)
def process_message(
    request: Request,
    payload: MessageRequest,
    container: ServiceContainer = Depends(get_container)
):
    """
    Process one inbound message.

    Returns the next state and the replies to send. When the legacy adapter
    is active and the turn belongs to a non-migrated flow, routed_by is
    "legacy" and no replies are produced.
    """
    outcome = container.process_message(payload.identity, payload.text)

    if isinstance(outcome, AdapterOutcome):
        legacy_status = (outcome.legacy_state or {}).get("status")
        if not outcome.use_structured:
            return MessageResponse(
                success=True,
                identity=payload.identity,
                routed_by="legacy",
                legacy_status=legacy_status,
            )
        result = outcome.turn_result
    else:
        legacy_status = None
        result = outcome

    return MessageResponse(
        success=True,
        identity=payload.identity,
        routed_by="structured",
        state_type=result.state.state_type.value,
        context=result.state.context,
        route=result.decision.kind.value,
        replies=[ReplySchema(**reply.to_dict()) for reply in result.replies],
        legacy_status=legacy_status,
    )


@router.get("/sessions/{identity}", response_model=SessionStateResponse)
def get_session(identity: str, container: ServiceContainer = Depends(get_container)):
    """Current state for an identity."""
    normalized = _identity_or_404(identity)
    state = container.get_state(normalized)
    if state is None:
        raise SessionNotFoundException(mask_identity(normalized))

    return SessionStateResponse(
        identity=normalized,
        state_type=state.state_type.value,
        context=state.context,
        label=describe_state(state),
        expected_inputs=format_expected_inputs(state),
        data=state.data,
        created_at=state.created_at.isoformat(),
        last_transition_at=state.last_transition_at.isoformat(),
    )


@router.delete("/sessions/{identity}", response_model=HealthResponse)
def delete_session(identity: str, container: ServiceContainer = Depends(get_container)):
    """Forget the session, draft, history and preserved state for an identity."""
    normalized = _identity_or_404(identity)
    container.reset_session(normalized)
    return HealthResponse(success=True, data={"identity": normalized}, message="Session cleared")


@router.get("/sessions/{identity}/breadcrumbs", response_model=BreadcrumbResponse)
def get_breadcrumbs(identity: str, container: ServiceContainer = Depends(get_container)):
    """Recent navigation trail for an identity."""
    normalized = _identity_or_404(identity)
    navigation = container.engine.navigation
    return BreadcrumbResponse(
        identity=normalized,
        breadcrumbs=navigation.breadcrumbs(normalized),
        text=navigation.breadcrumb_text(normalized),
        can_go_back=navigation.can_go_back(normalized),
        can_go_forward=navigation.can_go_forward(normalized),
    )


@router.get("/stats", response_model=StatsResponse)
def get_stats(container: ServiceContainer = Depends(get_container)):
    """Store, navigation, maintenance, adapter and error statistics."""
    stats = container.get_stats()
    stats["errors"] = error_tracker.get_stats()
    return StatsResponse(success=True, data=stats)
