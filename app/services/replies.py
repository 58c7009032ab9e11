"""
Reply references handed to the transport.

The engine never renders message copy; it returns a key plus the
parameters the transport needs to render it in the user's language.
"""
from typing import Dict, Any
from dataclasses import dataclass, field
from enum import Enum


class ReplyKey(str, Enum):
    """Message templates the transport knows how to render."""
    MAIN_MENU = "main_menu"
    PRIVACY_MENU = "privacy_menu"
    PRIVACY_POLICY = "privacy_policy"
    DATA_DELETION_REQUESTED = "data_deletion_requested"
    PRIVACY_CONSENT_PROMPT = "privacy_consent_prompt"
    PRIVACY_DECLINED = "privacy_declined"
    FIELD_PROMPT = "field_prompt"
    FIELD_INVALID = "field_invalid"
    ALREADY_AT_FIRST_FIELD = "already_at_first_field"
    FIELD_EDIT_PROMPT = "field_edit_prompt"
    SAVE_NOT_AVAILABLE = "save_not_available"
    DRAFT_SAVED = "draft_saved"
    DRAFT_MENU = "draft_menu"
    DRAFT_SUMMARY = "draft_summary"
    DRAFT_DELETED = "draft_deleted"
    DRAFT_EXPIRED = "draft_expired"
    CONFIRMATION_SUMMARY = "confirmation_summary"
    EDIT_HINT = "edit_hint"
    FLOW_CANCELLED = "flow_cancelled"
    PAYMENT_LINK = "payment_link"
    RENEWAL_MENU = "renewal_menu"
    RENEWAL_FIELD_LIST = "renewal_field_list"
    NO_RENEWABLE_PERMIT = "no_renewable_permit"
    APPLICATION_LIST = "application_list"
    MANAGE_MENU = "manage_menu"
    APPLICATION_DETAIL = "application_detail"
    HELP = "help"
    HELP_TOPIC = "help_topic"
    RESUMED = "resumed"
    NAVIGATED = "navigated"
    NO_HISTORY = "no_history"
    INVALID_INPUT = "invalid_input"
    SYSTEM_ERROR = "system_error"
    RATE_LIMITED_WAIT = "rate_limited_wait"
    NOTIFICATION_ACK = "notification_ack"


@dataclass
class Reply:
    """One outbound message reference."""
    key: ReplyKey
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key.value, "params": self.params}
