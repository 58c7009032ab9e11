"""
Unit tests for Pydantic schemas and identity normalization.
Tests input validation, normalization, and constraints.
"""
import pytest
from pydantic import ValidationError
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.schemas.common import ErrorResponse, HealthResponse
from app.schemas.conversation import MessageRequest, MessageResponse, ReplySchema, MAX_MESSAGE_LENGTH
from app.utils.identity import normalize_identity, mask_identity


class TestMessageRequestValidation:
    """Tests for MessageRequest schema validation."""

    def test_identity_normalized(self):
        """Formatted phone numbers are reduced to the normalized key."""
        request = MessageRequest(identity="+52 55 1234 5678", text="hola")
        assert request.identity == "525512345678"

    def test_ten_digit_identity(self):
        request = MessageRequest(identity="5512345678", text="hola")
        assert request.identity == "525512345678"

    def test_identity_without_digits(self):
        with pytest.raises(ValidationError) as exc_info:
            MessageRequest(identity="whatsapp", text="hola")
        assert "identity must contain digits" in str(exc_info.value)

    def test_text_too_long(self):
        with pytest.raises(ValidationError):
            MessageRequest(identity="5512345678", text="x" * (MAX_MESSAGE_LENGTH + 1))

    def test_text_required(self):
        with pytest.raises(ValidationError):
            MessageRequest(identity="5512345678")


class TestResponseSchemas:
    """Tests for response schema defaults."""

    def test_legacy_response_defaults(self):
        response = MessageResponse(success=True, identity="525512345678", routed_by="legacy")
        assert response.replies == []
        assert response.state_type is None

    def test_reply_params_default(self):
        assert ReplySchema(key="main_menu").params == {}

    def test_error_envelope(self):
        envelope = ErrorResponse(error={
            "id": "abc", "code": "E5001", "message": "Session not found",
            "timestamp": "2024-01-01T00:00:00",
        })
        assert envelope.error.code == "E5001"
        assert envelope.error.suggestion is None

    def test_health_requires_data(self):
        with pytest.raises(ValidationError):
            HealthResponse(success=True, message="OK")


class TestIdentityHelpers:
    """Tests for identity normalization and masking."""

    @pytest.mark.parametrize("raw,expected", [
        ("5512345678", "525512345678"),
        ("+52 (55) 1234-5678", "525512345678"),
        ("15512345678", "525512345678"),
        ("5215512345678", "5215512345678"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_identity(raw) == expected

    def test_unexpected_format_kept(self):
        assert normalize_identity("12345") == "12345"

    @pytest.mark.parametrize("raw", [None, "", "abc"])
    def test_empty(self, raw):
        assert normalize_identity(raw) is None

    def test_mask(self):
        assert mask_identity("525512345678") == "52551*******"
        assert mask_identity(None) == "unknown"
