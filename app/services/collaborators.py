"""
External collaborators used by the conversation engine.

The engine depends only on the Protocol interfaces below; the HTTP
clients talk to the permit backend and are injected at startup.
"""
import logging
from typing import Dict, Any, List, Optional, Protocol
from dataclasses import dataclass

import requests

from app.middleware.error_handling import ErrorCode, ExternalServiceException

logger = logging.getLogger(__name__)


@dataclass
class UserRecord:
    """A resolved user."""
    user_id: str
    privacy_accepted: bool = False
    email: Optional[str] = None


class PaymentLinkProvider(Protocol):
    def create_payment_link(self, amount: float, currency: str, application_id: str) -> str: ...


class ApplicationRepository(Protocol):
    def create_application(
        self, user_id: str, data: Dict[str, Any], renewal_of: Optional[str] = None
    ) -> str: ...

    def list_applications(self, user_id: str) -> List[Dict[str, Any]]: ...

    def find_renewable(self, user_id: str) -> Optional[Dict[str, Any]]: ...


class IdentityResolver(Protocol):
    def resolve_user(self, identity: str) -> UserRecord: ...

    def record_privacy_consent(self, user_id: str) -> None: ...


class BackendClient:
    """Shared HTTP plumbing for the permit backend."""

    service_name = "backend"
    error_code = ErrorCode.EXTERNAL_API_ERROR

    def __init__(self, base_url: str, api_key: str = "", timeout: int = 10):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _get_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key
        return headers

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        endpoint = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method,
                endpoint,
                json=payload,
                timeout=self.timeout,
                headers=self._get_headers()
            )
        except requests.exceptions.RequestException as e:
            logger.error(
                f"{self.service_name} request failed: {method} {path}: {e}",
                extra={"extra_fields": {"event": "collaborator_failed", "service": self.service_name}}
            )
            raise ExternalServiceException(self.service_name, str(e), code=self.error_code, original_error=e)

        if response.status_code >= 400:
            logger.error(
                f"{self.service_name} returned {response.status_code} for {method} {path}",
                extra={"extra_fields": {
                    "event": "collaborator_failed",
                    "service": self.service_name,
                    "status_code": response.status_code,
                }}
            )
            raise ExternalServiceException(
                self.service_name, f"HTTP {response.status_code}", code=self.error_code
            )

        if not response.content or not response.text.strip():
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceException(
                self.service_name, "invalid JSON response", code=self.error_code, original_error=e
            )


class HttpPaymentLinkProvider(BackendClient):
    """Creates checkout links through the backend payment endpoint."""

    service_name = "payment"
    error_code = ErrorCode.PAYMENT_LINK_FAILED

    def create_payment_link(self, amount: float, currency: str, application_id: str) -> str:
        result = self._request("POST", "/payments/links", {
            "amount": amount,
            "currency": currency,
            "metadata": {"application_id": application_id},
        })
        url = result.get("url")
        if not url:
            raise ExternalServiceException(self.service_name, "response has no url", code=self.error_code)
        return url


class HttpApplicationRepository(BackendClient):
    """Permit application records stored by the backend."""

    service_name = "applications"
    error_code = ErrorCode.PERSISTENCE_FAILED

    def create_application(
        self, user_id: str, data: Dict[str, Any], renewal_of: Optional[str] = None
    ) -> str:
        payload = {"user_id": user_id, "data": data}
        if renewal_of:
            payload["renewal_of"] = renewal_of
        result = self._request("POST", "/applications", payload)
        application_id = result.get("id")
        if application_id is None:
            raise ExternalServiceException(self.service_name, "response has no id", code=self.error_code)
        return str(application_id)

    def list_applications(self, user_id: str) -> List[Dict[str, Any]]:
        result = self._request("GET", f"/users/{user_id}/applications")
        return result.get("applications", [])

    def find_renewable(self, user_id: str) -> Optional[Dict[str, Any]]:
        result = self._request("GET", f"/users/{user_id}/applications/renewable")
        return result.get("application")


class HttpIdentityResolver(BackendClient):
    """Resolves phone identities to backend users, creating them when needed."""

    service_name = "identity"
    error_code = ErrorCode.IDENTITY_FAILED

    def resolve_user(self, identity: str) -> UserRecord:
        result = self._request("POST", "/users/resolve", {"phone": identity})
        if "id" not in result:
            raise ExternalServiceException(self.service_name, "response has no id", code=self.error_code)
        return UserRecord(
            user_id=str(result["id"]),
            privacy_accepted=bool(result.get("privacy_accepted", False)),
            email=result.get("email"),
        )

    def record_privacy_consent(self, user_id: str) -> None:
        self._request("POST", f"/users/{user_id}/privacy-consent", {"accepted": True})
