"""
Issuer data models.

Issuer provider configuration and the structured outcomes returned by
the issuer gateway.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from exceptions import ValidationError


@dataclass(frozen=True)
class IssuerProvider:
    """
    A configured issuer instance.

    Attributes:
        issuer_id: Routing id (e.g. 'bsim', 'newbank')
        name: Display name
        base_url: Base URL of the issuer's payment-network API
        api_key: Static credential sent with every request
    """

    issuer_id: str
    name: str
    base_url: str
    api_key: str

    def __post_init__(self):
        if not self.issuer_id:
            raise ValidationError("Issuer id is required")
        if not self.base_url.startswith(('http://', 'https://')):
            raise ValidationError(f"Issuer {self.issuer_id} base URL must be HTTP(S)")

    @classmethod
    def from_config(cls, provider: Any) -> 'IssuerProvider':
        """Build from a config.ProviderConfig entry."""
        return cls(
            issuer_id=provider.issuer_id,
            name=provider.name,
            base_url=provider.base_url.rstrip('/'),
            api_key=provider.api_key
        )


@dataclass
class AuthorizeOutcome:
    """Issuer response to an authorization request."""

    approved: bool
    authorization_code: Optional[str] = None
    decline_reason: Optional[str] = None
    available_credit: Optional[float] = None
    network_error: bool = False

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> 'AuthorizeOutcome':
        """Map the issuer's {status, authorizationCode, ...} body."""
        return cls(
            approved=data.get('status') == 'approved',
            authorization_code=data.get('authorizationCode'),
            decline_reason=data.get('declineReason'),
            available_credit=data.get('availableCredit')
        )


@dataclass
class OperationOutcome:
    """Issuer response to capture, void or refund."""

    success: bool
    error: Optional[str] = None
    network_error: bool = False

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> 'OperationOutcome':
        return cls(
            success=bool(data.get('success')),
            error=data.get('error')
        )
