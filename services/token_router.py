"""
Token Router.

Parses opaque payment tokens and decides which issuer instance handles them.

Token formats, in precedence order:
    wsim_{issuerId}_{hash}   wallet token from a specific issuer
                             (e.g. wsim_newbank_652eb18344a9 -> newbank)
    ctok_{...}               consent token from the default issuer
    header.payload.sig       JWT-shaped token; the payload's issuerId/bsimId
                             claim selects the issuer
    anything else            default issuer

The JWT payload is decoded without verifying its signature. The claim only
picks a routing target; the issuer re-validates the token itself.
"""

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from config import config
from models.issuer import IssuerProvider
from .issuer_gateway import IssuerGateway
from .issuer_registry import IssuerRegistry

logger = logging.getLogger(__name__)

WALLET_TOKEN_PATTERN = re.compile(r'^(wsim_([a-z0-9]+)_)')
PREFIX_PATTERN = re.compile(r'^([a-z_]+_)')
CONSENT_TOKEN_PREFIX = 'ctok_'
WALLET_PAYMENT_TOKEN_TYPE = 'wallet_payment_token'


@dataclass
class TokenAnalysis:
    """What could be learned from a token without contacting an issuer."""

    prefix: Optional[str] = None
    issuer_id: Optional[str] = None
    is_jwt: bool = False
    jwt_payload: Optional[Dict[str, Any]] = None
    token_type: Optional[str] = None
    is_wallet_token: bool = False
    raw_length: int = 0

    def log_summary(self) -> Dict[str, Any]:
        """Fields safe to log (no token material beyond standard claims)."""
        claims = None
        if self.jwt_payload:
            claims = {k: self.jwt_payload.get(k) for k in ('type', 'iss', 'exp', 'iat')}
        return {
            'prefix': self.prefix,
            'issuerId': self.issuer_id,
            'isJwt': self.is_jwt,
            'tokenType': self.token_type,
            'isWalletToken': self.is_wallet_token,
            'rawLength': self.raw_length,
            'jwtClaims': claims,
        }


def decode_jwt_payload(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode the middle segment of a three-part token as base64 JSON.

    Returns:
        The decoded claims, or None if the token is not decodable
    """
    parts = token.split('.')
    if len(parts) != 3:
        return None

    segment = parts[1]
    segment += '=' * (-len(segment) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment).decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None

    return payload if isinstance(payload, dict) else None


def analyze_token(card_token: str) -> TokenAnalysis:
    """
    Analyze a card token for routing and debugging.

    Args:
        card_token: The opaque token

    Returns:
        TokenAnalysis; issuer_id is None when the default issuer applies
    """
    analysis = TokenAnalysis(raw_length=len(card_token))

    wallet_match = WALLET_TOKEN_PATTERN.match(card_token)
    if wallet_match:
        analysis.prefix = wallet_match.group(1)
        analysis.issuer_id = wallet_match.group(2)
        analysis.is_wallet_token = True
    else:
        prefix_match = PREFIX_PATTERN.match(card_token)
        if prefix_match:
            analysis.prefix = prefix_match.group(1)

    payload = decode_jwt_payload(card_token)
    if payload is not None:
        analysis.is_jwt = True
        analysis.jwt_payload = payload
        token_type = payload.get('type')
        analysis.token_type = token_type if isinstance(token_type, str) else None

        if token_type == WALLET_PAYMENT_TOKEN_TYPE:
            analysis.is_wallet_token = True

        # Claims only route tokens that no earlier rule claimed
        if analysis.issuer_id is None and not card_token.startswith(CONSENT_TOKEN_PREFIX):
            claim = payload.get('issuerId') or payload.get('bsimId')
            if isinstance(claim, str) and claim:
                analysis.issuer_id = claim

    return analysis


class TokenRouter:
    """
    Maps tokens to issuer gateways.

    Unknown issuer ids fall back to the default instance; if even that is
    missing, a bare gateway built from the single-issuer settings is used so
    authorize attempts stay possible during partial misconfiguration.
    """

    def __init__(self, registry: IssuerRegistry):
        self.registry = registry
        self._fallback_gateway: Optional[IssuerGateway] = None
        self._stats = {
            "routed": 0,
            "fallback_to_default": 0,
            "fallback_bare": 0
        }

    @property
    def default_issuer_id(self) -> str:
        return self.registry.default_issuer_id

    def resolve(self, card_token: str) -> Tuple[str, TokenAnalysis]:
        """
        Determine the issuer instance id for a token.

        Args:
            card_token: The opaque token

        Returns:
            Tuple of (issuer_id, analysis)
        """
        analysis = analyze_token(card_token)
        issuer_id = analysis.issuer_id or self.default_issuer_id
        return issuer_id, analysis

    def gateway_for(self, issuer_id: Optional[str]) -> IssuerGateway:
        """
        Get the gateway for an issuer id, falling back to the default.

        Args:
            issuer_id: Issuer instance id (None means default)

        Returns:
            An IssuerGateway; never None
        """
        self._stats["routed"] += 1
        effective_id = issuer_id or self.default_issuer_id

        gateway = self.registry.get_gateway(effective_id)
        if gateway is not None:
            return gateway

        default_gateway = self.registry.get_gateway(self.default_issuer_id)
        if default_gateway is not None:
            self._stats["fallback_to_default"] += 1
            logger.warning(
                f"Unknown issuer id '{effective_id}', "
                f"falling back to default '{self.default_issuer_id}'"
            )
            return default_gateway

        self._stats["fallback_bare"] += 1
        logger.error(
            f"No issuer gateways available for '{effective_id}', "
            f"using fallback client at {config.issuer.base_url}"
        )
        if self._fallback_gateway is None:
            self._fallback_gateway = IssuerGateway(IssuerProvider(
                issuer_id=self.default_issuer_id,
                name='fallback',
                base_url=config.issuer.base_url,
                api_key=config.issuer.api_key
            ))
        return self._fallback_gateway

    def route(self, card_token: str) -> Tuple[IssuerGateway, TokenAnalysis]:
        """Resolve a token straight to a gateway."""
        issuer_id, analysis = self.resolve(card_token)
        return self.gateway_for(issuer_id), analysis

    async def close(self) -> None:
        if self._fallback_gateway is not None:
            await self._fallback_gateway.close()
            self._fallback_gateway = None

    def get_stats(self) -> Dict[str, int]:
        """
        Get routing statistics.

        Returns:
            Statistics dictionary
        """
        return self._stats.copy()
