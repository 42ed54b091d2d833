"""
Issuer Gateway.

Retrying HTTP client bound to one issuer instance. Calls the issuer's
/api/payment-network endpoints and converts every failure into a
structured outcome.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from config import config
from exceptions import IssuerRequestError, TransientIssuerError
from models.issuer import AuthorizeOutcome, IssuerProvider, OperationOutcome
from models.transaction import AgentContext, amount_to_json, to_amount
from .retry import retry_async

logger = logging.getLogger(__name__)

API_PREFIX = '/api/payment-network'


def is_retryable_error(error: BaseException) -> bool:
    """
    Check if an error is worth retrying.

    5xx responses and transport failures (connection refused, timeout,
    DNS failure, connection reset) are retryable; everything else is not.
    """
    if isinstance(error, TransientIssuerError):
        return True
    if isinstance(error, (aiohttp.ClientConnectionError, asyncio.TimeoutError)):
        return True
    return False


def mask_token(card_token: str) -> str:
    """Partial token for logs."""
    return f"{card_token[:10]}..."


class IssuerGateway:
    """
    Client for one issuer instance's payment-network API.

    Features:
    - Static credential header on every request
    - Exponential backoff on 5xx and transport errors
    - Never raises past its own boundary; returns outcomes instead
    """

    def __init__(
        self,
        provider: IssuerProvider,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        timeout: Optional[int] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize the gateway.

        Args:
            provider: Issuer instance this gateway talks to
            max_retries: Additional attempts after the first
            retry_delay_ms: Backoff base in milliseconds
            timeout: Per-request timeout in seconds
            session: Optional shared aiohttp session
            sleep: Awaitable sleep used between retries
        """
        self.provider = provider
        self.max_retries = max_retries if max_retries is not None else config.issuer.max_retries
        self.retry_delay_ms = (
            retry_delay_ms if retry_delay_ms is not None else config.issuer.retry_delay_ms
        )
        self.timeout = timeout or config.issuer.request_timeout
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    @property
    def issuer_id(self) -> str:
        """The issuer instance this gateway is configured for."""
        return self.provider.issuer_id

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session if this gateway created it."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post_once(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Make a single POST to the issuer.

        Raises:
            TransientIssuerError: On 5xx or transport failure
            IssuerRequestError: On any other non-2xx status or a non-object body
        """
        url = f"{self.provider.base_url}{API_PREFIX}{endpoint}"
        headers = {
            'Content-Type': 'application/json',
            'X-API-Key': self.provider.api_key,
        }

        logger.debug(f"POST {url} (issuer={self.issuer_id})")

        try:
            async with self._get_session().post(url, json=body, headers=headers) as response:
                if response.status >= 500:
                    error_text = await response.text(errors='replace')
                    logger.error(f"Issuer {self.issuer_id} error {response.status}: {error_text}")
                    raise TransientIssuerError(
                        f"Issuer request failed: {response.status} {error_text}",
                        status_code=response.status
                    )

                if response.status >= 400:
                    error_text = await response.text(errors='replace')
                    logger.error(f"Issuer {self.issuer_id} error {response.status}: {error_text}")
                    raise IssuerRequestError(
                        f"Issuer request failed: {response.status} {error_text}",
                        status_code=response.status
                    )

                data = await response.json(content_type=None)
                if not isinstance(data, dict):
                    logger.error(
                        f"Issuer {self.issuer_id} returned a non-object body for {endpoint}: {data!r}"
                    )
                    raise IssuerRequestError(
                        f"Issuer returned an invalid response body: {data!r}",
                        status_code=response.status
                    )
                return data

        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise TransientIssuerError(f"Network error calling issuer: {e!r}") from e

    async def _request(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST with retry on retryable failures."""
        return await retry_async(
            lambda: self._post_once(endpoint, body),
            should_retry=is_retryable_error,
            max_retries=self.max_retries,
            base_delay=self.retry_delay_ms / 1000.0,
            sleep=self._sleep,
            label=f"Issuer {self.issuer_id} {endpoint}"
        )

    async def authorize(
        self,
        card_token: str,
        amount: Any,
        merchant_id: str,
        merchant_name: str,
        order_id: str,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        agent_context: Optional[AgentContext] = None
    ) -> AuthorizeOutcome:
        """
        Authorize a payment: validate the token and place a hold.

        Returns:
            AuthorizeOutcome (approved=False with a reason on any failure)
        """
        body: Dict[str, Any] = {
            'cardToken': card_token,
            'amount': amount_to_json(to_amount(amount)),
            'currency': currency or config.payment.default_currency,
            'merchantId': merchant_id,
            'merchantName': merchant_name,
            'orderId': order_id,
        }
        if description:
            body['description'] = description
        if agent_context is not None:
            body['agentContext'] = agent_context.to_issuer_dict()

        logger.info(
            f"Authorize via issuer {self.issuer_id}: token={mask_token(card_token)} "
            f"amount={body['amount']} {body['currency']} merchant={merchant_id} order={order_id}"
        )

        try:
            response = await self._request('/authorize', body)
        except TransientIssuerError as e:
            logger.error(f"Authorize failed at issuer {self.issuer_id}: {e}")
            return AuthorizeOutcome(approved=False, decline_reason=str(e), network_error=True)
        except Exception as e:
            logger.error(f"Authorize rejected by issuer {self.issuer_id}: {e}")
            return AuthorizeOutcome(approved=False, decline_reason=str(e))

        outcome = AuthorizeOutcome.from_response(response)
        logger.info(
            f"Authorize response from issuer {self.issuer_id}: "
            f"approved={outcome.approved} declineReason={outcome.decline_reason}"
        )
        return outcome

    async def _operation(self, endpoint: str, body: Dict[str, Any]) -> OperationOutcome:
        """Run capture/void/refund and map the result."""
        try:
            response = await self._request(endpoint, body)
        except TransientIssuerError as e:
            logger.error(f"{endpoint} failed at issuer {self.issuer_id}: {e}")
            return OperationOutcome(success=False, error=str(e), network_error=True)
        except Exception as e:
            logger.error(f"{endpoint} rejected by issuer {self.issuer_id}: {e}")
            return OperationOutcome(success=False, error=str(e))

        outcome = OperationOutcome.from_response(response)
        logger.info(
            f"{endpoint} response from issuer {self.issuer_id}: "
            f"success={outcome.success} error={outcome.error}"
        )
        return outcome

    async def capture(self, authorization_code: str, amount: Any) -> OperationOutcome:
        """Convert an authorization hold into a charge."""
        body = {
            'authorizationCode': authorization_code,
            'amount': amount_to_json(to_amount(amount)),
        }
        logger.info(f"Capture via issuer {self.issuer_id}: auth={authorization_code} amount={body['amount']}")
        return await self._operation('/capture', body)

    async def void(self, authorization_code: str) -> OperationOutcome:
        """Release an authorization hold without charging."""
        logger.info(f"Void via issuer {self.issuer_id}: auth={authorization_code}")
        return await self._operation('/void', {'authorizationCode': authorization_code})

    async def refund(self, authorization_code: str, amount: Any) -> OperationOutcome:
        """Credit a captured amount back to the card."""
        body = {
            'authorizationCode': authorization_code,
            'amount': amount_to_json(to_amount(amount)),
        }
        logger.info(f"Refund via issuer {self.issuer_id}: auth={authorization_code} amount={body['amount']}")
        return await self._operation('/refund', body)

    async def validate_token(self, card_token: str) -> bool:
        """
        Check whether a card token is valid at this issuer.

        Returns:
            True if the issuer reports the token valid; False on any error
        """
        logger.info(f"Validate token via issuer {self.issuer_id}: {mask_token(card_token)}")
        try:
            response = await self._request('/validate-token', {'cardToken': card_token})
        except Exception as e:
            logger.error(f"Validate token error at issuer {self.issuer_id}: {e}")
            return False
        return bool(response.get('valid'))

    def __repr__(self) -> str:
        return f"IssuerGateway(issuer={self.issuer_id}, url={self.provider.base_url})"
