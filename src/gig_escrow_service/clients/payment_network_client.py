"""Async HTTP client for the payment network API."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx

from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.logging import get_logger
from gig_escrow_service.services.payments import Payment, parse_payment

if TYPE_CHECKING:
    from decimal import Decimal

    from gig_escrow_service.clients.wallet_signer import WalletSigner

_REPEAT_APPROVAL_ERRORS = frozenset({"already_approved", "payment_already_approved"})
_REPEAT_COMPLETION_ERRORS = frozenset({"already_completed", "payment_already_completed"})
_REPEAT_CANCEL_ERRORS = frozenset({"already_cancelled", "payment_already_cancelled"})


def _network_error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        code = body.get("error")
        if isinstance(code, str):
            return code
    return None


def _malformed_response() -> ServiceError:
    return ServiceError(
        error="PAYMENT_NETWORK_UNAVAILABLE",
        message="Payment network returned a malformed response",
        status_code=502,
        details={},
    )


class PaymentNetworkClient:
    """
    Client for the payment network's payment endpoints.

    Every request carries the server-held API key (``Authorization: Key``).
    Two directions share the same primitives:

    1. User-to-app payments created by the payer's wallet: the server only
       approves, completes or cancels them.
    2. App-to-user (A2U) payouts created by the server: create, submit
       (signed with the app wallet) and complete.

    Transport failures and 5xx responses surface as
    ``PAYMENT_NETWORK_UNAVAILABLE`` (502). Idempotent calls are retried
    ``max_retries`` times with a fixed backoff first.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: int,
        max_retries: int,
        retry_backoff_seconds: float,
        wallet_signer: WalletSigner | None,
    ) -> None:
        self._base_url = base_url
        self._max_retries = max_retries
        self._retry_backoff_seconds = retry_backoff_seconds
        self._wallet_signer = wallet_signer
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Key {api_key}"},
        )

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        retry: bool = False,
    ) -> httpx.Response:
        logger = get_logger(__name__)
        attempts = self._max_retries + 1 if retry else 1

        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(
                    method,
                    path,
                    json=json_body,
                    headers=headers,
                )
            except httpx.HTTPError as exc:
                logger.warning(
                    "Payment network request failed",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "error": str(exc),
                        "base_url": self._base_url,
                    },
                )
                if attempt < attempts:
                    await asyncio.sleep(self._retry_backoff_seconds)
                    continue
                raise ServiceError(
                    error="PAYMENT_NETWORK_UNAVAILABLE",
                    message="Cannot reach the payment network",
                    status_code=502,
                    details={},
                ) from exc

            if response.status_code >= 500 and attempt < attempts:
                logger.warning(
                    "Payment network server error, retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "status_code": response.status_code,
                    },
                )
                await asyncio.sleep(self._retry_backoff_seconds)
                continue
            return response

        msg = "unreachable: retry loop exited without a response"
        raise RuntimeError(msg)

    def _raise_for_status(
        self,
        response: httpx.Response,
        operation: str,
        payment_id: str | None,
    ) -> None:
        if response.status_code < 400:
            return

        logger = get_logger(__name__)
        logger.warning(
            "Payment network rejected request",
            extra={
                "operation": operation,
                "payment_id": payment_id,
                "status_code": response.status_code,
                "body": response.text[:500],
            },
        )

        if response.status_code == 404:
            raise ServiceError(
                error="PAYMENT_NOT_FOUND",
                message="Payment not found on the payment network",
                status_code=404,
                details={},
            )
        if response.status_code == 409:
            raise ServiceError(
                error="PAYMENT_CONFLICT",
                message="Payment network reported a conflicting payment state",
                status_code=409,
                details={},
            )
        if response.status_code in (401, 403):
            raise ServiceError(
                error="PAYMENT_NETWORK_UNAUTHORIZED",
                message="Payment network rejected the server credentials",
                status_code=502,
                details={},
            )
        if response.status_code < 500:
            raise ServiceError(
                error="PAYMENT_NETWORK_REJECTED",
                message="Payment network rejected the request",
                status_code=400,
                details={},
            )
        raise ServiceError(
            error="PAYMENT_NETWORK_UNAVAILABLE",
            message="Payment network returned an unexpected status",
            status_code=502,
            details={},
        )

    def _json_object(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise _malformed_response() from exc
        if not isinstance(data, dict):
            raise _malformed_response()
        return data

    def _parse_payment_response(self, response: httpx.Response) -> Payment:
        return self._parse_network_payment(self._json_object(response))

    def _parse_network_payment(self, data: object) -> Payment:
        try:
            return parse_payment(data)
        except ServiceError as exc:
            raise ServiceError(
                error="PAYMENT_NETWORK_UNAVAILABLE",
                message="Payment network returned a malformed payment",
                status_code=502,
                details={},
            ) from exc

    # ------------------------------------------------------------------
    # Payment primitives
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: str) -> Payment:
        """
        Fetch a payment by identifier.

        Raises:
            ServiceError: PAYMENT_NOT_FOUND (404) if unknown to the network
            ServiceError: PAYMENT_NETWORK_UNAVAILABLE (502)
        """
        response = await self._send(
            "GET",
            f"/payments/{payment_id}",
            operation="get_payment",
            retry=True,
        )
        self._raise_for_status(response, "get_payment", payment_id)
        return self._parse_payment_response(response)

    async def approve_payment(self, payment_id: str) -> None:
        """
        Approve a user-to-app payment.

        A repeat approval reported by the network is treated as success.
        """
        response = await self._send(
            "POST",
            f"/payments/{payment_id}/approve",
            operation="approve_payment",
        )
        if response.status_code >= 400 and _network_error_code(response) in _REPEAT_APPROVAL_ERRORS:
            get_logger(__name__).info(
                "Payment already approved", extra={"payment_id": payment_id}
            )
            return
        self._raise_for_status(response, "approve_payment", payment_id)

    async def complete_payment(
        self,
        payment_id: str,
        txid: str,
        expected_amount: Decimal | None = None,
    ) -> Payment:
        """
        Complete a payment whose transaction has been broadcast.

        Args:
            payment_id: Network payment identifier
            txid: Blockchain transaction id
            expected_amount: If given, the network's recorded amount must match

        Raises:
            ServiceError: PAYMENT_CONFLICT (409) on amount mismatch or network conflict
        """
        if expected_amount is not None:
            current = await self.get_payment(payment_id)
            if current.amount != expected_amount:
                get_logger(__name__).warning(
                    "Refusing to complete payment with unexpected amount",
                    extra={
                        "payment_id": payment_id,
                        "expected_amount": str(expected_amount),
                        "network_amount": str(current.amount),
                    },
                )
                raise ServiceError(
                    error="PAYMENT_CONFLICT",
                    message="Payment amount does not match the expected amount",
                    status_code=409,
                    details={},
                )

        response = await self._send(
            "POST",
            f"/payments/{payment_id}/complete",
            operation="complete_payment",
            json_body={"txid": txid},
        )
        if (
            response.status_code >= 400
            and _network_error_code(response) in _REPEAT_COMPLETION_ERRORS
        ):
            return await self.get_payment(payment_id)
        self._raise_for_status(response, "complete_payment", payment_id)
        return self._parse_payment_response(response)

    async def cancel_payment(self, payment_id: str) -> Payment:
        """Cancel a payment that has not been completed."""
        response = await self._send(
            "POST",
            f"/payments/{payment_id}/cancel",
            operation="cancel_payment",
        )
        if response.status_code >= 400 and _network_error_code(response) in _REPEAT_CANCEL_ERRORS:
            return await self.get_payment(payment_id)
        self._raise_for_status(response, "cancel_payment", payment_id)
        return self._parse_payment_response(response)

    async def create_a2u_payment(
        self,
        amount: Decimal,
        recipient_uid: str,
        memo: str,
        metadata: dict[str, Any],
    ) -> str:
        """
        Create an app-to-user payment and return its identifier.

        Not retried: a lost response would otherwise create a duplicate payout.
        """
        response = await self._send(
            "POST",
            "/payments",
            operation="create_a2u_payment",
            json_body={
                "payment": {
                    "amount": float(amount),
                    "memo": memo,
                    "metadata": metadata,
                    "uid": recipient_uid,
                }
            },
        )
        self._raise_for_status(response, "create_a2u_payment", None)
        return self._parse_payment_response(response).identifier

    async def submit_payment(self, payment_id: str) -> str:
        """
        Sign and submit an A2U payment's transaction, returning its txid.

        Raises:
            ServiceError: PAYMENT_NETWORK_UNAVAILABLE (502) if no txid comes back
        """
        if self._wallet_signer is None:
            msg = "Wallet signer not configured"
            raise RuntimeError(msg)

        payment = await self.get_payment(payment_id)
        envelope = self._wallet_signer.sign(
            {
                "action": "submit_payment",
                "payment_id": payment.identifier,
                "amount": str(payment.amount),
                "from_address": self._wallet_signer.address,
                "to_address": payment.to_address,
                "network": payment.network,
            }
        )

        response = await self._send(
            "POST",
            f"/payments/{payment_id}/submit",
            operation="submit_payment",
            json_body={"signed_envelope": envelope},
            retry=True,
        )
        self._raise_for_status(response, "submit_payment", payment_id)

        try:
            txid = response.json().get("txid")
        except (ValueError, AttributeError):
            txid = None
        if not isinstance(txid, str) or not txid:
            raise ServiceError(
                error="PAYMENT_NETWORK_UNAVAILABLE",
                message="Payment network did not return a transaction id",
                status_code=502,
                details={},
            )
        return txid

    async def get_incomplete_server_payments(self) -> list[Payment]:
        """List A2U payments the server created but never completed."""
        response = await self._send(
            "GET",
            "/payments/incomplete_server_payments",
            operation="get_incomplete_server_payments",
            retry=True,
        )
        self._raise_for_status(response, "get_incomplete_server_payments", None)
        items = self._json_object(response).get("incomplete_server_payments", [])
        if not isinstance(items, list):
            raise _malformed_response()
        return [self._parse_network_payment(item) for item in items]

    async def get_me(self, access_token: str) -> dict[str, Any]:
        """
        Resolve a wallet access token to the authenticated user.

        Returns:
            dict with keys: uid, username

        Raises:
            ServiceError: INVALID_ACCESS_TOKEN (401) if the network rejects the token
        """
        response = await self._send(
            "GET",
            "/me",
            operation="get_me",
            headers={"Authorization": f"Bearer {access_token}"},
            retry=True,
        )
        if response.status_code == 401:
            raise ServiceError(
                error="INVALID_ACCESS_TOKEN",
                message="Access token was rejected by the payment network",
                status_code=401,
                details={},
            )
        self._raise_for_status(response, "get_me", None)

        user = self._json_object(response)
        if not isinstance(user.get("uid"), str) or not isinstance(user.get("username"), str):
            raise ServiceError(
                error="PAYMENT_NETWORK_UNAVAILABLE",
                message="Payment network returned a malformed user",
                status_code=502,
                details={},
            )
        return {"uid": user["uid"], "username": user["username"]}

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
