"""
Payment store adapters.

The settlement core only needs four operations on payment records: fetch one,
apply a partial update guarded by the previously known status, list by
status (for restart recovery), and insert. Two adapters are provided:

- ``InMemoryPaymentStore`` - process-local, for tests and single-node tools
- ``RestPaymentStore``     - a PostgREST (e.g. Supabase) ``payments`` table

Every update carries ``expected_status``; a record whose status moved on in
the meantime is left untouched and ``ConcurrentUpdateError`` is raised, so a
late tracker result can never clobber a concurrent terminal transition.
"""

import abc
import asyncio
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import httpx

from ccip_settlement.exceptions import (
    ConcurrentUpdateError,
    InvalidStateError,
    PaymentNotFoundError,
)
from ccip_settlement.models import PAYMENT_COLUMNS, Payment, PaymentStatus

# Fields that may be set once and never changed afterwards
WRITE_ONCE_FIELDS = ("delivery_message_id", "source_tx_hash")


def encode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Translate python field names/values into persisted column names/values."""
    encoded: dict[str, Any] = {}
    for name, value in fields.items():
        if name not in PAYMENT_COLUMNS:
            raise ValueError(f"Unknown payment field '{name}'")
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, Enum):
            value = value.value
        encoded[PAYMENT_COLUMNS[name]] = value
    return encoded


def check_write_once(current: Payment, fields: dict[str, Any]) -> None:
    """Reject changes to write-once fields that already hold a value."""
    for name in WRITE_ONCE_FIELDS:
        if name not in fields:
            continue
        existing = getattr(current, name)
        if existing is not None and fields[name] != existing:
            raise InvalidStateError(
                f"{name} is already set and cannot change",
                payment_id=current.id,
            )


class PaymentStore(abc.ABC):
    """Durable record of payments."""

    @abc.abstractmethod
    async def get(self, payment_id: str) -> Payment:
        """Fetch a payment; raises ``PaymentNotFoundError``."""

    @abc.abstractmethod
    async def update(
        self,
        payment_id: str,
        fields: dict[str, Any],
        *,
        expected_status: PaymentStatus,
    ) -> Payment:
        """Apply a partial update if the stored status is ``expected_status``."""

    @abc.abstractmethod
    async def list_by_status(self, status: PaymentStatus) -> list[Payment]:
        """Return every payment currently in ``status``."""

    @abc.abstractmethod
    async def add(self, payment: Payment) -> Payment:
        """Insert a new payment record."""

    async def aclose(self) -> None:
        """Release connections held by the store."""


class InMemoryPaymentStore(PaymentStore):
    """Dictionary-backed store. Updates are serialized by one asyncio lock."""

    def __init__(self, payments: Optional[list[Payment]] = None):
        self._records: dict[str, Payment] = {}
        self._lock = asyncio.Lock()
        self.update_count = 0
        for payment in payments or []:
            self._records[payment.id] = payment

    async def get(self, payment_id: str) -> Payment:
        try:
            return self._records[payment_id]
        except KeyError:
            raise PaymentNotFoundError("Payment not found", payment_id=payment_id) from None

    async def update(
        self,
        payment_id: str,
        fields: dict[str, Any],
        *,
        expected_status: PaymentStatus,
    ) -> Payment:
        async with self._lock:
            current = await self.get(payment_id)
            if current.status != expected_status:
                raise ConcurrentUpdateError(
                    f"Expected status {expected_status.value}, found {current.status.value}",
                    payment_id=payment_id,
                    expected_status=expected_status.value,
                )
            check_write_once(current, fields)
            updated = Payment.model_validate({**current.model_dump(), **fields})
            self._records[payment_id] = updated
            self.update_count += 1
            return updated

    async def list_by_status(self, status: PaymentStatus) -> list[Payment]:
        return [p for p in self._records.values() if p.status == status]

    async def add(self, payment: Payment) -> Payment:
        async with self._lock:
            if payment.id in self._records:
                raise InvalidStateError("Payment already exists", payment_id=payment.id)
            self._records[payment.id] = payment
            return payment


class RestPaymentStore(PaymentStore):
    """
    Payment store on a PostgREST endpoint (Supabase ``/rest/v1``).

    Preconditions are expressed as row filters on the PATCH request, so the
    check and the write happen in one statement on the server.

    Example:
        >>> async with RestPaymentStore(
        ...     "https://project.supabase.co", api_key="service-key"
        ... ) as store:
        ...     payment = await store.get("7d0f...")
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        table: str = "payments",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the store.

        Args:
            base_url: Project URL (``/rest/v1`` is appended)
            api_key: API key sent as ``apikey`` and bearer token
            table: Payments table name
            timeout: Request timeout in seconds
            client: Pre-configured HTTP client (mainly for tests)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.table = table
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def __aenter__(self) -> "RestPaymentStore":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def _url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def _get_headers(self, *, representation: bool = False) -> dict[str, str]:
        """Get request headers."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if representation:
            headers["Prefer"] = "return=representation"
        return headers

    async def get(self, payment_id: str) -> Payment:
        """
        Get a payment by id.

        Raises:
            PaymentNotFoundError: If no row matches
            httpx.HTTPStatusError: If the request fails
        """
        response = await self._client.get(
            self._url,
            params={"id": f"eq.{payment_id}", "select": "*"},
            headers=self._get_headers(),
        )
        response.raise_for_status()
        rows = response.json()
        if not rows:
            raise PaymentNotFoundError("Payment not found", payment_id=payment_id)
        return Payment.model_validate(rows[0])

    async def update(
        self,
        payment_id: str,
        fields: dict[str, Any],
        *,
        expected_status: PaymentStatus,
    ) -> Payment:
        """
        Apply a partial update guarded by ``expected_status``.

        Raises:
            ConcurrentUpdateError: If the row's status moved on
            InvalidStateError: If a write-once field is already set
            PaymentNotFoundError: If no row matches
        """
        params = {"id": f"eq.{payment_id}", "status": f"eq.{expected_status.value}"}
        for name in WRITE_ONCE_FIELDS:
            if fields.get(name) is not None:
                params[PAYMENT_COLUMNS[name]] = "is.null"

        response = await self._client.patch(
            self._url,
            params=params,
            json=encode_fields(fields),
            headers=self._get_headers(representation=True),
        )
        response.raise_for_status()
        rows = response.json()
        if rows:
            return Payment.model_validate(rows[0])

        # Nothing matched: find out which precondition failed
        current = await self.get(payment_id)
        if current.status != expected_status:
            raise ConcurrentUpdateError(
                f"Expected status {expected_status.value}, found {current.status.value}",
                payment_id=payment_id,
                expected_status=expected_status.value,
            )
        check_write_once(current, fields)
        # Write-once value equal to the stored one: retry without that filter
        retry = {k: v for k, v in fields.items() if k not in WRITE_ONCE_FIELDS}
        if retry == fields:
            raise ConcurrentUpdateError(
                "Payment changed while updating",
                payment_id=payment_id,
                expected_status=expected_status.value,
            )
        return await self.update(payment_id, retry, expected_status=expected_status)

    async def list_by_status(self, status: PaymentStatus) -> list[Payment]:
        response = await self._client.get(
            self._url,
            params={"status": f"eq.{status.value}", "select": "*"},
            headers=self._get_headers(),
        )
        response.raise_for_status()
        return [Payment.model_validate(row) for row in response.json()]

    async def add(self, payment: Payment) -> Payment:
        response = await self._client.post(
            self._url,
            json=payment.to_record(),
            headers=self._get_headers(representation=True),
        )
        response.raise_for_status()
        return Payment.model_validate(response.json()[0])
