"""
Status oracle for cross-chain messages.

Resolves a CCIP message id to a ``CanonicalStatus`` by asking an ordered
chain of sources; the first source with an answer wins:

1. ``RemoteApiSource``       - remote status endpoints, first well-formed reply
2. ``OnChainSource``         - destination OffRamp ``getExecutionState``
3. ``InFlightDefaultSource`` - well-formed id with no evidence: still in flight

A terminal status (``SUCCESS``/``FAILED``) is only ever produced from
explicit terminal evidence. Errors make a source abstain; they never become
an outcome.

Example:
    >>> oracle = StatusOracle.from_config(config, chain_client)
    >>> status = await oracle.resolve("0x3f...")
    >>> status.is_terminal
    False
"""

import abc
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import httpx

from ccip_settlement.chain_client import ChainClient
from ccip_settlement.config import SettlementConfig
from ccip_settlement.exceptions import TrackingDegradedError
from ccip_settlement.models import CanonicalStatus
from ccip_settlement.receipts import is_bytes32_hex

logger = logging.getLogger(__name__)

# Body fields that may carry the status, in lookup order
STATUS_FIELDS = ("status", "state", "messageState", "executionState")

# OffRamp execution state codes
EXECUTION_STATES: dict[int, CanonicalStatus] = {
    0: CanonicalStatus.COMMITTING,  # Untouched: not reached the destination yet
    1: CanonicalStatus.EXECUTING,  # InProgress
    2: CanonicalStatus.SUCCESS,
    3: CanonicalStatus.FAILED,
}

_LEXICON: dict[str, CanonicalStatus] = {
    "success": CanonicalStatus.SUCCESS,
    "successful": CanonicalStatus.SUCCESS,
    "succeeded": CanonicalStatus.SUCCESS,
    "completed": CanonicalStatus.SUCCESS,
    "complete": CanonicalStatus.SUCCESS,
    "executed": CanonicalStatus.SUCCESS,
    "delivered": CanonicalStatus.SUCCESS,
    "failed": CanonicalStatus.FAILED,
    "failure": CanonicalStatus.FAILED,
    "error": CanonicalStatus.FAILED,
    "reverted": CanonicalStatus.FAILED,
    "untouched": CanonicalStatus.NOT_STARTED,
    "in_progress": CanonicalStatus.EXECUTING,
    "inprogress": CanonicalStatus.EXECUTING,
    "finalized": CanonicalStatus.SOURCE_FINALIZED,
}
_LEXICON.update({status.value.lower(): status for status in CanonicalStatus})


def map_execution_state(code: int) -> Optional[CanonicalStatus]:
    """Map an OffRamp execution state code; unknown codes map to None."""
    return EXECUTION_STATES.get(code)


def map_remote_status(value: Any) -> CanonicalStatus:
    """
    Map a free-text (or numeric) remote status value to a canonical status.

    Unrecognized values are treated as still in flight rather than guessed.

    >>> map_remote_status("Waiting for finality")
    <CanonicalStatus.SOURCE_FINALIZED: 'SOURCE_FINALIZED'>
    >>> map_remote_status("SUCCESS")
    <CanonicalStatus.SUCCESS: 'SUCCESS'>
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return map_execution_state(value) or CanonicalStatus.SOURCE_FINALIZED

    text = str(value).strip().lower()
    if "waiting" in text or "finality" in text:
        return CanonicalStatus.SOURCE_FINALIZED
    normalized = text.replace("-", "_").replace(" ", "_")
    return _LEXICON.get(normalized, CanonicalStatus.SOURCE_FINALIZED)


def extract_status_value(body: Any) -> Optional[Any]:
    """Return the first present, non-empty status field of a JSON body."""
    if not isinstance(body, dict):
        return None
    for name in STATUS_FIELDS:
        value = body.get(name)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


@dataclass
class Resolution:
    """A canonical status and the name of the source that produced it."""

    status: CanonicalStatus
    source: str

    @property
    def from_remote(self) -> bool:
        return self.source == RemoteApiSource.name


class StatusSource(abc.ABC):
    """One layer of the oracle. Returns None to let the next layer answer."""

    name: str = "source"

    @abc.abstractmethod
    async def query(self, message_id: str) -> Optional[CanonicalStatus]:
        """Resolve ``message_id`` or abstain with None."""


class RemoteApiSource(StatusSource):
    """
    Queries an ordered list of remote status endpoints.

    Each endpoint is ``GET {base_url}/messages/{message_id}``, bounded by a
    per-endpoint timeout so one slow endpoint cannot stall the poll cadence.
    """

    name = "remote_api"

    def __init__(
        self,
        base_urls: Sequence[str],
        *,
        timeout: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the remote source.

        Args:
            base_urls: Status API base URLs, most preferred first
            timeout: Per-endpoint request timeout in seconds
            client: Shared HTTP client (one is created when omitted)
        """
        self.base_urls = [url.rstrip("/") for url in base_urls]
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def __aenter__(self) -> "RemoteApiSource":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _query_endpoint(self, base_url: str, message_id: str) -> Optional[CanonicalStatus]:
        url = f"{base_url}/messages/{message_id}"
        try:
            response = await self._client.get(
                url,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.debug("Status endpoint %s unreachable: %s", base_url, e)
            return None

        if not response.is_success:
            logger.debug("Status endpoint %s returned HTTP %s", base_url, response.status_code)
            return None
        try:
            body = response.json()
        except ValueError:
            logger.debug("Status endpoint %s returned a non-JSON body", base_url)
            return None

        value = extract_status_value(body)
        if value is None:
            logger.debug("Status endpoint %s returned no status field", base_url)
            return None
        return map_remote_status(value)

    async def query(self, message_id: str) -> Optional[CanonicalStatus]:
        for base_url in self.base_urls:
            status = await self._query_endpoint(base_url, message_id)
            if status is not None:
                return status
        return None


class OnChainSource(StatusSource):
    """Reads the destination OffRamp's execution state."""

    name = "on_chain"

    def __init__(self, chain_client: ChainClient):
        self.chain_client = chain_client
        self.last_error: Optional[str] = None

    async def query(self, message_id: str) -> Optional[CanonicalStatus]:
        try:
            code = await self.chain_client.read_execution_state(message_id)
        except Exception as e:
            # Typically "not indexed yet"; never evidence of an outcome
            self.last_error = str(e)
            logger.debug("On-chain execution state unavailable for %s: %s", message_id, e)
            return None
        self.last_error = None
        status = map_execution_state(code)
        if status is None:
            logger.warning("Unknown execution state %s for %s", code, message_id)
        return status


class InFlightDefaultSource(StatusSource):
    """Treats a well-formed message id without evidence as still in flight."""

    name = "in_flight_default"

    async def query(self, message_id: str) -> Optional[CanonicalStatus]:
        if is_bytes32_hex(message_id):
            return CanonicalStatus.SOURCE_FINALIZED
        return None


class StatusOracle:
    """Ordered chain of status sources."""

    def __init__(self, sources: Sequence[StatusSource]):
        if not sources:
            raise ValueError("StatusOracle needs at least one source")
        self.sources = list(sources)

    @classmethod
    def from_config(
        cls,
        config: SettlementConfig,
        chain_client: ChainClient,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "StatusOracle":
        """Build the default remote -> on-chain -> in-flight chain."""
        return cls([
            RemoteApiSource(
                config.status_api_urls,
                timeout=config.status_api_timeout,
                client=http_client,
            ),
            OnChainSource(chain_client),
            InFlightDefaultSource(),
        ])

    async def aclose(self) -> None:
        for source in self.sources:
            if isinstance(source, RemoteApiSource):
                await source.aclose()

    async def resolve_detailed(self, message_id: str) -> Resolution:
        """
        Resolve a message id, reporting which source answered.

        Raises:
            TrackingDegradedError: If every source abstained
        """
        for source in self.sources:
            status = await source.query(message_id)
            if status is not None:
                logger.debug("Resolved %s to %s via %s", message_id, status.value, source.name)
                return Resolution(status=status, source=source.name)
        raise TrackingDegradedError(
            f"No status source could resolve message {message_id}",
            message_id=message_id,
        )

    async def resolve(self, message_id: str) -> CanonicalStatus:
        """Resolve a message id to its canonical status."""
        return (await self.resolve_detailed(message_id)).status
