"""
backend/services/chain.py

Async client for an Esplora-compatible chain API (blockstream.info,
mempool.space, or a self-hosted electrs/esplora).

Only one endpoint is used:
    GET {base_url}/address/{address}/txs
which returns the most recent transactions touching the address. Only the
outputs (vout) matter for payment detection.

Every failure (transport, non-2xx, malformed JSON) surfaces as
ExternalServiceError so callers can treat it as "no answer this time".
"""

import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from backend.config import settings
from backend.errors import ExternalServiceError

logger = logging.getLogger(__name__)

USER_AGENT = "satledger/1.0"


class EsploraTxStatus(BaseModel):
    confirmed: bool = False
    block_height: Optional[int] = None
    block_time: Optional[int] = None


class EsploraVout(BaseModel):
    scriptpubkey_address: Optional[str] = None
    value: int = 0


class EsploraTx(BaseModel):
    txid: str
    status: EsploraTxStatus = Field(default_factory=EsploraTxStatus)
    vout: List[EsploraVout] = Field(default_factory=list)

    def amount_to(self, address: str) -> int:
        """Sum of outputs paying exactly `address`, in sat."""
        return sum(o.value for o in self.vout if o.scriptpubkey_address == address)


class ChainQueryClient:
    """
    Thin wrapper over httpx.AsyncClient. Pass `transport` to inject an
    httpx.MockTransport in tests.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.esplora_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={"User-Agent": USER_AGENT},
        )

    async def get_address_transactions(self, address: str) -> List[EsploraTx]:
        url = f"{self.base_url}/address/{address}/txs"
        async with self._client() as client:
            try:
                resp = await client.get(url)
            except httpx.HTTPError as e:
                logger.warning(f"Chain API request failed for {address}: {e}")
                raise ExternalServiceError(f"Chain API request failed: {e}")

        if resp.status_code != 200:
            logger.warning(f"Chain API returned {resp.status_code} for {address}")
            raise ExternalServiceError(f"Chain API returned HTTP {resp.status_code}")

        try:
            payload = resp.json()
            if not isinstance(payload, list):
                raise ValueError("expected a JSON array")
            return [EsploraTx.model_validate(item) for item in payload]
        except (ValueError, ValidationError) as e:
            logger.warning(f"Unparseable chain API response for {address}: {e}")
            raise ExternalServiceError(f"Unparseable chain API response: {e}")


def get_chain_client() -> ChainQueryClient:
    """FastAPI dependency; overridden in tests."""
    return ChainQueryClient()
