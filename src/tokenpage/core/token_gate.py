"""Token-gated access to private content.

A visitor unlocks a gated link by proving their wallet holds at least the
threshold balance of the page's connected token. The ledger is queried on
every check; balances are never cached. On success the visitor receives a
signed link to the private resource that expires on its own.

From the visitor's side a gated item moves through::

    LOCKED --check--> CHECKING --allowed--> GRANTED --expired--> LOCKED
                               --denied---> DENIED  --check----> CHECKING
                                                    --reset----> LOCKED

There is no revocation of a granted link besides expiry, and no rate
limiting or single-use enforcement.
"""

import hashlib
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner

from tokenpage.core.errors import ServiceError
from tokenpage.core.models import AccessResult, SignedAccess

logger = logging.getLogger(__name__)

SIGNATURE_PARAM = "signature"


class GateState(str, Enum):
    LOCKED = "locked"
    CHECKING = "checking"
    GRANTED = "granted"
    DENIED = "denied"

    def next(self, event: str) -> "GateState":
        """Apply a visitor event; unknown transitions raise ValueError."""
        try:
            return _TRANSITIONS[(self, event)]
        except KeyError:
            raise ValueError(f"No transition from {self.value} on {event!r}") from None


_TRANSITIONS = {
    (GateState.LOCKED, "check"): GateState.CHECKING,
    (GateState.CHECKING, "allowed"): GateState.GRANTED,
    (GateState.CHECKING, "denied"): GateState.DENIED,
    (GateState.DENIED, "check"): GateState.CHECKING,
    (GateState.DENIED, "reset"): GateState.LOCKED,
    (GateState.GRANTED, "expired"): GateState.LOCKED,
}


def parse_amount(value: Any) -> Decimal:
    """Parse a token amount without losing precision.

    Malformed amounts count as zero.
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("Unparseable token amount %r", value)
        return Decimal(0)
    if not amount.is_finite():
        return Decimal(0)
    return amount


def asset_token_id(asset: dict[str, Any]) -> str | None:
    """The token identifier of a ledger asset entry."""
    metadata = (asset.get("content") or {}).get("metadata") or {}
    token_id = asset.get("id") or asset.get("mint") or metadata.get("mint")
    return token_id if isinstance(token_id, str) else None


class AssetLedger(ABC):
    """Abstract base class for on-chain balance lookups."""

    @abstractmethod
    async def fungible_assets(self, wallet: str) -> list[dict[str, Any]]:
        """All fungible holdings of a wallet.

        Raises:
            ServiceError: if the ledger cannot be reached or answers garbage.
        """
        ...


class RpcAssetLedger(AssetLedger):
    """Ledger backed by a ``getAssetsByOwner`` JSON-RPC endpoint."""

    PAGE_LIMIT = 1000

    def __init__(self, client: httpx.AsyncClient, url: str, api_key: str):
        self.client = client
        self.url = url
        self.api_key = api_key

    async def fungible_assets(self, wallet: str) -> list[dict[str, Any]]:
        payload = {
            "jsonrpc": "2.0",
            "id": "token-holdings",
            "method": "getAssetsByOwner",
            "params": {
                "ownerAddress": wallet,
                "page": 1,
                "limit": self.PAGE_LIMIT,
                "displayOptions": {"showFungible": True},
            },
        }
        try:
            response = await self.client.post(
                self.url, params={"api-key": self.api_key}, json=payload
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.exception("Ledger request failed for %s", wallet)
            raise ServiceError("Failed to verify token holdings") from exc

        if not isinstance(data, dict):
            raise ServiceError("Failed to verify token holdings")
        if data.get("error"):
            logger.error("Ledger returned error: %s", data["error"])
            raise ServiceError("Failed to verify token holdings")

        items = (data.get("result") or {}).get("items")
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]


class _ClockedSigner(TimestampSigner):
    """TimestampSigner reading the time from an injectable clock."""

    def __init__(self, *args: Any, clock: Callable[[], float], **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.clock = clock

    def get_timestamp(self) -> int:
        return int(self.clock())


class UrlSigner:
    """Issues and checks signed, expiring URLs.

    The resource URL is signed with an itsdangerous ``TimestampSigner`` and
    the timestamped signature travels in the ``signature`` query parameter.
    Expiry is enforced by whoever serves the resource: it must share the
    signing secret and check links with :meth:`verify` (or the equivalent
    ``TimestampSigner.unsign`` with ``max_age``).
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("A signing secret is required")
        self.ttl_seconds = ttl_seconds
        self._signer = _ClockedSigner(
            secret,
            salt="private-content",
            digest_method=hashlib.sha256,
            clock=clock,
        )

    @staticmethod
    def _canonical(url: str) -> tuple[str, str | None]:
        """Split a URL into its unsigned form and its signature."""
        parts = urlsplit(url)
        query = parse_qsl(parts.query, keep_blank_values=True)
        kept = [(k, v) for k, v in query if k != SIGNATURE_PARAM]
        signature = next((v for k, v in query if k == SIGNATURE_PARAM), None)
        return urlunsplit(parts._replace(query=urlencode(kept))), signature

    def sign(self, url: str) -> str:
        base, _ = self._canonical(url)
        token = self._signer.sign(base).decode()
        signature = token[len(base) + 1:]
        parts = urlsplit(base)
        query = parse_qsl(parts.query, keep_blank_values=True)
        query.append((SIGNATURE_PARAM, signature))
        return urlunsplit(parts._replace(query=urlencode(query)))

    def verify(self, url: str) -> bool:
        """True if the URL carries a valid, unexpired signature."""
        base, signature = self._canonical(url)
        if not signature:
            return False
        try:
            self._signer.unsign(
                f"{base}.{signature}", max_age=self.ttl_seconds
            )
        except SignatureExpired:
            logger.info("Signed link expired: %s", base)
            return False
        except BadSignature:
            return False
        return True

    def describe_ttl(self) -> str:
        """Human readable lifetime, e.g. ``10 minutes``."""
        if self.ttl_seconds % 60 == 0:
            minutes = self.ttl_seconds // 60
            return f"{minutes} minute{'s' if minutes != 1 else ''}"
        return f"{self.ttl_seconds} seconds"


class TokenGateVerifier:
    """Checks token balances and hands out signed links on success."""

    def __init__(self, ledger: AssetLedger, signer: UrlSigner):
        self.ledger = ledger
        self.signer = signer

    async def check_access(
        self, wallet: str, token_address: str, threshold: Decimal
    ) -> AccessResult:
        """Compare the wallet's balance of a token against a threshold.

        A wallet holding none of the token gets ``allowed=False`` and a
        balance of ``"0"``. The comparison is inclusive.
        """
        token = token_address.lower()
        assets = await self.ledger.fungible_assets(wallet)
        holding = next(
            (a for a in assets if (asset_token_id(a) or "").lower() == token), None
        )
        if holding is None:
            return AccessResult(allowed=False, balance="0")

        raw_balance = (holding.get("token_info") or {}).get("balance")
        if raw_balance is None:
            return AccessResult(allowed=False, balance="0")
        balance = str(raw_balance)
        return AccessResult(allowed=parse_amount(balance) >= threshold, balance=balance)

    def issue_signed_access(self, resource_url: str) -> SignedAccess:
        """Sign a private resource URL. Only call after a granted check."""
        return SignedAccess(
            url=self.signer.sign(resource_url),
            expires_in=self.signer.describe_ttl(),
        )
