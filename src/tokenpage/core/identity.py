"""Identity provider boundary.

Exchanges the opaque bearer credential carried in the request cookie for
the set of wallet addresses the caller has proven control of. Nothing is
cached: every request re-verifies its credential.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from tokenpage.core.errors import AuthenticationError, ServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedIdentity:
    """A caller whose credential checked out."""

    user_id: str
    wallets: tuple[str, ...] = field(default_factory=tuple)

    def covers(self, wallet: str) -> bool:
        """Case-insensitive membership of wallet in the verified set."""
        wallet = wallet.lower()
        return any(w.lower() == wallet for w in self.wallets)


class IdentityVerifier(ABC):
    """Abstract base class for credential verification."""

    @abstractmethod
    async def verify(self, credential: str) -> VerifiedIdentity:
        """Verify a credential.

        Raises:
            AuthenticationError: if the credential is invalid or expired.
            ServiceError: if the provider cannot be reached.
        """
        ...


def wallets_from_accounts(accounts: list[dict], chain_type: str) -> tuple[str, ...]:
    """Pick the wallet addresses of the given chain out of linked accounts."""
    wallets = []
    for account in accounts:
        if not isinstance(account, dict) or account.get("type") != "wallet":
            continue
        if chain_type and account.get("chain_type") != chain_type:
            continue
        address = account.get("address")
        if isinstance(address, str) and address:
            wallets.append(address)
    return tuple(wallets)


class HttpIdentityVerifier(IdentityVerifier):
    """Verifies credentials against the identity provider's user endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        app_id: str,
        app_secret: str,
        chain_type: str = "solana",
    ):
        self.client = client
        self.url = url
        self.app_id = app_id
        self.app_secret = app_secret
        self.chain_type = chain_type

    async def verify(self, credential: str) -> VerifiedIdentity:
        if not credential:
            raise AuthenticationError("Missing identity token")
        try:
            response = await self.client.get(
                self.url,
                headers={
                    "privy-app-id": self.app_id,
                    "privy-id-token": credential,
                },
                auth=(self.app_id, self.app_secret),
            )
        except httpx.HTTPError as exc:
            logger.exception("Identity provider unreachable")
            raise ServiceError("Identity provider unavailable") from exc

        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid identity token")
        if response.status_code != 200:
            logger.error("Identity provider returned %d", response.status_code)
            raise ServiceError("Identity provider unavailable")

        try:
            user = response.json()
        except ValueError as exc:
            raise ServiceError("Identity provider returned malformed data") from exc
        if not isinstance(user, dict) or not user.get("id"):
            raise ServiceError("Identity provider returned malformed data")

        return VerifiedIdentity(
            user_id=str(user["id"]),
            wallets=wallets_from_accounts(
                user.get("linked_accounts") or [], self.chain_type
            ),
        )
