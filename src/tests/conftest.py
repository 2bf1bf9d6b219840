"""Shared test doubles for the identity provider and the asset ledger."""

from decimal import Decimal

import pytest

from tokenpage.core.errors import AuthenticationError, ServiceError
from tokenpage.core.identity import IdentityVerifier, VerifiedIdentity
from tokenpage.core.kv import MemoryKeyValueStore
from tokenpage.core.services import Services
from tokenpage.core.storage import PageStore
from tokenpage.core.token_gate import AssetLedger, TokenGateVerifier, UrlSigner
from tokenpage.core.wallet_index import WalletIndex

NOW = 1_700_000_000.0


class FakeIdentity(IdentityVerifier):
    """Maps credential strings to identities; anything else is invalid."""

    def __init__(self) -> None:
        self.users: dict[str, VerifiedIdentity] = {}
        self.calls = 0

    def add(self, credential: str, user_id: str, *wallets: str) -> None:
        self.users[credential] = VerifiedIdentity(user_id=user_id, wallets=wallets)

    async def verify(self, credential: str) -> VerifiedIdentity:
        self.calls += 1
        try:
            return self.users[credential]
        except KeyError:
            raise AuthenticationError("Invalid identity token") from None


class FakeLedger(AssetLedger):
    """Balances per wallet per token, as the RPC ledger would report them."""

    def __init__(self) -> None:
        self.balances: dict[str, dict[str, str]] = {}
        self.unreachable = False

    def hold(self, wallet: str, token: str, balance: str) -> None:
        self.balances.setdefault(wallet, {})[token] = balance

    async def fungible_assets(self, wallet: str) -> list[dict]:
        if self.unreachable:
            raise ServiceError("Failed to verify token holdings")
        return [
            {"id": token, "interface": "FungibleToken", "token_info": {"balance": balance}}
            for token, balance in self.balances.get(wallet, {}).items()
        ]


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def pages(kv):
    return PageStore(kv)


@pytest.fixture
def index(kv, pages):
    return WalletIndex(kv, pages)


@pytest.fixture
def identity():
    fake = FakeIdentity()
    fake.add("alice-token", "user-alice", "Wx1")
    fake.add("bob-token", "user-bob", "Wx2")
    fake.add("carol-token", "user-carol", "Wx3", "Wx4")
    return fake


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def signer():
    return UrlSigner("test-secret", ttl_seconds=600, clock=lambda: NOW)


@pytest.fixture
def services(pages, index, identity, ledger, signer):
    return Services(
        pages=pages,
        index=index,
        identity=identity,
        gate=TokenGateVerifier(ledger, signer),
        gate_threshold=Decimal("100"),
    )
