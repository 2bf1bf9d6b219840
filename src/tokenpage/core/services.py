"""Request flows over the page engine.

Clients (record store, identity provider, ledger) are constructed once per
process and handed in through :class:`Services`; the flows themselves keep
no state between calls.

A page write and the matching wallet-index write are two separate store
operations. If the index write fails after the page write succeeded, the
failure is logged and the page write stands; :meth:`WalletIndex.reconcile`
repairs the divergence later.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

from tokenpage.config import Settings
from tokenpage.core import access, validation
from tokenpage.core.errors import (
    AccessDeniedError,
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    ServiceError,
    ValidationError,
)
from tokenpage.core.identity import HttpIdentityVerifier, IdentityVerifier, VerifiedIdentity
from tokenpage.core.kv import FileKeyValueStore, KeyValueStore
from tokenpage.core.models import PageRecord, ReconcileReport, SignedAccess
from tokenpage.core.storage import PageStore
from tokenpage.core.token_gate import (
    AssetLedger,
    GateState,
    RpcAssetLedger,
    TokenGateVerifier,
    UrlSigner,
)
from tokenpage.core.wallet_index import WalletIndex

logger = logging.getLogger(__name__)


def _require_str(payload: dict[str, Any], key: str, message: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(message, field=key)
    return value


@dataclass
class Services:
    """Per-process collaborators shared by all request handlers."""

    pages: PageStore
    index: WalletIndex
    identity: IdentityVerifier
    gate: TokenGateVerifier
    gate_threshold: Decimal = Decimal("1")

    # ---------- identity ----------

    async def identify(self, credential: str | None) -> VerifiedIdentity | None:
        """Verify a credential if present; failures mean anonymous."""
        if not credential:
            return None
        try:
            return await self.identity.verify(credential)
        except AuthenticationError:
            return None
        except ServiceError:
            logger.warning("Identity check failed, treating caller as anonymous")
            return None

    async def require_identity(self, credential: str | None) -> VerifiedIdentity:
        if not credential:
            raise AuthenticationError("Missing identity token")
        return await self.identity.verify(credential)

    async def require_owner(
        self, credential: str | None, wallet: str
    ) -> VerifiedIdentity:
        """Verify the caller controls wallet.

        Raises:
            AuthenticationError: no or invalid credential.
            AuthorizationError: valid credential for other wallets.
        """
        identity = await self.require_identity(credential)
        if not identity.covers(wallet):
            logger.warning("User %s does not control wallet %s", identity.user_id, wallet)
            raise AuthorizationError("Wallet not owned by authenticated user")
        return identity

    async def _index_add(self, wallet: str, slug: str) -> None:
        try:
            await self.index.add(wallet, slug)
        except ServiceError:
            logger.exception("Wallet index add failed for %s -> %s", wallet, slug)

    async def _index_remove(self, wallet: str, slug: str) -> None:
        try:
            await self.index.remove(wallet, slug)
        except ServiceError:
            logger.exception("Wallet index remove failed for %s -> %s", wallet, slug)

    # ---------- reads ----------

    async def view_page(
        self, slug: str, credential: str | None
    ) -> tuple[PageRecord, bool]:
        """Fetch a page projected for the caller, plus the ownership flag."""
        record = await self.pages.get(slug)
        identity = await self.identify(credential)
        is_owner = identity is not None and access.resolve_ownership(
            record, identity.wallets
        )
        return access.project_for_viewer(record, is_owner), is_owner

    async def pages_for_caller(
        self, wallet: str | None, credential: str | None
    ) -> list[PageRecord]:
        """List the caller's own pages.

        Pages are found through the credential's verified wallets. A
        ``wallet`` parameter narrows the listing to that wallet only when
        the caller controls it; any other value is ignored, so nobody can
        list someone else's pages.
        """
        identity = await self.require_identity(credential)
        if wallet and identity.covers(wallet):
            wallets = [wallet]
        else:
            if wallet:
                logger.info(
                    "Ignoring wallet filter %s not controlled by %s",
                    wallet,
                    identity.user_id,
                )
            wallets = list(identity.wallets)

        records: dict[str, PageRecord] = {}
        for w in wallets:
            for record in await self.index.list(w):
                records.setdefault(record.slug, record)
        return [records[slug] for slug in sorted(records)]

    # ---------- writes ----------

    async def save_page(
        self, payload: dict[str, Any], credential: str | None
    ) -> PageRecord:
        """Create a page or update one the caller already owns."""
        slug = payload.get("slug")
        if not validation.is_valid_slug(slug):
            raise ValidationError(
                "Only letters, numbers, and hyphens allowed (1-50 characters)",
                field="slug",
            )
        wallet = _require_str(payload, "walletAddress", "walletAddress is required")
        setup = payload.get("isSetupWizard", False)
        if not isinstance(setup, bool):
            raise ValidationError("isSetupWizard must be a boolean", field="isSetupWizard")

        await self.require_owner(credential, wallet)
        record, _ = await self.pages.create(slug, wallet, payload, minimal=setup)
        await self._index_add(record.wallet_address, slug)
        return record

    async def patch_page(
        self, payload: dict[str, Any], credential: str | None
    ) -> PageRecord:
        """Merge-update a page owned by the caller."""
        slug = _require_str(payload, "slug", "Slug is required")
        expected = payload.get("expectedUpdatedAt")
        expected_updated_at = None
        if expected is not None:
            try:
                expected_updated_at = datetime.fromisoformat(expected)
            except (TypeError, ValueError):
                raise ValidationError(
                    "expectedUpdatedAt must be an ISO-8601 timestamp",
                    field="expectedUpdatedAt",
                ) from None

        current = await self.pages.get(slug)
        await self.require_owner(credential, current.wallet_address)
        return await self.pages.update(
            slug, payload, expected_updated_at=expected_updated_at
        )

    async def delete_page(self, payload: dict[str, Any], credential: str | None) -> None:
        slug = _require_str(payload, "slug", "Slug is required")
        current = await self.pages.get(slug)
        await self.require_owner(credential, current.wallet_address)
        await self.pages.delete(slug)
        await self._index_remove(current.wallet_address, slug)

    # ---------- token gate ----------

    async def unlock_private_content(
        self, payload: dict[str, Any], credential: str | None
    ) -> tuple[SignedAccess, GateState]:
        """Run the token gate for a page and sign the private resource.

        Raises:
            ValidationError: missing parameters or a malformed resource URL.
            ConfigurationError: the page has no connected token.
            AccessDeniedError: balance below the threshold.
        """
        wallet = payload.get("walletAddress")
        blob_url = payload.get("blobUrl")
        slug = payload.get("pageSlug")
        if not all(isinstance(v, str) and v for v in (wallet, blob_url, slug)):
            raise ValidationError("Missing required parameters")
        if not validation.is_absolute_url(blob_url):
            raise ValidationError("Invalid resource URL", field="blobUrl")

        await self.require_owner(credential, wallet)
        page = await self.pages.get(slug)
        if not page.connected_token:
            raise ConfigurationError("No token is connected to this page")

        state = GateState.LOCKED.next("check")
        result = await self.gate.check_access(
            wallet, page.connected_token, self.gate_threshold
        )
        if not result.allowed:
            state = state.next("denied")
            logger.warning(
                "Token gate denied %s on %s (balance %s)", wallet, slug, result.balance
            )
            raise AccessDeniedError(
                f"Insufficient token balance. Required: {self.gate_threshold}, "
                f"Current: {result.balance}",
                token_symbol=page.token_symbol or "tokens",
                balance=result.balance,
                state=state.value,
            )
        state = state.next("allowed")
        return self.gate.issue_signed_access(blob_url), state

    async def reconcile_index(self) -> ReconcileReport:
        return await self.index.reconcile()


def build_services(
    settings: Settings,
    client: httpx.AsyncClient,
    *,
    kv: KeyValueStore | None = None,
    identity: IdentityVerifier | None = None,
    ledger: AssetLedger | None = None,
) -> Services:
    """Wire up collaborators from settings; any of them may be overridden."""
    kv = kv if kv is not None else FileKeyValueStore(settings.data_dir)
    pages = PageStore(kv)
    if identity is None:
        identity = HttpIdentityVerifier(
            client,
            settings.identity_url,
            settings.identity_app_id,
            settings.identity_app_secret,
            chain_type=settings.identity_chain_type,
        )
    if ledger is None:
        ledger = RpcAssetLedger(client, settings.ledger_url, settings.ledger_api_key)
    signer = UrlSigner(settings.signing_secret, settings.signed_url_ttl)
    return Services(
        pages=pages,
        index=WalletIndex(kv, pages),
        identity=identity,
        gate=TokenGateVerifier(ledger, signer),
        gate_threshold=settings.gate_threshold,
    )
