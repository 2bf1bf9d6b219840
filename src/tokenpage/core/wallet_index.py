"""Secondary index from wallet to owned page slugs.

The index is written separately from the page record and is only eventually
consistent with it. Reads skip slugs whose page is gone without repairing
the entry; :meth:`WalletIndex.reconcile` is the one place that repairs it.
"""

import logging

from tokenpage.core.kv import KeyValueStore
from tokenpage.core.models import PageRecord, ReconcileReport
from tokenpage.core.storage import PageStore

logger = logging.getLogger(__name__)

WALLET_KEY_PREFIX = "wallet:"
WALLET_KEY_SUFFIX = ":pages"


def wallet_key(wallet: str) -> str:
    """Get the index key for a wallet (case-insensitive)."""
    return f"{WALLET_KEY_PREFIX}{wallet.lower()}{WALLET_KEY_SUFFIX}"


class WalletIndex:
    """Maps wallet identities to the set of slugs they own."""

    def __init__(self, kv: KeyValueStore, pages: PageStore):
        self.kv = kv
        self.pages = pages

    async def add(self, wallet: str, slug: str) -> None:
        await self.kv.set_add(wallet_key(wallet), slug)

    async def remove(self, wallet: str, slug: str) -> None:
        await self.kv.set_remove(wallet_key(wallet), slug)

    async def slugs(self, wallet: str) -> set[str]:
        """Raw indexed slugs, including ones whose page no longer exists."""
        return await self.kv.set_members(wallet_key(wallet))

    async def list(self, wallet: str) -> list[PageRecord]:
        """Resolve the wallet's indexed pages, sorted by slug.

        Missing pages are skipped and left in the index.
        """
        records = []
        for slug in sorted(await self.slugs(wallet)):
            record = await self.pages.find(slug)
            if record is None:
                logger.debug("Index for %s points at missing page %s", wallet, slug)
                continue
            records.append(record)
        return records

    async def reconcile(self) -> ReconcileReport:
        """Bring the index back in line with the stored pages.

        Adds each page to its owner's entry and removes entries pointing at
        pages that are gone or owned by a different wallet.
        """
        report = ReconcileReport()
        owners: dict[str, str] = {}
        for slug in await self.pages.slugs():
            record = await self.pages.find(slug)
            if record is None:
                continue
            report.pages_scanned += 1
            owners[slug] = record.wallet_address.lower()
            if await self.kv.set_add(wallet_key(record.wallet_address), slug):
                report.added.append(slug)

        for key in await self.kv.keys(WALLET_KEY_PREFIX):
            if not key.endswith(WALLET_KEY_SUFFIX):
                continue
            wallet = key[len(WALLET_KEY_PREFIX):-len(WALLET_KEY_SUFFIX)]
            for slug in sorted(await self.kv.set_members(key)):
                if owners.get(slug) != wallet:
                    await self.kv.set_remove(key, slug)
                    report.removed.append(slug)

        logger.info(
            "Wallet index reconciled: %d pages, %d added, %d removed",
            report.pages_scanned,
            len(report.added),
            len(report.removed),
        )
        return report
