"""Ownership decisions and viewer-specific projections of a page."""

from collections.abc import Iterable

from tokenpage.core.models import PageRecord


def resolve_ownership(record: PageRecord, verified_wallets: Iterable[str]) -> bool:
    """True if the page owner is one of the caller's verified wallets.

    Only wallets vouched for by the identity provider count; a wallet
    address supplied by the client is never trusted on its own.
    """
    return any(record.is_owned_by(wallet) for wallet in verified_wallets)


def project_for_viewer(record: PageRecord, is_owner: bool) -> PageRecord:
    """Return the copy of the page a viewer is allowed to see.

    Owners see everything. Everyone else gets a copy in which each
    token-gated item keeps its id, title, order and preset but loses its
    url. The stored record is never modified.
    """
    if is_owner:
        return record
    items = [
        item.model_copy(update={"url": None}) if item.token_gated else item
        for item in record.items
    ]
    return record.model_copy(update={"items": items})
