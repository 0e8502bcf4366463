"""Periodic job — move licenses whose modules have all lapsed to ``expired``."""

from __future__ import annotations

import logging

from licensing.services.license_store import LicenseStore

logger = logging.getLogger(__name__)


async def expire_licenses(ctx: dict) -> dict:
    """Periodic job: expire overdue licenses and audit each transition.

    When run by ARQ the store is built on startup and kept in
    ``ctx["license_store"]``. Tests inject their own store the same way.
    """
    store: LicenseStore | None = ctx.get("license_store")
    if store is None:
        from licensing.api.deps import get_license_store
        store = get_license_store()

    expired = await store.expire_overdue()
    if not expired:
        logger.info("License expiry sweep: nothing overdue")
        return {"expired": 0, "tenant_ids": []}

    logger.info("License expiry sweep: expired %d licenses", len(expired))
    return {"expired": len(expired), "tenant_ids": expired}
