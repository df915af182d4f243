"""
Merchant storage — registration and credential access through the vault.
"""

import logging
from typing import Optional

from sqlalchemy import select

from phantom.config import settings
from phantom.database import async_session_factory
from phantom.models.ghost_target import GhostTarget
from phantom.models.merchant import SEND_STRATEGY_ORACLE, Merchant
from phantom.services.vault import Vault, get_vault

logger = logging.getLogger("phantom.merchants")


async def register_merchant(
    billing_account_id: str,
    access_token: str,
    business_name: Optional[str] = None,
    support_email: Optional[str] = None,
    default_currency: str = "usd",
    tier_limit: Optional[int] = None,
    send_strategy: Optional[str] = None,
    vault: Optional[Vault] = None,
) -> Merchant:
    """Create or refresh a merchant after the OAuth handshake hands over a token."""
    vault = vault or get_vault()
    sealed = vault.encrypt(access_token)

    async with async_session_factory() as db:
        result = await db.execute(
            select(Merchant).where(Merchant.billing_account_id == billing_account_id)
        )
        merchant = result.scalar_one_or_none()
        if merchant is None:
            merchant = Merchant(
                billing_account_id=billing_account_id,
                tier_limit=tier_limit or settings.default_tier_limit,
                send_strategy=send_strategy or SEND_STRATEGY_ORACLE,
            )
            db.add(merchant)
        elif tier_limit:
            merchant.tier_limit = tier_limit
        if send_strategy:
            merchant.send_strategy = send_strategy

        merchant.token_ciphertext = sealed.ciphertext
        merchant.token_iv = sealed.iv
        merchant.token_tag = sealed.tag
        merchant.business_name = business_name or merchant.business_name
        merchant.support_email = support_email or merchant.support_email
        merchant.default_currency = default_currency
        await db.commit()
        await db.refresh(merchant)

    logger.info("🏪 Merchant %s connected", billing_account_id)
    return merchant


async def get_merchant(merchant_id: str) -> Optional[Merchant]:
    async with async_session_factory() as db:
        return await db.get(Merchant, merchant_id)


async def list_merchant_ids() -> list[str]:
    async with async_session_factory() as db:
        result = await db.execute(select(Merchant.id).order_by(Merchant.created_at))
        return [row[0] for row in result.all()]


def get_merchant_credential(merchant: Merchant, vault: Optional[Vault] = None) -> str:
    """Decrypt the merchant's access token. Raises IntegrityError on tamper."""
    vault = vault or get_vault()
    return vault.decrypt(merchant.token_ciphertext, merchant.token_iv, merchant.token_tag)


async def get_ghost_targets_by_merchant(
    merchant_id: str,
    status: Optional[str] = None,
    limit: int = 200,
    offset: int = 0,
) -> list[GhostTarget]:
    async with async_session_factory() as db:
        stmt = (
            select(GhostTarget)
            .where(GhostTarget.merchant_id == merchant_id)
            .order_by(GhostTarget.discovered_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if status:
            stmt = stmt.where(GhostTarget.status == status)
        result = await db.execute(stmt)
        return list(result.unique().scalars().all())
