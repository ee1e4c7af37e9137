import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.errors import NotEntitled, NotLinked, NotRegistered
from common.models import AccountLink, UserAccount
from common.timeutil import utc_now, as_aware

logger = logging.getLogger(__name__)

LINK_CODE_PATTERN = re.compile(r"^\d{6}$")


def normalize_address(address: str) -> str:
    """Canonical digits-only international form.

    +54 9 11 1234-5678 -> 5491112345678
    """
    return re.sub(r"\D", "", extract_local_part(address or ""))


def extract_local_part(address: str) -> str:
    return address.split("@")[0]


def is_link_code(text: Optional[str]) -> bool:
    return bool(text) and bool(LINK_CODE_PATTERN.match(text.strip()))


def generate_link_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def is_entitled(user: UserAccount) -> bool:
    status = (user.subscription_status or "").strip().lower()
    role = (user.role or "").strip().lower()
    return status in settings.entitled_states or role in settings.entitled_roles


async def _find_active_link(db: AsyncSession, normalized: str) -> Optional[AccountLink]:
    stmt = (
        select(AccountLink)
        .where(AccountLink.normalized_address == normalized, AccountLink.is_active.is_(True))
        .order_by(AccountLink.updated_at.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def _find_user_by_phone(db: AsyncSession, sender_address: str, normalized: str) -> Optional[UserAccount]:
    candidates = {sender_address, normalized, f"+{normalized}"}
    stmt = select(UserAccount).where(UserAccount.phone.in_(sorted(candidates))).limit(1)
    return (await db.execute(stmt)).scalar_one_or_none()


async def resolve_user(db: AsyncSession, sender_address: str) -> str:
    """Map a gateway sender to an entitled, linked user id.

    Raises NotRegistered, NotEntitled or NotLinked. Entitlement is evaluated on
    every message; nothing is cached between requests.
    """
    normalized = normalize_address(sender_address)
    link = await _find_active_link(db, normalized)
    if link:
        user = await db.get(UserAccount, link.user_id)
        if user is None:
            raise NotRegistered(f"linked user {link.user_id} has no account")
        if not is_entitled(user):
            raise NotEntitled(f"subscription state {user.subscription_status!r} is not entitled")
        return user.id

    user = await _find_user_by_phone(db, extract_local_part(sender_address), normalized)
    if user is None:
        raise NotRegistered(f"no account registered for {normalized}")
    if not is_entitled(user):
        raise NotEntitled(f"subscription state {user.subscription_status!r} is not entitled")
    raise NotLinked(f"account {user.id} has no active link for {normalized}")


async def issue_link_code(
    db: AsyncSession, user_id: str, phone: str, now: Optional[datetime] = None
) -> Tuple[AccountLink, str]:
    now = now or utc_now()
    normalized = normalize_address(phone)
    if not normalized:
        raise ValueError("phone must contain digits")

    # A fresh code supersedes any pending one for this user.
    await db.execute(
        delete(AccountLink).where(
            AccountLink.user_id == user_id,
            AccountLink.is_active.is_(False),
            AccountLink.link_code.is_not(None),
        )
    )
    code = generate_link_code()
    link = AccountLink(
        id=f"wal_{uuid.uuid4().hex[:12]}",
        user_id=user_id,
        normalized_address=normalized,
        link_code=code,
        link_code_expiry=now + timedelta(seconds=settings.LINK_CODE_TTL_SECONDS),
        is_active=False,
        created_at=now,
        updated_at=now,
    )
    db.add(link)
    await db.commit()
    logger.info("Issued link code for user=%s address=%s", user_id, normalized)
    return link, code


async def activate_link(
    db: AsyncSession, link_code: str, sender_address: str, now: Optional[datetime] = None
) -> Optional[AccountLink]:
    """Activate the pending link for ``link_code`` when sent from its own address.

    The lookup only sees inactive links, so a consumed code cannot be replayed.
    """
    now = now or utc_now()
    normalized = normalize_address(sender_address)
    stmt = (
        select(AccountLink)
        .where(AccountLink.link_code == link_code.strip(), AccountLink.is_active.is_(False))
        .limit(1)
    )
    link = (await db.execute(stmt)).scalar_one_or_none()
    if link is None:
        return None
    if link.link_code_expiry is not None and as_aware(link.link_code_expiry) <= now:
        logger.info("Link code expired for link=%s", link.id)
        return None
    if link.normalized_address != normalized:
        logger.info("Link code address mismatch for link=%s", link.id)
        return None

    # One active address per user from the linking flow's perspective.
    await db.execute(
        update(AccountLink)
        .where(
            AccountLink.user_id == link.user_id,
            AccountLink.is_active.is_(True),
            AccountLink.id != link.id,
        )
        .values(is_active=False, updated_at=now)
    )
    link.is_active = True
    link.link_code = None
    link.link_code_expiry = None
    link.updated_at = now
    await db.commit()
    logger.info("Activated link=%s for user=%s", link.id, link.user_id)
    return link


async def deactivate_links(db: AsyncSession, user_id: str, now: Optional[datetime] = None) -> int:
    now = now or utc_now()
    result = await db.execute(
        update(AccountLink)
        .where(AccountLink.user_id == user_id, AccountLink.is_active.is_(True))
        .values(is_active=False, updated_at=now)
    )
    await db.commit()
    return result.rowcount or 0


async def expire_pending_codes(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Delete never-activated links whose code has expired."""
    now = now or utc_now()
    result = await db.execute(
        delete(AccountLink).where(
            AccountLink.is_active.is_(False),
            AccountLink.link_code.is_not(None),
            AccountLink.link_code_expiry < now,
        )
    )
    await db.commit()
    return result.rowcount or 0
