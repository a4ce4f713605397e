"""Identity resolution for chat platforms.

Maps a platform identity (Telegram chat id, WhatsApp phone number) to a user
account, and binds identities to accounts that were created on the web.
WhatsApp phone numbers are stored and looked up digits-only.
"""

import enum
import re
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import PlatformEnum, SubscriptionTier, User
from errors import InvalidRequestError, NotFoundError
from logger_config import setup_logger

logger = setup_logger(__name__, 'identity.log')


class ConnectOutcome(str, enum.Enum):
    CONNECTED = "connected"
    ALREADY_CONNECTED = "already_connected"
    SIGNUP_REQUIRED = "signup_required"


@dataclass(frozen=True)
class ConnectResult:
    outcome: ConnectOutcome
    user_id: Optional[str] = None


def normalize_phone(phone: str) -> str:
    """Strip everything but digits: '+91 98765-43210' -> '919876543210'."""
    return re.sub(r"\D", "", phone or "")


def normalize_identity(platform: Union[PlatformEnum, str], identity: str) -> str:
    platform = PlatformEnum(platform)
    identity = str(identity).strip()
    if platform == PlatformEnum.WHATSAPP:
        identity = normalize_phone(identity)
    if not identity:
        raise InvalidRequestError(f"A {platform.value} identity is required")
    return identity


def _identity_column(platform: PlatformEnum):
    if platform == PlatformEnum.TELEGRAM:
        return User.telegram_chat_id
    return User.whatsapp_phone


def create_user(db: Session, email: str,
                subscription_tier: SubscriptionTier = SubscriptionTier.FREE,
                bot_name: Optional[str] = None) -> User:
    """Create an account. Stands in for the web signup flow.

    Args:
        db: Database session
        email: Login email (unique)
        subscription_tier: Initial tier
        bot_name: Display name for the bot, settings default when omitted

    Returns:
        User: The new user
    """
    user = User(email=email.strip().lower(), subscription_tier=SubscriptionTier(subscription_tier))
    if bot_name:
        user.bot_name = bot_name
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {user.id} ({user.email})")
    return user


def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.get(User, user_id)


def resolve_user(db: Session, platform: Union[PlatformEnum, str], identity: str) -> Optional[User]:
    """Find the user bound to a platform identity, or None."""
    platform = PlatformEnum(platform)
    identity = normalize_identity(platform, identity)
    return db.scalar(select(User).where(_identity_column(platform) == identity))


def connect_identity(db: Session, platform: Union[PlatformEnum, str], identity: str,
                     user_id: Optional[str] = None) -> ConnectResult:
    """Bind a platform identity to an account.

    Connecting an identity that is already bound is not an error: the owner's
    id comes back with ALREADY_CONNECTED. Without a target user_id an unbound
    identity cannot create an account, so SIGNUP_REQUIRED is returned.

    Raises:
        NotFoundError: user_id does not exist
    """
    platform = PlatformEnum(platform)
    identity = normalize_identity(platform, identity)

    existing = resolve_user(db, platform, identity)
    if existing is not None:
        logger.info(f"{platform.value} identity already bound to user {existing.id}")
        return ConnectResult(ConnectOutcome.ALREADY_CONNECTED, existing.id)

    if not user_id:
        return ConnectResult(ConnectOutcome.SIGNUP_REQUIRED)

    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", action="signup_required")

    if platform == PlatformEnum.TELEGRAM:
        user.telegram_chat_id = identity
        user.telegram_connected = True
    else:
        user.whatsapp_phone = identity
        user.whatsapp_connected = True

    try:
        db.commit()
    except IntegrityError:
        # Another request bound the same identity first
        db.rollback()
        owner = resolve_user(db, platform, identity)
        logger.warning(f"Lost {platform.value} binding race for user {user_id}")
        return ConnectResult(ConnectOutcome.ALREADY_CONNECTED, owner.id if owner else None)

    logger.info(f"Connected {platform.value} for user {user.id}")
    return ConnectResult(ConnectOutcome.CONNECTED, user.id)


def update_subscription_tier(db: Session, user_id: str,
                             tier: Union[SubscriptionTier, str]) -> User:
    """Set a user's tier; called by the billing integration."""
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    try:
        user.subscription_tier = SubscriptionTier(tier)
    except ValueError:
        raise InvalidRequestError(f"Unknown subscription tier '{tier}'")
    db.commit()
    db.refresh(user)
    logger.info(f"User {user_id} moved to tier {user.subscription_tier.value}")
    return user


def update_bot_name(db: Session, user_id: str, bot_name: str) -> User:
    bot_name = (bot_name or "").strip()
    if not bot_name:
        raise InvalidRequestError("Bot name cannot be empty")
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    user.bot_name = bot_name
    db.commit()
    db.refresh(user)
    return user
