"""Account lookup and provisioning for payment-driven signups.

WHAT: Find buyers by id/email and create verified accounts with generated
      credentials when a payment arrives before the account exists
WHY: Affiliate purchases and ad-funnel (payment-first) signups both create
     accounts; they must generate usernames and passwords the same way
"""

import logging
from datetime import datetime
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import PlanTypeEnum, RegistrationSourceEnum, User
from ...security import generate_temporary_password, generate_username_candidate, get_password_hash

logger = logging.getLogger(__name__)

MAX_USERNAME_ATTEMPTS = 10


def map_plan_type(value: Optional[str]) -> PlanTypeEnum:
    """"business" -> BUSINESS; unknown or empty -> FREE."""
    try:
        return PlanTypeEnum((value or "").strip().upper())
    except ValueError:
        return PlanTypeEnum.free


def split_full_name(name: Optional[str]) -> Tuple[str, str]:
    """"Jane Mary Doe" -> ("Jane", "Mary Doe")."""
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def parse_uuid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        return None


def get_user_by_id(db: Session, user_id: Optional[str]) -> Optional[User]:
    uid = parse_uuid(user_id)
    if uid is None:
        if user_id:
            logger.warning(f"[ACCOUNTS] Ignoring malformed account id {user_id!r}")
        return None
    return db.get(User, uid)


def find_user_by_email(db: Session, email: str) -> Optional[User]:
    return (
        db.query(User)
        .filter(func.lower(User.email) == email.strip().lower())
        .first()
    )


def unique_username(db: Session, first_name: Optional[str], email: str) -> str:
    for _ in range(MAX_USERNAME_ATTEMPTS):
        candidate = generate_username_candidate(first_name, email)
        taken = db.query(User.id).filter(User.username == candidate).first()
        if not taken:
            return candidate
    raise RuntimeError(f"Could not generate a unique username for {email}")


def provision_account(
    db: Session,
    *,
    email: str,
    first_name: Optional[str],
    last_name: Optional[str],
    plan: PlanTypeEnum,
    registration_source: RegistrationSourceEnum,
    trial_start: datetime,
    trial_end: Optional[datetime],
) -> Tuple[User, str]:
    """Create a verified account with a generated username and password.

    Returns (user, temporary_password). Only the bcrypt hash is stored; the
    plaintext goes out by email once and is never persisted.
    """
    temporary_password = generate_temporary_password()
    user = User(
        email=email.strip().lower(),
        username=unique_username(db, first_name, email),
        first_name=first_name or None,
        last_name=last_name or None,
        password_hash=get_password_hash(temporary_password),
        is_verified=True,
        plan=plan,
        registration_source=registration_source,
        trial_start_date=trial_start,
        trial_end_date=trial_end,
    )
    db.add(user)
    db.flush()

    logger.info(
        f"[ACCOUNTS] Provisioned {registration_source.value} account {user.id} "
        f"({user.username}) on plan {plan.value}"
    )
    return user, temporary_password
