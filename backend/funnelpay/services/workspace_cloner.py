"""Workspace cloning for affiliate buyers.

WHAT: Copies an affiliate's template workspace to the buyer's account
WHY: Affiliates sell a ready-made setup; the buyer should land in it

Runs after the payment transaction commits, in its own session. The clone
slug is derived from the new owner's username (acme, acme-2, acme-3, ...).
"""

import logging
import re
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..models import User, Workspace
from .billing.accounts import parse_uuid

logger = logging.getLogger(__name__)

MAX_SLUG_ATTEMPTS = 10000


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower())
    return slug.strip("-") or "workspace"


def unique_workspace_slug(db: Session, base: str) -> str:
    slug = base
    counter = 2
    while db.query(Workspace.id).filter(Workspace.slug == slug).first() is not None:
        if counter > MAX_SLUG_ATTEMPTS:
            raise RuntimeError(f"Unable to generate unique slug for: {base}")
        slug = f"{base}-{counter}"
        counter += 1
    return slug


class WorkspaceCloner:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def clone(self, source_workspace_id: str, new_owner_id: str) -> Optional[str]:
        """Clone the workspace; returns the new workspace id, or None if skipped."""
        source_uid = parse_uuid(source_workspace_id)
        owner_uid = parse_uuid(new_owner_id)
        if source_uid is None or owner_uid is None:
            logger.warning(
                f"[WORKSPACE_CLONE] Invalid ids source={source_workspace_id} owner={new_owner_id}"
            )
            return None

        db = self.session_factory()
        try:
            source = db.get(Workspace, source_uid)
            if source is None:
                logger.warning(f"[WORKSPACE_CLONE] Source workspace not found: {source_workspace_id}")
                return None
            owner = db.get(User, owner_uid)
            if owner is None:
                logger.warning(f"[WORKSPACE_CLONE] New owner not found: {new_owner_id}")
                return None

            clone = Workspace(
                name=source.name,
                slug=unique_workspace_slug(db, slugify(owner.username)),
                owner_id=owner.id,
            )
            db.add(clone)
            db.commit()
            logger.info(
                f"[WORKSPACE_CLONE] Cloned {source.id} -> {clone.id} ({clone.slug}) for {owner.id}"
            )
            return str(clone.id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
