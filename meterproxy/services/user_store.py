"""
User Store
==========

Lookups and updates for ``users``: API-key authentication, Stripe customer
linkage and account creation.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlmodel import Session, select

from meterproxy.core.database import Database
from meterproxy.models.user import User

logger = logging.getLogger(__name__)


class UserStore:
    def __init__(self, database: Database) -> None:
        self.database = database

    @contextmanager
    def _scope(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self.database.session() as own:
            yield own
            own.commit()

    def _one(self, stmt, session: Optional[Session]) -> Optional[User]:
        with self._scope(session) as s:
            user = s.exec(stmt).first()
            if user is not None and session is None:
                s.expunge(user)
            return user

    def get(self, user_id: str, session: Optional[Session] = None) -> Optional[User]:
        return self._one(select(User).where(User.id == user_id), session)

    def get_by_email(self, email: str, session: Optional[Session] = None) -> Optional[User]:
        return self._one(select(User).where(User.email == email), session)

    def get_by_api_key_hash(self, key_hash: str, session: Optional[Session] = None) -> Optional[User]:
        return self._one(select(User).where(User.api_key_hash == key_hash), session)

    def get_by_customer_id(self, customer_id: str, session: Optional[Session] = None) -> Optional[User]:
        return self._one(select(User).where(User.stripe_customer_id == customer_id), session)

    def create(
        self,
        email: str,
        *,
        is_admin: bool = False,
        api_key_hash: Optional[str] = None,
        api_key_prefix: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> User:
        user = User(
            email=email,
            is_admin=is_admin,
            api_key_hash=api_key_hash,
            api_key_prefix=api_key_prefix,
            stripe_customer_id=stripe_customer_id,
        )
        with self._scope(session) as s:
            s.add(user)
            s.flush()
            s.refresh(user)
            if session is None:
                s.expunge(user)
        logger.info("User %s created (admin=%s)", user.id, is_admin)
        return user

    def link_customer(self, user_id: str, customer_id: str, session: Optional[Session] = None) -> bool:
        """Attach a Stripe customer id to a user.

        Returns True if the user now carries ``customer_id``. A user already
        linked to a different customer is left unchanged.
        """
        with self._scope(session) as s:
            user = s.get(User, user_id)
            if user is None:
                logger.warning("Cannot link customer %s: user %s not found", customer_id, user_id)
                return False
            if user.stripe_customer_id == customer_id:
                return True
            if user.stripe_customer_id:
                logger.warning(
                    "User %s already linked to customer %s; ignoring %s",
                    user_id,
                    user.stripe_customer_id,
                    customer_id,
                )
                return False
            user.stripe_customer_id = customer_id
            s.add(user)
            logger.info("Linked user %s to Stripe customer %s", user_id, customer_id)
            return True
